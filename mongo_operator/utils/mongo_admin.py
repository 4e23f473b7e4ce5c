"""Administrative connection to mongod/mongos processes.

Thin async wrapper around Motor. Every command is bounded by the probe
timeout; network-level failures surface as ``TransientInfraError`` so the
caller can degrade the affected sub-result instead of failing the pass.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Optional

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import AutoReconnect, ConnectionFailure, OperationFailure

from mongo_operator.errors import TransientInfraError

logger = logging.getLogger(__name__)

NOT_YET_INITIALIZED = 94
ALREADY_INITIALIZED = 23
AUTHENTICATION_FAILED = 18
MONGODB_PORT = 27017


class MongoAdmin:
    """
    Administrative interface of a single database process.

    Connections use ``directConnection`` so commands reach exactly the
    member they were addressed to, primary or not. With a fallback password
    a failed authentication switches to the other password and retries once.
    """

    def __init__(
        self,
        host: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        timeout: float = 5.0,
        client: Optional[Any] = None,
        fallback_password: Optional[str] = None,
        client_factory: Callable[..., Any] = AsyncIOMotorClient,
    ):
        """
        Initialize admin connection.

        Args:
            host: "host:port" of the member
            username: Admin user (clusterAdmin)
            password: Admin password
            timeout: Per-command timeout in seconds
            client: Pre-built client (tests)
            fallback_password: Password tried when authentication fails
            client_factory: Builds a client for a password
        """
        self.host = host
        self.username = username
        self.timeout = timeout
        self.client_factory = client_factory
        self._passwords = [password]
        if fallback_password is not None and fallback_password != password:
            self._passwords.append(fallback_password)
        self.client = client or self._connect(password)

    def _connect(self, password: Optional[str]) -> Any:
        timeout_ms = int(self.timeout * 1000)
        return self.client_factory(
            self.host,
            directConnection=True,
            username=self.username,
            password=password,
            serverSelectionTimeoutMS=timeout_ms,
            connectTimeoutMS=timeout_ms,
            socketTimeoutMS=timeout_ms,
        )

    async def _command(self, command: dict[str, Any]) -> dict[str, Any]:
        try:
            return await self._run(command)
        except OperationFailure as e:
            if e.code != AUTHENTICATION_FAILED or len(self._passwords) < 2:
                raise
        # Mid-rotation the database may hold either admin password.
        logger.info(f"Authentication on {self.host} failed, switching admin password")
        self._passwords.reverse()
        self.client.close()
        self.client = self._connect(self._passwords[0])
        return await self._run(command)

    async def _run(self, command: dict[str, Any]) -> dict[str, Any]:
        try:
            return await asyncio.wait_for(
                self.client.admin.command(command), timeout=self.timeout
            )
        except asyncio.TimeoutError as e:
            raise TransientInfraError(f"{next(iter(command))} on {self.host} timed out") from e
        except ConnectionFailure as e:
            raise TransientInfraError(f"{self.host} unreachable: {e}") from e

    async def ping(self) -> float:
        """Round-trip time of a ping command in milliseconds."""
        start = time.monotonic()
        await self._command({"ping": 1})
        return (time.monotonic() - start) * 1000

    async def replset_status(self) -> Optional[dict[str, Any]]:
        """
        Return ``replSetGetStatus`` output.

        Returns:
            The status document, or None if the set is not initialized yet
        """
        try:
            return await self._command({"replSetGetStatus": 1})
        except OperationFailure as e:
            if e.code == NOT_YET_INITIALIZED:
                return None
            raise TransientInfraError(f"replSetGetStatus on {self.host} failed: {e}") from e

    async def replset_config(self) -> dict[str, Any]:
        result = await self._command({"replSetGetConfig": 1})
        return result["config"]

    async def initiate(self, replset: str, hosts: list[str], configsvr: bool = False) -> None:
        """Initiate a new replica set with the given members."""
        config: dict[str, Any] = {
            "_id": replset,
            "members": [{"_id": i, "host": host} for i, host in enumerate(hosts)],
        }
        if configsvr:
            config["configsvr"] = True
        logger.info(f"Initiating replica set {replset} on {self.host}")
        try:
            await self._command({"replSetInitiate": config})
        except OperationFailure as e:
            if e.code == ALREADY_INITIALIZED:
                logger.info(f"Replica set {replset} already initialized on {self.host}")
                return
            raise TransientInfraError(f"replSetInitiate on {self.host} failed: {e}") from e

    async def _reconfigure(self, config: dict[str, Any]) -> None:
        config["version"] = config.get("version", 1) + 1
        try:
            await self._command({"replSetReconfig": config})
        except OperationFailure as e:
            raise TransientInfraError(f"replSetReconfig on {self.host} failed: {e}") from e

    async def add_member(self, host: str) -> bool:
        """
        Add a member to the replica set config.

        Returns:
            True if the config changed, False if the member was already present
        """
        config = await self.replset_config()
        members = config["members"]
        if any(m["host"] == host for m in members):
            return False
        next_id = max((m["_id"] for m in members), default=-1) + 1
        members.append({"_id": next_id, "host": host})
        logger.info(f"Adding {host} to replica set {config['_id']}")
        await self._reconfigure(config)
        return True

    async def remove_member(self, host: str) -> bool:
        """
        Remove a member from the replica set config.

        Returns:
            True if the config changed, False if the member was already absent
        """
        config = await self.replset_config()
        remaining = [m for m in config["members"] if m["host"] != host]
        if len(remaining) == len(config["members"]):
            return False
        config["members"] = remaining
        logger.info(f"Removing {host} from replica set {config['_id']}")
        await self._reconfigure(config)
        return True

    async def step_down(self, seconds: int = 60) -> None:
        """Ask the primary to step down. The server drops the connection."""
        try:
            await self._command({"replSetStepDown": seconds})
        except TransientInfraError as e:
            if not isinstance(e.__cause__, AutoReconnect):
                raise
        except OperationFailure as e:
            raise TransientInfraError(f"replSetStepDown on {self.host} failed: {e}") from e

    async def set_user_password(self, user: str, password: str) -> None:
        """Set a user's password, creating the user on first use."""
        try:
            await self._command({"updateUser": user, "pwd": password})
        except OperationFailure as e:
            if e.code != 11:  # UserNotFound
                raise TransientInfraError(f"updateUser {user} failed: {e}") from e
            await self._command({"createUser": user, "pwd": password, "roles": []})

    async def list_shards(self) -> list[dict[str, Any]]:
        result = await self._command({"listShards": 1})
        return result.get("shards", [])

    async def add_shard(self, replset: str, hosts: list[str]) -> None:
        logger.info(f"Adding shard {replset} through {self.host}")
        try:
            await self._command({"addShard": f"{replset}/{','.join(hosts)}", "name": replset})
        except OperationFailure as e:
            raise TransientInfraError(f"addShard {replset} failed: {e}") from e

    async def remove_shard(self, replset: str) -> str:
        """
        Start or poll shard draining.

        Returns:
            "started", "ongoing" or "completed"
        """
        try:
            result = await self._command({"removeShard": replset})
        except OperationFailure as e:
            if e.code == 13:  # ShardNotFound on some versions
                return "completed"
            raise TransientInfraError(f"removeShard {replset} failed: {e}") from e
        return result.get("state", "ongoing")

    def close(self) -> None:
        self.client.close()


class AdminPool:
    """
    Cache of admin connections keyed by host.

    Motor clients pool their own sockets, so one client per member is kept
    for the lifetime of the operator.
    """

    def __init__(
        self,
        username: Optional[str] = None,
        password: Optional[str] = None,
        timeout: float = 5.0,
        fallback_password: Optional[str] = None,
    ):
        self.username = username
        self.password = password
        self.fallback_password = fallback_password
        self.timeout = timeout
        self._clients: dict[str, MongoAdmin] = {}

    def get(self, host: str) -> MongoAdmin:
        admin = self._clients.get(host)
        if admin is None:
            admin = MongoAdmin(
                host,
                self.username,
                self.password,
                self.timeout,
                fallback_password=self.fallback_password,
            )
            self._clients[host] = admin
        return admin

    def close(self) -> None:
        for admin in self._clients.values():
            admin.close()
        self._clients.clear()
