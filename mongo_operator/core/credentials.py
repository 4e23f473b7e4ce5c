"""Credential Rotation Manager.

Rotates the passwords of the system users listed in the credential policy,
one step per user per pass::

    idle -> staged -> durable -> active -> promoted -> restarting -> idle

The new password is first staged in the users Secret under ``<user>.next``
and read back. Only a staged value whose fingerprint matches is ever sent to
the database, and it is always read from the Secret, never from memory, so
an interrupted rotation resumes from whatever the Secret holds. Before the
database is changed, the activation is recorded in the Secret under
``<user>.active``, so the admin password in effect never depends on a status
write having landed.
"""

import hashlib
import logging
import secrets
import string
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from mongo_operator.core.rollout import RolloutResult
from mongo_operator.core.scheduler import PassGuard
from mongo_operator.errors import TransientInfraError
from mongo_operator.models.cluster import CredentialPhase, CredentialPolicy, CredentialState
from mongo_operator.models.observed import ROUTERS, ObservedState
from mongo_operator.utils.k8s_client import K8sClient, decode_secret_data
from mongo_operator.utils.mongo_admin import AdminPool

logger = logging.getLogger(__name__)

ADMIN_USER = "clusterAdmin"


def generate_password(length: int = 32) -> str:
    return "".join(secrets.choice(string.ascii_letters + string.digits) for _ in range(length))


def fingerprint(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()


def staged_key(user: str) -> str:
    return f"{user}.next"


def active_key(user: str) -> str:
    return f"{user}.active"


class SecretStore(Protocol):
    async def read(self) -> tuple[dict[str, str], Optional[str]]: ...

    async def write(self, data: dict[str, str], resource_version: Optional[str]) -> str: ...


class CredentialStore:
    """The users Secret, read and written with conditional updates."""

    def __init__(self, k8s: K8sClient, secret_name: str, cluster: str):
        self.k8s = k8s
        self.secret_name = secret_name
        self.cluster = cluster

    async def read(self) -> tuple[dict[str, str], Optional[str]]:
        secret = await self.k8s.get_secret(self.secret_name)
        if secret is None:
            return {}, None
        return decode_secret_data(secret), secret.metadata.resource_version

    async def write(self, data: dict[str, str], resource_version: Optional[str]) -> str:
        return await self.k8s.write_secret(
            self.secret_name,
            data,
            resource_version,
            labels={"app.kubernetes.io/instance": self.cluster},
        )


@dataclass
class RotationOutcome:
    """Result of one rotation step for one user."""

    user: str
    state: CredentialState
    changed: bool = False
    completed: bool = False
    message: Optional[str] = None
    error: Optional[str] = None


def admin_password(data: dict[str, str]) -> tuple[Optional[str], Optional[str]]:
    """
    Passwords the operator should use for its own admin connections.

    Decided from the users Secret alone. Once activation of a staged admin
    password is recorded, the staged value is preferred and the current one
    is kept as fallback: the database may not have applied it yet if the
    operator stopped between recording and ``updateUser``.

    Args:
        data: Decoded users Secret

    Returns:
        Preferred password and fallback password (None if there is none)
    """
    current = data.get(ADMIN_USER)
    staged = data.get(staged_key(ADMIN_USER))
    marker = data.get(active_key(ADMIN_USER))
    if staged is not None and marker is not None and marker == fingerprint(staged):
        return staged, current
    return current, None


class CredentialRotationManager:
    """
    Rotates system user passwords without ever locking the operator out.

    The database is only touched once the new value is confirmed durable;
    restarts of credential-caching processes go through the rollout's
    one-member-at-a-time restart actions via restart tokens.
    """

    def __init__(
        self,
        policy: CredentialPolicy,
        store: SecretStore,
        admin: AdminPool,
        guard: PassGuard,
        states: Optional[dict[str, CredentialState]] = None,
        password_factory: Callable[[], str] = generate_password,
    ):
        """
        Initialize credential rotation manager.

        Args:
            policy: Credential policy of the cluster
            store: Users Secret
            admin: Database admin connections
            guard: Cancellation guard of the cluster
            states: Rotation states persisted by the previous pass
            password_factory: Source of new passwords
        """
        self.policy = policy
        self.store = store
        self.admin = admin
        self.guard = guard
        self.states = {u: s.model_copy() for u, s in (states or {}).items()}
        self.password_factory = password_factory
        self._data: dict[str, str] = {}
        self._version: Optional[str] = None
        self._hosts: list[str] = []
        self._restarted = False

    def restart_token(self) -> str:
        """
        Token for processes in ``restart_targets``.

        Moves to a new generation only once every managed user has promoted
        it, so credential-caching processes restart exactly once per rotation.
        """
        applied = []
        for user in self.policy.users:
            state = self.states.get(user, CredentialState())
            if state.phase in (CredentialPhase.PROMOTED, CredentialPhase.RESTARTING):
                applied.append(state.target_generation or 0)
            else:
                applied.append(state.generation)
        generation = min(applied) if applied else 0
        return f"credentials-{generation}" if generation else ""

    def restart_tokens(self) -> dict[str, str]:
        token = self.restart_token()
        return {target: token for target in self.policy.restart_targets} if token else {}

    async def _write(self, data: dict[str, str]) -> None:
        self.guard.ensure_active()
        self._version = await self.store.write(data, self._version)
        self._data = dict(data)

    async def _confirm(self, user: str, state: CredentialState) -> Optional[str]:
        """Read the staged value back and check it against the fingerprint."""
        self._data, self._version = await self.store.read()
        value = self._data.get(staged_key(user))
        if value is None or fingerprint(value) != state.fingerprint:
            return None
        return value

    def _reset(self, state: CredentialState, message: str) -> None:
        logger.warning(f"Credential rotation restarting: {message}")
        state.phase = CredentialPhase.IDLE
        state.fingerprint = None
        state.message = message

    async def rotate(self, user: str) -> RotationOutcome:
        """
        Advance the rotation of ``user`` by one step.

        Args:
            user: Managed user name

        Returns:
            The new state of the user and whether anything changed
        """
        state = self.states.setdefault(user, CredentialState())
        outcome = RotationOutcome(user=user, state=state)
        target = self.policy.generation

        if state.phase == CredentialPhase.IDLE:
            if state.generation >= target and user in self._data:
                state.message = None
                return outcome
            password = self.password_factory()
            data = dict(self._data)
            data[staged_key(user)] = password
            data.pop(active_key(user), None)
            await self._write(data)
            state.phase = CredentialPhase.STAGED
            state.target_generation = target
            state.fingerprint = fingerprint(password)
            state.message = "new password staged"
            outcome.changed = True

        elif state.phase == CredentialPhase.STAGED:
            if await self._confirm(user, state) is None:
                self._reset(state, f"staged password of {user} not durable")
            else:
                state.phase = CredentialPhase.DURABLE
                state.message = "staged password confirmed durable"
            outcome.changed = True

        elif state.phase == CredentialPhase.DURABLE:
            password = await self._confirm(user, state)
            if password is None:
                self._reset(state, f"staged password of {user} changed before activation")
                outcome.changed = True
                return outcome
            if not self._hosts:
                state.message = "waiting for primaries to activate password"
                return outcome
            if self._data.get(active_key(user)) != state.fingerprint:
                data = dict(self._data)
                data[active_key(user)] = state.fingerprint
                await self._write(data)
            for host in self._hosts:
                self.guard.ensure_active()
                await self.admin.get(host).set_user_password(user, password)
            state.phase = CredentialPhase.ACTIVE
            state.message = "password active in database"
            outcome.changed = True
            logger.info(f"Activated new password for {user}")

        elif state.phase == CredentialPhase.ACTIVE:
            self._data, self._version = await self.store.read()
            staged = self._data.get(staged_key(user))
            current = self._data.get(user)
            if staged is not None and fingerprint(staged) == state.fingerprint:
                data = dict(self._data)
                data[user] = data.pop(staged_key(user))
                data.pop(active_key(user), None)
                await self._write(data)
            elif current is None or fingerprint(current) != state.fingerprint:
                state.message = f"staged password of {user} lost after activation"
                logger.error(state.message)
                return outcome
            state.phase = CredentialPhase.PROMOTED
            state.message = "password promoted"
            outcome.changed = True

        elif state.phase == CredentialPhase.PROMOTED:
            if self.policy.restart_targets:
                state.phase = CredentialPhase.RESTARTING
                state.message = f"restarting {', '.join(self.policy.restart_targets)}"
            else:
                self._finish(state)
                outcome.completed = True
            outcome.changed = True

        elif state.phase == CredentialPhase.RESTARTING:
            if self._restarted:
                self._finish(state)
                outcome.changed = True
                outcome.completed = True

        outcome.message = state.message
        return outcome

    def _finish(self, state: CredentialState) -> None:
        state.generation = state.target_generation or state.generation
        state.target_generation = None
        state.fingerprint = None
        state.phase = CredentialPhase.IDLE
        state.message = None

    def _restart_done(self, observed: ObservedState, rollout: Optional[RolloutResult]) -> bool:
        token = self.restart_token()
        if not token:
            return True
        for target in self.policy.restart_targets:
            members = observed.routers if target == ROUTERS else observed.replset_members(target)
            if any(m.restart_token != token or not m.ready for m in members):
                return False
            if rollout is not None and target in rollout.outcomes:
                if not rollout.outcomes[target].settled:
                    return False
        return True

    async def reconcile(
        self,
        observed: ObservedState,
        hosts: list[str],
        rollout: Optional[RolloutResult] = None,
    ) -> list[RotationOutcome]:
        """
        Advance every managed user by one step.

        Args:
            observed: Observed state
            hosts: Primaries the passwords are applied on
            rollout: Rollout result of this pass

        Returns:
            One outcome per user; a failed step defers only that user
        """
        self._data, self._version = await self.store.read()
        self._hosts = hosts
        self._restarted = self._restart_done(observed, rollout)

        outcomes = []
        for user in self.policy.users:
            try:
                outcomes.append(await self.rotate(user))
            except TransientInfraError as e:
                state = self.states.setdefault(user, CredentialState())
                state.message = str(e)
                logger.warning(f"Rotation of {user} deferred: {e}")
                outcomes.append(
                    RotationOutcome(user=user, state=state, message=str(e), error=str(e))
                )
        return outcomes
