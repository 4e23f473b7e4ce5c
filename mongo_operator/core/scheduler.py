"""Per-cluster serialization of reconcile passes.

One pass per cluster identity runs at a time; passes of different clusters
run in parallel. Notifications that arrive while a pass is in flight are
coalesced into a single follow-up pass whose result every waiter shares.
Finalization and backup deletion run uncoalesced, each with its own function.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from mongo_operator.errors import PassAbandoned

logger = logging.getLogger(__name__)


class PassGuard:
    """
    Cancellation token of one cluster incarnation.

    Marked once deletion of the cluster is observed. Every mutation site
    checks it first; mutations already started are allowed to complete.
    A cluster re-created under the same name has a different uid and gets
    a fresh guard.
    """

    def __init__(self, cluster: str, uid: Optional[str] = None):
        self.cluster = cluster
        self.uid = uid
        self._abandoned = False
        self._reason: Optional[str] = None

    @property
    def abandoned(self) -> bool:
        return self._abandoned

    def abandon(self, reason: str = "cluster is being deleted") -> None:
        if not self._abandoned:
            logger.info(f"Abandoning passes of {self.cluster}: {reason}")
        self._abandoned = True
        self._reason = reason

    def ensure_active(self) -> None:
        """
        Raises:
            PassAbandoned: If the cluster was marked for deletion
        """
        if self._abandoned:
            raise PassAbandoned(f"{self.cluster}: {self._reason}")


class _Requeue(Exception):
    """The shared pass did not run; its waiters queue again."""


@dataclass
class _Slot:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    pending: Optional[asyncio.Future] = None
    guard: Optional[PassGuard] = None


class PassScheduler:
    """
    Runs reconcile passes serialized per cluster identity.

    Callers arriving while a pass is running wait for the next pass instead
    of starting their own; any number of them share that one pass.
    """

    def __init__(self) -> None:
        self._slots: dict[str, _Slot] = {}

    def _slot(self, key: str) -> _Slot:
        slot = self._slots.get(key)
        if slot is None:
            slot = _Slot(guard=PassGuard(key))
            self._slots[key] = slot
        return slot

    def guard(self, key: str, uid: Optional[str] = None) -> PassGuard:
        """
        Guard of the cluster incarnation identified by ``uid``.

        Args:
            key: Cluster identity ("namespace/name")
            uid: Resource uid; a uid different from the current guard's
                replaces it with a fresh one

        Returns:
            The guard in effect for the cluster
        """
        slot = self._slot(key)
        if uid is not None and slot.guard.uid is not None and slot.guard.uid != uid:
            logger.info(f"{key} was re-created, passes start with a fresh guard")
            slot.guard = PassGuard(key, uid)
        elif uid is not None:
            slot.guard.uid = uid
        return slot.guard

    def busy(self, key: str) -> bool:
        slot = self._slots.get(key)
        return bool(slot and slot.lock.locked())

    async def run(
        self,
        key: str,
        pass_fn: Callable[[PassGuard], Awaitable[Any]],
        coalesce: bool = True,
    ) -> Any:
        """
        Run ``pass_fn`` for ``key``, coalescing with concurrent callers.

        Args:
            key: Cluster identity ("namespace/name")
            pass_fn: The pass; receives the cluster's guard
            coalesce: Whether this call may be served by a pass queued by
                another caller. Without it ``pass_fn`` itself always runs.

        Returns:
            Result of the pass this call was served by
        """
        if not coalesce:
            slot = self._slot(key)
            async with slot.lock:
                return await pass_fn(slot.guard)

        while True:
            slot = self._slot(key)
            if slot.pending is None:
                return await self._queue(slot, pass_fn)

            shared = slot.pending
            logger.debug(f"Coalescing notification for {key} into pending pass")
            try:
                return await asyncio.shield(shared)
            except _Requeue:
                logger.debug(f"Pending pass of {key} was cancelled, queueing again")

    async def _queue(self, slot: _Slot, pass_fn: Callable[[PassGuard], Awaitable[Any]]) -> Any:
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        slot.pending = future

        try:
            await slot.lock.acquire()
        except asyncio.CancelledError:
            # Waiters of this pass must not wait on a future nobody resolves.
            if slot.pending is future:
                slot.pending = None
            self._release_waiters(future)
            raise

        try:
            # From here on, new callers queue a fresh pass.
            slot.pending = None
            try:
                result = await pass_fn(slot.guard)
            except asyncio.CancelledError:
                self._release_waiters(future)
                raise
            except Exception as e:
                future.set_exception(e)
                # Retrieved here so waiter-less failures are not reported as unhandled.
                future.exception()
                raise
            future.set_result(result)
            return result
        finally:
            slot.lock.release()

    @staticmethod
    def _release_waiters(future: asyncio.Future) -> None:
        if not future.done():
            future.set_exception(_Requeue())
            future.exception()

    def forget(self, key: str) -> None:
        """Drop the slot of a deleted cluster once its last pass finished."""
        slot = self._slots.get(key)
        if slot is not None and not slot.lock.locked() and slot.pending is None:
            del self._slots[key]
