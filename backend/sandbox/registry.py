"""Process-wide registry of active sandboxes.

The orchestrator tracks every sandbox it creates here so that on
interruption or interpreter exit each one is force-stopped and removed
exactly once.
"""

import threading
from typing import TYPE_CHECKING

import structlog

from sandbox.docker_sandbox import SandboxHandle

if TYPE_CHECKING:
    from sandbox.docker_sandbox import SandboxManager

logger = structlog.get_logger()


class ActiveSandboxRegistry:
    """Owned set of live sandbox handles plus a handler-registration guard.

    Docker work runs in executor threads and exit hooks run outside the event
    loop, so membership changes are guarded by a threading.Lock.

    Attributes:
        manager: Runtime used to stop and remove tracked sandboxes.
    """

    def __init__(self, manager: "SandboxManager") -> None:
        self.manager = manager
        self._active: dict[str, SandboxHandle] = {}
        self._released: set[str] = set()
        self._lock = threading.Lock()
        self._handlers_registered = False

    def track(self, handle: SandboxHandle) -> None:
        with self._lock:
            self._active[handle.sandbox_id] = handle
            self._released.discard(handle.sandbox_id)
        logger.debug("sandbox_tracked", sandbox_id=handle.sandbox_id, active=len(self))

    def snapshot(self) -> list[SandboxHandle]:
        with self._lock:
            return list(self._active.values())

    def __contains__(self, handle: object) -> bool:
        if not isinstance(handle, SandboxHandle):
            return False
        with self._lock:
            return handle.sandbox_id in self._active

    def __len__(self) -> int:
        with self._lock:
            return len(self._active)

    @property
    def handlers_registered(self) -> bool:
        return self._handlers_registered

    def claim_handler_registration(self) -> bool:
        """Return True exactly once; later calls return False."""
        with self._lock:
            if self._handlers_registered:
                return False
            self._handlers_registered = True
            return True

    async def cleanup(self, handle: SandboxHandle | None) -> None:
        """Stop and remove one sandbox, logging failures.

        A None handle is ignored, and so is a handle that cleanup_all or an
        earlier cleanup already released. The handle leaves the registry
        even when stop or remove fails.
        """
        if handle is None:
            return
        if not self._release(handle):
            logger.debug("sandbox_already_released", sandbox_id=handle.sandbox_id)
            return
        await self._stop_and_remove(handle)

    async def _stop_and_remove(self, handle: SandboxHandle) -> None:
        try:
            await self.manager.stop(handle)
        except Exception as e:
            logger.warning("sandbox_stop_failed", sandbox_id=handle.sandbox_id, error=str(e))
        try:
            await self.manager.remove(handle)
        except Exception as e:
            logger.warning("sandbox_remove_failed", sandbox_id=handle.sandbox_id, error=str(e))

    def _release(self, handle: SandboxHandle) -> bool:
        """Untrack a handle; False if it was already released."""
        with self._lock:
            self._active.pop(handle.sandbox_id, None)
            if handle.sandbox_id in self._released:
                return False
            self._released.add(handle.sandbox_id)
            return True

    def _drain(self) -> list[SandboxHandle]:
        with self._lock:
            handles = list(self._active.values())
            self._active.clear()
            self._released.update(h.sandbox_id for h in handles)
        return handles

    async def cleanup_all(self) -> int:
        """Clean up every tracked sandbox. Returns how many were attempted."""
        handles = self._drain()
        for handle in handles:
            await self._stop_and_remove(handle)
        if handles:
            logger.info("active_sandboxes_cleaned", count=len(handles))
        return len(handles)

    def cleanup_all_blocking(self) -> int:
        """Synchronous variant of cleanup_all for interpreter-exit hooks."""
        handles = self._drain()
        for handle in handles:
            try:
                self.manager.remove_blocking(handle)
            except Exception as e:
                logger.warning("sandbox_remove_failed", sandbox_id=handle.sandbox_id, error=str(e))
        return len(handles)
