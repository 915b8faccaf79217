"""Scoped ownership of everything the pipeline opens or spawns."""
from __future__ import annotations

import threading
from types import TracebackType
from typing import Callable, List, Optional, Type

from logging_utils import get_logger

logger = get_logger(__name__)


class GuardedResource:
    """A teardown callable that runs at most once, from whichever thread asks first."""

    def __init__(self, name: str, teardown: Callable[[], None]) -> None:
        self.name = name
        self._teardown = teardown
        self._lock = threading.Lock()
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        """Run the teardown once; failures are logged, never raised."""
        with self._lock:
            if self._released:
                return
            self._released = True
            try:
                logger.debug("Releasing %s", self.name)
                self._teardown()
            except Exception:
                logger.exception("Teardown of %s failed; continuing", self.name)


class ResourceLifecycleGuard:
    """Release registered resources in reverse order on any exit path.

    Use as a context manager. Resources may be released early through their
    ``GuardedResource`` handle; the guard skips those on exit. The exception
    that ended the ``with`` block (if any) always propagates unchanged.
    """

    def __init__(self) -> None:
        self._resources: List[GuardedResource] = []
        self._lock = threading.Lock()

    def register(self, name: str, teardown: Callable[[], None]) -> GuardedResource:
        resource = GuardedResource(name, teardown)
        with self._lock:
            self._resources.append(resource)
        return resource

    def release_all(self) -> None:
        with self._lock:
            resources = list(reversed(self._resources))
            self._resources.clear()
        for resource in resources:
            resource.release()

    def __enter__(self) -> "ResourceLifecycleGuard":
        return self

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        if exc is not None:
            logger.warning("Pipeline aborted (%s); releasing resources", exc_type.__name__ if exc_type else "error")
        self.release_all()
