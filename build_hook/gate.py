from __future__ import annotations

import threading
from types import MappingProxyType
from typing import Iterable, Optional

from build_hook.errors import UnknownProjectError


class Permit:
    """Holds one project's build slot until released."""

    def __init__(self, slug: str, semaphore: threading.BoundedSemaphore) -> None:
        self.slug = slug
        self._semaphore = semaphore
        self._released = False
        self._guard = threading.Lock()

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        with self._guard:
            if self._released:
                return
            self._released = True
        self._semaphore.release()

    def __enter__(self) -> "Permit":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()


class BuildLockRegistry:
    """One single-slot semaphore per configured project; the key set never changes."""

    def __init__(self, locks: dict[str, threading.BoundedSemaphore]) -> None:
        self._locks = MappingProxyType(dict(locks))

    @classmethod
    def from_slugs(cls, slugs: Iterable[str]) -> "BuildLockRegistry":
        return cls({slug: threading.BoundedSemaphore(1) for slug in slugs})

    def __contains__(self, slug: str) -> bool:
        return slug in self._locks

    def slugs(self) -> list[str]:
        return sorted(self._locks)

    def _lock(self, slug: str) -> threading.BoundedSemaphore:
        try:
            return self._locks[slug]
        except KeyError as exc:
            raise UnknownProjectError(slug) from exc

    def try_acquire(self, slug: str) -> Optional[Permit]:
        """Return a permit, or None when a build for ``slug`` is already running."""
        semaphore = self._lock(slug)
        if not semaphore.acquire(blocking=False):
            return None
        return Permit(slug, semaphore)

    def is_busy(self, slug: str) -> bool:
        semaphore = self._lock(slug)
        if semaphore.acquire(blocking=False):
            semaphore.release()
            return False
        return True
