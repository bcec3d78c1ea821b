"""Scoped registry of cleanup actions for transient device state.

A repair run freezes the running root filesystem and mounts boot partitions
while it works. Each acquisition registers exactly one release with a
:class:`ResourceGuard`; the guard runs the releases in reverse order when its
scope ends, on success and on every failure path.

Usage:
    from device_repair.storage.guard import ResourceGuard

    with ResourceGuard() as guard:
        handle = guard.acquire(
            lambda: runner.run(["fsfreeze", "-f", "/"]),
            lambda: runner.run(["fsfreeze", "-u", "/"]),
            name="freeze /",
        )
        ...
        guard.release(handle)  # thaw early; the guard forgets it
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from device_repair.logging import LoggerFactory


log = LoggerFactory.for_storage()

CleanupAction = Callable[[], None]


@dataclass
class _Registration:
    name: str
    release: CleanupAction
    done: bool = False


class ResourceGuard:
    """Stack of release actions, unwound newest first."""

    def __init__(self) -> None:
        self._stack: list[_Registration] = []

    def __len__(self) -> int:
        return sum(1 for entry in self._stack if not entry.done)

    def __enter__(self) -> ResourceGuard:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.run_all()

    @property
    def pending(self) -> list[str]:
        """Names of registered releases that have not run yet."""
        return [entry.name for entry in self._stack if not entry.done]

    def acquire(
        self,
        action: CleanupAction,
        release: CleanupAction,
        name: Optional[str] = None,
    ) -> int:
        """Perform ``action`` and register ``release`` for scope exit.

        If ``action`` raises, nothing is registered and the error propagates.
        Returns a handle for :meth:`release`.
        """
        label = name or getattr(release, "__name__", "cleanup")
        action()
        self._stack.append(_Registration(label, release))
        log.debug(f"Acquired {label} ({len(self)} held)")
        return len(self._stack) - 1

    def release(self, handle: int) -> None:
        """Run one registered release now; errors propagate to the caller.

        A release that raises stays pending so scope exit retries it.
        """
        entry = self._stack[handle]
        if entry.done:
            return
        log.debug(f"Releasing {entry.name}")
        entry.release()
        entry.done = True

    def run_all(self) -> list[BaseException]:
        """Run every pending release in reverse registration order.

        A failing release is logged and the remaining releases still run.
        Returns the collected failures.
        """
        failures: list[BaseException] = []
        while self._stack:
            entry = self._stack.pop()
            if entry.done:
                continue
            entry.done = True
            log.debug(f"Releasing {entry.name}")
            try:
                entry.release()
            except Exception as error:
                log.error(f"Cleanup '{entry.name}' failed: {error}")
                failures.append(error)
        return failures
