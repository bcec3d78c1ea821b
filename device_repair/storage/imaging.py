"""Block-level duplication of the golden OS image.

The source must be frozen by the caller. After the byte copy the target gets
a fresh filesystem UUID so it never shares an identity with the source, and
is then checked read-only. A failed check is fatal for the run.
"""

from __future__ import annotations

from typing import Optional

from device_repair.logging import LoggerFactory

from .command_runners import CommandRunner, ProgressCallback
from .devices import get_size_bytes, probe_tag
from .exceptions import CommandError, ImageConsistencyError, InsufficientSpaceError


log = LoggerFactory.for_storage()

COPY_BLOCK_SIZE = "128M"

# filesystem -> (regenerate identity, read-only check)
_IDENTITY_TOOLS = {
    "btrfs": (["btrfstune", "-f", "-u"], ["btrfs", "check", "--readonly"]),
    "ext4": (["tune2fs", "-f", "-U", "random"], ["e2fsck", "-f", "-n"]),
}


class ImagingEngine:
    def __init__(
        self,
        runner: CommandRunner,
        progress_callback: Optional[ProgressCallback] = None,
    ):
        self.runner = runner
        self.progress_callback = progress_callback

    def check_fits(self, source: str, target: str) -> int:
        """Return the source size; raise if it exceeds the target."""
        source_size = get_size_bytes(self.runner, source)
        target_size = get_size_bytes(self.runner, target)
        if source_size > target_size:
            raise InsufficientSpaceError(source, source_size, target, target_size)
        return source_size

    def identity_tools(self, source: str) -> list[str]:
        """Commands :meth:`duplicate` needs after copying ``source``."""
        fs_type = self._source_type(source, source)
        regenerate, check = _IDENTITY_TOOLS[fs_type]
        return [regenerate[0], check[0]]

    def _source_type(self, source: str, target: str) -> str:
        fs_type = probe_tag(self.runner, source, "TYPE")
        if fs_type not in _IDENTITY_TOOLS:
            raise ImageConsistencyError(
                target, f"cannot regenerate identity of {fs_type or 'unknown'} filesystem"
            )
        return fs_type

    def duplicate(self, source: str, target: str) -> None:
        """Copy ``source`` onto ``target``, re-identify and check it."""
        fs_type = self._source_type(source, target)
        source_size = self.check_fits(source, target)

        log.info(f"Imaging {source} -> {target}")
        self.runner.run_with_progress(
            [
                "dd",
                f"if={source}",
                f"of={target}",
                f"bs={COPY_BLOCK_SIZE}",
                "status=progress",
                "oflag=sync",
            ],
            total_bytes=source_size,
            title=f"IMAGE {target}",
            progress_callback=self.progress_callback,
        )

        regenerate, check = _IDENTITY_TOOLS[fs_type]
        try:
            self.runner.run([*regenerate, target])
        except CommandError as error:
            raise ImageConsistencyError(
                target, f"identity regeneration failed: {error.output or error.returncode}"
            ) from error
        try:
            self.runner.run([*check, target])
        except CommandError as error:
            raise ImageConsistencyError(
                target, f"consistency check failed: {error.output or error.returncode}"
            ) from error
        log.info(f"Image on {target} passed {check[0]} check")
