"""Mounting and freezing helpers.

Every helper that leaves state behind has a ``*_guarded`` variant that
registers the matching release with a :class:`ResourceGuard`, so a mounted
staging partition or a frozen root filesystem is always handed back.

Functions:
    - is_mountpoint(): query whether a path is currently mounted
    - mount_partition() / unmount_partition(): mount over a cleared mountpoint, lazy unmount
    - freeze_filesystem() / thaw_filesystem(): fsfreeze wrappers
    - mount_guarded() / freeze_guarded(): acquire through a guard
"""

from __future__ import annotations

from device_repair.logging import LoggerFactory

from .command_runners import CommandRunner
from .exceptions import CommandError, MountError
from .guard import ResourceGuard


log = LoggerFactory.for_storage()


def is_mountpoint(runner: CommandRunner, path: str) -> bool:
    return runner.query(["mountpoint", "-q", path]).returncode == 0


def mount_partition(runner: CommandRunner, device: str, mountpoint: str) -> None:
    if not device.startswith("/dev/"):
        raise ValueError(f"Invalid device path: {device}")
    if is_mountpoint(runner, mountpoint):
        log.warning(f"{mountpoint} already in use; detaching it before mounting {device}")
        unmount_partition(runner, mountpoint)
    try:
        runner.run(["mkdir", "-p", mountpoint])
        runner.run(["mount", device, mountpoint])
    except CommandError as error:
        raise MountError(mountpoint, f"mount {device} failed: {error.output}") from error
    log.debug(f"Mounted {device} at {mountpoint}")


def unmount_partition(runner: CommandRunner, mountpoint: str) -> None:
    """Lazy unmount so a lingering file handle cannot block the release."""
    try:
        runner.run(["umount", "-l", mountpoint])
    except CommandError as error:
        raise MountError(mountpoint, f"unmount failed: {error.output}") from error
    log.debug(f"Unmounted {mountpoint}")


def freeze_filesystem(runner: CommandRunner, mountpoint: str = "/") -> None:
    try:
        runner.run(["fsfreeze", "-f", mountpoint])
    except CommandError as error:
        raise MountError(mountpoint, f"freeze failed: {error.output}") from error
    log.info(f"Froze {mountpoint}")


def thaw_filesystem(runner: CommandRunner, mountpoint: str = "/") -> None:
    try:
        runner.run(["fsfreeze", "-u", mountpoint])
    except CommandError as error:
        raise MountError(mountpoint, f"thaw failed: {error.output}") from error
    log.info(f"Thawed {mountpoint}")


def mount_guarded(
    guard: ResourceGuard, runner: CommandRunner, device: str, mountpoint: str
) -> int:
    return guard.acquire(
        lambda: mount_partition(runner, device, mountpoint),
        lambda: unmount_partition(runner, mountpoint),
        name=f"umount {mountpoint}",
    )


def freeze_guarded(
    guard: ResourceGuard, runner: CommandRunner, mountpoint: str = "/"
) -> int:
    return guard.acquire(
        lambda: freeze_filesystem(runner, mountpoint),
        lambda: thaw_filesystem(runner, mountpoint),
        name=f"unfreeze {mountpoint}",
    )
