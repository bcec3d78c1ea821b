"""Filesystem creation for the repair layout.

Operations:
    - format_ext4(): ext4 with a fixed label (var slots)
    - format_vfat(): FAT with a fixed label (ESP and EFI slots)
    - format_home(): casefolding ext4 tuned for large files, no root reserve

All tools run through a :class:`CommandRunner`, so a dry run only logs them.
"""

from __future__ import annotations

from device_repair.logging import LoggerFactory

from .command_runners import CommandRunner


log = LoggerFactory.for_storage()


def format_ext4(runner: CommandRunner, device: str, label: str) -> None:
    log.info(f"Creating ext4 filesystem '{label}' on {device}")
    runner.run(["mkfs.ext4", "-F", "-L", label, device])


def format_vfat(runner: CommandRunner, device: str, label: str) -> None:
    log.info(f"Creating vfat filesystem '{label}' on {device}")
    runner.run(["mkfs.vfat", "-n", label, device])


def format_home(runner: CommandRunner, device: str, label: str = "home") -> None:
    """Create the home filesystem.

    Casefolding is enabled for game compatibility layers, the ``huge`` usage
    type lowers the inode count, and the root-reserved blocks are released.
    """
    log.info(f"Creating home filesystem on {device}")
    runner.run(["mkfs.ext4", "-F", "-O", "casefold", "-T", "huge", "-L", label, device])
    runner.run(["tune2fs", "-m", "0", device])
