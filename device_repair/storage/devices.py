"""Block device discovery and probing.

Helpers here only read state: they look up sizes, filesystem signatures and
the device backing the running root filesystem. All external probes go
through :meth:`CommandRunner.query` so they still execute during a dry run.
"""

from __future__ import annotations

import os
import re
import stat
from typing import Optional

from device_repair.logging import LoggerFactory

from .command_runners import CommandRunner
from .exceptions import CommandError, ConfigurationError, DeviceIOError


log = LoggerFactory.for_storage()


def is_block_device(path: str) -> bool:
    try:
        return stat.S_ISBLK(os.stat(path).st_mode)
    except OSError:
        return False


def device_exists(path: str) -> bool:
    """Block devices or regular files (disk images) are acceptable targets."""
    return is_block_device(path) or os.path.isfile(path)


def require_disk(path: str) -> None:
    if not device_exists(path):
        raise ConfigurationError(f"Disk {path} does not exist; adjust --disk")


def get_size_bytes(runner: CommandRunner, device: str) -> int:
    """Size of a block device via ``blockdev --getsize64``."""
    result = runner.query(["blockdev", "--getsize64", device])
    if result.returncode != 0:
        raise CommandError(
            ["blockdev", "--getsize64", device],
            result.returncode,
            result.stderr or "",
        )
    try:
        return int(result.stdout.strip())
    except ValueError as error:
        raise DeviceIOError(
            f"Unexpected size for {device}: {result.stdout.strip()!r}"
        ) from error


def probe_tag(runner: CommandRunner, device: str, tag: str) -> Optional[str]:
    """Read one blkid tag (TYPE, PARTLABEL, ...); None when absent."""
    result = runner.query(["blkid", "-o", "value", "-s", tag, device])
    # blkid exits 2 when the tag is not present
    if result.returncode != 0:
        log.debug(f"blkid reported no {tag} for {device} (rc={result.returncode})")
        return None
    value = result.stdout.strip()
    return value or None


def find_root_source(runner: CommandRunner) -> str:
    """Device backing the running root filesystem."""
    result = runner.query(["findmnt", "-n", "-o", "SOURCE", "/"])
    source = result.stdout.strip() if result.returncode == 0 else ""
    if not source or not os.path.exists(source):
        raise DeviceIOError("Could not find installer root device")
    return source


def base_disk_name(name: str) -> str:
    """Strip the partition suffix: nvme0n1p4 -> nvme0n1, sda4 -> sda."""
    name = name.rsplit("/", 1)[-1]
    match = re.match(r"^((?:nvme\d+n\d+)|(?:mmcblk\d+)|(?:loop\d+))(?:p\d+)?$", name)
    if match:
        return match.group(1)
    return re.sub(r"\d+$", "", name)


def is_partition_of(partition: str, disk: str) -> bool:
    """True when ``partition`` is ``disk`` itself or one of its partitions."""
    return base_disk_name(partition) == base_disk_name(disk)
