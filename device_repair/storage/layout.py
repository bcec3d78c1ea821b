"""Partition table writing.

The table is rendered from the :class:`LayoutSpec` and piped into sfdisk as a
script. Capacity is checked before anything touches the disk.
"""

from __future__ import annotations

from device_repair.domain import LayoutSpec, TargetDevice
from device_repair.logging import LoggerFactory

from .command_runners import CommandRunner
from .devices import get_size_bytes


log = LoggerFactory.for_storage()


def write_partition_table(
    runner: CommandRunner,
    target: TargetDevice,
    layout: LayoutSpec,
) -> str:
    """Replace the GPT on ``target`` with ``layout``; returns the script used."""
    capacity = get_size_bytes(runner, target.path)
    layout.check_capacity(target.path, capacity)
    script = layout.render(target)
    log.info(
        f"Writing partition table to {target.path} "
        f"({layout.required_mib} MiB of {capacity // (1024 * 1024)} MiB)"
    )
    log.debug(f"sfdisk script:\n{script}")
    runner.run(["sfdisk", target.path], input_text=script)
    return script
