"""Custom exceptions for repair operations.

This module defines a hierarchy of exceptions for repair operations so that
callers can tell "refused due to inconsistent state" apart from
"hardware/tool error". Every class carries the process exit code the CLI
reports for it.

Exception Hierarchy:
    RepairError (base)
        ├── ConfigurationError
        │   ├── SourceOnTargetError
        │   └── InsufficientCapacityError
        ├── VerificationMismatchError
        ├── ToolUnavailableError
        ├── DeviceIOError
        │   ├── CommandError
        │   ├── MountError
        │   ├── ImageConsistencyError
        │   └── InsufficientSpaceError
        ├── HardwareStateError
        ├── BestEffortFailure
        └── OperatorCancelled

Usage:
    from device_repair.storage.exceptions import VerificationMismatchError

    if found != expected:
        raise VerificationMismatchError("/dev/nvme0n1p8", "label", found, expected)
"""

from __future__ import annotations

from typing import Optional, Sequence


EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_VERIFICATION_MISMATCH = 3
EXIT_TOOL_UNAVAILABLE = 4
EXIT_HARDWARE_STATE = 5
EXIT_CONFIGURATION = 6
EXIT_CANCELLED = 7
EXIT_NOT_ROOT = 8


class RepairError(Exception):
    """Base exception for all repair operations."""

    exit_code = EXIT_FAILURE


class ConfigurationError(RepairError):
    """Layout, expectation or option definitions are invalid."""

    exit_code = EXIT_CONFIGURATION


class SourceOnTargetError(ConfigurationError):
    """The imaging source lives on the disk that is about to be rewritten."""

    def __init__(self, source: str, disk: str):
        self.source = source
        self.disk = disk
        super().__init__(
            f"Imaging source {source} is located on target disk {disk}; "
            f"boot from external repair media instead"
        )


class InsufficientCapacityError(ConfigurationError):
    """Partition layout does not fit on the target device."""

    def __init__(self, disk: str, required_bytes: int, capacity_bytes: int):
        self.disk = disk
        self.required_bytes = required_bytes
        self.capacity_bytes = capacity_bytes
        super().__init__(
            f"Layout needs {required_bytes} bytes but {disk} "
            f"only has {capacity_bytes} bytes"
        )


class VerificationMismatchError(RepairError):
    """A live partition disagrees with the expected layout."""

    exit_code = EXIT_VERIFICATION_MISMATCH

    def __init__(
        self,
        device: str,
        attribute: str,
        found: Optional[str],
        expected: str,
    ):
        self.device = device
        self.attribute = attribute
        self.found = found
        self.expected = expected
        found_label = found if found else "(none)"
        super().__init__(
            f"Partition {device} {attribute} mismatch: "
            f"found {found_label}, expected {expected}"
        )


class ToolUnavailableError(RepairError):
    """A required external utility is not installed."""

    exit_code = EXIT_TOOL_UNAVAILABLE

    def __init__(self, tool: str):
        self.tool = tool
        super().__init__(f"Required command not found: {tool}")


class DeviceIOError(RepairError):
    """Base exception for block copy, format and mount failures."""


class CommandError(DeviceIOError):
    """An external command exited with a non-zero status."""

    def __init__(
        self,
        command: Sequence[str],
        returncode: int,
        output: str = "",
    ):
        self.command = list(command)
        self.returncode = returncode
        self.output = output
        message = output.strip() or "Command failed"
        super().__init__(f"Command failed ({' '.join(self.command)}): {message}")


class MountError(DeviceIOError):
    """Failed to mount, unmount, freeze or thaw a filesystem."""

    def __init__(self, target: str, reason: str):
        self.target = target
        self.reason = reason
        super().__init__(f"{target}: {reason}")


class ImageConsistencyError(DeviceIOError):
    """Duplicated image could not be re-identified or failed its check."""

    def __init__(self, device: str, reason: str):
        self.device = device
        self.reason = reason
        super().__init__(f"Image on {device} is not usable: {reason}")


class InsufficientSpaceError(DeviceIOError):
    """Imaging source is larger than the target partition."""

    def __init__(
        self,
        source_name: str,
        source_size: int,
        destination_name: str,
        destination_size: int,
    ):
        self.source_name = source_name
        self.source_size = source_size
        self.destination_name = destination_name
        self.destination_size = destination_size
        super().__init__(
            f"Destination {destination_name} ({destination_size} bytes) "
            f"is too small for source {source_name} ({source_size} bytes)"
        )


class HardwareStateError(RepairError):
    """The sanitize status log reports a value outside the known states."""

    exit_code = EXIT_HARDWARE_STATE

    def __init__(self, device: str, detail: str):
        self.device = device
        self.detail = detail
        super().__init__(f"Unexpected hardware state on {device}: {detail}")


class BestEffortFailure(RepairError):
    """A best-effort step failed while force mode demanded success."""

    def __init__(self, step: str, reason: str):
        self.step = step
        self.reason = reason
        super().__init__(f"{step} failed: {reason}")


class OperatorCancelled(RepairError):
    """The operator declined a confirmation prompt."""

    exit_code = EXIT_CANCELLED
