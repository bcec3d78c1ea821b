"""Domain model for device repair operations.

Partition layout, repair scope and sanitize state are expressed as immutable
objects so the executor never passes raw partition indexes or flag tuples
around. Invalid definitions fail at construction time.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from device_repair.storage.exceptions import (
    ConfigurationError,
    InsufficientCapacityError,
)


# ==============================================================================
# Partition Layout Domain
# ==============================================================================

MIB = 1024 * 1024

# 1MiB at each end of the disk for the GPT header and its backup
GPT_PADDING_MIB = 2

DISKPART_PLACEHOLDER = "%%DISKPART%%"

SUPPORTED_SECTOR_SIZES = (512, 4096)

_GUID_PATTERN = re.compile(
    r"^[0-9A-F]{8}-[0-9A-F]{4}-[0-9A-F]{4}-[0-9A-F]{4}-[0-9A-F]{12}$"
)


class GptType:
    """GPT partition type identifiers used by the layout."""

    EFI_SYSTEM = "C12A7328-F81F-11D2-BA4B-00A0C93EC93B"
    EFI_BOOT_STUB = "EBD0A0A2-B9E5-4433-87C0-68B6B72699C7"
    LINUX_ROOT = "4F68BCE3-E8CD-4DB1-96E7-FBCAF984B709"
    LINUX_VAR = "4D21B016-B534-45C2-A9FB-5C16E091FD2D"
    LINUX_HOME = "933AC7E1-2EB4-4F13-B844-0E14E2AEF915"


class PartitionRole(Enum):
    """Symbolic slot names; the enum order is the on-disk order."""

    ESP = "esp"
    EFI_A = "efi-A"
    EFI_B = "efi-B"
    ROOT_A = "rootfs-A"
    ROOT_B = "rootfs-B"
    VAR_A = "var-A"
    VAR_B = "var-B"
    HOME = "home"

    @property
    def index(self) -> int:
        """1-based partition number on the target disk."""
        return list(PartitionRole).index(self) + 1

    @property
    def label(self) -> str:
        """GPT partition name written for this slot."""
        return self.value


@dataclass(frozen=True)
class PartitionSpec:
    """One slot of the partition table."""

    index: int  # 1-based
    role: PartitionRole
    size_mib: int
    type_guid: str

    @property
    def name(self) -> str:
        return self.role.label

    def __post_init__(self) -> None:
        if self.index != self.role.index:
            raise ConfigurationError(
                f"Slot {self.role.name} must be partition {self.role.index}, "
                f"not {self.index}"
            )
        if not isinstance(self.size_mib, int) or self.size_mib <= 0:
            raise ConfigurationError(
                f"Slot {self.role.name} needs a positive size in MiB, "
                f"got {self.size_mib!r}"
            )
        if not _GUID_PATTERN.match(self.type_guid):
            raise ConfigurationError(
                f"Slot {self.role.name} has malformed type GUID {self.type_guid!r}"
            )


@dataclass(frozen=True)
class TargetDevice:
    """Whole-disk device node plus its partition naming convention.

    NVMe and MMC devices insert a ``p`` between the disk node and the
    partition number (``/dev/nvme0n1p8``); SCSI-style disks do not
    (``/dev/sda8``).
    """

    path: str
    separator: str = ""

    def __post_init__(self) -> None:
        if not self.path.startswith("/dev/"):
            raise ConfigurationError(f"Invalid device path: {self.path}")
        if self.separator not in ("", "p"):
            raise ConfigurationError(
                f"Unsupported partition separator {self.separator!r}"
            )

    @classmethod
    def from_path(cls, path: str, separator: Optional[str] = None) -> TargetDevice:
        """Build a target, deriving the separator when not given."""
        if separator is None:
            separator = default_partition_separator(path)
        return cls(path=path, separator=separator)

    @property
    def name(self) -> str:
        return self.path.rsplit("/", 1)[-1]

    @property
    def partition_prefix(self) -> str:
        return f"{self.path}{self.separator}"

    def partition_path(self, index: int) -> str:
        return f"{self.partition_prefix}{index}"

    def role_path(self, role: PartitionRole) -> str:
        return self.partition_path(role.index)


def default_partition_separator(path: str) -> str:
    """Kernel naming rule: disks whose name ends in a digit use a ``p``."""
    return "p" if path[-1:].isdigit() else ""


@dataclass(frozen=True)
class LayoutSpec:
    """The complete expected partition table, in fixed slot order."""

    partitions: tuple[PartitionSpec, ...]
    sector_size: int = 512

    def __post_init__(self) -> None:
        if self.sector_size not in SUPPORTED_SECTOR_SIZES:
            raise ConfigurationError(f"Unsupported sector size: {self.sector_size}")
        roles = tuple(spec.role for spec in self.partitions)
        if roles != tuple(PartitionRole):
            expected = ", ".join(role.name for role in PartitionRole)
            raise ConfigurationError(
                f"Layout must define exactly the slots {expected} in order"
            )

    @classmethod
    def from_sizes(
        cls,
        *,
        esp_mib: int = 256,
        efi_mib: int = 64,
        root_mib: int = 5120,
        var_mib: int = 256,
        home_mib: int = 100,
        sector_size: int = 512,
    ) -> LayoutSpec:
        """Build the standard A/B layout from per-kind sizes."""
        kinds = {
            PartitionRole.ESP: (esp_mib, GptType.EFI_SYSTEM),
            PartitionRole.EFI_A: (efi_mib, GptType.EFI_BOOT_STUB),
            PartitionRole.EFI_B: (efi_mib, GptType.EFI_BOOT_STUB),
            PartitionRole.ROOT_A: (root_mib, GptType.LINUX_ROOT),
            PartitionRole.ROOT_B: (root_mib, GptType.LINUX_ROOT),
            PartitionRole.VAR_A: (var_mib, GptType.LINUX_VAR),
            PartitionRole.VAR_B: (var_mib, GptType.LINUX_VAR),
            PartitionRole.HOME: (home_mib, GptType.LINUX_HOME),
        }
        return cls(
            partitions=tuple(
                PartitionSpec(
                    index=role.index,
                    role=role,
                    size_mib=size,
                    type_guid=type_guid,
                )
                for role, (size, type_guid) in kinds.items()
            ),
            sector_size=sector_size,
        )

    def slot(self, role: PartitionRole) -> PartitionSpec:
        return self.partitions[role.index - 1]

    @property
    def required_mib(self) -> int:
        return sum(spec.size_mib for spec in self.partitions) + GPT_PADDING_MIB

    @property
    def required_bytes(self) -> int:
        return self.required_mib * MIB

    def check_capacity(self, disk: str, capacity_bytes: int) -> None:
        if self.required_bytes > capacity_bytes:
            raise InsufficientCapacityError(disk, self.required_bytes, capacity_bytes)

    def template(self) -> str:
        """sfdisk script with an unresolved device placeholder on every slot."""
        lines = ["label: gpt", f"sector-size: {self.sector_size}"]
        for spec in self.partitions:
            lines.append(
                f'{DISKPART_PLACEHOLDER}{spec.index}: name="{spec.name}", '
                f"size={spec.size_mib}MiB, type={spec.type_guid}"
            )
        return "\n".join(lines) + "\n"

    def render(self, target: TargetDevice) -> str:
        """sfdisk script with every slot resolved against ``target``."""
        return self.template().replace(
            DISKPART_PLACEHOLDER, target.partition_prefix
        )


@dataclass(frozen=True)
class VerificationExpectation:
    """Filesystem kind and partition label a slot must carry."""

    role: PartitionRole
    fs_type: str
    label: str

    def __post_init__(self) -> None:
        if not self.fs_type or not self.label:
            raise ConfigurationError(
                f"Expectation for {self.role.name} needs a filesystem type and label"
            )


DEFAULT_EXPECTATIONS: tuple[VerificationExpectation, ...] = (
    VerificationExpectation(PartitionRole.ESP, "vfat", "esp"),
    VerificationExpectation(PartitionRole.EFI_A, "vfat", "efi-A"),
    VerificationExpectation(PartitionRole.EFI_B, "vfat", "efi-B"),
    VerificationExpectation(PartitionRole.VAR_A, "ext4", "var-A"),
    VerificationExpectation(PartitionRole.VAR_B, "ext4", "var-B"),
    VerificationExpectation(PartitionRole.HOME, "ext4", "home"),
)


# ==============================================================================
# Repair Scope Domain
# ==============================================================================


@dataclass(frozen=True)
class RepairScope:
    """What a repair run rewrites."""

    write_table: bool
    write_os: bool
    write_home: bool

    def __post_init__(self) -> None:
        recognised = {(True, True, True), (False, True, False), (False, False, True)}
        if (self.write_table, self.write_os, self.write_home) not in recognised:
            raise ConfigurationError(
                "Repair scope must be full reimage, OS only or home only "
                f"(got table={self.write_table}, os={self.write_os}, "
                f"home={self.write_home})"
            )

    @classmethod
    def full(cls) -> RepairScope:
        return cls(write_table=True, write_os=True, write_home=True)

    @classmethod
    def os_only(cls) -> RepairScope:
        return cls(write_table=False, write_os=True, write_home=False)

    @classmethod
    def home_only(cls) -> RepairScope:
        return cls(write_table=False, write_os=False, write_home=True)

    @property
    def is_partial(self) -> bool:
        """Partial repairs reuse the existing table and must verify it first."""
        return not self.write_table

    @property
    def name(self) -> str:
        if self.write_table:
            return "full"
        return "system" if self.write_os else "home"


# ==============================================================================
# Sanitize Domain
# ==============================================================================


class SanitizeStatus(Enum):
    """Drive-level sanitize condition."""

    READY = "ready"
    IN_PROGRESS = "in_progress"
    UNSUPPORTED = "unsupported"


@dataclass(frozen=True)
class SanitizeState:
    """Sanitize condition derived from one hardware query; never stored."""

    status: SanitizeStatus
    percent: Optional[int] = None

    def __post_init__(self) -> None:
        if self.status is SanitizeStatus.IN_PROGRESS:
            if self.percent is None or not 0 <= self.percent <= 100:
                raise ValueError(f"Sanitize progress out of range: {self.percent!r}")
        elif self.percent is not None:
            raise ValueError("Only an in-progress sanitize reports a percentage")

    @classmethod
    def ready(cls) -> SanitizeState:
        return cls(SanitizeStatus.READY)

    @classmethod
    def in_progress(cls, percent: int) -> SanitizeState:
        return cls(SanitizeStatus.IN_PROGRESS, percent)

    @classmethod
    def unsupported(cls) -> SanitizeState:
        return cls(SanitizeStatus.UNSUPPORTED)

    @property
    def is_in_progress(self) -> bool:
        return self.status is SanitizeStatus.IN_PROGRESS

    def describe(self) -> str:
        if self.is_in_progress:
            return f"in progress ({self.percent}%)"
        return self.status.value


# ==============================================================================
# Run Options
# ==============================================================================


class PowerAction(Enum):
    """What to do with the machine after a successful repair."""

    REBOOT = "reboot"
    POWEROFF = "poweroff"
    NONE = "none"


class FailureMode(Enum):
    """How the CLI behaves after a fatal error."""

    EXIT = "exit"  # report and exit with the error's code
    WAIT = "wait"  # report, then hold until the operator acknowledges
