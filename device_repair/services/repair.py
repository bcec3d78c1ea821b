"""Repair plan execution.

The executor turns a :class:`RepairScope` into an ordered sequence of device
operations:

    1. write the partition table, or verify the existing one (partial scopes)
    2. format the var partitions
    3. format the boot partitions                       (OS)
    4. format the home partition                        (home)
    5. stage BIOS and controller firmware, best-effort  (OS)
    6. freeze the source root filesystem                (OS)
    7. duplicate the image into ROOT_A, then ROOT_B     (OS)
    8. finalize boot configuration for both partsets    (OS)
    9. install the bootloader onto partset A            (OS)

Every mount and freeze is acquired through a :class:`ResourceGuard` that is
unwound when :meth:`RepairPlanExecutor.execute` returns or raises. The first
failing step aborts the run; nothing is retried.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

from device_repair.config import RepairConfig
from device_repair.domain import (
    DEFAULT_EXPECTATIONS,
    PartitionRole,
    RepairScope,
    SanitizeState,
    VerificationExpectation,
)
from device_repair.logging import LoggerFactory, operation_context
from device_repair.storage.command_runners import CommandRunner, require_tools
from device_repair.storage.devices import find_root_source, is_partition_of
from device_repair.storage.exceptions import (
    EXIT_OK,
    OperatorCancelled,
    RepairError,
    SourceOnTargetError,
)
from device_repair.storage.format import format_ext4, format_home, format_vfat
from device_repair.storage.guard import ResourceGuard
from device_repair.storage.imaging import ImagingEngine
from device_repair.storage.layout import write_partition_table
from device_repair.storage.mount import freeze_guarded
from device_repair.storage.sanitize import (
    SanitizeBackend,
    SanitizeStateMachine,
    backend_for,
)
from device_repair.storage.verification import PartitionVerifier

from .bootconf import PARTSETS, BootConfigurator
from .firmware import FirmwareStager


log = LoggerFactory.for_repair()

RECOVERY_ADVICE = "retry with a narrower scope (home/system) or run a full reimage (all)"

_BASE_TOOLS = ["blkid", "mkfs.ext4", "tune2fs"]
_TABLE_TOOLS = ["sfdisk", "blockdev"]
_OS_TOOLS = [
    "mkfs.vfat",
    "mount",
    "umount",
    "mountpoint",
    "findmnt",
    "fsfreeze",
    "blockdev",
    "dd",
    "steamos-chroot",
]


def required_tools(scope: RepairScope) -> list[str]:
    """External commands a scope needs, in first-use order."""
    tools = list(_BASE_TOOLS)
    if scope.write_table:
        tools += _TABLE_TOOLS
    if scope.write_os:
        tools += _OS_TOOLS
    return list(dict.fromkeys(tools))


def sanitize_tools(disk: str) -> list[str]:
    return ["nvme"] if disk.rsplit("/", 1)[-1].startswith("nvme") else []


@dataclass(frozen=True)
class RunOutcome:
    """Terminal result of a CLI target."""

    exit_code: int = EXIT_OK
    error: Optional[BaseException] = None
    advice: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.exit_code == EXIT_OK

    @classmethod
    def success(cls) -> RunOutcome:
        return cls()

    @classmethod
    def from_error(cls, error: RepairError) -> RunOutcome:
        advice = None if isinstance(error, OperatorCancelled) else RECOVERY_ADVICE
        return cls(exit_code=error.exit_code, error=error, advice=advice)


class RepairPlanExecutor:
    def __init__(
        self,
        config: RepairConfig,
        runner: Optional[CommandRunner] = None,
        expectations: Sequence[VerificationExpectation] = DEFAULT_EXPECTATIONS,
        imaging: Optional[ImagingEngine] = None,
        bootconf: Optional[BootConfigurator] = None,
        sanitize_backend: Optional[SanitizeBackend] = None,
    ):
        self.config = config
        self.runner = runner or CommandRunner(dry_run=config.dry_run)
        self.expectations = tuple(expectations)
        self.imaging = imaging or ImagingEngine(self.runner)
        self.bootconf = bootconf or BootConfigurator(self.runner, config.target)
        self.sanitize_backend = sanitize_backend or backend_for(self.runner, config.disk)
        self.guard: Optional[ResourceGuard] = None

    @property
    def target(self):
        return self.config.target

    def _part(self, role: PartitionRole) -> str:
        return self.target.role_path(role)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def check_tools(self, scope: RepairScope) -> None:
        tools = required_tools(scope)
        if scope.write_table and self.config.sanitize_before_reimage:
            tools += sanitize_tools(self.config.disk)
        require_tools(self.runner, tools)

    def sanitize(self) -> SanitizeState:
        machine = SanitizeStateMachine(
            self.sanitize_backend, poll_interval=self.config.sanitize_poll_interval
        )
        with operation_context("sanitize", disk=self.config.disk):
            return machine.run()

    def execute(self, scope: RepairScope) -> None:
        """Run every step the scope calls for; raises on the first failure."""
        with operation_context("repair", disk=self.config.disk, scope=scope.name):
            source = self._preflight(scope)
            if scope.write_table and self.config.sanitize_before_reimage:
                self.sanitize()
            with ResourceGuard() as guard:
                self.guard = guard
                self._run_steps(scope, guard, source)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _preflight(self, scope: RepairScope) -> Optional[str]:
        """Checks that must pass before anything on the disk changes."""
        if not scope.write_os:
            return None
        source = find_root_source(self.runner)
        if is_partition_of(source, self.config.disk):
            raise SourceOnTargetError(source, self.config.disk)
        require_tools(self.runner, self.imaging.identity_tools(source))
        log.info(f"Imaging source: {source}")
        return source

    def _run_steps(self, scope: RepairScope, guard: ResourceGuard, source: Optional[str]) -> None:
        self._prepare_table(scope)
        self._format_var()
        if scope.write_os:
            self._format_boot()
        if scope.write_home:
            self._format_home()
        if scope.write_os and source is not None:
            self._stage_firmware(guard)
            self._image_roots(guard, source)
            self._finalize_boot()

    def _prepare_table(self, scope: RepairScope) -> None:
        if scope.write_table:
            log.info("Write known partition table")
            write_partition_table(self.runner, self.target, self.config.layout)
            return
        if not self.config.verify_partitions:
            log.warning("Partition verification disabled; reusing existing layout as-is")
            return
        log.info("Verifying existing partitions")
        PartitionVerifier(self.runner, self.target).verify_all(self.expectations)

    def _format_var(self) -> None:
        log.info("Creating var partitions")
        format_ext4(self.runner, self._part(PartitionRole.VAR_A), "var")
        format_ext4(self.runner, self._part(PartitionRole.VAR_B), "var")

    def _format_boot(self) -> None:
        log.info("Creating boot partitions")
        format_vfat(self.runner, self._part(PartitionRole.ESP), "esp")
        format_vfat(self.runner, self._part(PartitionRole.EFI_A), "efi")
        format_vfat(self.runner, self._part(PartitionRole.EFI_B), "efi")

    def _format_home(self) -> None:
        log.info("Creating home partition")
        format_home(self.runner, self._part(PartitionRole.HOME))

    def _stage_firmware(self, guard: ResourceGuard) -> None:
        log.info("Staging a BIOS update for next boot if necessary")
        stager = FirmwareStager(self.runner, self.config, guard)
        stager.stage_bios()
        stager.update_controller()

    def _image_roots(self, guard: ResourceGuard, source: str) -> None:
        log.info("Freezing rootfs")
        frozen = freeze_guarded(guard, self.runner, "/")
        for role in (PartitionRole.ROOT_A, PartitionRole.ROOT_B):
            log.info(f"Imaging OS partition {role.label}")
            self.imaging.duplicate(source, self._part(role))
        guard.release(frozen)

    def _finalize_boot(self) -> None:
        log.info("Finalizing boot configurations")
        for partset in PARTSETS:
            self.bootconf.finalize_partset(partset)
        self.bootconf.install_bootloader("A")
