"""Firmware staging for the next boot.

Both updaters are best-effort: a failure is logged and the repair carries on.
With ``force_bios`` the BIOS updater must succeed and a failure aborts the
run with :class:`BestEffortFailure`.

Vendored payload directories, when present, replace the system-installed
tool and point it at the bundled firmware through an environment variable.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from device_repair.config import RepairConfig
from device_repair.domain import PartitionRole
from device_repair.logging import LoggerFactory
from device_repair.storage.command_runners import CommandRunner
from device_repair.storage.exceptions import BestEffortFailure, CommandError
from device_repair.storage.guard import ResourceGuard
from device_repair.storage.mount import mount_guarded


log = LoggerFactory.for_firmware()

BIOS_TOOL = "/usr/bin/jupiter-biosupdate"
CONTROLLER_TOOL = "/usr/bin/jupiter-controller-update"

ESP_MOUNTPOINT = "/esp"
EFI_MOUNTPOINT = "/boot/efi"


def resolve_tool(
    system_tool: str, vendored_dir: Optional[Path], env_var: str
) -> tuple[str, dict[str, str]]:
    """Pick the vendored copy of a tool when its directory exists."""
    if vendored_dir is not None and vendored_dir.is_dir():
        tool = str(vendored_dir / Path(system_tool).name)
        log.debug(f"Using vendored {tool}")
        return tool, {env_var: str(vendored_dir)}
    return system_tool, {}


class FirmwareStager:
    def __init__(self, runner: CommandRunner, config: RepairConfig, guard: ResourceGuard):
        self.runner = runner
        self.config = config
        self.guard = guard

    def _best_effort(self, step: str, reason: str, fatal: bool) -> bool:
        if fatal:
            raise BestEffortFailure(step, reason)
        log.warning(f"{step} failed (continuing): {reason}")
        return False

    def stage_bios(self) -> bool:
        """Stage a BIOS update with the new ESP and EFI_A mounted.

        Returns True when the updater succeeded.
        """
        tool, env = resolve_tool(
            BIOS_TOOL, self.config.vendored_bios_update, "JUPITER_BIOS_DIR"
        )
        force = self.config.force_bios
        if not self.runner.dry_run and not self.runner.has_tool(tool):
            return self._best_effort("BIOS update", f"{tool} not found", force)

        target = self.config.target
        log.info("Mounting new ESP/EFI for BIOS staging")
        esp = mount_guarded(
            self.guard, self.runner, target.role_path(PartitionRole.ESP), ESP_MOUNTPOINT
        )
        efi = mount_guarded(
            self.guard, self.runner, target.role_path(PartitionRole.EFI_A), EFI_MOUNTPOINT
        )

        succeeded = True
        if force:
            try:
                self.runner.run([tool, "--force"], env=env)
            except CommandError as error:
                log.warning(f"Forced BIOS update failed, retrying without --force: {error}")
                try:
                    self.runner.run([tool], env=env)
                except CommandError as retry_error:
                    raise BestEffortFailure("BIOS update", str(retry_error)) from retry_error
        else:
            try:
                self.runner.run([tool], env=env)
            except CommandError as error:
                succeeded = self._best_effort("BIOS update", str(error), fatal=False)

        self.guard.release(efi)
        self.guard.release(esp)
        return succeeded

    def update_controller(self) -> bool:
        """Run the controller updater in out-of-box mode; never fatal."""
        tool, env = resolve_tool(
            CONTROLLER_TOOL,
            self.config.vendored_controller_update,
            "JUPITER_CONTROLLER_UPDATE_FIRMWARE_DIR",
        )
        if not self.runner.dry_run and not self.runner.has_tool(tool):
            return self._best_effort("Controller update", f"{tool} not found", False)
        env = {"JUPITER_CONTROLLER_UPDATE_IN_OOBE": "1", **env}
        log.info("Updating controller firmware if necessary")
        try:
            self.runner.run([tool], env=env)
        except CommandError as error:
            return self._best_effort("Controller update", str(error), False)
        return True
