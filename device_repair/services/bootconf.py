"""Boot configuration of the freshly imaged partition sets.

All commands run inside the target partition set through ``steamos-chroot``;
this module only sequences them.
"""

from __future__ import annotations

from device_repair.domain import TargetDevice
from device_repair.logging import LoggerFactory
from device_repair.storage.command_runners import CommandRunner
from device_repair.storage.exceptions import CommandError


log = LoggerFactory.for_boot()

PARTSETS = ("A", "B")
DEFAULT_PARTSET = "A"
DEFAULT_BRANCH = "main"


class BootConfigurator:
    def __init__(self, runner: CommandRunner, target: TargetDevice):
        self.runner = runner
        self.target = target

    def chroot_command(self, partset: str, *command: str, overlay: bool = False) -> list[str]:
        prefix = ["steamos-chroot"]
        if not overlay:
            prefix.append("--no-overlay")
        prefix += ["--disk", self.target.path, "--partset", partset]
        if command:
            prefix += ["--", *command]
        return prefix

    def _in_partset(self, partset: str, *command: str) -> str:
        return self.runner.run(self.chroot_command(partset, *command))

    def finalize_partset(self, partset: str, branch: str = DEFAULT_BRANCH) -> None:
        """Write the boot entry for ``partset``; grub regeneration is best-effort."""
        log.info(f"Finalizing install part {partset}")
        self._in_partset(partset, "mkdir", "-p", "/efi/SteamOS", "/esp/SteamOS/conf")
        self._in_partset(partset, "steamos-partsets", "/efi/SteamOS/partsets")
        self._in_partset(
            partset,
            "steamos-bootconf", "create",
            "--image", partset,
            "--conf-dir", "/esp/SteamOS/conf",
            "--efi-dir", "/efi",
            "--set", "title", partset,
        )
        for step in (("grub-mkimage",), ("update-grub",)):
            try:
                self._in_partset(partset, *step)
            except CommandError as error:
                log.warning(f"{step[0]} failed in partset {partset}: {error}")
        self._in_partset(
            partset,
            "bash", "-c", f"mkdir -p /var/lib && echo {branch} > /var/lib/steamos-branch",
        )

    def install_bootloader(self, partset: str = DEFAULT_PARTSET) -> None:
        log.info("Finalizing EFI system partition")
        self._in_partset(
            partset, "steamcl-install", "--flags", "restricted", "--force-extra-removable"
        )

    def selected_partset(self) -> str:
        """Partition set the bootloader will start next; A when unset."""
        result = self.runner.query(
            self.chroot_command(DEFAULT_PARTSET, "steamos-bootconf", "selected-image")
        )
        selected = result.stdout.strip() if result.returncode == 0 else ""
        if selected not in PARTSETS:
            if selected:
                log.warning(f"Unknown selected image {selected!r}, using {DEFAULT_PARTSET}")
            return DEFAULT_PARTSET
        return selected

    def enter_chroot(self) -> int:
        partset = self.selected_partset()
        log.info(f"Dropping into a chroot on the {partset} partition set")
        log.info("You can make any needed changes here, and exit when done")
        return self.runner.run_interactive(self.chroot_command(partset, overlay=True))
