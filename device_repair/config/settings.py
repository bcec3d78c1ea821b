"""Settings resolution for repair runs.

Values come from built-in defaults, an optional JSON settings file, the
environment variables the factory tooling exports, and finally CLI flags.
The result is an immutable :class:`RepairConfig` handed to the executor.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Mapping, Optional

from device_repair.domain import (
    FailureMode,
    LayoutSpec,
    PowerAction,
    TargetDevice,
)
from device_repair.domain.models import SUPPORTED_SECTOR_SIZES
from device_repair.logging import LoggerFactory
from device_repair.storage.exceptions import ConfigurationError


log = LoggerFactory.for_system()

SETTINGS_PATH = Path(
    os.environ.get(
        "DEVICE_REPAIR_SETTINGS_PATH",
        "/etc/device-repair/settings.json",
    )
)

DEFAULT_DISK = "/dev/nvme0n1"
DEFAULT_SANITIZE_POLL_INTERVAL = 5.0

DEFAULT_SETTINGS: dict[str, Any] = {
    "disk": None,
    "partition_separator": None,
    "verify_partitions": True,
    "vendored_bios_update": "/home/deck/jupiter-bios",
    "vendored_controller_update": "/home/deck/jupiter-controller-fw",
    "force_bios": False,
    "power_action": PowerAction.REBOOT.value,
    "prompt": True,
    "reboot_prompt": False,
    "dry_run": False,
    "sanitize_before_reimage": False,
    "sanitize_poll_interval": DEFAULT_SANITIZE_POLL_INTERVAL,
    "on_failure": FailureMode.EXIT.value,
    "part_size_esp": 256,
    "part_size_efi": 64,
    "part_size_root": 5120,
    "part_size_var": 256,
    "part_size_home": 100,
    "sector_size": 512,
}

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


@dataclass(frozen=True)
class RepairConfig:
    """Everything a repair run needs to know, resolved once at startup."""

    target: TargetDevice
    layout: LayoutSpec
    verify_partitions: bool = True
    vendored_bios_update: Optional[Path] = None
    vendored_controller_update: Optional[Path] = None
    force_bios: bool = False
    power_action: PowerAction = PowerAction.REBOOT
    prompt: bool = True
    reboot_prompt: bool = False
    dry_run: bool = False
    sanitize_before_reimage: bool = False
    sanitize_poll_interval: float = DEFAULT_SANITIZE_POLL_INTERVAL
    on_failure: FailureMode = FailureMode.EXIT

    @property
    def disk(self) -> str:
        return self.target.path

    def with_overrides(self, **changes: Any) -> RepairConfig:
        return replace(self, **changes)


def load_settings_file(path: Path = SETTINGS_PATH) -> dict[str, Any]:
    """Read the JSON settings file; a missing or unreadable file yields {}."""
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as error:
        log.warning(f"Ignoring unreadable settings file {path}: {error}")
        return {}
    if not isinstance(data, dict):
        log.warning(f"Ignoring settings file {path}: expected a JSON object")
        return {}
    unknown = sorted(set(data) - set(DEFAULT_SETTINGS))
    if unknown:
        log.warning(f"Ignoring unknown settings: {', '.join(unknown)}")
    return {key: value for key, value in data.items() if key in DEFAULT_SETTINGS}


def _env_flag(value: str, name: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"Environment variable {name} must be 0 or 1, got {value!r}")


def settings_from_environ(environ: Mapping[str, str]) -> dict[str, Any]:
    """Translate the variables exported by the factory wrapper."""
    values: dict[str, Any] = {}
    if environ.get("DISK"):
        values["disk"] = environ["DISK"]
    if "DISK_SUFFIX" in environ:
        values["partition_separator"] = environ["DISK_SUFFIX"]
    if "DOPARTVERIFY" in environ:
        values["verify_partitions"] = _env_flag(environ["DOPARTVERIFY"], "DOPARTVERIFY")
    if environ.get("VENDORED_BIOS_UPDATE"):
        values["vendored_bios_update"] = environ["VENDORED_BIOS_UPDATE"]
    if environ.get("VENDORED_CONTROLLER_UPDATE"):
        values["vendored_controller_update"] = environ["VENDORED_CONTROLLER_UPDATE"]
    if "FORCEBIOS" in environ:
        values["force_bios"] = _env_flag(environ["FORCEBIOS"], "FORCEBIOS")
    if "POWEROFF" in environ and _env_flag(environ["POWEROFF"], "POWEROFF"):
        values["power_action"] = PowerAction.POWEROFF.value
    if "NOPROMPT" in environ and _env_flag(environ["NOPROMPT"], "NOPROMPT"):
        values["prompt"] = False
    if "REBOOTPROMPT" in environ:
        values["reboot_prompt"] = _env_flag(environ["REBOOTPROMPT"], "REBOOTPROMPT")
    if "DRYRUN" in environ:
        values["dry_run"] = _env_flag(environ["DRYRUN"], "DRYRUN")
    return values


def _coerce_enum(enum_type, value: Any, key: str):
    if isinstance(value, enum_type):
        return value
    try:
        return enum_type(str(value).lower())
    except ValueError as error:
        choices = ", ".join(member.value for member in enum_type)
        raise ConfigurationError(f"{key} must be one of {choices}, got {value!r}") from error


def _coerce_size(value: Any, key: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigurationError(f"{key} must be a positive integer (MiB), got {value!r}")
    return value


def _optional_path(value: Any) -> Optional[Path]:
    return Path(value) if value else None


def detect_disk(exists=os.path.exists) -> str:
    """Prefer the internal NVMe drive, then the first SATA disk."""
    if exists(DEFAULT_DISK):
        log.info(f"NVMe disk detected: {DEFAULT_DISK}")
        return DEFAULT_DISK
    for letter in "abcdefghijklmnopqrstuvwxyz":
        candidate = f"/dev/sd{letter}"
        if exists(candidate):
            log.info(f"No NVMe disk found, using SATA disk {candidate}")
            return candidate
    raise ConfigurationError("No NVMe or SATA disk found")


def build_config(values: Mapping[str, Any], exists=os.path.exists) -> RepairConfig:
    """Validate merged settings and build the run configuration."""
    merged = {**DEFAULT_SETTINGS, **values}

    disk = merged["disk"] or detect_disk(exists)
    separator = merged["partition_separator"]
    target = TargetDevice.from_path(disk, separator)

    sector_size = merged["sector_size"]
    if sector_size not in SUPPORTED_SECTOR_SIZES:
        raise ConfigurationError(f"sector_size must be 512 or 4096, got {sector_size!r}")

    layout = LayoutSpec.from_sizes(
        esp_mib=_coerce_size(merged["part_size_esp"], "part_size_esp"),
        efi_mib=_coerce_size(merged["part_size_efi"], "part_size_efi"),
        root_mib=_coerce_size(merged["part_size_root"], "part_size_root"),
        var_mib=_coerce_size(merged["part_size_var"], "part_size_var"),
        home_mib=_coerce_size(merged["part_size_home"], "part_size_home"),
        sector_size=sector_size,
    )

    try:
        poll_interval = float(merged["sanitize_poll_interval"])
    except (TypeError, ValueError) as error:
        raise ConfigurationError("sanitize_poll_interval must be a number") from error
    if poll_interval <= 0:
        raise ConfigurationError("sanitize_poll_interval must be positive")

    return RepairConfig(
        target=target,
        layout=layout,
        verify_partitions=bool(merged["verify_partitions"]),
        vendored_bios_update=_optional_path(merged["vendored_bios_update"]),
        vendored_controller_update=_optional_path(merged["vendored_controller_update"]),
        force_bios=bool(merged["force_bios"]),
        power_action=_coerce_enum(PowerAction, merged["power_action"], "power_action"),
        prompt=bool(merged["prompt"]),
        reboot_prompt=bool(merged["reboot_prompt"]),
        dry_run=bool(merged["dry_run"]),
        sanitize_before_reimage=bool(merged["sanitize_before_reimage"]),
        sanitize_poll_interval=poll_interval,
        on_failure=_coerce_enum(FailureMode, merged["on_failure"], "on_failure"),
    )


def load_config(
    overrides: Optional[Mapping[str, Any]] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
    settings_path: Optional[Path] = None,
    exists=os.path.exists,
) -> RepairConfig:
    """Resolve defaults < settings file < environment < CLI overrides."""
    environ = os.environ if environ is None else environ
    values: dict[str, Any] = {}
    values.update(load_settings_file(settings_path or SETTINGS_PATH))
    values.update(settings_from_environ(environ))
    values.update({key: value for key, value in (overrides or {}).items() if value is not None})
    return build_config(values, exists=exists)
