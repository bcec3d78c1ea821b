import argparse
import os
import signal
import sys
from typing import Callable, Optional

from device_repair.config import RepairConfig, load_config
from device_repair.domain import FailureMode, PowerAction, RepairScope
from device_repair.logging import LoggerFactory, setup_logging
from device_repair.services import power
from device_repair.services.bootconf import BootConfigurator
from device_repair.services.repair import RepairPlanExecutor, RunOutcome, sanitize_tools
from device_repair.storage.command_runners import CommandRunner, require_tools
from device_repair.storage.devices import require_disk
from device_repair.storage.exceptions import (
    EXIT_FAILURE,
    EXIT_NOT_ROOT,
    EXIT_USAGE,
    RepairError,
)
from device_repair.ui.confirmation import Confirmer


log = LoggerFactory.for_system()

HELP_TEXT = """\
This tool can be used to reinstall or repair the operating system on the device.

Possible targets:
    all : permanently destroy all data on the device, and reinstall the OS.
    system : reinstall the OS on the system partitions.
    home : remove games and personalization from the device.
    chroot : chroot to the primary OS partition set.
    sanitize : perform a drive sanitize operation.
    factory : sanitize, then reimage and power off without prompting."""

TARGETS = ("all", "system", "home", "chroot", "sanitize", "factory")

_PROMPTS = {
    "all": (
        "Reimage device",
        "This action will reimage the device.\n"
        "This will permanently destroy all data on the device and reinstall the OS.\n\n"
        "This cannot be undone.\n\n"
        "Choose Proceed only if you wish to clear and reimage this device.",
    ),
    "system": (
        "Reinstall OS",
        "This action will reinstall the OS, while attempting to preserve your games "
        "and personal content.\nSystem customizations may be lost.\n\n"
        "Choose Proceed to reinstall the OS on your device.",
    ),
    "home": (
        "Delete local user data",
        "This action will reformat the home partition.\n"
        "This will destroy downloaded games and all personal content, including "
        "system configuration.\n\nThis action cannot be undone.\n\n"
        "Choose Proceed to reformat the user home partition.",
    ),
    "sanitize": (
        "Clear and sanitize disk",
        "This action will kick off a sanitize of the primary drive, irrevocably "
        "deleting all user data.\n\nThis action cannot be undone.\n\n"
        "Choose Proceed only if you want to remove all data from the primary drive.",
    ),
}

_SCOPES = {
    "all": (RepairScope.full, "Reimaging complete."),
    "system": (RepairScope.os_only, "OS reinstall complete."),
    "home": (RepairScope.home_only, "User partitions have been reformatted."),
}

_FACTORY_OVERRIDES = {
    "prompt": False,
    "reboot_prompt": False,
    "force_bios": True,
    "power_action": PowerAction.POWEROFF.value,
    "sanitize_before_reimage": True,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="device-repair",
        description="Repair or reimage the internal drive",
        epilog=HELP_TEXT,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("target", nargs="?", help="one of: " + ", ".join(TARGETS))
    parser.add_argument("--disk", help="target disk (default: auto-detect)")
    parser.add_argument(
        "--part-separator",
        dest="partition_separator",
        choices=["", "p"],
        help="text between disk node and partition number",
    )
    parser.add_argument(
        "--no-verify", action="store_true", help="skip partition verification on partial repairs"
    )
    parser.add_argument(
        "--force-bios", action="store_true", help="reflash the BIOS even when up to date"
    )
    power_group = parser.add_mutually_exclusive_group()
    power_group.add_argument(
        "--poweroff", action="store_true", help="power off instead of rebooting when done"
    )
    power_group.add_argument(
        "--no-power-action", action="store_true", help="leave the machine running when done"
    )
    parser.add_argument("--no-prompt", action="store_true", help="do not ask for confirmation")
    parser.add_argument(
        "--dry-run", action="store_true", help="log mutating commands instead of running them"
    )
    parser.add_argument(
        "--sanitize-first", action="store_true", help="sanitize the drive before a full reimage"
    )
    parser.add_argument(
        "--on-failure",
        choices=[mode.value for mode in FailureMode],
        help="exit immediately or wait for the operator after a fatal error",
    )
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Also log raw command output")
    return parser


def overrides_from_args(args: argparse.Namespace) -> dict:
    overrides = {
        "disk": args.disk,
        "partition_separator": args.partition_separator,
        "verify_partitions": False if args.no_verify else None,
        "force_bios": True if args.force_bios else None,
        "prompt": False if args.no_prompt else None,
        "dry_run": True if args.dry_run else None,
        "sanitize_before_reimage": True if args.sanitize_first else None,
        "on_failure": args.on_failure,
        "power_action": None,
    }
    if args.poweroff:
        overrides["power_action"] = PowerAction.POWEROFF.value
    elif args.no_power_action:
        overrides["power_action"] = PowerAction.NONE.value
    if args.target == "factory":
        overrides.update(_FACTORY_OVERRIDES)
    return overrides


def _raise_system_exit(signum, frame):
    raise SystemExit(128 + signum)


def install_signal_handlers() -> None:
    """Turn termination signals into SystemExit so cleanup handlers run."""
    signal.signal(signal.SIGTERM, _raise_system_exit)
    signal.signal(signal.SIGHUP, _raise_system_exit)


def _repair(
    target: str,
    config: RepairConfig,
    runner: CommandRunner,
    confirmer: Confirmer,
    executor: RepairPlanExecutor,
) -> None:
    scope_factory, done_message = _SCOPES[target]
    scope = scope_factory()
    executor.check_tools(scope)
    confirmer.require(*_PROMPTS[target])
    executor.execute(scope)
    power.finish(
        runner,
        confirmer,
        config.power_action,
        done_message,
        reboot_prompt=config.reboot_prompt,
    )


def run_target(
    target: str,
    config: RepairConfig,
    runner: Optional[CommandRunner] = None,
    confirmer: Optional[Confirmer] = None,
    executor: Optional[RepairPlanExecutor] = None,
) -> RunOutcome:
    """Carry out one CLI target and report how it ended."""
    if target == "factory":
        # sanitize runs inside execute(), after the source-on-target refusal
        config = config.with_overrides(sanitize_before_reimage=True)
    runner = runner or CommandRunner(dry_run=config.dry_run)
    confirmer = confirmer or Confirmer(prompt=config.prompt)
    executor = executor or RepairPlanExecutor(config, runner)
    try:
        if target in _SCOPES:
            _repair(target, config, runner, confirmer, executor)
        elif target == "chroot":
            require_tools(runner, ["steamos-chroot"])
            returncode = BootConfigurator(runner, config.target).enter_chroot()
            if returncode != 0:
                log.warning(f"Chroot shell exited with status {returncode}")
                return RunOutcome(exit_code=EXIT_FAILURE)
        elif target == "sanitize":
            require_tools(runner, sanitize_tools(config.disk))
            confirmer.require(*_PROMPTS["sanitize"])
            executor.sanitize()
        elif target == "factory":
            _repair("all", config, runner, confirmer, executor)
        else:
            raise ValueError(f"Unknown target: {target}")
    except RepairError as error:
        log.error(str(error))
        return RunOutcome.from_error(error)
    return RunOutcome.success()


def report_failure(
    outcome: RunOutcome,
    on_failure: FailureMode,
    reader: Optional[Callable[[], str]] = None,
) -> None:
    if outcome.advice:
        log.error(f"Repair failed; {outcome.advice}")
    if on_failure is FailureMode.WAIT:
        print("Repair stopped. Press Enter to exit.", file=sys.stderr, flush=True)
        (reader or sys.stdin.readline)()


def _usage(parser: argparse.ArgumentParser, is_root: bool) -> int:
    parser.print_usage(sys.stderr)
    print(HELP_TEXT, file=sys.stderr)
    if not is_root:
        print("Please run as root.", file=sys.stderr)
        return EXIT_NOT_ROOT
    return EXIT_USAGE


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(debug=args.debug, trace=args.trace)

    is_root = os.geteuid() == 0
    if args.target not in TARGETS:
        return _usage(parser, is_root)
    if not is_root and not args.dry_run:
        return _usage(parser, is_root)

    install_signal_handlers()
    try:
        config = load_config(overrides_from_args(args))
        require_disk(config.disk)
    except RepairError as error:
        log.error(str(error))
        return error.exit_code

    log.info(f"Target {args.target} on {config.disk}" + (" (dry run)" if config.dry_run else ""))
    outcome = run_target(args.target, config)
    if not outcome.ok:
        report_failure(outcome, config.on_failure)
    return outcome.exit_code


if __name__ == "__main__":
    sys.exit(main())
