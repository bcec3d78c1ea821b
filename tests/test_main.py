"""Tests for the command line entry point."""

import signal
from unittest.mock import Mock

import pytest

from device_repair import main
from device_repair.domain import FailureMode, PowerAction, RepairScope, SanitizeState
from device_repair.services.repair import RECOVERY_ADVICE, RepairPlanExecutor, RunOutcome
from device_repair.storage.exceptions import (
    EXIT_CANCELLED,
    EXIT_CONFIGURATION,
    EXIT_FAILURE,
    EXIT_HARDWARE_STATE,
    EXIT_NOT_ROOT,
    EXIT_OK,
    EXIT_TOOL_UNAVAILABLE,
    EXIT_USAGE,
    ConfigurationError,
    HardwareStateError,
    OperatorCancelled,
    SourceOnTargetError,
    ToolUnavailableError,
)


# ==============================================================================
# Argument Handling
# ==============================================================================


class TestOverrides:
    """Test CLI flags become configuration overrides."""

    def parse(self, *argv):
        return main.overrides_from_args(main.build_parser().parse_args(list(argv)))

    def test_defaults_leave_settings_alone(self):
        overrides = self.parse("home")

        assert all(value is None for value in overrides.values())

    def test_flags(self):
        overrides = self.parse(
            "system", "--disk", "/dev/sda", "--no-verify", "--force-bios",
            "--no-prompt", "--dry-run", "--poweroff", "--on-failure", "wait",
        )

        assert overrides["disk"] == "/dev/sda"
        assert overrides["verify_partitions"] is False
        assert overrides["force_bios"] is True
        assert overrides["prompt"] is False
        assert overrides["dry_run"] is True
        assert overrides["power_action"] == "poweroff"
        assert overrides["on_failure"] == "wait"

    def test_no_power_action(self):
        assert self.parse("all", "--no-power-action")["power_action"] == "none"

    def test_power_flags_are_exclusive(self):
        with pytest.raises(SystemExit):
            self.parse("all", "--poweroff", "--no-power-action")

    def test_factory_forces_unattended_poweroff(self):
        overrides = self.parse("factory", "--no-power-action")

        assert overrides["prompt"] is False
        assert overrides["reboot_prompt"] is False
        assert overrides["force_bios"] is True
        assert overrides["power_action"] == PowerAction.POWEROFF.value


# ==============================================================================
# Target Dispatch
# ==============================================================================


@pytest.fixture
def confirmer():
    confirmer = Mock()
    confirmer.ask.return_value = True
    return confirmer


class TestRunTarget:
    """Test each target drives the executor and maps errors to exit codes."""

    @pytest.mark.parametrize(
        "target, scope",
        [
            ("all", RepairScope.full()),
            ("system", RepairScope.os_only()),
            ("home", RepairScope.home_only()),
        ],
    )
    def test_repair_targets(self, target, scope, repair_config, fake_runner, confirmer):
        executor = Mock()

        outcome = main.run_target(target, repair_config, fake_runner, confirmer, executor)

        assert outcome.exit_code == EXIT_OK
        executor.check_tools.assert_called_once_with(scope)
        executor.execute.assert_called_once_with(scope)
        assert fake_runner.commands == [["systemctl", "reboot"]]

    def test_tools_are_checked_before_confirmation(self, repair_config, fake_runner, confirmer):
        executor = Mock()
        executor.check_tools.side_effect = ToolUnavailableError("sfdisk")

        outcome = main.run_target("all", repair_config, fake_runner, confirmer, executor)

        assert outcome.exit_code == EXIT_TOOL_UNAVAILABLE
        confirmer.require.assert_not_called()
        executor.execute.assert_not_called()

    def test_declined_confirmation(self, repair_config, fake_runner, confirmer):
        executor = Mock()
        confirmer.require.side_effect = OperatorCancelled("Reimage device: cancelled by operator")

        outcome = main.run_target("all", repair_config, fake_runner, confirmer, executor)

        assert outcome.exit_code == EXIT_CANCELLED
        assert outcome.advice is None
        executor.execute.assert_not_called()

    def test_declined_power_action_is_success(self, repair_config, fake_runner, confirmer):
        confirmer.ask.return_value = False

        outcome = main.run_target("home", repair_config, fake_runner, confirmer, Mock())

        assert outcome.exit_code == EXIT_OK
        assert fake_runner.commands == []

    def test_failure_carries_advice(self, repair_config, fake_runner, confirmer):
        executor = Mock()
        executor.execute.side_effect = HardwareStateError("/dev/nvme0n1", "sanitize status 0x7")

        outcome = main.run_target("all", repair_config, fake_runner, confirmer, executor)

        assert outcome.exit_code == EXIT_HARDWARE_STATE
        assert outcome.advice == RECOVERY_ADVICE
        assert fake_runner.commands == []

    def test_sanitize_target(self, repair_config, fake_runner, confirmer):
        executor = Mock()

        outcome = main.run_target("sanitize", repair_config, fake_runner, confirmer, executor)

        assert outcome.ok
        confirmer.require.assert_called_once()
        executor.sanitize.assert_called_once_with()
        executor.execute.assert_not_called()

    def test_factory_reimages_with_sanitize_first(self, repair_config, fake_runner, confirmer):
        executor = Mock()

        outcome = main.run_target("factory", repair_config, fake_runner, confirmer, executor)

        assert outcome.ok
        executor.sanitize.assert_not_called()
        executor.check_tools.assert_called_once_with(RepairScope.full())
        executor.execute.assert_called_once_with(RepairScope.full())

    def test_factory_refuses_source_on_target_before_sanitize(
        self, repair_config, fake_runner, confirmer, mocker
    ):
        mocker.patch(
            "device_repair.services.repair.find_root_source", return_value="/dev/nvme0n1p4"
        )
        fake_runner.set_partition("/dev/nvme0n1p4", "btrfs", "rootfs-A")
        backend = Mock()
        backend.query.return_value = SanitizeState.unsupported()
        config = repair_config.with_overrides(sanitize_before_reimage=True)
        executor = RepairPlanExecutor(config, runner=fake_runner, sanitize_backend=backend)

        outcome = main.run_target("factory", config, fake_runner, confirmer, executor)

        assert outcome.exit_code == EXIT_CONFIGURATION
        assert isinstance(outcome.error, SourceOnTargetError)
        backend.secure_format.assert_not_called()
        backend.start_sanitize.assert_not_called()
        assert fake_runner.commands == []

    def test_chroot(self, repair_config, fake_runner, confirmer):
        outcome = main.run_target("chroot", repair_config, fake_runner, confirmer, Mock())

        assert outcome.ok
        assert fake_runner.calls[-1][0] == "interactive"

    def test_chroot_nonzero_exit(self, repair_config, fake_runner, confirmer):
        fake_runner.interactive_returncode = 130

        outcome = main.run_target("chroot", repair_config, fake_runner, confirmer, Mock())

        assert outcome.exit_code == EXIT_FAILURE


class TestReportFailure:
    def test_exit_mode_does_not_wait(self, log_messages):
        reader = Mock()
        outcome = RunOutcome(exit_code=EXIT_FAILURE, advice=RECOVERY_ADVICE)

        main.report_failure(outcome, FailureMode.EXIT, reader=reader)

        reader.assert_not_called()
        assert f"Repair failed; {RECOVERY_ADVICE}" in log_messages

    def test_wait_mode_waits_for_operator(self, capsys):
        reader = Mock(return_value="\n")

        main.report_failure(RunOutcome(exit_code=EXIT_FAILURE), FailureMode.WAIT, reader=reader)

        reader.assert_called_once_with()
        assert "Press Enter" in capsys.readouterr().err


# ==============================================================================
# Entry Point
# ==============================================================================


@pytest.fixture
def entry(mocker, repair_config):
    """Patch out logging setup, privilege checks and configuration loading."""
    mocker.patch("device_repair.main.setup_logging")
    mocker.patch("device_repair.main.install_signal_handlers")
    geteuid = mocker.patch("device_repair.main.os.geteuid", return_value=0)
    load_config = mocker.patch("device_repair.main.load_config", return_value=repair_config)
    require_disk = mocker.patch("device_repair.main.require_disk")
    run_target = mocker.patch("device_repair.main.run_target", return_value=RunOutcome.success())
    return Mock(
        geteuid=geteuid, load_config=load_config, require_disk=require_disk, run_target=run_target
    )


class TestMain:
    def test_success(self, entry):
        assert main.main(["home"]) == EXIT_OK
        entry.run_target.assert_called_once()

    def test_missing_target_is_usage_error(self, entry, capsys):
        assert main.main([]) == EXIT_USAGE
        assert "Possible targets" in capsys.readouterr().err
        entry.run_target.assert_not_called()

    def test_unknown_target(self, entry):
        assert main.main(["everything"]) == EXIT_USAGE

    def test_not_root(self, entry, capsys):
        entry.geteuid.return_value = 1000

        assert main.main(["all"]) == EXIT_NOT_ROOT
        assert "Please run as root." in capsys.readouterr().err

    def test_dry_run_allowed_without_root(self, entry):
        entry.geteuid.return_value = 1000

        assert main.main(["all", "--dry-run"]) == EXIT_OK

    def test_configuration_error(self, entry):
        entry.load_config.side_effect = ConfigurationError("No NVMe or SATA disk found")

        assert main.main(["all"]) == EXIT_CONFIGURATION
        entry.run_target.assert_not_called()

    def test_missing_disk(self, entry):
        entry.require_disk.side_effect = ConfigurationError(
            "Disk /dev/nvme0n1 does not exist; adjust --disk"
        )

        assert main.main(["all"]) == EXIT_CONFIGURATION
        entry.require_disk.assert_called_once_with("/dev/nvme0n1")
        entry.run_target.assert_not_called()

    def test_failure_exit_code(self, entry, mocker):
        report = mocker.patch("device_repair.main.report_failure")
        entry.run_target.return_value = RunOutcome(exit_code=EXIT_HARDWARE_STATE)

        assert main.main(["sanitize"]) == EXIT_HARDWARE_STATE
        report.assert_called_once()


def test_termination_signal_raises_system_exit():
    with pytest.raises(SystemExit) as excinfo:
        main._raise_system_exit(signal.SIGTERM, None)

    assert excinfo.value.code == 128 + signal.SIGTERM
