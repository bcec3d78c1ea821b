"""Tests for the final power action."""

from unittest.mock import Mock

import pytest

from device_repair.domain import PowerAction
from device_repair.services.power import finish, power_command


@pytest.mark.parametrize(
    "action, command",
    [
        (PowerAction.REBOOT, ["systemctl", "reboot"]),
        (PowerAction.POWEROFF, ["systemctl", "poweroff"]),
        (PowerAction.NONE, []),
    ],
)
def test_power_command(action, command):
    assert power_command(action) == command


class TestFinish:
    def test_reboots_when_confirmed(self, fake_runner):
        confirmer = Mock()
        confirmer.ask.return_value = True

        assert finish(fake_runner, confirmer, PowerAction.REBOOT, "Repair done") is True

        assert fake_runner.commands == [["systemctl", "reboot"]]
        title, message = confirmer.ask.call_args.args
        assert title == "Action Successful"
        assert "reboot the device" in message
        assert confirmer.ask.call_args.kwargs == {"unconditional": False}

    def test_declined_keeps_running(self, fake_runner):
        confirmer = Mock()
        confirmer.ask.return_value = False

        assert finish(fake_runner, confirmer, PowerAction.POWEROFF, "Repair done") is False

        assert fake_runner.commands == []

    def test_reboot_prompt_forces_question(self, fake_runner):
        confirmer = Mock()
        confirmer.ask.return_value = True

        finish(fake_runner, confirmer, PowerAction.POWEROFF, "Done", reboot_prompt=True)

        assert confirmer.ask.call_args.kwargs == {"unconditional": True}
        assert "shut down" in confirmer.ask.call_args.args[1]

    def test_no_power_action(self, fake_runner, log_messages):
        confirmer = Mock()

        assert finish(fake_runner, confirmer, PowerAction.NONE, "Repair done") is False

        confirmer.ask.assert_not_called()
        assert fake_runner.commands == []
        assert "Repair done" in log_messages
