"""Final power action after a successful repair."""

from __future__ import annotations

from device_repair.domain import PowerAction
from device_repair.logging import LoggerFactory
from device_repair.storage.command_runners import CommandRunner
from device_repair.ui.confirmation import Confirmer


log = LoggerFactory.for_system()

_VERBS = {
    PowerAction.REBOOT: "reboot",
    PowerAction.POWEROFF: "shut down",
}


def power_command(action: PowerAction) -> list[str]:
    if action is PowerAction.NONE:
        return []
    return ["systemctl", action.value]


def finish(
    runner: CommandRunner,
    confirmer: Confirmer,
    action: PowerAction,
    message: str,
    reboot_prompt: bool = False,
) -> bool:
    """Offer the power action; returns True when it was carried out.

    Declining keeps the machine running in the repair image.
    """
    if action is PowerAction.NONE:
        log.info(message)
        return False
    prompt = (
        f"{message}\n\nChoose Proceed to {_VERBS[action]} the device now, "
        "or Cancel to stay in the repair image."
    )
    if not confirmer.ask("Action Successful", prompt, unconditional=reboot_prompt):
        log.info(f"Skipping {action.value} at operator request")
        return False
    runner.run(power_command(action))
    return True
