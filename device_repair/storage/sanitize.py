"""Drive-wide sanitize driven as a state machine.

The drive reports one of three conditions (see :class:`SanitizeState`):
ready, a sanitize in progress with a completion percentage, or no sanitize
support at all. Hardware specifics live in a :class:`SanitizeBackend`:

    NvmeSanitizeBackend: reads ``nvme sanitize-log`` and issues a block-erase
        sanitize, falling back to a secure format.
    AtaSanitizeBackend: SATA drives have no sanitize log; the secure format
        uses an ATA security erase, a full discard or a zero fill.

Decoding of the NVMe status log:
    SSTAT % 8 == 2       sanitize in progress, SPROG / 65535 is the fraction done
    SSTAT % 8 in 0,1,3,4 idle (never run, completed, or completed without
                         deallocation), treated as ready
    SSTAT % 8 in 5,6,7   reserved or failure patterns -> HardwareStateError
    no SSTAT line        drive does not support sanitize

Example:
    >>> machine = SanitizeStateMachine(NvmeSanitizeBackend(runner, "/dev/nvme0n1"))
    >>> machine.run()
"""

from __future__ import annotations

import re
import time
from typing import Callable, Optional, Protocol

from device_repair.domain import SanitizeState
from device_repair.logging import LoggerFactory

from .command_runners import CommandRunner
from .exceptions import CommandError, HardwareStateError


log = LoggerFactory.for_sanitize()

DEFAULT_POLL_INTERVAL = 5.0
SPROG_MAX = 65535

_STATUS_IN_PROGRESS = 2
_STATUS_IDLE = {0, 1, 3, 4}

_SSTAT_PATTERN = re.compile(r"\(SSTAT\).*?((?:0x)?[0-9a-fA-F]+)\s*$", re.MULTILINE)
_SPROG_PATTERN = re.compile(r"\(SPROG\).*?((?:0x)?[0-9a-fA-F]+)\s*$", re.MULTILINE)
_ATA_ERASE_SUPPORTED = re.compile(r"^\s+supported\s*$", re.MULTILINE)


def _parse_register(device: str, name: str, raw: str) -> int:
    try:
        if raw.lower().startswith("0x"):
            return int(raw, 16)
        return int(raw, 10)
    except ValueError as error:
        raise HardwareStateError(device, f"unparsable {name} value {raw!r}") from error


def decode_sanitize_log(device: str, text: str) -> SanitizeState:
    """Translate ``nvme sanitize-log`` output into a :class:`SanitizeState`."""
    status_match = _SSTAT_PATTERN.search(text)
    if not status_match:
        return SanitizeState.unsupported()
    status = _parse_register(device, "SSTAT", status_match.group(1))
    pattern = status % 8

    if pattern in _STATUS_IDLE:
        return SanitizeState.ready()
    if pattern != _STATUS_IN_PROGRESS:
        raise HardwareStateError(device, f"sanitize status {status:#x}")

    progress_match = _SPROG_PATTERN.search(text)
    if not progress_match:
        raise HardwareStateError(device, "sanitize in progress without a progress value")
    progress = _parse_register(device, "SPROG", progress_match.group(1))
    if not 0 <= progress <= SPROG_MAX:
        raise HardwareStateError(device, f"sanitize progress {progress} out of range")
    return SanitizeState.in_progress(progress * 100 // SPROG_MAX)


class SanitizeBackend(Protocol):
    device: str

    def query(self) -> SanitizeState: ...

    def start_sanitize(self) -> None: ...

    def secure_format(self) -> None: ...


class NvmeSanitizeBackend:
    def __init__(self, runner: CommandRunner, device: str):
        self.runner = runner
        self.device = device

    def query(self) -> SanitizeState:
        result = self.runner.query(["nvme", "sanitize-log", self.device])
        if result.returncode != 0:
            log.debug(f"sanitize-log unavailable for {self.device} (rc={result.returncode})")
            return SanitizeState.unsupported()
        return decode_sanitize_log(self.device, result.stdout)

    def start_sanitize(self) -> None:
        # action 2: block erase
        self.runner.run(["nvme", "sanitize", "-a", "2", self.device])

    def secure_format(self) -> None:
        self.runner.run(["nvme", "format", self.device, "-n", "1", "-s", "1", "-r"])


class AtaSanitizeBackend:
    """SATA and other non-NVMe disks."""

    def __init__(self, runner: CommandRunner, device: str):
        self.runner = runner
        self.device = device

    def query(self) -> SanitizeState:
        return SanitizeState.unsupported()

    def start_sanitize(self) -> None:
        raise HardwareStateError(self.device, "sanitize is not available on this drive")

    def _security_erase_supported(self) -> bool:
        if not self.runner.has_tool("hdparm"):
            return False
        result = self.runner.query(["hdparm", "-I", self.device])
        return result.returncode == 0 and bool(_ATA_ERASE_SUPPORTED.search(result.stdout))

    def secure_format(self) -> None:
        if self._security_erase_supported():
            log.info(f"Using ATA security erase on {self.device}")
            try:
                self.runner.run(
                    ["hdparm", "--user-master", "u", "--security-unlock", "NULL", self.device]
                )
            except CommandError as error:
                log.debug(f"Security unlock not needed or refused: {error}")
            self.runner.run(
                ["hdparm", "--user-master", "u", "--security-erase", "NULL", self.device]
            )
            return

        if self.runner.has_tool("blkdiscard"):
            log.info(f"Discarding all blocks on {self.device}")
            self.runner.run(["blkdiscard", "-f", self.device])
            return

        log.warning(f"Zero-filling {self.device}; this may take a long time")
        try:
            self.runner.run_with_progress(
                ["dd", "if=/dev/zero", f"of={self.device}", "bs=128M", "status=progress"],
                title="ZERO FILL",
            )
        except CommandError as error:
            # dd stops with ENOSPC once it reaches the end of the device
            if "No space left on device" not in error.output:
                raise


def backend_for(runner: CommandRunner, device: str) -> SanitizeBackend:
    name = device.rsplit("/", 1)[-1]
    if name.startswith("nvme"):
        return NvmeSanitizeBackend(runner, device)
    return AtaSanitizeBackend(runner, device)


class SanitizeStateMachine:
    def __init__(
        self,
        backend: SanitizeBackend,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.backend = backend
        self.poll_interval = poll_interval
        self.sleep = sleep

    @property
    def device(self) -> str:
        return self.backend.device

    def query(self) -> SanitizeState:
        state = self.backend.query()
        log.debug(f"Sanitize state of {self.device}: {state.describe()}")
        return state

    def _fallback(self) -> SanitizeState:
        log.info(f"Running secure format on {self.device}")
        self.backend.secure_format()
        log.info(f"Secure format of {self.device} complete")
        return SanitizeState.ready()

    def start(self) -> SanitizeState:
        """Begin a sanitize and return the state the drive is left in.

        An already running sanitize is left alone. Drives without sanitize
        support get a synchronous secure format instead.
        """
        state = self.query()
        if state.is_in_progress:
            log.info(f"Sanitize already in progress on {self.device} ({state.percent}%)")
            return state
        if state == SanitizeState.unsupported():
            log.info(f"Sanitize not supported on {self.device}, using secure format")
            return self._fallback()

        log.info(f"Starting sanitize on {self.device}")
        try:
            self.backend.start_sanitize()
        except CommandError as error:
            log.warning(f"Sanitize command failed on {self.device}: {error}")
            return self._fallback()
        return self.query()

    def wait_for_completion(
        self,
        interval: Optional[float] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> SanitizeState:
        """Poll until the drive no longer reports a sanitize in progress."""
        interval = self.poll_interval if interval is None else interval
        sleep = self.sleep if sleep is None else sleep
        last_percent: Optional[int] = None
        while True:
            state = self.query()
            if not state.is_in_progress:
                log.info(f"Sanitize of {self.device} done")
                return state
            if state.percent != last_percent:
                log.info(f"Sanitize progress: {state.percent}%")
                last_percent = state.percent
            sleep(interval)

    def run(self) -> SanitizeState:
        state = self.start()
        if state.is_in_progress:
            return self.wait_for_completion()
        return state
