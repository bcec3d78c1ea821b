"""Live partition verification against the expected layout."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from device_repair.domain import TargetDevice, VerificationExpectation
from device_repair.logging import get_logger

from .command_runners import CommandRunner
from .devices import probe_tag
from .exceptions import VerificationMismatchError


log = get_logger(source=__name__, tags=["verify"])


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of checking one slot.

    ``attribute`` is ``"type"`` or ``"label"`` on a mismatch and None when
    the slot matched.
    """

    device: str
    attribute: Optional[str] = None
    found: Optional[str] = None
    expected: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.attribute is None

    def to_error(self) -> VerificationMismatchError:
        return VerificationMismatchError(
            self.device, self.attribute or "", self.found, self.expected or ""
        )


class PartitionVerifier:
    def __init__(self, runner: CommandRunner, target: TargetDevice):
        self.runner = runner
        self.target = target

    def verify(self, expectation: VerificationExpectation) -> VerificationResult:
        """Compare filesystem type first, then partition label."""
        device = self.target.role_path(expectation.role)
        log.debug(f"Checking {device} is {expectation.fs_type} named {expectation.label}")

        fs_type = probe_tag(self.runner, device, "TYPE")
        if fs_type != expectation.fs_type:
            return VerificationResult(device, "type", fs_type, expectation.fs_type)

        label = probe_tag(self.runner, device, "PARTLABEL")
        if label != expectation.label:
            return VerificationResult(device, "label", label, expectation.label)

        return VerificationResult(device)

    def verify_all(self, expectations: Iterable[VerificationExpectation]) -> None:
        """Check every expectation; raise on the first mismatch."""
        for expectation in expectations:
            result = self.verify(expectation)
            if not result.ok:
                error = result.to_error()
                log.error(str(error))
                raise error
            log.info(f"Verified {result.device}")
