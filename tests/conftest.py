"""
Pytest configuration and shared fixtures for device-repair tests.

No test executes a real external command: components receive a
``FakeRunner`` that records every command and returns programmed results.
"""

import subprocess
from typing import Dict, List, Optional, Sequence, Tuple
from unittest.mock import Mock

import pytest

from device_repair import logging as logging_module
from device_repair.config import RepairConfig
from device_repair.domain import LayoutSpec, PartitionRole, TargetDevice
from device_repair.storage.command_runners import CommandRunner
from device_repair.storage.exceptions import CommandError


# ==============================================================================
# Command Runner Fake
# ==============================================================================


class FakeRunner(CommandRunner):
    """Records commands instead of running them.

    ``calls`` holds ``(kind, command)`` pairs in execution order where kind is
    ``query``, ``run``, ``progress`` or ``interactive``.
    """

    def __init__(self, dry_run: bool = False):
        super().__init__(dry_run=dry_run)
        self.calls: List[Tuple[str, List[str]]] = []
        self.inputs: Dict[Tuple[str, ...], Optional[str]] = {}
        self.envs: Dict[Tuple[str, ...], Optional[dict]] = {}
        self.query_results: Dict[Tuple[str, ...], list] = {}
        self.failures: List[Tuple[Tuple[str, ...], int, str]] = []
        self.missing_tools: set = set()
        self.interactive_returncode = 0

    # -- programming -------------------------------------------------------

    def set_query(self, command: Sequence[str], *results: Tuple[int, str]) -> None:
        """Program query results; the last result repeats once the rest are used."""
        self.query_results[tuple(command)] = list(results)

    def set_partition(self, device: str, fs_type: Optional[str], label: Optional[str]) -> None:
        for tag, value in (("TYPE", fs_type), ("PARTLABEL", label)):
            command = ["blkid", "-o", "value", "-s", tag, device]
            if value is None:
                self.set_query(command, (2, ""))
            else:
                self.set_query(command, (0, f"{value}\n"))

    def set_size(self, device: str, size_bytes: int) -> None:
        self.set_query(["blockdev", "--getsize64", device], (0, f"{size_bytes}\n"))

    def fail_on(self, *prefix: str, returncode: int = 1, output: str = "failed") -> None:
        """Make any mutating command starting with ``prefix`` raise CommandError."""
        self.failures.append((tuple(prefix), returncode, output))

    # -- inspection --------------------------------------------------------

    @property
    def commands(self) -> List[List[str]]:
        """Mutating commands only, in order."""
        return [command for kind, command in self.calls if kind != "query"]

    @property
    def queries(self) -> List[List[str]]:
        return [command for kind, command in self.calls if kind == "query"]

    def ran(self, *prefix: str) -> bool:
        return any(tuple(command[: len(prefix)]) == prefix for command in self.commands)

    def count(self, *prefix: str) -> int:
        return sum(1 for command in self.commands if tuple(command[: len(prefix)]) == prefix)

    def index_of(self, *prefix: str) -> int:
        for index, command in enumerate(self.commands):
            if tuple(command[: len(prefix)]) == prefix:
                return index
        raise AssertionError(f"{' '.join(prefix)} was never run")

    # -- CommandRunner interface --------------------------------------------

    def has_tool(self, tool: str) -> bool:
        return tool not in self.missing_tools

    def _check_failure(self, command: List[str]) -> None:
        for prefix, returncode, output in self.failures:
            if tuple(command[: len(prefix)]) == prefix:
                raise CommandError(command, returncode, output)

    def query(self, command):
        command = list(command)
        self.calls.append(("query", command))
        results = self.query_results.get(tuple(command))
        if not results:
            return subprocess.CompletedProcess(command, 1, stdout="", stderr="")
        returncode, stdout = results.pop(0) if len(results) > 1 else results[0]
        return subprocess.CompletedProcess(command, returncode, stdout=stdout, stderr="")

    def run(self, command, input_text=None, env=None):
        command = list(command)
        self.calls.append(("run", command))
        self.inputs[tuple(command)] = input_text
        self.envs[tuple(command)] = dict(env) if env else None
        if self.dry_run:
            return ""
        self._check_failure(command)
        return ""

    def run_with_progress(self, command, total_bytes=None, title="WORKING", progress_callback=None):
        command = list(command)
        self.calls.append(("progress", command))
        if self.dry_run:
            return
        self._check_failure(command)

    def run_interactive(self, command):
        command = list(command)
        self.calls.append(("interactive", command))
        return self.interactive_returncode


@pytest.fixture
def fake_runner() -> FakeRunner:
    """Fixture providing a recording command runner."""
    return FakeRunner()


@pytest.fixture
def dry_runner() -> FakeRunner:
    """Fixture providing a recording runner in dry-run mode."""
    return FakeRunner(dry_run=True)


# ==============================================================================
# Domain Fixtures
# ==============================================================================


@pytest.fixture
def nvme_target() -> TargetDevice:
    return TargetDevice.from_path("/dev/nvme0n1")


@pytest.fixture
def layout() -> LayoutSpec:
    return LayoutSpec.from_sizes()


@pytest.fixture
def repair_config(nvme_target, layout) -> RepairConfig:
    """
    Fixture providing a run configuration for /dev/nvme0n1.

    Vendored firmware directories are unset so the system tools are used.
    """
    return RepairConfig(
        target=nvme_target,
        layout=layout,
        vendored_bios_update=None,
        vendored_controller_update=None,
        prompt=False,
    )


@pytest.fixture
def healthy_partitions(fake_runner, nvme_target) -> FakeRunner:
    """Fake runner whose verified slots all carry the expected type and label."""
    expected = {
        PartitionRole.ESP: "vfat",
        PartitionRole.EFI_A: "vfat",
        PartitionRole.EFI_B: "vfat",
        PartitionRole.VAR_A: "ext4",
        PartitionRole.VAR_B: "ext4",
        PartitionRole.HOME: "ext4",
    }
    for role, fs_type in expected.items():
        fake_runner.set_partition(nvme_target.role_path(role), fs_type, role.label)
    return fake_runner


# ==============================================================================
# Subprocess and Logging Fixtures
# ==============================================================================


@pytest.fixture
def mock_subprocess_run(mocker) -> Mock:
    """Fixture patching subprocess.run inside the command runner module."""
    return mocker.patch("device_repair.storage.command_runners.subprocess.run")


@pytest.fixture
def log_messages():
    """Collect loguru messages emitted during a test."""
    messages: List[str] = []
    handler_id = logging_module.logger.add(
        lambda message: messages.append(message.record["message"]),
        level="TRACE",
    )
    yield messages
    logging_module.logger.remove(handler_id)
