"""Domain models for device repair operations.

This package contains the immutable layout, scope and sanitize state objects
shared by the storage layer and the repair executor.
"""

from __future__ import annotations

from .models import (
    DEFAULT_EXPECTATIONS,
    FailureMode,
    GptType,
    LayoutSpec,
    PartitionRole,
    PartitionSpec,
    PowerAction,
    RepairScope,
    SanitizeState,
    SanitizeStatus,
    TargetDevice,
    VerificationExpectation,
    default_partition_separator,
)


__all__ = [
    "DEFAULT_EXPECTATIONS",
    "FailureMode",
    "GptType",
    "LayoutSpec",
    "PartitionRole",
    "PartitionSpec",
    "PowerAction",
    "RepairScope",
    "SanitizeState",
    "SanitizeStatus",
    "TargetDevice",
    "VerificationExpectation",
    "default_partition_separator",
]
