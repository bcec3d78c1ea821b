"""Progress parsing and formatting for long-running block operations."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional


_BYTES_PATTERN = re.compile(r"(\d+)\s+bytes")
_PERCENT_PATTERN = re.compile(r"(\d+(?:\.\d+)?)%")
_RATE_PATTERN = re.compile(r"(\d+(?:\.\d+)?)\s*([kKMGT]i?B)/s")

# GNU dd prints SI rates (MB/s); other copy tools print binary ones (MiB/s)
_RATE_UNITS = {
    "kB": 1000,
    "KB": 1000,
    "MB": 1000 ** 2,
    "GB": 1000 ** 3,
    "TB": 1000 ** 4,
    "KiB": 1024,
    "MiB": 1024 ** 2,
    "GiB": 1024 ** 3,
    "TiB": 1024 ** 4,
}


def human_size(size_bytes):
    if size_bytes is None:
        return "0B"
    size = float(size_bytes)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size < 1024.0:
            return f"{size:.1f}{unit}"
        size /= 1024.0
    return f"{size:.1f}PB"


def format_eta(seconds):
    """Format ETA in HH:MM:SS or MM:SS format."""
    if seconds is None:
        return None
    seconds = int(seconds)
    if seconds < 0:
        return None
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours:d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


@dataclass(frozen=True)
class ProgressSample:
    """Values recognised in a single line of dd-style progress output."""

    bytes_copied: Optional[int] = None
    percent: Optional[float] = None
    rate: Optional[float] = None  # bytes per second

    @property
    def is_empty(self) -> bool:
        return self.bytes_copied is None and self.percent is None


def _rate_bytes(match: Optional[re.Match]) -> Optional[float]:
    if not match or match.group(2) not in _RATE_UNITS:
        return None
    return float(match.group(1)) * _RATE_UNITS[match.group(2)]


def parse_progress_line(line: str) -> ProgressSample:
    """Extract copied bytes, percentage and transfer rate from one output line."""
    bytes_match = _BYTES_PATTERN.search(line)
    percent_match = _PERCENT_PATTERN.search(line)
    rate_match = _RATE_PATTERN.search(line)
    return ProgressSample(
        bytes_copied=int(bytes_match.group(1)) if bytes_match else None,
        percent=float(percent_match.group(1)) if percent_match else None,
        rate=_rate_bytes(rate_match),
    )


@dataclass(frozen=True)
class ProgressUpdate:
    """Progress of a running command as reported to callbacks."""

    title: str
    bytes_copied: Optional[int]
    total_bytes: Optional[int]
    percent: Optional[float]
    rate: Optional[float]
    eta: Optional[str]

    @property
    def ratio(self) -> Optional[float]:
        if self.bytes_copied is not None and self.total_bytes:
            return max(0.0, min(1.0, self.bytes_copied / self.total_bytes))
        if self.percent is not None:
            return max(0.0, min(1.0, self.percent / 100.0))
        return None

    @property
    def message(self) -> str:
        parts = [self.title]
        if self.bytes_copied is not None:
            written = f"wrote {human_size(self.bytes_copied)}"
            ratio = self.ratio
            if ratio is not None:
                written = f"{written} ({ratio * 100:.1f}%)"
            parts.append(written)
        elif self.percent is not None:
            parts.append(f"{self.percent:.1f}%")
        else:
            parts.append("working...")
        if self.rate:
            rate_part = f"{human_size(self.rate)}/s"
            if self.eta:
                rate_part = f"{rate_part} ETA {self.eta}"
            parts.append(rate_part)
        return " - ".join(parts)
