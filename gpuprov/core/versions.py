"""Driver branch and CUDA toolkit version types."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Tuple

_DRIVER_RE = re.compile(r"^\s*(\d+)(?:\.(\d+))?(?:\.(\d+))?\s*$")
_TOOLKIT_RE = re.compile(r"^\s*(\d+)(?:\.(\d+))?\s*$")
_NVCC_RELEASE_RE = re.compile(r"release\s+(\d+)\.(\d+)")


@dataclass(frozen=True, order=True)
class DriverBranch:
    """A driver branch such as ``550`` or a full version such as ``550.54.15``.

    Ordering compares the numeric parts left to right, so ``550 < 550.54 < 570``.
    """

    parts: Tuple[int, ...]

    @classmethod
    def parse(cls, value: Any) -> "DriverBranch":
        if isinstance(value, DriverBranch):
            return value
        m = _DRIVER_RE.match(str(value))
        if not m:
            raise ValueError(f"invalid driver version {value!r}")
        return cls(tuple(int(p) for p in m.groups() if p is not None))

    @property
    def major(self) -> int:
        return self.parts[0]

    def matches(self, installed: str) -> bool:
        """True when ``installed`` belongs to this branch (exact or dotted prefix)."""

        text = installed.strip()
        mine = str(self)
        return text == mine or text.startswith(mine + ".")

    def __str__(self) -> str:
        return ".".join(str(p) for p in self.parts)


@dataclass(frozen=True, order=True)
class ToolkitVersion:
    major: int
    minor: int = 0

    @classmethod
    def parse(cls, value: Any) -> "ToolkitVersion":
        if isinstance(value, ToolkitVersion):
            return value
        m = _TOOLKIT_RE.match(str(value))
        if not m:
            raise ValueError(f"invalid CUDA toolkit version {value!r} (expected major.minor)")
        return cls(int(m.group(1)), int(m.group(2) or 0))

    @property
    def dashed(self) -> str:
        # package names use 12-4 rather than 12.4
        return f"{self.major}-{self.minor}"

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}"


def parse_nvcc_release(output: str) -> ToolkitVersion | None:
    """Extract ``release X.Y`` from ``nvcc --version`` output."""

    m = _NVCC_RELEASE_RE.search(output or "")
    if not m:
        return None
    return ToolkitVersion(int(m.group(1)), int(m.group(2)))


__all__ = ["DriverBranch", "ToolkitVersion", "parse_nvcc_release"]
