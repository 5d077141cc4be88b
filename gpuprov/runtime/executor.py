"""Command execution primitive used by installers, the verifier and fact gathering.

A runner is any callable ``runner(argv, timeout) -> CommandResult``. It must
raise :class:`CommandTimeout` when ``timeout`` expires; a binary that cannot
be found maps to return code 127 rather than an exception.
"""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from typing import Callable, Mapping, Sequence

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandResult:
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        if self.stderr and self.stdout:
            return f"{self.stdout}\n{self.stderr}"
        return self.stdout or self.stderr


class CommandTimeout(Exception):
    def __init__(self, argv: Sequence[str], timeout: float | None) -> None:
        super().__init__(f"command timed out after {timeout}s: {' '.join(argv)}")
        self.argv = list(argv)
        self.timeout = timeout


CommandRunner = Callable[[Sequence[str], "float | None"], CommandResult]


class SubprocessRunner:
    """Run commands on the local host with :func:`subprocess.run`."""

    def __init__(self, env: Mapping[str, str] | None = None) -> None:
        self.env = dict(env) if env is not None else None

    def __call__(self, argv: Sequence[str], timeout: float | None = None) -> CommandResult:
        logger.debug("exec: %s (timeout=%s)", " ".join(argv), timeout)
        try:
            proc = subprocess.run(
                list(argv),
                capture_output=True,
                text=True,
                timeout=timeout,
                env=self.env,
            )
        except subprocess.TimeoutExpired as exc:
            raise CommandTimeout(argv, timeout) from exc
        except FileNotFoundError as exc:
            return CommandResult(127, "", str(exc))
        except OSError as exc:
            # present but not executable, e.g. a binary with no shebang
            return CommandResult(126, "", str(exc))
        return CommandResult(proc.returncode, proc.stdout or "", proc.stderr or "")


__all__ = ["CommandResult", "CommandRunner", "CommandTimeout", "SubprocessRunner"]
