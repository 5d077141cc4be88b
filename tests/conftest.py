"""
Ensure project root is on sys.path for test imports, and provide a fake host.

``FakeHost`` is a command runner that simulates the handful of commands the
installers and the verifier issue (nvidia-smi queries, nvcc, package
managers, runfiles), keeping driver/toolkit/MIG state in memory so a second
run observes what the first one installed.
"""

import re
import sys
from pathlib import Path
from typing import Dict, List, Sequence

import pytest

# tests/ -> repo root
REPO_ROOT = Path(__file__).resolve().parents[1]
repo_str = str(REPO_ROOT)
if repo_str not in sys.path:
    sys.path.insert(0, repo_str)

from gpuprov.runtime.executor import CommandResult, CommandTimeout  # noqa: E402


class FakeHost:
    def __init__(
        self,
        driver_version: str | None = None,
        toolkits: Sequence[str] = (),
        mig: Dict[int, str] | None = None,
        compute_apps: Sequence[str] = (),
        gpu_count: int = 1,
    ) -> None:
        self.driver_version = driver_version
        self.toolkits = set(toolkits)
        self.mig = dict(mig or {})
        self.compute_apps = list(compute_apps)
        self.gpu_count = gpu_count
        self.calls: List[List[str]] = []
        # program name -> remaining failures before success
        self.failures: Dict[str, int] = {}
        self.timeouts: set = set()

    # -- helpers -------------------------------------------------------------
    def mutating_calls(self) -> List[List[str]]:
        return [c for c in self.calls if not self._is_query(c)]

    @staticmethod
    def _is_query(argv: List[str]) -> bool:
        if argv[0] == "nvidia-smi":
            return not ("-mig" in argv)
        return argv[-1] == "--version"

    def _install_driver(self, branch: str) -> None:
        self.driver_version = f"{branch}.82.07"

    # -- runner protocol -----------------------------------------------------
    def __call__(self, argv: Sequence[str], timeout: float | None = None) -> CommandResult:
        argv = list(argv)
        self.calls.append(argv)
        prog = Path(argv[0]).name
        if prog in self.timeouts:
            raise CommandTimeout(argv, timeout)
        if self.failures.get(prog, 0) > 0:
            self.failures[prog] -= 1
            return CommandResult(100, "", f"{prog}: temporary failure")

        if prog == "nvidia-smi":
            return self._nvidia_smi(argv)
        if prog == "nvcc":
            m = re.search(r"cuda-(\d+\.\d+)", argv[0])
            ver = m.group(1) if m else ""
            if ver in self.toolkits:
                return CommandResult(0, f"Cuda compilation tools, release {ver}, V{ver}.0\n")
            return CommandResult(127, "", f"{argv[0]}: not found")
        if prog in ("apt-get", "dnf"):
            for arg in argv:
                m = re.match(r"cuda-toolkit-(\d+)-(\d+)$", arg)
                if m:
                    self.toolkits.add(f"{m.group(1)}.{m.group(2)}")
                m = re.match(r"(?:cuda-drivers-|nvidia-driver:)(\d+)", arg)
                if m:
                    self._install_driver(m.group(1))
            return CommandResult(0, "done\n")
        if prog in ("dpkg", "rpm"):
            return CommandResult(0, "registered\n")
        if prog == "sh":
            runfile = Path(argv[1]).name
            if "--toolkit" in argv:
                path = next(a for a in argv if a.startswith("--toolkitpath="))
                self.toolkits.add(re.search(r"cuda-(\d+\.\d+)", path).group(1))
            else:
                m = re.search(r"x86_64-(\d+)", runfile)
                self._install_driver(m.group(1) if m else "0")
            return CommandResult(0, "installed\n")
        return CommandResult(127, "", f"{prog}: not found")

    def _nvidia_smi(self, argv: List[str]) -> CommandResult:
        if self.driver_version is None:
            return CommandResult(127, "", "nvidia-smi: not found")
        joined = " ".join(argv)
        if "--query-gpu=driver_version" in joined:
            return CommandResult(0, "".join(f"{self.driver_version}\n" for _ in range(self.gpu_count)))
        if "--query-compute-apps" in joined:
            return CommandResult(0, "".join(f"{a}\n" for a in self.compute_apps))
        if "mig.mode.current" in joined:
            return CommandResult(0, "".join(f"{i}, {mode}\n" for i, mode in sorted(self.mig.items())))
        if "-mig" in argv:
            self.mig[int(argv[argv.index("-i") + 1])] = "Enabled"
            return CommandResult(0, "Enabled MIG Mode\n")
        return CommandResult(6, "", "unsupported query")


@pytest.fixture()
def fake_host() -> FakeHost:
    return FakeHost()
