"""Driver and CUDA toolkit installers.

An :class:`InstallStep` is a (component, mode) pair; :func:`install` probes the
current state first and only runs the vendor installer when the plan is not
already satisfied, so a converged node reports ``changed=False``.

Modes:

* ``online`` - package manager install, retried with exponential backoff.
* ``offline-runfile`` - a pre-staged ``.run`` installer, never downloaded.
* ``offline-local-repo`` - a pre-staged local repository package.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Sequence

from gpuprov.config import OFFLINE_LOCAL_REPO, OFFLINE_RUNFILE, ONLINE, ProvisionConfig
from gpuprov.core.resolver import InstallPlan
from gpuprov.core.versions import ToolkitVersion, parse_nvcc_release
from gpuprov.errors import DriverInUse, InstallFailed, InstallTimeout, MissingArtifact
from gpuprov.runtime import nvidia_smi
from gpuprov.runtime.executor import CommandResult, CommandRunner, CommandTimeout

logger = logging.getLogger(__name__)

DRIVER = "driver"
TOOLKIT = "toolkit"
MODES = (ONLINE, OFFLINE_RUNFILE, OFFLINE_LOCAL_REPO)

Sleep = Callable[[float], None]


@dataclass(frozen=True)
class ExecutionResult:
    operation: str
    changed: bool
    exit_code: int
    output: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "changed": self.changed,
            "exit_code": self.exit_code,
            "output": self.output,
        }


@dataclass(frozen=True)
class InstallStep:
    component: str
    mode: str

    def __post_init__(self) -> None:
        if self.component not in (DRIVER, TOOLKIT):
            raise ValueError(f"unknown component '{self.component}'")
        if self.mode not in MODES:
            raise ValueError(f"unknown install mode '{self.mode}'")

    @property
    def operation(self) -> str:
        return f"install_{self.component}[{self.mode}]"


def steps_for(plan: InstallPlan) -> List[InstallStep]:
    steps = []
    if plan.installs_driver:
        steps.append(InstallStep(DRIVER, plan.mode))
    steps.append(InstallStep(TOOLKIT, plan.mode))
    return steps


def toolkit_home(version: ToolkitVersion, cfg: ProvisionConfig) -> Path:
    return Path(cfg.cuda_install_root) / f"cuda-{version}"


def nvcc_path(version: ToolkitVersion, cfg: ProvisionConfig) -> Path:
    return toolkit_home(version, cfg) / "bin" / "nvcc"


def _run(runner: CommandRunner, argv: Sequence[str], cfg: ProvisionConfig, op: str, mutated: bool = False) -> CommandResult:
    try:
        return runner(list(argv), cfg.timeout_s)
    except CommandTimeout as exc:
        raise InstallTimeout(
            str(exc),
            result=ExecutionResult(op, mutated, -1, str(exc)),
        ) from exc


def probe_driver(runner: CommandRunner, cfg: ProvisionConfig, op: str = "probe_driver") -> str | None:
    res = _run(runner, nvidia_smi.DRIVER_VERSION_QUERY, cfg, op)
    if not res.ok:
        return None
    return nvidia_smi.parse_driver_version(res.stdout)


def probe_toolkit(version: ToolkitVersion, runner: CommandRunner, cfg: ProvisionConfig, op: str = "probe_toolkit") -> ToolkitVersion | None:
    res = _run(runner, [str(nvcc_path(version, cfg)), "--version"], cfg, op)
    if not res.ok:
        return None
    return parse_nvcc_release(res.stdout)


# -- artifacts ----------------------------------------------------------------


def _artifact(name: str, cfg: ProvisionConfig) -> Path:
    p = Path(name)
    return p if p.is_absolute() else Path(cfg.artifacts_dir) / p


def runfile_for(step: InstallStep, plan: InstallPlan, cfg: ProvisionConfig) -> Path:
    if step.component == TOOLKIT:
        return _artifact(cfg.cuda_runfile or f"cuda_{plan.toolkit}_linux.run", cfg)
    return _artifact(cfg.driver_runfile or f"NVIDIA-Linux-x86_64-{plan.driver_branch}.run", cfg)


def _required_artifact(step: InstallStep, plan: InstallPlan, cfg: ProvisionConfig) -> Path | None:
    if step.mode == OFFLINE_RUNFILE:
        return runfile_for(step, plan, cfg)
    if step.mode == OFFLINE_LOCAL_REPO:
        return _artifact(cfg.local_repo_package or "", cfg)
    return None


# -- command builders, one per mode ---------------------------------------------


def _package_name(step: InstallStep, plan: InstallPlan, cfg: ProvisionConfig) -> str:
    if step.component == TOOLKIT:
        return f"cuda-toolkit-{plan.toolkit.dashed}"
    major = plan.driver_branch.major  # type: ignore[union-attr]
    if cfg.package_manager == "dnf":
        return f"nvidia-driver:{major}-dkms"
    return f"cuda-drivers-{major}"


def _online_commands(step: InstallStep, plan: InstallPlan, cfg: ProvisionConfig) -> List[List[str]]:
    pkg = _package_name(step, plan, cfg)
    if cfg.package_manager == "dnf":
        if step.component == DRIVER:
            return [["dnf", "-y", "module", "install", pkg]]
        return [["dnf", "-y", "install", pkg]]
    return [
        ["apt-get", "update"],
        ["apt-get", "install", "-y", "--no-install-recommends", pkg],
    ]


def _runfile_commands(step: InstallStep, plan: InstallPlan, cfg: ProvisionConfig) -> List[List[str]]:
    runfile = str(runfile_for(step, plan, cfg))
    if step.component == TOOLKIT:
        home = toolkit_home(plan.toolkit, cfg)
        return [["sh", runfile, "--silent", "--toolkit", f"--toolkitpath={home}"]]
    return [["sh", runfile, "--silent", "--dkms"]]


def _local_repo_commands(step: InstallStep, plan: InstallPlan, cfg: ProvisionConfig) -> List[List[str]]:
    repo_pkg = str(_artifact(cfg.local_repo_package or "", cfg))
    pkg = _package_name(step, plan, cfg)
    if cfg.package_manager == "dnf":
        return [
            ["rpm", "-i", "--replacepkgs", repo_pkg],
            ["dnf", "-y", "--disablerepo=*", "--enablerepo=cuda-*", "install", pkg],
        ]
    return [
        ["dpkg", "-i", repo_pkg],
        ["apt-get", "install", "-y", "--no-install-recommends", "--no-download", pkg],
    ]


_COMMANDS: Dict[str, Callable[[InstallStep, InstallPlan, ProvisionConfig], List[List[str]]]] = {
    ONLINE: _online_commands,
    OFFLINE_RUNFILE: _runfile_commands,
    OFFLINE_LOCAL_REPO: _local_repo_commands,
}


def commands_for(step: InstallStep, plan: InstallPlan, cfg: ProvisionConfig) -> List[List[str]]:
    return _COMMANDS[step.mode](step, plan, cfg)


# -- execution ------------------------------------------------------------------


def _run_with_retries(
    runner: CommandRunner,
    argv: Sequence[str],
    cfg: ProvisionConfig,
    op: str,
    attempts: int,
    sleep: Sleep,
    mutated: bool,
) -> CommandResult:
    res = CommandResult(1)
    for attempt in range(attempts):
        res = _run(runner, argv, cfg, op, mutated)
        if res.ok:
            return res
        if attempt + 1 < attempts:
            delay = cfg.backoff_s * (2 ** attempt)
            logger.warning(
                "%s: '%s' exited %d (attempt %d/%d); retrying in %.1fs",
                op,
                " ".join(argv),
                res.returncode,
                attempt + 1,
                attempts,
                delay,
            )
            sleep(delay)
    raise InstallFailed(
        f"{op}: '{' '.join(argv)}' exited {res.returncode} after {attempts} attempt(s)",
        result=ExecutionResult(op, mutated, res.returncode, res.output),
    )


def _check_driver_not_in_use(runner: CommandRunner, cfg: ProvisionConfig, op: str, installed: str) -> None:
    res = _run(runner, nvidia_smi.COMPUTE_APPS_QUERY, cfg, op)
    if not res.ok:
        return
    apps = nvidia_smi.parse_compute_apps(res.stdout)
    if apps:
        msg = f"{op}: driver {installed} is in use by {len(apps)} process(es): {'; '.join(apps)}"
        raise DriverInUse(msg, result=ExecutionResult(op, False, 1, msg))


def install(
    step: InstallStep,
    plan: InstallPlan,
    runner: CommandRunner,
    cfg: ProvisionConfig,
    *,
    sleep: Sleep = time.sleep,
) -> ExecutionResult:
    """Bring ``step.component`` to the version in ``plan``; idempotent."""

    op = step.operation
    if step.component == DRIVER:
        if plan.driver_branch is None:
            return ExecutionResult(op, False, 0, "driver step skipped (no GPU)")
        installed = probe_driver(runner, cfg, op)
        if installed and plan.driver_branch.matches(installed):
            logger.info("%s: driver %s already installed", plan.hostname, installed)
            return ExecutionResult(op, False, 0, f"driver {installed} already installed")
        wanted = f"driver branch {plan.driver_branch}"
    else:
        current = probe_toolkit(plan.toolkit, runner, cfg, op)
        if current == plan.toolkit:
            logger.info("%s: CUDA %s already installed", plan.hostname, current)
            return ExecutionResult(op, False, 0, f"CUDA {current} already installed at {toolkit_home(plan.toolkit, cfg)}")
        installed = None
        wanted = f"CUDA {plan.toolkit}"

    artifact = _required_artifact(step, plan, cfg)
    if artifact is not None and not artifact.is_file():
        msg = f"{op}: required artifact {artifact} is not staged"
        raise MissingArtifact(msg, result=ExecutionResult(op, False, 1, msg))

    if step.component == DRIVER and installed:
        _check_driver_not_in_use(runner, cfg, op, installed)

    attempts = max(1, cfg.retries) if step.mode == ONLINE else 1
    outputs: List[str] = []
    mutated = False
    logger.info("%s: installing %s via %s", plan.hostname, wanted, step.mode)
    for argv in commands_for(step, plan, cfg):
        res = _run_with_retries(runner, argv, cfg, op, attempts, sleep, mutated)
        mutated = True
        if res.output:
            outputs.append(res.output)
    return ExecutionResult(op, True, 0, "\n".join(outputs))


__all__ = [
    "DRIVER",
    "TOOLKIT",
    "ExecutionResult",
    "InstallStep",
    "steps_for",
    "install",
    "commands_for",
    "runfile_for",
    "probe_driver",
    "probe_toolkit",
    "toolkit_home",
    "nvcc_path",
]
