"""Post-install health checks.

A mismatch is an expected outcome, not a defect: every check degrades to
``False`` plus a diagnostic string and :func:`verify` never raises. Callers
that want a hard failure use :meth:`HealthReport.raise_for_status`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence

from gpuprov.config import ProvisionConfig
from gpuprov.core.resolver import InstallPlan
from gpuprov.core.versions import parse_nvcc_release
from gpuprov.errors import VerificationMismatch
from gpuprov.install.strategy import ExecutionResult, nvcc_path
from gpuprov.runtime import nvidia_smi
from gpuprov.runtime.executor import CommandResult, CommandRunner, CommandTimeout

logger = logging.getLogger(__name__)

HEALTHY = "healthy"
DEGRADED = "degraded"
FAILED = "failed"


@dataclass
class HealthReport:
    driver_ok: bool | None
    toolkit_ok: bool
    mig_ok: bool | None = None
    diagnostics: Dict[str, str] = field(default_factory=dict)
    results: List[ExecutionResult] = field(default_factory=list)

    def checks(self) -> Dict[str, bool]:
        out = {"toolkit": self.toolkit_ok}
        if self.driver_ok is not None:
            out["driver"] = self.driver_ok
        if self.mig_ok is not None:
            out["mig"] = self.mig_ok
        return out

    @property
    def status(self) -> str:
        values = list(self.checks().values())
        if all(values):
            return HEALTHY
        if any(values):
            return DEGRADED
        return FAILED

    @property
    def healthy(self) -> bool:
        return self.status == HEALTHY

    def raise_for_status(self) -> None:
        failed = [name for name, ok in self.checks().items() if not ok]
        if failed:
            detail = "; ".join(f"{name}: {self.diagnostics.get(name, 'failed')}" for name in failed)
            raise VerificationMismatch(f"verification failed ({detail})")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "driver_ok": self.driver_ok,
            "toolkit_ok": self.toolkit_ok,
            "mig_ok": self.mig_ok,
            "diagnostics": dict(self.diagnostics),
        }


def _query(runner: CommandRunner, argv: Sequence[str], cfg: ProvisionConfig) -> CommandResult:
    try:
        return runner(list(argv), cfg.timeout_s)
    except CommandTimeout as exc:
        return CommandResult(-1, "", str(exc))


def check_driver(plan: InstallPlan, runner: CommandRunner, cfg: ProvisionConfig) -> tuple[bool, str, CommandResult]:
    res = _query(runner, nvidia_smi.DRIVER_VERSION_QUERY, cfg)
    if not res.ok:
        return False, f"nvidia-smi exited {res.returncode}: {res.output.strip()}", res
    version = nvidia_smi.parse_driver_version(res.stdout)
    if version is None:
        return False, f"could not parse driver version from {res.stdout.strip()!r}", res
    if plan.driver_branch is None or not plan.driver_branch.matches(version):
        return False, f"driver {version} does not match branch {plan.driver_branch}", res
    return True, f"driver {version}", res


def check_toolkit(plan: InstallPlan, runner: CommandRunner, cfg: ProvisionConfig) -> tuple[bool, str, CommandResult]:
    res = _query(runner, [str(nvcc_path(plan.toolkit, cfg)), "--version"], cfg)
    if not res.ok:
        return False, f"nvcc exited {res.returncode}: {res.output.strip()}", res
    found = parse_nvcc_release(res.stdout)
    if found is None:
        return False, "could not parse 'release X.Y' from nvcc --version", res
    if found != plan.toolkit:
        return False, f"nvcc reports {found}, expected {plan.toolkit}", res
    return True, f"nvcc {found}", res


def check_mig(plan: InstallPlan, runner: CommandRunner, cfg: ProvisionConfig) -> tuple[bool, str, CommandResult]:
    res = _query(runner, nvidia_smi.MIG_MODE_QUERY, cfg)
    if not res.ok:
        return False, f"MIG query exited {res.returncode}: {res.output.strip()}", res
    modes = nvidia_smi.parse_mig_modes(res.stdout)
    off = [i for i in plan.mig_gpu_indices if modes.get(i, "").lower() != "enabled"]
    if off:
        return False, "MIG not enabled on GPU(s) " + ", ".join(f"{i} ({modes.get(i, 'missing')})" for i in off), res
    return True, "MIG enabled", res


def verify(plan: InstallPlan, runner: CommandRunner, cfg: ProvisionConfig) -> HealthReport:
    """Check the node against ``plan``; never raises for a mismatch."""

    report = HealthReport(driver_ok=None, toolkit_ok=False)

    def record(name: str, outcome: tuple[bool, str, CommandResult]) -> bool:
        ok, diag, res = outcome
        report.diagnostics[name] = diag
        report.results.append(ExecutionResult(f"verify_{name}", False, res.returncode, res.output))
        if not ok:
            logger.warning("%s: %s check failed: %s", plan.hostname, name, diag)
        return ok

    if plan.installs_driver:
        report.driver_ok = record("driver", check_driver(plan, runner, cfg))
    report.toolkit_ok = record("toolkit", check_toolkit(plan, runner, cfg))
    if plan.mig_enabled:
        report.mig_ok = record("mig", check_mig(plan, runner, cfg))
    logger.info("%s: verification %s", plan.hostname, report.status)
    return report


__all__ = ["HealthReport", "verify", "HEALTHY", "DEGRADED", "FAILED"]
