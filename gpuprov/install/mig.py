"""MIG mode enablement for the GPUs selected in the plan."""

from __future__ import annotations

import logging
from typing import List

from gpuprov.config import ProvisionConfig
from gpuprov.core.resolver import InstallPlan
from gpuprov.errors import InstallFailed, InstallTimeout
from gpuprov.install.strategy import ExecutionResult
from gpuprov.runtime import nvidia_smi
from gpuprov.runtime.executor import CommandRunner, CommandTimeout

logger = logging.getLogger(__name__)

OPERATION = "enable_mig"


def enable_mig(plan: InstallPlan, runner: CommandRunner, cfg: ProvisionConfig) -> ExecutionResult:
    if not plan.mig_enabled:
        return ExecutionResult(OPERATION, False, 0, "MIG not requested")

    changed: List[int] = []
    try:
        res = runner(list(nvidia_smi.MIG_MODE_QUERY), cfg.timeout_s)
        if not res.ok:
            raise InstallFailed(
                f"{OPERATION}: MIG mode query exited {res.returncode}",
                result=ExecutionResult(OPERATION, False, res.returncode, res.output),
            )
        modes = nvidia_smi.parse_mig_modes(res.stdout)
        for index in plan.mig_gpu_indices:
            if modes.get(index, "").lower() == "enabled":
                continue
            res = runner(nvidia_smi.mig_enable_command(index), cfg.timeout_s)
            if not res.ok:
                raise InstallFailed(
                    f"{OPERATION}: enabling MIG on GPU {index} exited {res.returncode}",
                    result=ExecutionResult(OPERATION, bool(changed), res.returncode, res.output),
                )
            changed.append(index)
    except CommandTimeout as exc:
        raise InstallTimeout(str(exc), result=ExecutionResult(OPERATION, bool(changed), -1, str(exc))) from exc

    if not changed:
        return ExecutionResult(OPERATION, False, 0, "MIG already enabled")
    logger.info("%s: enabled MIG on GPU(s) %s", plan.hostname, ", ".join(map(str, changed)))
    return ExecutionResult(OPERATION, True, 0, f"MIG enabled on GPU(s) {', '.join(map(str, changed))}")


__all__ = ["enable_mig"]
