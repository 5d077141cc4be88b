"""Resolve detected GPUs plus user overrides into a concrete install plan.

Precedence: an explicit toolkit override is accepted only after it has been
validated against the toolkit majors every GPU family on the node supports;
without one the highest common major wins, at the matrix default release.
The driver target is the largest of the per-family floors and the chosen
toolkit's own driver floor. A driver override may raise that target but never
lower it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Tuple

from gpuprov.config import ProvisionConfig
from gpuprov.core.facts import GpuDescriptor, NodeFacts
from gpuprov.core.matrix import GpuMatrix, MatrixEntry
from gpuprov.core.versions import DriverBranch, ToolkitVersion
from gpuprov.errors import ConflictingOverride, IncompatibleMixedGpus, UnsupportedArchitecture

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InstallPlan:
    hostname: str
    driver_branch: DriverBranch | None
    toolkit: ToolkitVersion
    mode: str
    mig_enabled: bool = False
    mig_gpu_indices: Tuple[int, ...] = ()
    gpus: Tuple[GpuDescriptor, ...] = field(default_factory=tuple)
    # toolkit majors every family on the node supports; empty when unconstrained
    allowed_toolkits: FrozenSet[int] = frozenset()

    @property
    def installs_driver(self) -> bool:
        return self.driver_branch is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hostname": self.hostname,
            "driver_branch": str(self.driver_branch) if self.driver_branch else None,
            "cuda_version": str(self.toolkit),
            "install_mode": self.mode,
            "mig_enabled": self.mig_enabled,
            "mig_gpu_indices": list(self.mig_gpu_indices),
            "allowed_toolkit_majors": sorted(self.allowed_toolkits),
            "gpus": [g.to_dict() for g in self.gpus],
        }


def _entries_for(facts: NodeFacts, matrix: GpuMatrix, cfg: ProvisionConfig) -> Dict[str, MatrixEntry]:
    entries: Dict[str, MatrixEntry] = {}
    unknown: List[str] = []
    for family in facts.families():
        entry = matrix.get(family)
        if entry is None:
            unknown.append(family)
        else:
            entries[family] = entry
    if unknown:
        if cfg.toolkit_override is None:
            raise UnsupportedArchitecture(
                f"{facts.hostname}: no matrix entry for GPU architecture(s) {', '.join(unknown)}; "
                "set cuda_version_major_minor to install anyway"
            )
        logger.warning(
            "%s: architecture(s) %s not in matrix; proceeding with override %s",
            facts.hostname,
            ", ".join(unknown),
            cfg.cuda_version_major_minor,
        )
    return entries


def _intersect_toolkits(entries: Dict[str, MatrixEntry], hostname: str) -> FrozenSet[int]:
    allowed: FrozenSet[int] | None = None
    for entry in entries.values():
        allowed = entry.toolkits if allowed is None else allowed & entry.toolkits
    if allowed is None:
        return frozenset()
    if not allowed:
        detail = "; ".join(f"{fam}: {sorted(e.toolkits)}" for fam, e in entries.items())
        raise IncompatibleMixedGpus(f"{hostname}: GPU families share no CUDA toolkit major ({detail})")
    return allowed


def _choose_toolkit(allowed: FrozenSet[int], matrix: GpuMatrix, cfg: ProvisionConfig, hostname: str) -> ToolkitVersion:
    override = cfg.toolkit_override
    if override is not None:
        if allowed and override.major not in allowed:
            raise ConflictingOverride(
                f"{hostname}: cuda_version_major_minor={override} is outside the supported "
                f"toolkit majors {sorted(allowed)}"
            )
        return override
    if not allowed:
        raise UnsupportedArchitecture(
            f"{hostname}: no GPU to derive a toolkit from; set cuda_version_major_minor"
        )
    return matrix.release_for(max(allowed)).default


def _driver_target(
    entries: Dict[str, MatrixEntry],
    toolkit: ToolkitVersion,
    matrix: GpuMatrix,
    cfg: ProvisionConfig,
    hostname: str,
) -> DriverBranch:
    floors = [e.min_driver for e in entries.values()]
    toolkit_floor = matrix.release_for(toolkit.major).min_driver
    if toolkit_floor is not None:
        floors.append(toolkit_floor)
    floor = max(floors) if floors else None

    override = cfg.driver_override
    if override is not None:
        if floor is not None and override < floor:
            raise ConflictingOverride(
                f"{hostname}: driver_branch_override={override} is below the required floor {floor} "
                f"(GPU minimums and CUDA {toolkit})"
            )
        return override
    if floor is None:
        raise UnsupportedArchitecture(
            f"{hostname}: cannot derive a driver branch for unknown GPUs; set driver_branch_override"
        )
    return floor


def resolve(facts: NodeFacts, matrix: GpuMatrix, cfg: ProvisionConfig) -> InstallPlan:
    """Build the :class:`InstallPlan` for one node. Raises before anything is installed."""

    hostname = facts.hostname
    no_gpu = cfg.ci_no_gpu or not facts.gpus

    if no_gpu:
        if cfg.mig_enabled and not cfg.ci_no_gpu:
            raise ConflictingOverride(f"{hostname}: mig_enabled requested but no GPU detected")
        if cfg.mig_enabled:
            logger.warning("%s: ci_no_gpu is set; ignoring mig_enabled", hostname)
        toolkit = _choose_toolkit(frozenset(), matrix, cfg, hostname)
        plan = InstallPlan(
            hostname=hostname,
            driver_branch=None,
            toolkit=toolkit,
            mode=cfg.resolved_mode(),
            gpus=facts.gpus,
        )
        logger.info("%s: no-GPU plan, toolkit %s only", hostname, toolkit)
        return plan

    entries = _entries_for(facts, matrix, cfg)
    allowed = _intersect_toolkits(entries, hostname)
    toolkit = _choose_toolkit(allowed, matrix, cfg, hostname)
    driver = _driver_target(entries, toolkit, matrix, cfg, hostname)

    mig_indices: Tuple[int, ...] = ()
    if cfg.mig_enabled:
        mig_indices = tuple(
            gpu.index for gpu in facts.gpus if gpu.family in entries and entries[gpu.family].mig
        )
        if not mig_indices:
            raise ConflictingOverride(
                f"{hostname}: mig_enabled requested but no MIG-capable GPU among {', '.join(facts.families())}"
            )

    plan = InstallPlan(
        hostname=hostname,
        driver_branch=driver,
        toolkit=toolkit,
        mode=cfg.resolved_mode(),
        mig_enabled=bool(mig_indices),
        mig_gpu_indices=mig_indices,
        gpus=facts.gpus,
        allowed_toolkits=allowed,
    )
    logger.info(
        "%s: plan driver=%s cuda=%s mode=%s mig=%s",
        hostname,
        driver,
        toolkit,
        plan.mode,
        plan.mig_enabled,
    )
    return plan


__all__ = ["InstallPlan", "resolve"]
