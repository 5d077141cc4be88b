"""Local GPU fact gathering via NVML, falling back to ``nvidia-smi``."""

from __future__ import annotations

import logging
import socket
from typing import Any, Dict, List, Tuple

try:  # pragma: no cover - optional dependency guard
    import pynvml
except Exception:  # pragma: no cover - handled in callers
    pynvml = None  # type: ignore[assignment]

from gpuprov.core.facts import NodeFacts
from gpuprov.runtime import nvidia_smi
from gpuprov.runtime.executor import CommandRunner, CommandTimeout, SubprocessRunner

logger = logging.getLogger(__name__)


def _decode(value: Any) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)


def _collect_nvml() -> Tuple[List[Dict[str, Any]], str | None] | None:
    """Return (gpus, driver) from NVML, or ``None`` when NVML is unusable."""

    if pynvml is None:  # pragma: no cover - exercised when NVML missing
        return None
    try:
        pynvml.nvmlInit()
    except pynvml.NVMLError as exc:
        logger.debug("NVML init failed: %s", exc)
        return None

    gpus: List[Dict[str, Any]] = []
    driver: str | None = None
    try:
        try:
            driver = _decode(pynvml.nvmlSystemGetDriverVersion())
        except pynvml.NVMLError:
            driver = None
        count = pynvml.nvmlDeviceGetCount()
        for index in range(count):
            handle = pynvml.nvmlDeviceGetHandleByIndex(index)
            gpu: Dict[str, Any] = {"index": index, "name": "unknown", "compute_capability": "0.0"}
            try:
                gpu["name"] = _decode(pynvml.nvmlDeviceGetName(handle))
            except pynvml.NVMLError:
                pass
            try:
                major, minor = pynvml.nvmlDeviceGetCudaComputeCapability(handle)
                gpu["compute_capability"] = f"{major}.{minor}"
            except pynvml.NVMLError:
                pass
            try:
                gpu["memory_mb"] = int(pynvml.nvmlDeviceGetMemoryInfo(handle).total // (1024 * 1024))
            except pynvml.NVMLError:
                pass
            gpus.append(gpu)
    except pynvml.NVMLError as exc:
        logger.warning("NVML device enumeration failed: %s", exc)
        return None
    finally:
        try:
            pynvml.nvmlShutdown()
        except pynvml.NVMLError:
            pass
    return gpus, driver


def _collect_nvidia_smi(runner: CommandRunner, timeout: float) -> Tuple[List[Dict[str, Any]], str | None]:
    try:
        res = runner(list(nvidia_smi.GPU_INVENTORY_QUERY), timeout)
    except CommandTimeout as exc:
        logger.warning("nvidia-smi inventory timed out: %s", exc)
        return [], None
    if not res.ok:
        logger.info("nvidia-smi unavailable (exit %d); assuming no GPU", res.returncode)
        return [], None
    gpus = nvidia_smi.parse_gpu_inventory(res.stdout)
    driver = next((g["driver_version"] for g in gpus if g.get("driver_version")), None)
    for g in gpus:
        g.pop("driver_version", None)
    return gpus, driver


def gather_local_facts(runner: CommandRunner | None = None, timeout: float = 30.0) -> NodeFacts:
    """Describe the GPUs of this host as :class:`NodeFacts`."""

    collected = _collect_nvml()
    if collected is None:
        collected = _collect_nvidia_smi(runner or SubprocessRunner(), timeout)
    gpus, driver = collected
    facts = NodeFacts.from_dict({"hostname": socket.gethostname(), "gpus": gpus, "driver_version": driver})
    logger.info(
        "%s: %d GPU(s) [%s], driver %s",
        facts.hostname,
        len(facts.gpus),
        ", ".join(f"{g.name} ({g.family} {g.compute_capability_str})" for g in facts.gpus),
        facts.driver_version or "none",
    )
    return facts


__all__ = ["gather_local_facts"]
