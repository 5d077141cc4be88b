"""``nvidia-smi`` query commands and parsers for their CSV output."""

from __future__ import annotations

from typing import Dict, List

NVIDIA_SMI = "nvidia-smi"

DRIVER_VERSION_QUERY = [NVIDIA_SMI, "--query-gpu=driver_version", "--format=csv,noheader"]
COMPUTE_APPS_QUERY = [NVIDIA_SMI, "--query-compute-apps=pid,process_name", "--format=csv,noheader"]
MIG_MODE_QUERY = [NVIDIA_SMI, "--query-gpu=index,mig.mode.current", "--format=csv,noheader"]
GPU_INVENTORY_QUERY = [
    NVIDIA_SMI,
    "--query-gpu=index,name,compute_cap,memory.total,driver_version",
    "--format=csv,noheader,nounits",
]


def _rows(output: str) -> List[List[str]]:
    rows = []
    for line in (output or "").splitlines():
        line = line.strip()
        if not line:
            continue
        rows.append([cell.strip() for cell in line.split(",")])
    return rows


def parse_driver_version(output: str) -> str | None:
    """First reported driver version; all GPUs on a host share one driver."""

    for row in _rows(output):
        if row and row[0] and row[0][0].isdigit():
            return row[0]
    return None


def parse_compute_apps(output: str) -> List[str]:
    apps = []
    for row in _rows(output):
        if row and row[0].lower().startswith("no running"):
            continue
        apps.append(", ".join(row))
    return apps


def parse_mig_modes(output: str) -> Dict[int, str]:
    """Map GPU index -> current MIG mode (``Enabled``/``Disabled``/``[N/A]``)."""

    modes: Dict[int, str] = {}
    for row in _rows(output):
        if len(row) < 2:
            continue
        try:
            modes[int(row[0])] = row[1]
        except ValueError:
            continue
    return modes


def parse_gpu_inventory(output: str) -> List[Dict[str, object]]:
    gpus: List[Dict[str, object]] = []
    for row in _rows(output):
        if len(row) < 4:
            continue
        try:
            index = int(row[0])
        except ValueError:
            continue
        memory: int | None
        try:
            memory = int(float(row[3]))
        except ValueError:
            memory = None
        gpus.append(
            {
                "index": index,
                "name": row[1],
                "compute_capability": row[2],
                "memory_mb": memory,
                "driver_version": row[4] if len(row) > 4 else None,
            }
        )
    return gpus


def mig_enable_command(index: int) -> List[str]:
    return [NVIDIA_SMI, "-i", str(index), "-mig", "1"]


__all__ = [
    "DRIVER_VERSION_QUERY",
    "COMPUTE_APPS_QUERY",
    "MIG_MODE_QUERY",
    "GPU_INVENTORY_QUERY",
    "parse_driver_version",
    "parse_compute_apps",
    "parse_mig_modes",
    "parse_gpu_inventory",
    "mig_enable_command",
]
