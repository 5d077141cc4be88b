"""Provisioning configuration: loading, overrides and validation."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List

import jsonschema
import yaml

from gpuprov.core.versions import DriverBranch, ToolkitVersion
from gpuprov.errors import ConfigError

CONFIG_SCHEMA_PATH = Path(__file__).resolve().parent / "schema" / "provision_config.schema.json"

ONLINE = "online"
OFFLINE = "offline"
OFFLINE_RUNFILE = "offline-runfile"
OFFLINE_LOCAL_REPO = "offline-local-repo"


@dataclass
class ProvisionConfig:
    install_mode: str = ONLINE
    cuda_version_major_minor: str | None = None
    mig_enabled: bool = False
    driver_branch_override: str | None = None
    ci_no_gpu: bool = False
    artifacts_dir: str = "files"
    cuda_runfile: str | None = None
    driver_runfile: str | None = None
    local_repo_package: str | None = None
    package_manager: str = "apt"
    cuda_install_root: str = "/usr/local"
    retries: int = 3
    backoff_s: float = 1.0
    timeout_s: float = 3600.0
    max_workers: int = 4
    matrix_path: str | None = None

    def __post_init__(self) -> None:
        if self.driver_branch_override is not None:
            self.driver_branch_override = str(self.driver_branch_override)

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "ProvisionConfig":
        data = normalize_config(dict(data))
        issues = validate_config(data)
        if issues:
            raise ConfigError("; ".join(issues))
        return cls(**data)

    @property
    def toolkit_override(self) -> ToolkitVersion | None:
        if not self.cuda_version_major_minor:
            return None
        return ToolkitVersion.parse(self.cuda_version_major_minor)

    @property
    def driver_override(self) -> DriverBranch | None:
        if not self.driver_branch_override:
            return None
        return DriverBranch.parse(self.driver_branch_override)

    def resolved_mode(self) -> str:
        """Map the user-facing ``offline`` onto a concrete offline strategy."""

        if self.install_mode == OFFLINE:
            return OFFLINE_LOCAL_REPO if self.local_repo_package else OFFLINE_RUNFILE
        return self.install_mode

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def load_config_schema() -> Dict[str, Any]:
    with open(CONFIG_SCHEMA_PATH, "r", encoding="utf-8") as f:
        return json.load(f)


_VERSION_KEYS = ("cuda_version_major_minor", "driver_branch_override")


def normalize_config(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Turn integer version keys into strings; reject floats, which lose digits (12.10 -> 12.1)."""

    for key in _VERSION_KEYS:
        val = cfg.get(key)
        if isinstance(val, bool) or val is None:
            continue
        if isinstance(val, int):
            cfg[key] = str(val)
        elif isinstance(val, float):
            raise ConfigError(f"{key}: {val!r} was read as a number; quote it so minor versions such as 12.10 survive")
    return cfg


def validate_config(cfg: Dict[str, Any]) -> List[str]:
    """Return a list of human-readable issues; empty when ``cfg`` is valid."""

    if not isinstance(cfg, dict):
        return ["config must be an object"]
    validator = jsonschema.Draft202012Validator(load_config_schema())
    errs: List[str] = []
    for err in sorted(validator.iter_errors(cfg), key=lambda e: list(e.path)):
        where = ".".join(str(p) for p in err.path) or "<root>"
        errs.append(f"{where}: {err.message}")
    if cfg.get("install_mode") == OFFLINE_LOCAL_REPO and not cfg.get("local_repo_package"):
        errs.append("local_repo_package required when install_mode=offline-local-repo")
    return errs


def load_document(path: str | Path) -> Any:
    """Read a JSON or YAML document."""

    p = Path(path)
    with open(p, "r", encoding="utf-8") as f:
        if p.suffix.lower() == ".json":
            return json.load(f)
        return yaml.safe_load(f)


def load_config_file(path: str | Path) -> Dict[str, Any]:
    """Read a JSON or YAML config file into a plain dict."""

    p = Path(path)
    data = load_document(p)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{p}: top-level config must be a mapping")
    return data


def parse_override(override: str) -> Dict[str, Any]:
    # key=value on the flat config; JSON-ish values, version keys kept verbatim
    if "=" not in override:
        raise ConfigError(f"override '{override}' must look like key=value")
    key, val = override.split("=", 1)
    key = key.strip()
    if not key or "." in key:
        raise ConfigError(f"override key '{key}' must be a top-level config key")
    if key in _VERSION_KEYS:
        return {key: val}
    try:
        return {key: json.loads(val)}
    except json.JSONDecodeError:
        return {key: val}


__all__ = [
    "ProvisionConfig",
    "ONLINE",
    "OFFLINE",
    "OFFLINE_RUNFILE",
    "OFFLINE_LOCAL_REPO",
    "normalize_config",
    "validate_config",
    "load_document",
    "load_config_file",
    "load_config_schema",
    "parse_override",
]
