from pathlib import Path

import pytest

from gpuprov.config import (
    OFFLINE_LOCAL_REPO,
    OFFLINE_RUNFILE,
    ProvisionConfig,
    load_config_file,
    normalize_config,
    parse_override,
    validate_config,
)
from gpuprov.core.versions import DriverBranch, ToolkitVersion
from gpuprov.errors import ConfigError


def test_defaults_are_valid() -> None:
    cfg = ProvisionConfig.from_mapping({})
    assert cfg.install_mode == "online"
    assert cfg.retries == 3
    assert cfg.mig_enabled is False
    assert cfg.toolkit_override is None
    assert cfg.driver_override is None


def test_offline_maps_to_runfile_or_local_repo() -> None:
    assert ProvisionConfig(install_mode="offline").resolved_mode() == OFFLINE_RUNFILE
    cfg = ProvisionConfig(install_mode="offline", local_repo_package="cuda-repo.deb")
    assert cfg.resolved_mode() == OFFLINE_LOCAL_REPO


def test_overrides_parse_to_versions() -> None:
    cfg = ProvisionConfig.from_mapping({"cuda_version_major_minor": "13.0", "driver_branch_override": 580})
    assert cfg.toolkit_override == ToolkitVersion(13, 0)
    assert cfg.driver_override == DriverBranch.parse("580")


def test_validate_config_reports_issues() -> None:
    issues = validate_config({"install_mode": "carrier-pigeon", "retries": 0, "bogus": 1})
    joined = "\n".join(issues)
    assert "install_mode" in joined
    assert "retries" in joined
    assert "bogus" in joined
    assert validate_config({"install_mode": "offline-local-repo"}) == [
        "local_repo_package required when install_mode=offline-local-repo"
    ]


def test_from_mapping_raises_config_error() -> None:
    with pytest.raises(ConfigError):
        ProvisionConfig.from_mapping({"mig_enabled": "yes"})


def test_normalize_config_stringifies_integer_versions() -> None:
    cfg = normalize_config({"cuda_version_major_minor": "12.10", "driver_branch_override": 550, "mig_enabled": True})
    assert cfg["cuda_version_major_minor"] == "12.10"
    assert cfg["driver_branch_override"] == "550"
    assert cfg["mig_enabled"] is True


def test_float_versions_are_rejected_not_truncated(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="quote it"):
        normalize_config({"cuda_version_major_minor": 12.10})
    with pytest.raises(ConfigError, match="driver_branch_override"):
        normalize_config({"driver_branch_override": 550.54})

    y = tmp_path / "cfg.yaml"
    y.write_text("cuda_version_major_minor: 12.10\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        ProvisionConfig.from_mapping(load_config_file(y))
    y.write_text("cuda_version_major_minor: '12.10'\n", encoding="utf-8")
    assert ProvisionConfig.from_mapping(load_config_file(y)).toolkit_override == ToolkitVersion(12, 10)


def test_load_config_file_yaml_and_json(tmp_path: Path) -> None:
    y = tmp_path / "extravars"
    y.write_text('ci_no_gpu: true\ncuda_install_mode: "offline"\n', encoding="utf-8")
    assert load_config_file(y) == {"ci_no_gpu": True, "cuda_install_mode": "offline"}

    j = tmp_path / "cfg.json"
    j.write_text('{"install_mode": "online"}', encoding="utf-8")
    assert load_config_file(j) == {"install_mode": "online"}

    empty = tmp_path / "empty.yaml"
    empty.write_text("", encoding="utf-8")
    assert load_config_file(empty) == {}

    bad = tmp_path / "list.yaml"
    bad.write_text("- 1\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config_file(bad)


def test_parse_override_is_flat() -> None:
    assert parse_override("retries=5") == {"retries": 5}
    assert parse_override("install_mode=offline") == {"install_mode": "offline"}
    assert parse_override("mig_enabled=true") == {"mig_enabled": True}
    assert parse_override("cuda_version_major_minor=12.10") == {"cuda_version_major_minor": "12.10"}
    assert parse_override("driver_branch_override=550") == {"driver_branch_override": "550"}
    with pytest.raises(ConfigError):
        parse_override("no-equals-sign")
    with pytest.raises(ConfigError, match="top-level"):
        parse_override("install.mode=online")
