from typing import Any, Dict, List

import pytest

from gpuprov.config import ProvisionConfig
from gpuprov.core.facts import NodeFacts
from gpuprov.core.matrix import GpuMatrix
from gpuprov.core.versions import DriverBranch, ToolkitVersion
from gpuprov.core.resolver import resolve
from gpuprov.errors import ConflictingOverride, IncompatibleMixedGpus, UnsupportedArchitecture


@pytest.fixture()
def matrix() -> GpuMatrix:
    return GpuMatrix.from_document(
        {
            "toolkit_releases": [
                {"major": 11, "default": "11.8", "min_driver": "520"},
                {"major": 12, "default": "12.9", "min_driver": "525"},
                {"major": 13, "default": "13.0"},
            ],
            "architectures": [
                {"family": "Pascal", "min_driver": "470", "toolkits": [11, 12], "mig": False},
                {"family": "Ampere", "min_driver": "525", "toolkits": [11, 12, 13], "mig": True},
                {"family": "Hopper", "min_driver": "550", "toolkits": [12, 13], "mig": True},
                {"family": "Kepler", "min_driver": "470", "toolkits": [11], "mig": False},
            ],
        }
    )


def _node(*ccs: str, hostname: str = "gpu01") -> NodeFacts:
    gpus: List[Dict[str, Any]] = [{"name": f"gpu{i}", "compute_capability": cc} for i, cc in enumerate(ccs)]
    return NodeFacts.from_dict({"hostname": hostname, "gpus": gpus})


def test_homogeneous_node_picks_highest_toolkit(matrix: GpuMatrix) -> None:
    plan = resolve(_node("9.0", "9.0"), matrix, ProvisionConfig())
    assert plan.toolkit == ToolkitVersion(13, 0)
    assert plan.driver_branch == DriverBranch.parse("550")
    assert plan.mode == "online"
    assert plan.mig_enabled is False
    assert len(plan.gpus) == 2


def test_toolkit_release_floor_raises_driver_target(matrix: GpuMatrix) -> None:
    plan = resolve(_node("6.1"), matrix, ProvisionConfig())
    assert plan.toolkit == ToolkitVersion(12, 9)
    # Pascal floor 470 < CUDA 12 floor 525
    assert plan.driver_branch == DriverBranch.parse("525")


def test_heterogeneous_node_takes_max_floor_and_intersection(matrix: GpuMatrix) -> None:
    plan = resolve(_node("8.0", "9.0"), matrix, ProvisionConfig())
    assert plan.allowed_toolkits == frozenset({12, 13})
    assert plan.toolkit.major == 13
    assert plan.driver_branch == DriverBranch.parse("550")


def test_heterogeneous_without_common_toolkit_fails(matrix: GpuMatrix) -> None:
    with pytest.raises(IncompatibleMixedGpus):
        resolve(_node("3.5", "9.0"), matrix, ProvisionConfig())


def test_valid_override_is_honoured_below_default(matrix: GpuMatrix) -> None:
    plan = resolve(_node("9.0"), matrix, ProvisionConfig(cuda_version_major_minor="12.4"))
    assert plan.toolkit == ToolkitVersion(12, 4)


def test_override_outside_allowed_set_conflicts(matrix: GpuMatrix) -> None:
    with pytest.raises(ConflictingOverride):
        resolve(_node("9.0"), matrix, ProvisionConfig(cuda_version_major_minor="11.8"))
    # mixed node: 11 is valid for Ampere alone but not for Hopper
    with pytest.raises(ConflictingOverride):
        resolve(_node("8.0", "9.0"), matrix, ProvisionConfig(cuda_version_major_minor="11.8"))


def test_driver_override_below_floor_conflicts(matrix: GpuMatrix) -> None:
    with pytest.raises(ConflictingOverride):
        resolve(_node("9.0"), matrix, ProvisionConfig(driver_branch_override="535"))


def test_driver_override_above_floor_is_used(matrix: GpuMatrix) -> None:
    plan = resolve(_node("9.0"), matrix, ProvisionConfig(driver_branch_override="570"))
    assert plan.driver_branch == DriverBranch.parse("570")


def test_unknown_architecture_without_override(matrix: GpuMatrix) -> None:
    with pytest.raises(UnsupportedArchitecture):
        resolve(_node("42.0"), matrix, ProvisionConfig())


def test_unknown_architecture_with_toolkit_override(matrix: GpuMatrix) -> None:
    # the toolkit release floor (CUDA 12 -> 525) supplies the driver target
    plan = resolve(_node("42.0"), matrix, ProvisionConfig(cuda_version_major_minor="12.6"))
    assert plan.toolkit == ToolkitVersion(12, 6)
    assert plan.driver_branch == DriverBranch.parse("525")

    # CUDA 13 has no floor in this matrix, so the driver must be given explicitly
    with pytest.raises(UnsupportedArchitecture):
        resolve(_node("42.0"), matrix, ProvisionConfig(cuda_version_major_minor="13.0"))
    plan = resolve(
        _node("42.0"),
        matrix,
        ProvisionConfig(cuda_version_major_minor="13.0", driver_branch_override="580"),
    )
    assert plan.driver_branch == DriverBranch.parse("580")


def test_unknown_plus_known_uses_known_constraints(matrix: GpuMatrix) -> None:
    plan = resolve(_node("9.0", "42.0"), matrix, ProvisionConfig(cuda_version_major_minor="13.0"))
    assert plan.driver_branch == DriverBranch.parse("550")


def test_mig_enabled_only_on_capable_gpus(matrix: GpuMatrix) -> None:
    plan = resolve(_node("6.1", "8.0"), matrix, ProvisionConfig(mig_enabled=True))
    assert plan.mig_enabled is True
    assert plan.mig_gpu_indices == (1,)


def test_mig_requested_without_capable_gpu_conflicts(matrix: GpuMatrix) -> None:
    with pytest.raises(ConflictingOverride):
        resolve(_node("6.1"), matrix, ProvisionConfig(mig_enabled=True))


def test_no_gpu_node_needs_toolkit_override(matrix: GpuMatrix) -> None:
    with pytest.raises(UnsupportedArchitecture):
        resolve(_node(), matrix, ProvisionConfig())
    plan = resolve(_node(), matrix, ProvisionConfig(cuda_version_major_minor="13.0"))
    assert plan.driver_branch is None
    assert plan.installs_driver is False
    assert plan.toolkit == ToolkitVersion(13, 0)


def test_ci_no_gpu_skips_driver_even_with_gpus(matrix: GpuMatrix) -> None:
    cfg = ProvisionConfig(ci_no_gpu=True, cuda_version_major_minor="13.0", install_mode="offline")
    plan = resolve(_node("9.0"), matrix, cfg)
    assert plan.driver_branch is None
    assert plan.mode == "offline-runfile"


def test_plan_to_dict_is_serialisable(matrix: GpuMatrix) -> None:
    doc = resolve(_node("9.0"), matrix, ProvisionConfig(mig_enabled=True)).to_dict()
    assert doc["driver_branch"] == "550"
    assert doc["cuda_version"] == "13.0"
    assert doc["mig_gpu_indices"] == [0]
    assert doc["gpus"][0]["architecture"] == "Hopper"


def test_ci_no_gpu_warns_when_mig_requested(matrix: GpuMatrix, caplog) -> None:
    cfg = ProvisionConfig(ci_no_gpu=True, mig_enabled=True, cuda_version_major_minor="13.0")
    with caplog.at_level("WARNING", logger="gpuprov.core.resolver"):
        plan = resolve(_node("9.0"), matrix, cfg)
    assert plan.mig_enabled is False
    assert "ignoring mig_enabled" in caplog.text
