import pytest

from conftest import FakeHost
from gpuprov.config import ProvisionConfig
from gpuprov.core.resolver import InstallPlan
from gpuprov.core.versions import DriverBranch, ToolkitVersion
from gpuprov.errors import InstallFailed
from gpuprov.install.mig import enable_mig


def _plan(indices=(0, 1)) -> InstallPlan:
    return InstallPlan(
        hostname="gpu01",
        driver_branch=DriverBranch.parse("550"),
        toolkit=ToolkitVersion(13, 0),
        mode="online",
        mig_enabled=bool(indices),
        mig_gpu_indices=tuple(indices),
    )


def test_enable_mig_only_where_needed_and_idempotent() -> None:
    host = FakeHost(driver_version="550.54.15", mig={0: "Enabled", 1: "Disabled"})
    first = enable_mig(_plan(), host, ProvisionConfig())
    assert first.changed is True
    assert host.mutating_calls() == [["nvidia-smi", "-i", "1", "-mig", "1"]]

    second = enable_mig(_plan(), host, ProvisionConfig())
    assert second.changed is False


def test_enable_mig_noop_when_not_planned() -> None:
    host = FakeHost()
    assert enable_mig(_plan(indices=()), host, ProvisionConfig()).changed is False
    assert host.calls == []


def test_enable_mig_query_failure() -> None:
    host = FakeHost(driver_version=None)
    with pytest.raises(InstallFailed):
        enable_mig(_plan(), host, ProvisionConfig())
