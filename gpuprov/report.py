from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List

from gpuprov.core.resolver import InstallPlan
from gpuprov.install.strategy import ExecutionResult
from gpuprov.verify.verifier import HealthReport

STATUS_OK = "ok"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"


@dataclass
class NodeReport:
    hostname: str
    status: str = STATUS_OK
    plan: InstallPlan | None = None
    results: List[ExecutionResult] = field(default_factory=list)
    health: HealthReport | None = None
    error: str | None = None
    error_message: str | None = None

    @property
    def changed_count(self) -> int:
        return sum(1 for r in self.results if r.changed)

    @property
    def succeeded(self) -> bool:
        return self.status == STATUS_OK and self.health is not None and self.health.healthy

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hostname": self.hostname,
            "status": self.status,
            "changed": self.changed_count,
            "plan": self.plan.to_dict() if self.plan else None,
            "results": [r.to_dict() for r in self.results],
            "health": self.health.to_dict() if self.health else None,
            "error": self.error,
            "error_message": self.error_message,
        }


@dataclass
class RunReport:
    nodes: List[NodeReport] = field(default_factory=list)

    @property
    def changed_count(self) -> int:
        return sum(n.changed_count for n in self.nodes)

    @property
    def succeeded(self) -> bool:
        return bool(self.nodes) and all(n.succeeded for n in self.nodes)

    def recap(self) -> str:
        # one line per host, in the spirit of a PLAY RECAP
        lines = []
        for n in self.nodes:
            health = n.health.status if n.health else "-"
            lines.append(f"{n.hostname}: status={n.status} changed={n.changed_count} health={health}")
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "changed": self.changed_count,
            "succeeded": self.succeeded,
            "nodes": [n.to_dict() for n in self.nodes],
        }


def write_json_report(out_dir: str, report: RunReport, name: str = "report.json") -> str:
    os.makedirs(out_dir, exist_ok=True)
    path = os.path.join(out_dir, name)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(report.to_dict(), f, indent=2, ensure_ascii=False)
    return path


__all__ = ["NodeReport", "RunReport", "write_json_report", "STATUS_OK", "STATUS_FAILED", "STATUS_CANCELLED"]
