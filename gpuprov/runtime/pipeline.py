"""Per-node provisioning pipeline and bounded fan-out across nodes.

Inside a node the steps are strictly sequential (resolve, driver, MIG,
toolkit, verify) because installers mutate shared system state. Nodes are
independent and run concurrently, bounded by ``max_workers``. Cancellation is
checked between steps only; an installer that is already running is not
interrupted.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Sequence

from gpuprov.config import ProvisionConfig
from gpuprov.core.facts import NodeFacts
from gpuprov.core.matrix import GpuMatrix
from gpuprov.core.resolver import resolve
from gpuprov.errors import Cancelled, ProvisionError
from gpuprov.install.mig import enable_mig
from gpuprov.install.strategy import DRIVER, install, steps_for
from gpuprov.report import STATUS_CANCELLED, STATUS_FAILED, NodeReport, RunReport
from gpuprov.runtime.executor import CommandRunner
from gpuprov.verify.verifier import verify

logger = logging.getLogger(__name__)

RunnerFactory = Callable[[NodeFacts], CommandRunner]


def _checkpoint(cancel: threading.Event | None, hostname: str, next_step: str) -> None:
    if cancel is not None and cancel.is_set():
        raise Cancelled(f"{hostname}: cancelled before {next_step}")


def run_node(
    facts: NodeFacts,
    matrix: GpuMatrix,
    cfg: ProvisionConfig,
    runner: CommandRunner,
    cancel: threading.Event | None = None,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> NodeReport:
    """Resolve, install and verify one node. Never raises a :class:`ProvisionError`.

    Failures are recorded on the returned report together with every
    result produced before the abort.
    """

    report = NodeReport(hostname=facts.hostname)
    try:
        _checkpoint(cancel, facts.hostname, "resolve")
        plan = resolve(facts, matrix, cfg)
        report.plan = plan

        for step in steps_for(plan):
            _checkpoint(cancel, facts.hostname, step.operation)
            report.results.append(install(step, plan, runner, cfg, sleep=sleep))
            if step.component == DRIVER and plan.mig_enabled:
                _checkpoint(cancel, facts.hostname, "enable_mig")
                report.results.append(enable_mig(plan, runner, cfg))

        _checkpoint(cancel, facts.hostname, "verify")
        report.health = verify(plan, runner, cfg)
        report.results.extend(report.health.results)
    except Cancelled as exc:
        report.status = STATUS_CANCELLED
        report.error = type(exc).__name__
        report.error_message = str(exc)
        logger.warning("%s", exc)
    except ProvisionError as exc:
        report.status = STATUS_FAILED
        report.error = type(exc).__name__
        report.error_message = str(exc)
        if exc.result is not None:
            report.results.append(exc.result)
        logger.error("%s: %s: %s", facts.hostname, report.error, exc)
    return report


def _run_isolated(
    facts: NodeFacts,
    matrix: GpuMatrix,
    cfg: ProvisionConfig,
    runner_factory: RunnerFactory,
    cancel: threading.Event | None,
) -> NodeReport:
    # an unexpected error on one node must not take the other reports with it
    try:
        return run_node(facts, matrix, cfg, runner_factory(facts), cancel)
    except Exception as exc:
        logger.exception("%s: unexpected error", facts.hostname)
        return NodeReport(
            hostname=facts.hostname,
            status=STATUS_FAILED,
            error=type(exc).__name__,
            error_message=str(exc),
        )


def run_fleet(
    nodes: Sequence[NodeFacts],
    matrix: GpuMatrix,
    cfg: ProvisionConfig,
    runner_factory: RunnerFactory,
    max_workers: int | None = None,
    cancel: threading.Event | None = None,
) -> RunReport:
    """Run one independent pipeline per node; report order follows ``nodes``."""

    workers = max(1, int(max_workers or cfg.max_workers))
    if not nodes:
        return RunReport()
    with ThreadPoolExecutor(max_workers=min(workers, len(nodes)), thread_name_prefix="gpuprov") as pool:
        futures = [
            pool.submit(_run_isolated, facts, matrix, cfg, runner_factory, cancel)
            for facts in nodes
        ]
        reports: List[NodeReport] = [f.result() for f in futures]
    run = RunReport(nodes=reports)
    logger.info("run finished: %d node(s), changed=%d", len(reports), run.changed_count)
    return run


__all__ = ["run_node", "run_fleet", "RunnerFactory"]
