from __future__ import annotations

import argparse
import json
import logging
from typing import Any, Dict, List

from gpuprov.config import (
    ProvisionConfig,
    load_config_file,
    load_config_schema,
    load_document,
    normalize_config,
    parse_override,
    validate_config,
)
from gpuprov.core.facts import NodeFacts, parse_fleet_facts
from gpuprov.core.matrix import GpuMatrix, load_matrix
from gpuprov.core.resolver import resolve
from gpuprov.errors import ConfigError, MatrixLoadError, ProvisionError
from gpuprov.report import RunReport, write_json_report
from gpuprov.runtime.executor import SubprocessRunner
from gpuprov.runtime.facts import gather_local_facts
from gpuprov.runtime.pipeline import run_fleet

logger = logging.getLogger(__name__)

EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_MATRIX = 3
EXIT_RUN_FAILED = 4
EXIT_NOT_IDEMPOTENT = 5


def _add_common(p: argparse.ArgumentParser) -> None:
    p.add_argument("-c", "--config", required=True, help="JSON or YAML config path")
    p.add_argument("--override", action="append", default=[], help="Override key=val (repeatable)")
    p.add_argument("--facts", help="Facts file (JSON/YAML) instead of probing this host")
    p.add_argument("--matrix", help="GPU matrix YAML (defaults to the packaged matrix)")
    p.add_argument("--dry-run", action="store_true", help="Validate config and exit")
    p.add_argument("--print-schema", action="store_true", help="Print the config schema and exit")


def _build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="gpuprov")
    ap.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = ap.add_subparsers(dest="cmd", required=True)

    factsp = sub.add_parser("facts", help="Print GPU facts of this host")
    factsp.add_argument("--timeout", type=float, default=30.0)

    planp = sub.add_parser("plan", help="Resolve install plans without installing")
    _add_common(planp)

    runp = sub.add_parser("run", help="Install and verify driver/CUDA on this host")
    _add_common(runp)
    runp.add_argument("--out", help="Directory for report.json")

    idemp = sub.add_parser("check-idempotence", help="Converge twice; the second run must change nothing")
    _add_common(idemp)
    idemp.add_argument("--out", help="Directory for run01/run02 reports")
    return ap


def _load_cfg(args: argparse.Namespace) -> Dict[str, Any]:
    cfg: Dict[str, Any] = load_config_file(args.config) if args.config else {}
    for ov in args.override:
        cfg.update(parse_override(ov))
    if args.matrix:
        cfg["matrix_path"] = args.matrix
    return normalize_config(cfg)


def _load_nodes(args: argparse.Namespace, cfg: ProvisionConfig) -> List[NodeFacts]:
    if args.facts:
        try:
            return parse_fleet_facts(load_document(args.facts))
        except ValueError as exc:
            raise ConfigError(f"{args.facts}: {exc}") from exc
    return [gather_local_facts(SubprocessRunner(), timeout=min(cfg.timeout_s, 60.0))]


def _plan_all(nodes: List[NodeFacts], matrix: GpuMatrix, cfg: ProvisionConfig) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    for facts in nodes:
        try:
            out.append({"hostname": facts.hostname, "plan": resolve(facts, matrix, cfg).to_dict()})
        except ProvisionError as exc:
            out.append({"hostname": facts.hostname, "error": type(exc).__name__, "message": str(exc)})
    return out


def _converge(nodes: List[NodeFacts], matrix: GpuMatrix, cfg: ProvisionConfig) -> RunReport:
    if len(nodes) != 1:
        raise ConfigError("run converges the local host only; the facts file must describe one node")
    return run_fleet(nodes, matrix, cfg, lambda _facts: SubprocessRunner(), max_workers=1)


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
    )

    try:
        if args.cmd == "facts":
            facts = gather_local_facts(SubprocessRunner(), timeout=args.timeout)
            print(json.dumps(facts.to_dict(), indent=2))
            return 0

        if args.print_schema:
            print(json.dumps(load_config_schema(), indent=2))
            return 0
        raw = _load_cfg(args)
        issues = validate_config(raw)
        if args.dry_run:
            if issues:
                print("Config issues:\n- " + "\n- ".join(issues))
                return EXIT_CONFIG
            print("Config OK")
            return 0
        if issues:
            raise ConfigError("; ".join(issues))
        cfg = ProvisionConfig.from_mapping(raw)
        matrix = load_matrix(cfg.matrix_path)
        nodes = _load_nodes(args, cfg)

        if args.cmd == "plan":
            print(json.dumps(_plan_all(nodes, matrix, cfg), indent=2))
            return 0

        if args.cmd == "run":
            report = _converge(nodes, matrix, cfg)
            print(report.recap())
            if args.out:
                write_json_report(args.out, report)
            return 0 if report.succeeded else EXIT_FAILED

        if args.cmd == "check-idempotence":
            first = _converge(nodes, matrix, cfg)
            second = _converge(nodes, matrix, cfg)
            if args.out:
                write_json_report(args.out, first, "run01.json")
                write_json_report(args.out, second, "run02.json")
            print("===> RUN #1 (converge)\n" + first.recap())
            print("===> RUN #2 (idempotence)\n" + second.recap())
            if not (first.succeeded and second.succeeded):
                print("ERROR: run failed")
                return EXIT_RUN_FAILED
            print(f"===> Idempotence check: changed sum on 2nd run = {second.changed_count}")
            if second.changed_count != 0:
                print("ERROR: Not idempotent (changed > 0 on second run)")
                return EXIT_NOT_IDEMPOTENT
            print("=== SUCCESS ===")
            return 0
    except ConfigError as e:
        print(f"ConfigError: {e}")
        return EXIT_CONFIG
    except MatrixLoadError as e:
        print(f"MatrixLoadError: {e}")
        return EXIT_MATRIX
    return EXIT_FAILED


if __name__ == "__main__":
    raise SystemExit(main())
