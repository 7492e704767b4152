"""
CLI interface for the Lifecycle Engine.

Supports five modes:
  validate — Parse a formula and print its grouped conditions.
  immerse  — Replay users into a version and persist their states.
  replay   — Re-run immersion and verify the assignments hash.
  stats    — Print the per-state user distribution.
  generate — Generate a synthetic dataset.
"""
from __future__ import annotations

import argparse
import json
import logging
import sys

from lifecycle_engine.models import parse_ts


def _setup_logging(verbose: bool = False) -> None:
    """Configure structured logging."""
    level = logging.DEBUG if verbose else logging.INFO
    fmt = "%(asctime)s [%(levelname)-7s] %(name)s — %(message)s"
    logging.basicConfig(
        level=level,
        format=fmt,
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )


def _engine(args: argparse.Namespace):
    from lifecycle_engine.config import EngineConfig
    from lifecycle_engine.immersion import ImmersionEngine
    from lifecycle_engine.store import JsonDatasetStore

    config = EngineConfig.from_env().with_overrides(max_depth=args.max_depth)
    store = JsonDatasetStore.load(args.dataset)
    if args.now:
        fixed = parse_ts(args.now)
        return ImmersionEngine(store, config, clock=lambda: fixed)
    return ImmersionEngine(store, config)


def _cmd_validate(args: argparse.Namespace) -> int:
    from lifecycle_engine.converter import ast_to_conditions, ast_to_formula
    from lifecycle_engine.evaluator import KNOWN_FIELDS
    from lifecycle_engine.formula import parse_formula, validate_formula

    fields = [f for f in args.fields.split(",") if f] if args.fields else list(KNOWN_FIELDS)
    result = validate_formula(args.formula, fields)
    if not result.valid:
        print(f"INVALID at {result.position} (len {result.length}): {result.error}",
              file=sys.stderr)
        return 1
    ast = parse_formula(args.formula)
    print(json.dumps({
        "formula": ast_to_formula(ast),
        "conditions": [c.to_dict() for c in ast_to_conditions(ast)],
    }, indent=2))
    return 0


def _cmd_immerse(args: argparse.Namespace) -> int:
    from lifecycle_engine.state import compute_assignments_hash, save_hash

    engine = _engine(args)
    summary = engine.immerse_all(args.version, args.limit)
    engine.store.save(args.dataset)
    logging.getLogger("lifecycle_engine.cli").info("Dataset saved → %s", args.dataset)

    final_hash = compute_assignments_hash(engine.store.list_user_states(summary.version_id))
    if args.hash_out:
        save_hash(final_hash, args.hash_out)
    print(json.dumps({
        "versionId": summary.version_id,
        "processed": summary.processed,
        "skipped": summary.skipped,
        "byState": summary.by_state,
    }, indent=2))
    print(f"IMMERSE OK — Assignments hash: {final_hash}")
    return 0


def _cmd_replay(args: argparse.Namespace) -> int:
    from lifecycle_engine.immersion import verify_replay
    from lifecycle_engine.state import load_hash

    engine = _engine(args)
    ok, actual = verify_replay(engine, load_hash(args.verify), args.version, args.limit)
    if ok:
        print("REPLAY OK: hash matches ✓")
        return 0
    print(f"REPLAY FAILED: hash does NOT match ✗ (got {actual})", file=sys.stderr)
    return 1


def _cmd_stats(args: argparse.Namespace) -> int:
    from lifecycle_engine.stats import state_distribution
    from lifecycle_engine.store import JsonDatasetStore

    store = JsonDatasetStore.load(args.dataset)
    version_id = args.version
    if version_id is None:
        active = store.get_active_version()
        if active is None:
            print(json.dumps({"stateDistribution": [], "totalActiveUsers": 0,
                              "warning": "No active version found"}, indent=2))
            return 0
        version_id = active.id
    report = state_distribution(
        version_id, store.list_states(version_id), store.list_user_states(version_id),
    )
    print(json.dumps(report.to_dict(), indent=2))
    return 0


def _cmd_generate(args: argparse.Namespace) -> int:
    from lifecycle_engine.generate_dataset import generate_dataset

    generate_dataset(args.output, args.count, args.seed)
    print(f"Generated {args.count} users → {args.output}")
    return 0


COMMANDS = {
    "validate": _cmd_validate,
    "immerse": _cmd_immerse,
    "replay": _cmd_replay,
    "stats": _cmd_stats,
    "generate": _cmd_generate,
}


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="lifecycle_engine",
        description="Lifecycle Engine — formula conditions and FSM state replay",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Enable debug-level logging",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    # --- validate ---
    val_p = sub.add_parser("validate", help="Validate a formula and show its conditions")
    val_p.add_argument("--formula", required=True, help="Formula text")
    val_p.add_argument("--fields", help="Comma-separated allowed fields (default: all known)")

    # --- immerse / replay share dataset options ---
    def _replay_args(p: argparse.ArgumentParser) -> None:
        p.add_argument("--dataset", required=True, help="Path to dataset.json")
        p.add_argument("--version", type=int, help="FSM version id (default: active)")
        p.add_argument("--limit", type=int, help="Max users to process")
        p.add_argument("--max-depth", type=int, help="Override replay step bound")
        p.add_argument("--now", help="Fixed ISO-8601 'now' for reproducible runs")

    imm_p = sub.add_parser("immerse", help="Replay users and persist their states")
    _replay_args(imm_p)
    imm_p.add_argument("--hash-out", help="Write the assignments hash to this path")

    replay_p = sub.add_parser("replay", help="Replay and verify the assignments hash")
    _replay_args(replay_p)
    replay_p.add_argument("--verify", required=True, help="Path to expected_hash.txt")

    # --- stats ---
    stats_p = sub.add_parser("stats", help="Per-state user distribution")
    stats_p.add_argument("--dataset", required=True, help="Path to dataset.json")
    stats_p.add_argument("--version", type=int, help="FSM version id (default: active)")

    # --- generate ---
    gen_p = sub.add_parser("generate", help="Generate a synthetic dataset")
    gen_p.add_argument("--output", required=True, help="Path to output dataset.json")
    gen_p.add_argument(
        "--count", type=int, default=200, help="Number of users (default 200)"
    )
    gen_p.add_argument(
        "--seed", type=int, default=42, help="Random seed for reproducibility"
    )

    args = parser.parse_args(argv)
    _setup_logging(verbose=args.verbose)

    logger = logging.getLogger("lifecycle_engine.cli")

    try:
        code = COMMANDS[args.command](args)
    except Exception as exc:
        logger.exception("%s failed", args.command.capitalize())
        print(f"ERROR: {exc}", file=sys.stderr)
        sys.exit(1)
    if code:
        sys.exit(code)


if __name__ == "__main__":
    main()
