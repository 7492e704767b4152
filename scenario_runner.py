"""
Interactive Scenario Runner for the Lifecycle Engine.

A web-based UI that lets operators try formulas, conditions and replays
without writing code. Select a scenario, tweak values, hit Run.

Usage:
    python scenario_runner.py
    # Open http://localhost:5050
"""
from __future__ import annotations

import json
import tempfile
import traceback
from dataclasses import asdict
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List

from flask import Flask, jsonify, render_template, request

from lifecycle_engine.actions import ActionResult, dispatch_manual_action
from lifecycle_engine.context import ContextBuilder, build_context
from lifecycle_engine.converter import ast_to_conditions, ast_to_formula
from lifecycle_engine.evaluator import KNOWN_FIELDS, evaluate_conditions, trace_conditions
from lifecycle_engine.formula import parse_formula, validate_formula
from lifecycle_engine.generate_dataset import (
    BASE_TIME,
    LIFECYCLE_STATES,
    default_graph,
    generate_dataset,
)
from lifecycle_engine.immersion import ImmersionEngine
from lifecycle_engine.models import ACTION_TYPES, LOW_BALANCE_THRESHOLD, UserFacts
from lifecycle_engine.state import compute_assignments_hash
from lifecycle_engine.store import JsonDatasetStore

app = Flask(__name__)

STATE_NAMES = [name for name, _, _ in LIFECYCLE_STATES]

# -----------------------------------------------------------------------
# Scenario definitions
# -----------------------------------------------------------------------
USER_FIELDS: List[Dict[str, Any]] = [
    {"name": "credits", "label": "Credits", "type": "number", "default": 100,
     "help": f"Low balance below {LOW_BALANCE_THRESHOLD}"},
    {"name": "total_generated", "label": "Total Generations", "type": "number", "default": 5},
    {"name": "payments", "label": "Completed Payments", "type": "number", "default": 0},
    {"name": "days_old", "label": "Account Age (days)", "type": "number", "default": 30},
    {"name": "idle_hours", "label": "Hours Since Last Activity", "type": "number", "default": 24},
    {"name": "failed_after_payment", "label": "Payment Failed Since?", "type": "select",
     "default": "no", "options": ["yes", "no"]},
    {"name": "is_blocked", "label": "Blocked?", "type": "select", "default": "no",
     "options": ["yes", "no"]},
]

SCENARIOS: List[Dict[str, Any]] = [
    {
        "id": "formula_validate",
        "name": "Formula Validation",
        "icon": "🧮",
        "description": "Parse a formula, show its grouped conditions and the normalized formula.",
        "fields": [
            {"name": "formula", "label": "Formula", "type": "text",
             "default": "(credits_balance < 20 AND total_payments == 0) OR is_dead == true"},
            {"name": "expect_valid", "label": "Expect Valid?", "type": "select", "default": "yes",
             "options": ["yes", "no"]},
        ],
    },
    {
        "id": "condition_eval",
        "name": "Condition Evaluation",
        "icon": "✅",
        "description": "Evaluate a formula against a synthetic user's derived context.",
        "fields": [
            {"name": "formula", "label": "Formula", "type": "text",
             "default": "is_freeloader == true OR hours_since_last_activity > 336"},
            *USER_FIELDS,
            {"name": "expected", "label": "Expected Result", "type": "select", "default": "false",
             "options": ["true", "false"]},
        ],
    },
    {
        "id": "immersion",
        "name": "Immersion (Default Graph)",
        "icon": "🧭",
        "description": "Replay a synthetic user through the default lifecycle graph.",
        "fields": [
            *USER_FIELDS,
            {"name": "expected_state", "label": "Expected State", "type": "select",
             "default": "ACTIVE_FREE", "options": STATE_NAMES},
        ],
    },
    {
        "id": "manual_action",
        "name": "Manual Action Dispatch",
        "icon": "📨",
        "description": "Dispatch an operator action to a user, optionally gated by a formula.",
        "fields": [
            {"name": "action_type", "label": "Action Type", "type": "select",
             "default": "TAG_USER", "options": list(ACTION_TYPES)},
            {"name": "config", "label": "Config (JSON)", "type": "text", "default": '{"tag": "vip"}'},
            {"name": "gate", "label": "Gate Formula (optional)", "type": "text",
             "default": "is_low_balance == true"},
            *USER_FIELDS,
            {"name": "expected_outcome", "label": "Expected Outcome", "type": "select",
             "default": "skipped", "options": ["success", "skipped", "failed"]},
        ],
    },
    {
        "id": "replay_determinism",
        "name": "Replay Determinism",
        "icon": "🔁",
        "description": "Generate a dataset, immerse it twice from scratch and compare assignment hashes.",
        "fields": [
            {"name": "count", "label": "Users", "type": "number", "default": 100},
            {"name": "seed", "label": "Seed", "type": "number", "default": 42},
        ],
    },
]


# -----------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------
def _yes(value: Any) -> bool:
    return value in ("yes", True)


def _facts_from_params(params: Dict) -> UserFacts:
    """Build a user whose history ends at BASE_TIME."""
    now = BASE_TIME
    days_old = int(params.get("days_old", 30))
    created_at = now - timedelta(days=days_old)
    generated = int(params.get("total_generated", 0))
    payments = int(params.get("payments", 0))
    paid_at = now - timedelta(days=max(days_old // 2, 0)) if payments else None
    failed_at = None
    if _yes(params.get("failed_after_payment", "no")):
        failed_at = (paid_at or created_at) + timedelta(hours=1)
    return UserFacts(
        user_id="scenario-user",
        credits=int(params.get("credits", 0)),
        created_at=created_at,
        total_generated=generated,
        last_active_at=now - timedelta(hours=float(params.get("idle_hours", 0))),
        is_blocked=_yes(params.get("is_blocked", "no")),
        completed_purchase_count=payments,
        last_completed_purchase_at=paid_at,
        last_failed_purchase_at=failed_at,
        last_generation_at=created_at if generated else None,
        last_generation_model="sdxl" if generated else None,
    )


def _store_with(facts: UserFacts) -> JsonDatasetStore:
    version, states, transitions = default_graph()
    return JsonDatasetStore([version], states, transitions, [facts])


def _outcome(result: ActionResult) -> str:
    if result.success:
        return "success"
    return "skipped" if result.skipped else "failed"


def _accept_all(user_id: str, action_type: str, config: Any) -> ActionResult:
    return ActionResult(success=True)


# -----------------------------------------------------------------------
# Scenario runners
# -----------------------------------------------------------------------
def _run_formula_validate(params: Dict) -> Dict[str, Any]:
    formula = params["formula"]
    expect_valid = _yes(params["expect_valid"])

    result = validate_formula(formula, KNOWN_FIELDS)
    out: Dict[str, Any] = {
        "passed": result.valid == expect_valid,
        "valid": result.valid,
        "error": result.error,
        "position": result.position,
        "length": result.length,
    }
    if result.valid:
        ast = parse_formula(formula)
        out["conditions"] = [c.to_dict() for c in ast_to_conditions(ast)]
        out["normalized"] = ast_to_formula(ast)
        out["explanation"] = f"Parsed into {len(out['conditions'])} condition(s) ✅"
    else:
        out["explanation"] = f"Rejected at position {result.position}: {result.error}"
    return out


def _run_condition_eval(params: Dict) -> Dict[str, Any]:
    conditions = ast_to_conditions(parse_formula(params["formula"]))
    ctx = build_context(_facts_from_params(params), BASE_TIME)
    actual = evaluate_conditions(conditions, ctx)
    expected = params["expected"] == "true"
    return {
        "passed": actual == expected,
        "actual": actual,
        "expected": expected,
        "context": ctx.to_dict(),
        "trace": [
            {**t.condition.to_dict(), "actual": t.actual, "passed": t.passed}
            for t in trace_conditions(conditions, ctx)
        ],
        "explanation": f"Groups are ORed, conditions within a group ANDed → {actual}",
    }


def _run_immersion(params: Dict) -> Dict[str, Any]:
    facts = _facts_from_params(params)
    store = _store_with(facts)
    engine = ImmersionEngine(store, clock=lambda: BASE_TIME)
    result = engine.immerse_user(facts.user_id, 1)
    expected = params["expected_state"]
    return {
        "passed": result.state_name == expected,
        "actual_state": result.state_name,
        "expected_state": expected,
        "result": asdict(result),
        "explanation": f"Path: {' → '.join(result.path)} ({result.stop_reason})",
    }


def _run_manual_action(params: Dict) -> Dict[str, Any]:
    facts = _facts_from_params(params)
    builder = ContextBuilder(_store_with(facts))
    gate = params.get("gate", "").strip()
    conditions = ast_to_conditions(parse_formula(gate)) if gate else []
    config = json.loads(params.get("config") or "{}")

    result = dispatch_manual_action(
        builder, _accept_all, facts.user_id, params["action_type"], config, conditions,
    )
    actual = _outcome(result)
    return {
        "passed": actual == params["expected_outcome"],
        "actual_outcome": actual,
        "expected_outcome": params["expected_outcome"],
        "error": result.error,
        "explanation": f"{params['action_type']} → {actual}"
                       + (f" ({result.error})" if result.error else ""),
    }


def _run_replay_determinism(params: Dict) -> Dict[str, Any]:
    count = int(params["count"])
    seed = int(params["seed"])
    with tempfile.TemporaryDirectory() as tmp:
        path = str(Path(tmp) / "dataset.json")
        generate_dataset(path, count=count, seed=seed)
        hashes = []
        by_state: Dict[str, int] = {}
        for _ in range(2):
            engine = ImmersionEngine(JsonDatasetStore.load(path), clock=lambda: BASE_TIME)
            summary = engine.immerse_all()
            by_state = summary.by_state
            hashes.append(compute_assignments_hash(engine.store.list_user_states(1)))
    return {
        "passed": hashes[0] == hashes[1],
        "hashes": hashes,
        "by_state": by_state,
        "explanation": f"{count} users, seed={seed}: "
                       f"{'hashes match ✅' if hashes[0] == hashes[1] else 'hashes differ ❌'}",
    }


RUNNERS = {
    "formula_validate": _run_formula_validate,
    "condition_eval": _run_condition_eval,
    "immersion": _run_immersion,
    "manual_action": _run_manual_action,
    "replay_determinism": _run_replay_determinism,
}


# -----------------------------------------------------------------------
# Routes
# -----------------------------------------------------------------------
@app.route("/")
def index():
    return render_template("index.html")


@app.route("/api/scenarios")
def get_scenarios():
    return jsonify(SCENARIOS)


@app.route("/api/run-test", methods=["POST"])
def run_test():
    data = request.get_json()
    scenario_id = data.get("scenario")
    params = data.get("params", {})

    runner = RUNNERS.get(scenario_id)
    if not runner:
        return jsonify({"error": f"Unknown scenario: {scenario_id}"}), 400

    try:
        result = runner(params)
        return jsonify(result)
    except Exception as exc:
        return jsonify({
            "passed": False,
            "error": str(exc),
            "traceback": traceback.format_exc(),
        }), 200


# -----------------------------------------------------------------------
# Main
# -----------------------------------------------------------------------
if __name__ == "__main__":
    print("\n  🧪 Lifecycle Scenario Runner → http://localhost:5050\n")
    app.run(host="0.0.0.0", port=5050, debug=True)
