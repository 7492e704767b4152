"""Quick API verification for the scenario runner."""
import json
import requests
import sys

base = "http://127.0.0.1:5050"

USER = {
    "credits": 100, "total_generated": 5, "payments": 0, "days_old": 30,
    "idle_hours": 24, "failed_after_payment": "no", "is_blocked": "no",
}

tests = [
    ("Scenarios loaded", "GET", "/api/scenarios", None, lambda r: len(r.json()) == 5),
    ("Formula valid", "POST", "/api/run-test", {
        "scenario": "formula_validate",
        "params": {"formula": "(credits_balance < 20 AND total_payments == 0) OR is_dead == true",
                   "expect_valid": "yes"}
    }, lambda r: r.json()["passed"] and len(r.json()["conditions"]) == 3),
    ("Formula missing value", "POST", "/api/run-test", {
        "scenario": "formula_validate",
        "params": {"formula": "credits_balance >", "expect_valid": "no"}
    }, lambda r: r.json()["passed"] and r.json()["position"] == 17),
    ("Formula unknown field", "POST", "/api/run-test", {
        "scenario": "formula_validate",
        "params": {"formula": "karma > 3", "expect_valid": "no"}
    }, lambda r: r.json()["passed"] and r.json()["length"] == 5),
    ("Condition eval (freeloader)", "POST", "/api/run-test", {
        "scenario": "condition_eval",
        "params": {**USER, "credits": 5, "formula": "is_freeloader == true", "expected": "true"}
    }, lambda r: r.json()["passed"]),
    ("Immersion (free user)", "POST", "/api/run-test", {
        "scenario": "immersion",
        "params": {**USER, "expected_state": "ACTIVE_FREE"}
    }, lambda r: r.json()["passed"]),
    ("Immersion (payer)", "POST", "/api/run-test", {
        "scenario": "immersion",
        "params": {**USER, "payments": 1, "expected_state": "PAID_ACTIVE"}
    }, lambda r: r.json()["passed"]),
    ("Immersion (blocked)", "POST", "/api/run-test", {
        "scenario": "immersion",
        "params": {**USER, "is_blocked": "yes", "expected_state": "BLOCKED"}
    }, lambda r: r.json()["passed"]),
    ("Manual action (gated skip)", "POST", "/api/run-test", {
        "scenario": "manual_action",
        "params": {**USER, "action_type": "TAG_USER", "config": json.dumps({"tag": "vip"}),
                   "gate": "is_low_balance == true", "expected_outcome": "skipped"}
    }, lambda r: r.json()["passed"]),
    ("Manual action (bad config)", "POST", "/api/run-test", {
        "scenario": "manual_action",
        "params": {**USER, "action_type": "TAG_USER", "config": "{}",
                   "gate": "", "expected_outcome": "failed"}
    }, lambda r: r.json()["passed"]),
    ("Replay determinism", "POST", "/api/run-test", {
        "scenario": "replay_determinism",
        "params": {"count": 50, "seed": 42}
    }, lambda r: r.json()["passed"]),
    ("Frontend HTML", "GET", "/", None,
     lambda r: "Lifecycle Scenario Runner" in r.text),
]

print("=" * 60)
ok = 0
for name, method, path, body, check in tests:
    try:
        if method == "GET":
            r = requests.get(base + path, timeout=10)
        else:
            r = requests.post(base + path, json=body, timeout=30)
        passed = check(r)
        status = "PASS" if passed else "FAIL"
        detail = ""
        if not passed and method == "POST":
            detail = f" | {r.text[:120]}"
    except Exception as exc:
        status = "ERR"
        detail = f" | {exc}"
        passed = False
    print(f"  {'✅' if passed else '❌'} [{status}] {name}{detail}")
    if passed:
        ok += 1

print(f"\n  {ok}/{len(tests)} passed")
print("=" * 60)
if ok != len(tests):
    sys.exit(1)
