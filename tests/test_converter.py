"""
Tests for AST <-> grouped-condition conversion and formula rendering.
"""
from datetime import datetime, timedelta, timezone

from lifecycle_engine.context import build_context
from lifecycle_engine.converter import (
    ast_to_conditions,
    ast_to_formula,
    conditions_to_ast,
    conditions_to_formula,
    format_value,
)
from lifecycle_engine.evaluator import evaluate_conditions
from lifecycle_engine.formula import ConditionNode, LogicalNode, parse_formula
from lifecycle_engine.models import Condition, UserFacts

NOW = datetime(2025, 6, 1, tzinfo=timezone.utc)


def _ctx(credits=50, generations=0, payments=0):
    facts = UserFacts(
        user_id="u-1",
        credits=credits,
        created_at=NOW - timedelta(days=3),
        total_generated=generations,
        completed_purchase_count=payments,
    )
    return build_context(facts, NOW)


# -----------------------------------------------------------------------
# Test: astToConditions
# -----------------------------------------------------------------------
class TestAstToConditions:
    def test_none(self):
        assert ast_to_conditions(None) == []

    def test_single(self):
        ast = parse_formula("credits_balance > 100")
        assert ast_to_conditions(ast) == [Condition("credits_balance", "GT", "100", 0)]

    def test_and_keeps_group(self):
        ast = parse_formula("a == 1 AND b == 2")
        assert [c.group_id for c in ast_to_conditions(ast)] == [0, 0]

    def test_or_opens_group(self):
        ast = parse_formula("a == 1 AND b == 2 OR c == 3")
        conditions = ast_to_conditions(ast)
        assert [(c.field, c.group_id) for c in conditions] == [("a", 0), ("b", 0), ("c", 1)]

    def test_three_way_or(self):
        ast = parse_formula("a == 1 OR b == 2 OR c == 3")
        assert [c.group_id for c in ast_to_conditions(ast)] == [0, 1, 2]


# -----------------------------------------------------------------------
# Test: conditionsToAst
# -----------------------------------------------------------------------
class TestConditionsToAst:
    def test_empty(self):
        assert conditions_to_ast([]) is None

    def test_single(self):
        assert conditions_to_ast([Condition("a", "EQUALS", "1")]) == ConditionNode("a", "EQUALS", "1")

    def test_groups_in_first_appearance_order(self):
        conditions = [
            Condition("a", "EQUALS", "1", 5),
            Condition("b", "EQUALS", "2", 2),
            Condition("c", "EQUALS", "3", 5),
        ]
        assert conditions_to_ast(conditions) == LogicalNode(
            "OR",
            LogicalNode("AND", ConditionNode("a", "EQUALS", "1"), ConditionNode("c", "EQUALS", "3")),
            ConditionNode("b", "EQUALS", "2"),
        )

    def test_left_associative(self):
        conditions = [Condition(f, "EQUALS", "1", 0) for f in ("a", "b", "c")]
        ast = conditions_to_ast(conditions)
        assert ast.kind == "AND"
        assert ast.left.kind == "AND"
        assert ast.right == ConditionNode("c", "EQUALS", "1")


# -----------------------------------------------------------------------
# Test: astToFormula
# -----------------------------------------------------------------------
class TestAstToFormula:
    def test_none(self):
        assert ast_to_formula(None) == ""

    def test_and_inside_or_parenthesized(self):
        conditions = [
            Condition("credits_balance", "GT", "100", 0),
            Condition("is_paid_user", "EQUALS", "true", 0),
            Condition("total_generations", "LT", "5", 1),
        ]
        assert conditions_to_formula(conditions) == (
            "(credits_balance > 100 AND is_paid_user == true) OR total_generations < 5"
        )

    def test_top_level_and_not_parenthesized(self):
        assert ast_to_formula(parse_formula("a == 1 AND b == 2")) == "a == 1 AND b == 2"

    def test_text_values_quoted(self):
        ast = parse_formula("preferred_model == 'flux-pro'")
        assert ast_to_formula(ast) == 'preferred_model == "flux-pro"'

    def test_in_operator_display(self):
        conditions = [Condition("user_tags", "IN", "vip,beta", 0)]
        assert conditions_to_formula(conditions) == 'user_tags in "vip,beta"'

    def test_format_value(self):
        assert format_value("100") == "100"
        assert format_value("-2.5") == "-2.5"
        assert format_value("true") == "true"
        assert format_value("false") == "false"
        assert format_value("") == '""'
        assert format_value("1e5") == '"1e5"'
        assert format_value("gold") == '"gold"'
        assert format_value('say "hi"') == "'say \"hi\"'"

    def test_double_quoted_value_reparses(self):
        text = "preferred_model == 'say \"hi\"'"
        rendered = ast_to_formula(parse_formula(text))
        assert rendered == text
        assert parse_formula(rendered).value == 'say "hi"'

    def test_rendered_formula_reparses(self):
        text = "(credits_balance > 100 AND is_paid_user == true) OR total_generations < 5"
        assert ast_to_formula(parse_formula(text)) == text


# -----------------------------------------------------------------------
# Test: Round trip and the known divergence
# -----------------------------------------------------------------------
class TestRoundTrip:
    def test_or_of_ands_survives(self):
        conditions = [
            Condition("credits_balance", "LT", "20", 0),
            Condition("total_payments", "EQUALS", "0", 0),
            Condition("total_generations", "GT", "10", 1),
        ]
        again = ast_to_conditions(parse_formula(conditions_to_formula(conditions)))
        assert again == conditions

    def test_or_nested_in_and_is_not_distributed(self):
        """(a OR b) AND c flattens to (a AND c) OR b, which is not equivalent."""
        ast = parse_formula(
            "(credits_balance > 100 OR total_generations > 0) AND total_payments > 0"
        )
        conditions = ast_to_conditions(ast)
        assert [(c.field, c.group_id) for c in conditions] == [
            ("credits_balance", 0),
            ("total_generations", 1),
            ("total_payments", 0),
        ]

        # a false, b true, c false: the formula is false, the groups say true
        ctx = _ctx(credits=50, generations=3, payments=0)
        formula_value = (ctx.credits > 100 or ctx.total_generations > 0) and ctx.total_payments > 0
        assert formula_value is False
        assert evaluate_conditions(conditions, ctx) is True

    def test_divergence_absent_when_branches_agree(self):
        ast = parse_formula(
            "(credits_balance > 100 OR total_generations > 0) AND total_payments > 0"
        )
        conditions = ast_to_conditions(ast)
        ctx = _ctx(credits=500, generations=0, payments=2)
        assert evaluate_conditions(conditions, ctx) is True
