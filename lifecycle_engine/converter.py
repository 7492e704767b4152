"""
Conversion between formula ASTs and the flat grouped-condition format.

The grouped format is an OR of AND-chains: conditions sharing a ``group_id``
are ANDed, distinct groups are ORed.  ``ast_to_conditions`` does not
distribute AND over OR, so a formula such as ``(a OR b) AND c`` maps to
groups ``[a, c], [b]``, i.e. ``(a AND c) OR b``.  Only ASTs already in
OR-of-ANDs shape survive the round trip unchanged in meaning.
"""
from __future__ import annotations

import re
from typing import Dict, List, Optional, Sequence

from lifecycle_engine.formula import (
    OPERATOR_TO_DISPLAY,
    TOKEN_AND,
    TOKEN_OR,
    ConditionNode,
    LogicalNode,
    Node,
)
from lifecycle_engine.models import Condition

# Numbers the tokenizer reads back as a single VALUE token
_BARE_NUMBER = re.compile(r"^-?\d+(\.\d+)?$")


def ast_to_conditions(ast: Optional[Node]) -> List[Condition]:
    """Flatten an AST into grouped conditions (AND keeps the group, OR opens one)."""
    conditions: List[Condition] = []
    if ast is None:
        return conditions
    group_id = 0

    def traverse(node: Node, current: int) -> None:
        nonlocal group_id
        if isinstance(node, ConditionNode):
            conditions.append(Condition(node.field, node.operator, node.value, current))
        elif node.kind == TOKEN_AND:
            traverse(node.left, current)
            traverse(node.right, current)
        else:
            traverse(node.left, current)
            group_id += 1
            traverse(node.right, group_id)

    traverse(ast, group_id)
    return conditions


def conditions_to_ast(conditions: Sequence[Condition]) -> Optional[Node]:
    """Rebuild a left-associative OR of left-associative AND chains."""
    if not conditions:
        return None

    groups: Dict[int, List[Node]] = {}
    for c in conditions:
        groups.setdefault(c.group_id, []).append(
            ConditionNode(c.field, c.operator, c.value)
        )

    chains: List[Node] = []
    for members in groups.values():
        node = members[0]
        for right in members[1:]:
            node = LogicalNode(TOKEN_AND, node, right)
        chains.append(node)

    result = chains[0]
    for right in chains[1:]:
        result = LogicalNode(TOKEN_OR, result, right)
    return result


def format_value(value: str) -> str:
    if _BARE_NUMBER.match(value) or value in ("true", "false"):
        return value
    # Single-quoted literals may carry double quotes
    if '"' in value:
        return f"'{value}'"
    return f'"{value}"'


def ast_to_formula(ast: Optional[Node]) -> str:
    """Render an AST back to formula text."""
    if ast is None:
        return ""

    def render(node: Node, parent: Optional[str] = None) -> str:
        if isinstance(node, ConditionNode):
            op = OPERATOR_TO_DISPLAY.get(node.operator, node.operator)
            return f"{node.field} {op} {format_value(node.value)}"
        left = render(node.left, node.kind)
        right = render(node.right, node.kind)
        text = f"{left} {node.kind} {right}"
        if node.kind == TOKEN_AND and parent == TOKEN_OR:
            return f"({text})"
        return text

    return render(ast)


def conditions_to_formula(conditions: Sequence[Condition]) -> str:
    return ast_to_formula(conditions_to_ast(conditions))
