"""Condition evaluator tests."""

import logging

import pytest

from flowgate.conditions import ConditionEvaluator, evaluate_condition, resolve_field
from flowgate.errors import ConditionError

CONTEXT = {
    "amount": 250,
    "currency": "EUR",
    "customer": {"tier": "gold", "email": "ana@example.com", "tags": ["vip", "eu"]},
    "items": [{"sku": "A-1"}, {"sku": "B-2"}],
    "note": "   ",
    "count": "5",
}


def leaf(field, operator, value=None):
    return {"field": field, "operator": operator, "value": value}


@pytest.mark.parametrize(
    "node, expected",
    [
        (leaf("amount", "==", 250), True),
        (leaf("count", "==", 5), True),
        (leaf("count", "===", 5), False),
        (leaf("amount", "===", 250.0), True),
        (leaf("currency", "!=", "USD"), True),
        (leaf("count", "!==", "5"), False),
        (leaf("amount", ">", 100), True),
        (leaf("amount", "<=", 249), False),
        (leaf("currency", "in", ["EUR", "GBP"]), True),
        (leaf("currency", "notIn", ["EUR", "GBP"]), False),
        (leaf("customer.tags", "contains", "vip"), True),
        (leaf("customer.email", "contains", "@example"), True),
        (leaf("customer.email", "startsWith", "ana"), True),
        (leaf("customer.email", "endsWith", ".org"), False),
        (leaf("customer.email", "matches", r"^[a-z]+@example\.com$"), True),
        (leaf("customer.tier", "exists"), True),
        (leaf("customer.phone", "exists"), False),
        (leaf("note", "empty"), True),
        (leaf("customer.tags", "empty"), False),
        (leaf("amount", "between", [100, 250]), True),
        (leaf("amount", "between", [251, 300]), False),
        (leaf("items.1.sku", "==", "B-2"), True),
    ],
)
def test_comparison_operators(node, expected):
    assert evaluate_condition(node, CONTEXT) is expected


def test_logical_nodes_and_implicit_and():
    tree = {
        "and": [
            leaf("amount", ">", 100),
            {"or": [leaf("currency", "==", "USD"), leaf("customer.tier", "==", "gold")]},
            {"not": leaf("customer.tags", "contains", "blocked")},
        ]
    }
    assert evaluate_condition(tree, CONTEXT) is True
    assert evaluate_condition([leaf("amount", ">", 100), leaf("currency", "==", "USD")], CONTEXT) is False
    assert evaluate_condition(True) is True
    assert evaluate_condition({"or": []}, CONTEXT) is False


def test_unknown_operator_fails_closed(caplog):
    with caplog.at_level(logging.WARNING, logger="flowgate.conditions"):
        result = evaluate_condition(leaf("amount", "approximately", 250), CONTEXT)
    assert result is False
    assert "approximately" in caplog.text


def test_malformed_nodes_fail_closed():
    assert evaluate_condition({"and": {"field": "amount"}}, CONTEXT) is False
    assert evaluate_condition({"unexpected": 1}, CONTEXT) is False
    assert evaluate_condition("amount > 1", CONTEXT) is False
    assert evaluate_condition(leaf("amount", "between", [1]), CONTEXT) is False
    assert evaluate_condition(leaf("amount", "matches", "("), CONTEXT) is False


def test_incomparable_values_only_fail_their_leaf():
    assert evaluate_condition(leaf("currency", "<", 5), CONTEXT) is False
    assert evaluate_condition(leaf("missing", ">", 5), CONTEXT) is False
    tree = {"or": [leaf("currency", "<", 5), leaf("amount", "==", 250)]}
    assert evaluate_condition(tree, CONTEXT) is True


def test_max_depth_is_enforced():
    tree = {"not": {"not": {"not": {"not": True}}}}
    assert ConditionEvaluator().evaluate(tree) is True
    assert ConditionEvaluator(max_depth=2).evaluate(tree) is False


def test_validate_raises_for_structural_errors():
    evaluator = ConditionEvaluator()
    evaluator.validate({"and": [leaf("amount", ">", 1), True]})
    with pytest.raises(ConditionError):
        evaluator.validate(leaf("amount", "~=", 1))
    with pytest.raises(ConditionError):
        evaluator.validate({"or": "nope"})


def test_non_string_operator_fails_closed():
    assert evaluate_condition(leaf("amount", ["=="], 250), CONTEXT) is False
    with pytest.raises(ConditionError):
        ConditionEvaluator().validate(leaf("amount", ["=="], 250))


def test_contains_on_set_with_unhashable_value_fails_closed():
    context = {"codes": {1, 2}}
    assert evaluate_condition(leaf("codes", "contains", 1), context) is True
    assert evaluate_condition(leaf("codes", "contains", [1]), context) is False


def test_allowed_operators_can_be_restricted():
    evaluator = ConditionEvaluator(allowed_operators=["=="])
    assert evaluator.evaluate(leaf("amount", "==", 250), CONTEXT) is True
    assert evaluator.evaluate(leaf("amount", ">", 1), CONTEXT) is False


def test_resolve_field():
    assert resolve_field("customer.tier", CONTEXT) == "gold"
    assert resolve_field("items.0.sku", CONTEXT) == "A-1"
    assert resolve_field("items.9.sku", CONTEXT) is None
    assert resolve_field("amount.value", CONTEXT) is None
