"""
Test suite for the condition evaluator

Tests expression parsing, comparison semantics, missing-field handling,
membership operators, structured rules and error reporting.
"""

import pytest

from repair_core.conditions import (
    ALWAYS, MISSING, compile_condition, condition_from_rule, describe, evaluate,
    resolve_path, to_condition, validate_expression,
)
from repair_core.errors import ExpressionError


@pytest.fixture
def context():
    """Typical repair case context"""
    return {
        "status": "completed",
        "deviceType": "smartphone",
        "totalAmount": 3000000,
        "inspection_report": {"status": "approved", "findings": ["screen", "battery"]},
        "customer_approval": {"status": "rejected", "reason": "price_too_high"},
        "revised_quotation": {"discount": "15"},
        "issue": {"type": "water_damage"},
        "warranty": {"exclusions": ["water_damage", "physical_damage"], "active": True},
        "device": {"brand": "samsung"},
        "notes": None,
    }


class TestPathResolution:
    """Test dotted path lookup"""

    def test_nested_path(self, context):
        assert resolve_path(context, "inspection_report.status") == "approved"

    def test_list_index(self, context):
        assert resolve_path(context, "inspection_report.findings.1") == "battery"

    def test_missing_path(self, context):
        assert resolve_path(context, "inspection_report.signature") is MISSING
        assert resolve_path(context, "status.nested") is MISSING
        assert resolve_path(context, "inspection_report.findings.9") is MISSING


class TestComparisons:
    """Test comparison operators"""

    def test_always(self, context):
        assert evaluate("always", context) is True
        assert evaluate("always", {}) is True

    def test_equality_on_bare_words(self, context):
        assert evaluate("status == completed", context)
        assert not evaluate("status == cancelled", context)
        assert evaluate("inspection_report.status == approved", context)

    def test_quoted_strings(self, context):
        assert evaluate('device.brand == "samsung"', context)
        assert evaluate("device.brand != 'apple'", context)

    def test_numeric_comparisons(self, context):
        assert evaluate("totalAmount < 5000000", context)
        assert evaluate("totalAmount >= 3000000", context)
        assert not evaluate("totalAmount > 3000000", context)

    def test_numeric_strings_compare_as_numbers(self, context):
        assert evaluate("revised_quotation.discount > 10", context)
        assert evaluate("revised_quotation.discount == 15", context)

    def test_ordering_between_text_and_number_is_false(self, context):
        assert not evaluate("device.brand > 10", context)

    def test_boolean_literals(self, context):
        assert evaluate("warranty.active == true", context)
        assert not evaluate("warranty.active == false", context)

    def test_null_checks(self, context):
        assert evaluate("notes == null", context)
        assert not evaluate("notes != null", context)
        assert not evaluate("notes > 3", context)


class TestMissingFields:
    """A missing field makes every comparison false"""

    @pytest.mark.parametrize("expression", [
        "missing == x",
        "missing != x",
        "missing > 1",
        "missing <= 1",
        "missing in [a, b]",
        "missing contains a",
        "inspection_report.signature == signed",
    ])
    def test_missing_field_is_false(self, context, expression):
        assert evaluate(expression, context) is False

    def test_missing_field_never_raises(self):
        assert evaluate("a.b.c == 1", {}) is False
        assert evaluate("a.b.c == 1", None) is False

    def test_bare_path_truthiness(self, context):
        assert evaluate("warranty.active", context)
        assert not evaluate("warranty.expired", context)
        assert not evaluate("notes", context)


class TestLogicalOperators:
    """Test && and || with parentheses"""

    def test_and(self, context):
        assert evaluate(
            "customer_approval.status == rejected && customer_approval.reason == price_too_high", context
        )
        assert not evaluate("customer_approval.status == rejected && status == cancelled", context)

    def test_or(self, context):
        assert evaluate("status == cancelled || deviceType == smartphone", context)
        assert not evaluate("status == cancelled || deviceType == laptop", context)

    def test_and_binds_tighter_than_or(self, context):
        assert evaluate("status == cancelled && deviceType == laptop || totalAmount > 0", context)

    def test_parentheses(self, context):
        assert not evaluate("status == cancelled && (deviceType == laptop || totalAmount > 0)", context)


class TestMembership:
    """Test in / contains"""

    def test_in_field_list(self, context):
        assert evaluate("issue.type in warranty.exclusions", context)

    def test_in_literal_list(self, context):
        assert evaluate("device.brand in [apple, samsung]", context)
        assert not evaluate("device.brand in [apple, google]", context)

    def test_in_missing_container(self, context):
        assert not evaluate("issue.type in warranty.unknown", context)

    def test_contains(self, context):
        assert evaluate("inspection_report.findings contains battery", context)
        assert not evaluate("inspection_report.findings contains keyboard", context)

    def test_empty_list(self, context):
        assert not evaluate("device.brand in []", context)


class TestParsing:
    """Test parse errors and caching"""

    @pytest.mark.parametrize("expression", [
        "",
        "status ==",
        "== completed",
        "(status == completed",
        "status == completed )",
        "status == [a b]",
        "status # completed",
    ])
    def test_malformed_expressions_raise(self, expression):
        with pytest.raises(ExpressionError):
            compile_condition(expression)

    def test_error_carries_position(self):
        with pytest.raises(ExpressionError) as exc_info:
            compile_condition("status # completed")
        assert exc_info.value.position == 7
        assert exc_info.value.expression == "status # completed"

    def test_validate_expression(self):
        assert validate_expression("status == completed") == []
        errors = validate_expression("status ==")
        assert len(errors) == 1
        assert "end of expression" in errors[0]

    def test_compiled_conditions_are_cached(self):
        assert compile_condition("status == completed") is compile_condition("status == completed")

    def test_evaluate_accepts_compiled_condition(self, context):
        condition = compile_condition("deviceType == smartphone")
        assert evaluate(condition, context)


class TestStructuredRules:
    """Test the {field, operator, value} form"""

    def test_equals_rule(self, context):
        condition = condition_from_rule({"field": "deviceType", "operator": "equals", "value": "smartphone"})
        assert evaluate(condition, context)

    def test_list_value_rule(self, context):
        condition = condition_from_rule({"field": "device.brand", "operator": "in", "value": ["apple", "samsung"]})
        assert evaluate(condition, context)

    def test_numeric_rule(self, context):
        condition = condition_from_rule({"field": "totalAmount", "operator": "less_than", "value": 5000000})
        assert evaluate(condition, context)

    def test_unknown_operator(self):
        with pytest.raises(ExpressionError):
            condition_from_rule({"field": "x", "operator": "matches", "value": 1})

    def test_missing_field(self):
        with pytest.raises(ExpressionError):
            condition_from_rule({"operator": "equals", "value": 1})

    def test_to_condition(self, context):
        assert to_condition(None) is ALWAYS
        assert evaluate(to_condition("status == completed"), context)
        assert evaluate(to_condition({"field": "status", "value": "completed"}), context)

    def test_describe(self):
        assert describe(None) == "always"
        assert describe("status == completed") == "status == completed"
        assert describe({"field": "tier", "operator": "equals", "value": "gold"}) == "tier equals 'gold'"
