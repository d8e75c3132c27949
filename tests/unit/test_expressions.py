"""
Unit tests for the expression sandbox and the formula interpreter.
"""

import pytest

from edc_validation.core.expressions import (
    ExpressionBudgetExceeded,
    ExpressionError,
    ExpressionSandbox,
    evaluate_formula,
    formula_truth,
    translate_formula,
    translate_js,
)


@pytest.fixture
def sandbox():
    return ExpressionSandbox(max_length=500, max_steps=500, timeout_ms=1_000)


class TestSandboxWhitelist:
    """Tests that only the safe subset of Python evaluates"""

    @pytest.mark.parametrize(
        "expression",
        [
            "__import__('os')",
            "value.__class__",
            "open('/etc/passwd')",
            "[x for x in range(10)]",
            "lambda: 1",
            "data['a'][0:2]",
            "(yield 1)",
        ],
    )
    def test_rejected_constructs(self, sandbox, expression):
        with pytest.raises(ExpressionError):
            sandbox.evaluate(expression, {"value": "x", "data": {"a": "bc"}})

    def test_unknown_name(self, sandbox):
        with pytest.raises(ExpressionError):
            sandbox.evaluate("secret > 1", {"value": 1})

    def test_record_view_is_read_only_and_lenient(self, sandbox):
        data = {"vitals": {"weight": 70}}
        assert sandbox.evaluate("data.vitals.weight > 60", {"data": data})
        assert sandbox.evaluate("data['vitals']['weight'] == 70", {"data": data})
        assert sandbox.evaluate("data.missing == None", {"data": data})

    def test_length_attribute(self, sandbox):
        assert sandbox.evaluate("value.length == 3", {"value": "abc"})

    def test_case_insensitive_names(self, sandbox):
        assert sandbox.evaluate("VALUE + 1", {"value": 1}) == 2

    def test_ordering_against_none_is_false(self, sandbox):
        assert sandbox.evaluate("value > 1", {"value": None}) is False


class TestSandboxBudgets:
    """Tests for length, step and size budgets"""

    def test_length_budget(self):
        sandbox = ExpressionSandbox(max_length=10)
        with pytest.raises(ExpressionBudgetExceeded):
            sandbox.evaluate("1 + 1 + 1 + 1 + 1", {})

    def test_step_budget(self):
        sandbox = ExpressionSandbox(max_steps=20)
        expression = " + ".join(["1"] * 50)
        with pytest.raises(ExpressionBudgetExceeded):
            sandbox.evaluate(expression, {})

    def test_repetition_budget(self, sandbox):
        with pytest.raises(ExpressionBudgetExceeded):
            sandbox.evaluate("'ab' * 100000", {})

    def test_exponent_budget(self, sandbox):
        with pytest.raises(ExpressionBudgetExceeded):
            sandbox.evaluate("9 ** 9999", {})

    def test_nested_power_budget(self, sandbox):
        with pytest.raises(ExpressionBudgetExceeded):
            sandbox.evaluate("(((((9 ** 64) ** 64) ** 64) ** 64) ** 64) > value", {"value": 1})

    def test_formula_power_budget(self, sandbox):
        with pytest.raises(ExpressionBudgetExceeded):
            evaluate_formula(sandbox, "=((({value} ^ 64) ^ 64) ^ 64) > 1", "9", {})

    def test_small_powers_still_evaluate(self, sandbox):
        assert sandbox.evaluate("2 ** 10 == 1024", {})
        assert sandbox.evaluate("0.5 ** 64 > 0", {})
        assert evaluate_formula(sandbox, "={value} ^ 2 = 81", "9", {})

    def test_product_budget(self, sandbox):
        with pytest.raises(ExpressionBudgetExceeded):
            sandbox.evaluate("value * value", {"value": 10 ** 3000})

    def test_runtime_errors_become_expression_errors(self, sandbox):
        with pytest.raises(ExpressionError):
            sandbox.evaluate("1 / 0", {})


class TestTranslateJs:
    """Tests for JavaScript-flavoured boolean syntax"""

    def test_operators_and_literals(self):
        python = translate_js("a === null && !b || c !== true")
        assert "==" in python and " and " in python and " not " in python
        assert "None" in python and "True" in python

    def test_strings_are_untouched(self):
        assert translate_js("value === 'a && b'") == "value  ==  'a && b'"

    def test_not_equal_is_not_negation(self, sandbox):
        assert sandbox.evaluate(translate_js("value != 3"), {"value": 2})


class TestFormulas:
    """Tests for spreadsheet formula evaluation"""

    def test_translation(self):
        expression, references = translate_formula('=FORMULA:IF({Weight} <> "", {Weight} > 40, TRUE)')
        assert references == {"fld_Weight": "Weight"}
        assert "!=" in expression and "True" in expression
        assert expression.startswith("IF(")

    def test_numeric_strings_are_numbers(self, sandbox):
        assert evaluate_formula(sandbox, "={value} > 9", "10", {})

    def test_field_references(self, sandbox):
        data = {"systolic": "120", "diastolic": "80"}
        assert evaluate_formula(sandbox, "={systolic} > {diastolic}", None, data)

    def test_concatenation(self, sandbox):
        data = {"first": "J", "last": "D"}
        assert evaluate_formula(sandbox, '=({first} & {last}) = "JD"', None, data)

    def test_functions(self, sandbox):
        assert evaluate_formula(sandbox, "=AND(ISNUMBER({value}), MOD({value}, 2) = 0)", "4", {})
        assert evaluate_formula(sandbox, '=UPPER(LEFT({value}, 2)) = "AB"', "abc", {})
        assert evaluate_formula(sandbox, "=ROUND(AVERAGE(1, 2, 4), 1) = 2.3", None, {})
        assert evaluate_formula(sandbox, '=YEAR({value}) = 2024', "2024-03-15", {})
        assert evaluate_formula(sandbox, "=ISBLANK({missing})", "x", {})

    def test_truthiness(self):
        assert formula_truth(True) and not formula_truth(False)
        assert formula_truth(3) and not formula_truth(0)
        assert formula_truth("yes") and not formula_truth("No")
        assert formula_truth("anything") and not formula_truth(None)

    def test_empty_formula(self, sandbox):
        with pytest.raises(ExpressionError):
            evaluate_formula(sandbox, "=FORMULA:", "x", {})
