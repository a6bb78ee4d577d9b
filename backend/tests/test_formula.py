from __future__ import annotations

import itertools
import math
from unittest import TestCase
from unittest.mock import patch

from sensorbridge.services.errors import ConversionError, FormulaValidationError
from sensorbridge.services.formula import (
    CODE_EVALUATION_ERROR,
    CODE_MISSING_VARIABLE,
    CODE_NON_FINITE_RESULT,
    CODE_PROHIBITED_TOKEN,
    CODE_SYNTAX_ERROR,
    CODE_UNSUPPORTED_CONSTRUCT,
    compile_formula,
    validate_formula,
)


class FormulaValidationTests(TestCase):
    def assertRejected(self, formula: str, code: str, **limits: int) -> str:
        result = validate_formula(formula, **limits)
        self.assertFalse(result.ok, formula)
        self.assertEqual(result.code, code, f"{formula}: {result.reason}")
        self.assertTrue(result.reason)
        return result.reason or ""

    def test_code_loading_and_process_access_are_prohibited(self) -> None:
        for formula in ("require('fs')", "process.exit()", "eval('1')", "__import__('os')", "x + exec"):
            with self.subTest(formula=formula):
                reason = self.assertRejected(formula, CODE_PROHIBITED_TOKEN)
                self.assertIn("prohibited", reason)

    def test_simple_formula_is_accepted(self) -> None:
        result = validate_formula("x*2")

        self.assertTrue(result.ok)
        self.assertIsNone(result.reason)
        self.assertEqual(result.probe_value, 1.0)
        self.assertEqual(result.probe_result, 2.0)

    def test_formula_without_variable_is_rejected(self) -> None:
        reason = self.assertRejected("2", CODE_MISSING_VARIABLE)

        self.assertIn("'x'", reason)

    def test_syntax_errors(self) -> None:
        self.assertRejected("x*", CODE_SYNTAX_ERROR)
        self.assertRejected("", CODE_SYNTAX_ERROR)
        self.assertRejected("   ", CODE_SYNTAX_ERROR)
        self.assertRejected("(x + 1", CODE_SYNTAX_ERROR)

    def test_constructs_outside_the_whitelist_are_rejected(self) -> None:
        for formula in (
            "x if x > 0 else 1",
            "x.real",
            "[x]",
            "foo(x)",
            "y + x",
            "True + x",
            "'a' * x",
            "sqrt(x, 2)",
            "max(x)",
            "x > 1",
        ):
            with self.subTest(formula=formula):
                self.assertRejected(formula, CODE_UNSUPPORTED_CONSTRUCT)

    def test_whitelisted_functions_and_math_aliases(self) -> None:
        cases = {
            "Math.sqrt(x) + math.pi": 1.0 + math.pi,
            "cos(x - 1)": 1.0,
            "log10(x * 100)": 2.0,
            "pow(x + 1, 3) - Math.PI": 8.0 - math.pi,
            "min(x, 10) + max(x, 2, 3)": 4.0,
            "x ** 2 // 3 % 5 + e": math.e,
            "-x + +x": 0.0,
            "round(x * 2.456, 1)": 2.5,
            "degrees(atan2(x, x))": 45.0,
        }
        for formula, expected in cases.items():
            with self.subTest(formula=formula):
                result = validate_formula(formula)
                self.assertTrue(result.ok, result.reason)
                self.assertAlmostEqual(result.probe_result, expected, places=9)

    def test_probe_failures(self) -> None:
        self.assertRejected("log(x - 1)", CODE_EVALUATION_ERROR)
        self.assertRejected("1 / (x - 1)", CODE_EVALUATION_ERROR)
        self.assertRejected("exp(1000 * x)", CODE_EVALUATION_ERROR)
        reason = self.assertRejected("x * 1e308 * 10", CODE_NON_FINITE_RESULT)
        self.assertIn("finite", reason)

    def test_length_and_size_limits(self) -> None:
        self.assertRejected("x + 1 + 1 + 1 + 1", CODE_SYNTAX_ERROR, max_length=16)
        self.assertRejected("x+x+x+x+x", CODE_UNSUPPORTED_CONSTRUCT, max_nodes=8)


class FormulaEvaluationTests(TestCase):
    def test_runtime_failure_outside_probe_domain(self) -> None:
        compiled = compile_formula("1 / (x - 2)")

        self.assertEqual(compiled.evaluate(3.0), 1.0)
        with self.assertRaises(ConversionError):
            compiled.evaluate(2.0)

    def test_fractional_power_of_negative_input_fails(self) -> None:
        compiled = compile_formula("x ** 0.5")

        self.assertEqual(compiled.evaluate(16.0), 4.0)
        with self.assertRaises(ConversionError):
            compiled.evaluate(-4.0)

    def test_evaluation_deadline(self) -> None:
        compiled = compile_formula("x * 2 + 1")

        with patch("sensorbridge.services.formula.time.monotonic", side_effect=itertools.count(0.0, 1.0)):
            with self.assertRaises(ConversionError) as ctx:
                compiled.evaluate(1.0, timeout_ms=50)
        self.assertIn("timed out", ctx.exception.detail)

    def test_compile_rejects_with_reason_and_code(self) -> None:
        with self.assertRaises(FormulaValidationError) as ctx:
            compile_formula("open('x')")

        self.assertEqual(ctx.exception.code, CODE_PROHIBITED_TOKEN)
        self.assertIn("open", ctx.exception.reason)
