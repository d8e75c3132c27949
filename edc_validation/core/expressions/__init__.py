"""
Sandboxed evaluation of user-authored rule expressions and formulas.
"""

from .formula import (
    FORMULA_FUNCTIONS,
    FORMULA_MARKER,
    evaluate_formula,
    formula_truth,
    is_formula,
    translate_formula,
)
from .sandbox import (
    ExpressionBudgetExceeded,
    ExpressionError,
    ExpressionSandbox,
    RecordView,
    translate_js,
)

__all__ = [
    "ExpressionBudgetExceeded",
    "ExpressionError",
    "ExpressionSandbox",
    "FORMULA_FUNCTIONS",
    "FORMULA_MARKER",
    "RecordView",
    "evaluate_formula",
    "formula_truth",
    "is_formula",
    "translate_formula",
    "translate_js",
]
