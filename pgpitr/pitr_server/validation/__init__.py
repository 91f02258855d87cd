"""
Validator: sandbox trial restores.
"""

from .validator import ValidationOutcome, ValidationReport, Validator

__all__ = ["ValidationOutcome", "ValidationReport", "Validator"]
