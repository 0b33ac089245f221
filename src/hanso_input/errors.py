"""Exceptions raised when a requested operation breaks a workbook rule."""

from __future__ import annotations


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced sheet, template or rate is unknown."""


class InputValidationError(BusinessRuleViolation):
    """Raised when clerk input cannot be accepted as typed."""


class TotalRowNotFoundError(BusinessRuleViolation):
    """Raised when a normal sheet has no ``合計`` row to anchor its data."""


__all__ = [
    "BusinessRuleViolation",
    "MissingReferenceError",
    "InputValidationError",
    "TotalRowNotFoundError",
]
