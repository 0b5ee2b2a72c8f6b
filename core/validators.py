"""
Shared validation helpers for Cosmic Quirks services.
"""

from __future__ import annotations

import re
from typing import Optional

from core.errors import ValidationIssue

MAX_NAME_LENGTH = 50
MIN_QUESTION_LENGTH = 10
MAX_QUESTION_LENGTH = 500
MAX_FORM_TYPE_LENGTH = 50
MAX_SAVED_IMAGE_LENGTH = 5_000_000

_MONTH_PATTERN = re.compile(r"[0-9]{1,2}")
_YEAR_PATTERN = re.compile(r"[0-9]{4}")


def validate_required_text(value: str, field: str, max_len: int, min_len: int = 1) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ValidationIssue(f"{field} must be a non-empty string", field=field, error_type="required")
    if len(value) < min_len:
        raise ValidationIssue(f"{field} must be at least {min_len} characters", field=field, error_type="min_length")
    if len(value) > max_len:
        raise ValidationIssue(f"{field} exceeds max length {max_len}", field=field, error_type="max_length")


def validate_optional_text(value: Optional[str], field: str, max_len: int) -> None:
    if value is None:
        return
    if not isinstance(value, str):
        raise ValidationIssue(f"{field} must be a string", field=field, error_type="invalid_type")
    if len(value) > max_len:
        raise ValidationIssue(f"{field} exceeds max length {max_len}", field=field, error_type="max_length")


def validate_birth_month(value: str) -> None:
    validate_required_text(value, "month", 2)
    if not _MONTH_PATTERN.fullmatch(value) or not 1 <= int(value) <= 12:
        raise ValidationIssue("month must be a number between 1 and 12", field="month", error_type="out_of_range")


def validate_birth_year(value: str) -> None:
    if not isinstance(value, str) or not _YEAR_PATTERN.fullmatch(value):
        raise ValidationIssue("year must be a four digit number", field="year", error_type="invalid_format")


def validate_prediction_input(name: str, month: str, year: str, question: str, form_type: str) -> None:
    """Field checks shared by the generation and save endpoints."""
    validate_required_text(name, "name", MAX_NAME_LENGTH)
    validate_birth_month(month)
    validate_birth_year(year)
    validate_required_text(question, "question", MAX_QUESTION_LENGTH, min_len=MIN_QUESTION_LENGTH)
    validate_required_text(form_type, "formType", MAX_FORM_TYPE_LENGTH)
