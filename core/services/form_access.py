"""
Per-tier allow-list of prediction form types.
"""

from __future__ import annotations

from core.config import Settings


def get_allowed_forms(user_tier: str, settings: Settings) -> tuple[str, ...]:
    forms = settings.allowed_forms.get(user_tier)
    if forms is None:
        forms = settings.allowed_forms["unregistered"]
    return tuple(forms)


def check_form_access(form_type: str, user_tier: str, settings: Settings) -> bool:
    return form_type in get_allowed_forms(user_tier, settings)
