"""
Filename templates: "{date}_{merchant}_{amount}" -> "2024-01-05_Acme_42.5".
"""

from __future__ import annotations

import re

from .models import ExtractedRecord

PLACEHOLDERS = ("date", "merchant", "invoice", "month", "amount", "currency")

DEFAULT_FALLBACK = "unknown"

_PLACEHOLDER_RE = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")


def format_amount(amount: float | int | None) -> str:
    """42.0 -> "42", 42.5 -> "42.5"."""
    if amount is None:
        return ""
    if isinstance(amount, float) and amount.is_integer():
        return str(int(amount))
    return str(amount)


def _field_values(record: ExtractedRecord) -> dict[str, str]:
    return {
        "date": record.date,
        "merchant": record.merchant,
        "invoice": record.invoice,
        "month": record.month,
        "amount": format_amount(record.amount),
        "currency": record.currency,
    }


def render(template: str, record: ExtractedRecord, *, fallback: str = DEFAULT_FALLBACK) -> str:
    """
    Replace each recognized {placeholder} in template with the matching field of record.
    Empty fields become fallback; unrecognized placeholders are left as written.
    """
    values = _field_values(record)

    def replacer(match: re.Match[str]) -> str:
        key = match.group(1)
        if key not in values:
            return match.group(0)
        value = values[key]
        if value is None or not str(value).strip():
            return fallback
        return str(value)

    return _PLACEHOLDER_RE.sub(replacer, template)


def template_placeholders(template: str) -> list[str]:
    """Recognized placeholders used by template, in order of first use."""
    seen: list[str] = []
    for m in _PLACEHOLDER_RE.finditer(template or ""):
        key = m.group(1)
        if key in PLACEHOLDERS and key not in seen:
            seen.append(key)
    return seen


def ensure_pdf_suffix(name: str) -> str:
    if name.lower().endswith(".pdf"):
        return name
    return f"{name}.pdf"
