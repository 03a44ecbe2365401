from __future__ import annotations

import pytest

from invoice_renamer.errors import ParseError
from invoice_renamer.llm import _extract_json_from_response, build_prompt, parse_invoice_fields

PLAIN = (
    '{"date":"2024-01-05","merchant":"Acme","invoice":"Office supplies",'
    '"month":"01","amount":42.5,"currency":"USD"}'
)


def test_parse_plain_json() -> None:
    record = parse_invoice_fields(PLAIN)
    assert record.date == "2024-01-05"
    assert record.merchant == "Acme"
    assert record.invoice == "Office supplies"
    assert record.month == "01"
    assert record.amount == 42.5
    assert record.currency == "USD"


def test_code_fenced_json_parses_like_plain() -> None:
    fenced = f"```json\n{PLAIN}\n```"
    assert parse_invoice_fields(fenced) == parse_invoice_fields(PLAIN)
    assert parse_invoice_fields(f"  ```{PLAIN}```  ") == parse_invoice_fields(PLAIN)
    assert parse_invoice_fields(f"```JSON {PLAIN} ```") == parse_invoice_fields(PLAIN)


def test_leading_prose_is_skipped() -> None:
    assert parse_invoice_fields(f"Here is the result: {PLAIN} Hope this helps.") == parse_invoice_fields(PLAIN)


def test_unterminated_fence_is_stripped() -> None:
    assert _extract_json_from_response(f"```json\n{PLAIN}") == PLAIN


def test_invalid_json_raises_parse_error() -> None:
    with pytest.raises(ParseError):
        parse_invoice_fields("I could not read this invoice.")
    with pytest.raises(ParseError):
        parse_invoice_fields("")


def test_non_object_json_raises_parse_error() -> None:
    with pytest.raises(ParseError):
        parse_invoice_fields('["2024-01-05", "Acme"]')


def test_missing_fields_use_placeholders() -> None:
    record = parse_invoice_fields('{"merchant": "Acme"}')
    assert record.merchant == "Acme"
    assert record.date == "unknown"
    assert record.invoice == "unknown"
    assert record.month == "unknown"
    assert record.amount == 0.0
    assert record.currency == "unknown"


def test_placeholder_follows_language() -> None:
    record = parse_invoice_fields('{"merchant": "未知", "amount": null}', language="zh")
    assert record.merchant == "未知"
    assert record.date == "未知"
    assert record.amount == 0.0


def test_not_specified_values_become_placeholders() -> None:
    record = parse_invoice_fields('{"merchant": "Not Specified", "invoice": "N/A", "currency": null}')
    assert record.merchant == "unknown"
    assert record.invoice == "unknown"
    assert record.currency == "unknown"


def test_date_is_normalized_and_month_derived() -> None:
    record = parse_invoice_fields('{"date": "2024/3/7", "month": ""}')
    assert record.date == "2024-03-07"
    assert record.month == "03"

    record = parse_invoice_fields('{"date": "2024年12月31日"}')
    assert record.date == "2024-12-31"
    assert record.month == "12"


def test_invalid_date_becomes_placeholder() -> None:
    record = parse_invoice_fields('{"date": "2024-13-45", "month": 4}')
    assert record.date == "unknown"
    assert record.month == "04"


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ('"¥1,234.50"', 1234.5),
        ('"12,50 EUR"', 12.5),
        ('"$ 42"', 42.0),
        ("99", 99.0),
        ('"free"', 0.0),
        ("true", 0.0),
    ],
)
def test_amount_parsing(raw, expected) -> None:
    assert parse_invoice_fields('{"amount": ' + raw + "}").amount == expected


def test_whitespace_in_text_fields_is_collapsed() -> None:
    record = parse_invoice_fields('{"merchant": "  Acme\\n  GmbH "}')
    assert record.merchant == "Acme GmbH"


def test_prompt_requests_all_fields() -> None:
    for language in ("en", "zh"):
        prompt = build_prompt(language)
        for key in ("date", "merchant", "invoice", "month", "amount", "currency"):
            assert key in prompt
        assert "YYYY-MM-DD" in prompt
