from __future__ import annotations

import json
import logging
import math
import os
import re
from dataclasses import dataclass
from datetime import date
from typing import Any, ClassVar

import requests

from .errors import ConfigError, ParseError, UpstreamError
from .models import ExtractedRecord, Provider, RenameConfig
from .pdf_render import image_to_data_url

logger = logging.getLogger(__name__)

# Session per base_url for connection reuse across files in one batch.
_llm_sessions: dict[str, requests.Session] = {}

FIELDS = ("date", "merchant", "invoice", "month", "amount", "currency")

PLACEHOLDERS = {"en": "unknown", "zh": "未知"}

# Values models use for "not found" instead of leaving a field empty.
_MISSING_VALUES = frozenset({"", "na", "n/a", "none", "null", "not specified", "unknown", "未知", "无"})

_SYSTEM_PROMPTS = {
    "en": (
        "You are an invoice OCR assistant. From the image extract: the invoice date (date), "
        "the merchant name (merchant), a short description of what was invoiced (invoice), "
        "the month as two digits (month), the total amount as a number (amount) and the "
        "currency code or symbol (currency). If a field is unclear, infer the most likely "
        'value from context. Never answer "Not Specified"; if a field cannot be found, '
        'write "unknown". The date must use the YYYY-MM-DD format.'
    ),
    "zh": (
        "你是一个专业的发票 OCR 助手。\n"
        "请从图片中提取：日期(date)、商户名(merchant)、发票内容简述(invoice)、"
        "月份(month,两位数字)、金额(amount,数字)、货币符号(currency)。\n"
        "如果某些信息模糊，请根据上下文推断最可能的名称。\n"
        '不要返回 "Not Specified"，如果找不到，请写 "未知"。\n'
        "日期必须符合 YYYY-MM-DD 格式。"
    ),
}

_FORMAT_INSTRUCTIONS = {
    "en": (
        "Return ONLY a JSON object with exactly the keys date, merchant, invoice, month, "
        "amount, currency. No explanations."
    ),
    "zh": "必须直接返回 JSON 格式，键为 date、merchant、invoice、month、amount、currency，不要包含任何解释性文字。",
}


def build_prompt(language: str = "en") -> str:
    lang = language if language in _SYSTEM_PROMPTS else "en"
    return f"{_SYSTEM_PROMPTS[lang]} {_FORMAT_INSTRUCTIONS[lang]}"


def _extract_json_from_response(response: str) -> str:
    """
    Strip code fences (```json ... ``` or ``` ... ```) and leading prose from a model
    reply. Returns the first plausible JSON object slice or the stripped text.
    """
    text = response.strip()
    if not text:
        return text

    code_fence = re.search(
        r"```(?:json)?\s*\n?(.*?)```",
        text,
        re.DOTALL | re.IGNORECASE,
    )
    if code_fence:
        text = code_fence.group(1).strip()
    else:
        # Unterminated fence: drop the markers only.
        text = re.sub(r"```(?:json)?", "", text, flags=re.IGNORECASE).strip()
    if text.startswith("{"):
        return text

    start = text.find("{")
    if start == -1:
        return text

    # Find matching closing brace, skipping braces inside strings.
    depth = 0
    i = start
    while i < len(text):
        if text[i] == "{":
            depth += 1
        elif text[i] == "}":
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
        elif text[i] == '"':
            i += 1
            while i < len(text):
                if text[i] == "\\" and i + 1 < len(text):
                    i += 2
                    continue
                if text[i] == '"':
                    break
                i += 1
        i += 1

    return text[start:]


def _clean_text(value: Any, placeholder: str) -> str:
    if value is None or isinstance(value, (dict, list)):
        return placeholder
    text = " ".join(str(value).split())
    if text.lower() in _MISSING_VALUES:
        return placeholder
    return text


_DATE_RE = re.compile(r"(\d{4})\s*[-/.年]\s*(\d{1,2})\s*[-/.月]\s*(\d{1,2})")


def _parse_date(value: Any) -> date | None:
    if not isinstance(value, str):
        return None
    m = _DATE_RE.search(value)
    if not m:
        return None
    try:
        return date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
    except ValueError:
        return None


def _parse_month(value: Any, parsed_date: date | None) -> str | None:
    if isinstance(value, bool):
        value = None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if float(value).is_integer() and 1 <= int(value) <= 12:
            return f"{int(value):02d}"
    elif isinstance(value, str):
        m = re.fullmatch(r"\s*(\d{1,2})\s*月?\s*", value)
        if m and 1 <= int(m.group(1)) <= 12:
            return f"{int(m.group(1)):02d}"
    if parsed_date is not None:
        return f"{parsed_date.month:02d}"
    return None


_AMOUNT_RE = re.compile(r"-?\d+(?:[,\s]\d{3})*(?:[.,]\d+)?")


def _parse_amount(value: Any) -> float:
    """Numbers pass through; strings like "¥1,234.50" or "12,50 EUR" are parsed; anything else is 0."""
    if isinstance(value, bool) or value is None:
        return 0.0
    if isinstance(value, (int, float)):
        amount = float(value)
        return amount if math.isfinite(amount) else 0.0
    if not isinstance(value, str):
        return 0.0
    m = _AMOUNT_RE.search(value)
    if not m:
        return 0.0
    raw = re.sub(r"\s", "", m.group(0))
    if re.fullmatch(r"-?\d+,\d{1,2}", raw):
        raw = raw.replace(",", ".")
    else:
        raw = raw.replace(",", "")
    try:
        amount = float(raw)
    except ValueError:
        return 0.0
    return amount if math.isfinite(amount) else 0.0


def parse_invoice_fields(response: str | dict | None, *, language: str = "en") -> ExtractedRecord:
    """
    Parse a model reply into an ExtractedRecord. Fields the model could not recognize are
    replaced by placeholders; only a reply that is not a JSON object raises ParseError.
    """
    placeholder = PLACEHOLDERS.get(language, PLACEHOLDERS["en"])
    if isinstance(response, dict):
        data: Any = response
    else:
        if response is None or not isinstance(response, str) or not response.strip():
            raise ParseError("model returned an empty response")
        candidate = _extract_json_from_response(response)
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError as exc:
            logger.warning("Model response could not be parsed as JSON: %s", response[:500])
            raise ParseError(f"model response is not valid JSON ({exc.msg})") from exc
    if not isinstance(data, dict):
        raise ParseError(f"model response is a JSON {type(data).__name__}, expected an object")

    missing = [k for k in FIELDS if k not in data]
    if missing:
        logger.info("Model response missing field(s) %s; using placeholders", ", ".join(missing))

    parsed_date = _parse_date(data.get("date"))
    return ExtractedRecord(
        date=parsed_date.isoformat() if parsed_date else placeholder,
        merchant=_clean_text(data.get("merchant"), placeholder),
        invoice=_clean_text(data.get("invoice"), placeholder),
        month=_parse_month(data.get("month"), parsed_date) or placeholder,
        amount=_parse_amount(data.get("amount")),
        currency=_clean_text(data.get("currency"), placeholder),
    )


def _error_message_from_body(resp: requests.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return (resp.text or "").strip()[:200]
    if isinstance(body, list) and body:
        body = body[0]
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str) and err:
            return err
        if body.get("message"):
            return str(body["message"])
    return ""


def _message_content(data: Any) -> str | dict:
    """Pull the reply text out of a chat-completions envelope (or accept a bare field object)."""
    if not isinstance(data, dict):
        raise UpstreamError(f"response is a JSON {type(data).__name__}, expected an object")
    choices = data.get("choices")
    if choices is None and any(k in data for k in FIELDS):
        return data
    if not isinstance(choices, list) or len(choices) == 0:
        raise UpstreamError("response missing or empty 'choices'")
    first_choice = choices[0]
    message = first_choice.get("message") if isinstance(first_choice, dict) else None
    if not isinstance(message, dict):
        raise UpstreamError("response 'choices[0]' has no message")
    content = message.get("content")
    if isinstance(content, list):
        content = "".join(
            str(part.get("text", "")) for part in content if isinstance(part, dict) and part.get("type") == "text"
        )
    if not isinstance(content, str):
        raise UpstreamError("response message has no text content")
    return content


@dataclass(frozen=True)
class VisionClient:
    """Chat-completions vision endpoint authenticated with a bearer token from the environment."""

    provider: ClassVar[Provider]
    api_key_env: ClassVar[str]

    base_url: str = ""
    model: str = ""
    timeout_s: float = 60.0
    language: str = "en"

    def api_key(self) -> str:
        key = (os.environ.get(self.api_key_env) or "").strip()
        if not key:
            raise ConfigError(f"{self.api_key_env} is not set; configure an API key for provider {self.provider.value!r}")
        return key

    def build_payload(self, data_url: str) -> dict[str, Any]:
        return {
            "model": self.model,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": build_prompt(self.language)},
                        {"type": "image_url", "image_url": {"url": data_url}},
                    ],
                }
            ],
        }

    def _post(self, payload: dict[str, Any], api_key: str) -> Any:
        session = _llm_sessions.get(self.base_url)
        if session is None:
            session = requests.Session()
            _llm_sessions[self.base_url] = session
        try:
            resp = session.post(
                self.base_url,
                json=payload,
                headers={"Authorization": f"Bearer {api_key}"},
                timeout=self.timeout_s,
            )
        except requests.RequestException as exc:
            logger.error("%s unreachable: %s", self.provider.value, exc)
            raise UpstreamError(f"{self.provider.value} unreachable: {exc}") from exc
        status = getattr(resp, "status_code", None)
        if status is None or not 200 <= status < 300:
            detail = _error_message_from_body(resp)
            logger.warning(
                "%s HTTP error (status=%s, body=%s)",
                self.provider.value,
                status,
                (getattr(resp, "text", None) or "")[:500],
            )
            msg = f"{self.provider.value} request failed (HTTP {status})"
            raise UpstreamError(f"{msg}: {detail}" if detail else msg)
        try:
            return resp.json()
        except ValueError as exc:
            raise UpstreamError(f"{self.provider.value} response is not JSON") from exc

    def extract(self, image: bytes) -> ExtractedRecord:
        api_key = self.api_key()
        payload = self.build_payload(image_to_data_url(image))
        logger.debug("Requesting invoice fields from %s (%s)", self.provider.value, self.model)
        data = self._post(payload, api_key)
        return parse_invoice_fields(_message_content(data), language=self.language)


@dataclass(frozen=True)
class GLMClient(VisionClient):
    provider: ClassVar[Provider] = Provider.GLM
    api_key_env: ClassVar[str] = "GLM_API_KEY"

    base_url: str = "https://open.bigmodel.cn/api/paas/v4/chat/completions"
    model: str = "glm-4v-flash"

    def build_payload(self, data_url: str) -> dict[str, Any]:
        payload = super().build_payload(data_url)
        payload["response_format"] = {"type": "json_object"}
        return payload


@dataclass(frozen=True)
class GeminiClient(VisionClient):
    provider: ClassVar[Provider] = Provider.GEMINI
    api_key_env: ClassVar[str] = "GEMINI_API_KEY"

    base_url: str = "https://generativelanguage.googleapis.com/v1beta/openai/chat/completions"
    model: str = "gemini-2.5-flash"

    def build_payload(self, data_url: str) -> dict[str, Any]:
        # Image first, then the instruction.
        return {
            "model": self.model,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "image_url", "image_url": {"url": data_url}},
                        {"type": "text", "text": build_prompt(self.language)},
                    ],
                }
            ],
            "response_format": {"type": "json_object"},
        }


@dataclass(frozen=True)
class QwenClient(VisionClient):
    provider: ClassVar[Provider] = Provider.QWEN
    api_key_env: ClassVar[str] = "QWEN_API_KEY"

    base_url: str = "https://dashscope.aliyuncs.com/compatible-mode/v1/chat/completions"
    model: str = "qwen-vl-plus"


_CLIENT_CLASSES: dict[Provider, type[VisionClient]] = {
    Provider.GLM: GLMClient,
    Provider.GEMINI: GeminiClient,
    Provider.QWEN: QwenClient,
}


def _config_or_env(value: str | None, env_key: str) -> str:
    """Resolve string from config value, then env. Empty string treated as unset."""
    return (value or "").strip() or (os.environ.get(env_key) or "").strip()


def _timeout_from_config(config: RenameConfig) -> float:
    timeout_s = config.llm_timeout_s
    if timeout_s is None or timeout_s <= 0:
        try:
            timeout_s = float(os.environ.get("INVOICE_RENAMER_LLM_TIMEOUT", "") or 0)
        except ValueError:
            timeout_s = 60.0
        if timeout_s <= 0:
            timeout_s = 60.0
    return timeout_s


def client_for_provider(config: RenameConfig) -> VisionClient:
    """Build the client for config.provider (URL/model/timeout from config, env INVOICE_RENAMER_LLM_*, defaults)."""
    cls = _CLIENT_CLASSES[Provider(config.provider)]
    kwargs: dict[str, Any] = {
        "timeout_s": _timeout_from_config(config),
        "language": config.language,
    }
    base_url = _config_or_env(config.llm_base_url, "INVOICE_RENAMER_LLM_URL")
    if base_url:
        kwargs["base_url"] = base_url
    model = _config_or_env(config.llm_model, "INVOICE_RENAMER_LLM_MODEL")
    if model:
        kwargs["model"] = model
    return cls(**kwargs)
