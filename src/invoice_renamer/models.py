from __future__ import annotations

import enum
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .rename_ops import DirectoryHandle

DEFAULT_TEMPLATE = "{date}_{merchant}_{amount}"

_VALID_LANGUAGES = frozenset({"en", "zh"})
_VALID_ON_CONFLICT = frozenset({"overwrite", "suffix"})

_TRUE_STRINGS = frozenset({"1", "true", "yes", "on"})
_FALSE_STRINGS = frozenset({"0", "false", "no", "off"})


def _coerce_bool(name: str, value: object) -> bool:
    """Accept bools and the usual config-file spellings ("true", "no", 1, ...)."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
    raise ValueError(f"{name} must be a boolean, got {value!r}")


def _coerce_timeout(value: object) -> float:
    if isinstance(value, bool):
        raise ValueError(f"llm_timeout_s must be a number of seconds, got {value!r}")
    try:
        timeout = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise ValueError(f"llm_timeout_s must be a number of seconds, got {value!r}") from None
    if not math.isfinite(timeout):
        raise ValueError(f"llm_timeout_s must be finite, got {value!r}")
    return timeout


class Provider(str, enum.Enum):
    GLM = "glm"
    GEMINI = "gemini"
    QWEN = "qwen"


class FileStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class ExtractedRecord:
    date: str
    merchant: str
    invoice: str
    month: str
    amount: float
    currency: str

    def as_dict(self) -> dict[str, object]:
        return {
            "date": self.date,
            "merchant": self.merchant,
            "invoice": self.invoice,
            "month": self.month,
            "amount": self.amount,
            "currency": self.currency,
        }


@dataclass
class TrackedFile:
    """One ingested PDF and its progress through the batch."""

    original_name: str
    content: bytes = field(repr=False)
    write_handle: DirectoryHandle | None = None
    extracted: ExtractedRecord | None = None
    new_name: str = ""
    status: FileStatus = FileStatus.PENDING
    error: str | None = None

    def __post_init__(self) -> None:
        if not self.new_name:
            self.new_name = self.original_name

    def mark_processing(self) -> None:
        self.status = FileStatus.PROCESSING
        self.error = None
        self.extracted = None

    def mark_failed(self, message: str) -> None:
        self.status = FileStatus.FAILED
        self.error = message
        self.extracted = None

    def mark_completed(self, extracted: ExtractedRecord, new_name: str) -> None:
        self.extracted = extracted
        self.new_name = new_name
        self.error = None
        self.status = FileStatus.COMPLETED


@dataclass(frozen=True)
class RenameConfig:
    template: str = DEFAULT_TEMPLATE
    sanitize: bool = True
    provider: Provider = Provider.GLM
    # Prompt language and placeholder locale for unrecognized fields.
    language: str = "en"
    # "overwrite" replaces an untracked entry with the same name; "suffix" appends _1, _2, ...
    # Names belonging to other files in the batch always get a suffix.
    on_conflict: str = "overwrite"
    # LLM (env: INVOICE_RENAMER_LLM_URL, INVOICE_RENAMER_LLM_MODEL, INVOICE_RENAMER_LLM_TIMEOUT)
    llm_base_url: str | None = None
    llm_model: str | None = None
    llm_timeout_s: float | None = None
    # Append old_name\tnew_name per successful rename
    rename_log_path: str | Path | None = None
    # Write extracted fields per completed file to CSV/JSON after the batch
    export_metadata_path: str | Path | None = None

    def __post_init__(self) -> None:
        try:
            object.__setattr__(self, "provider", Provider(self.provider))
        except ValueError:
            valid = sorted(p.value for p in Provider)
            raise ValueError(f"provider must be one of {valid}, got {self.provider!r}") from None
        if self.template is None or not isinstance(self.template, str):
            raise ValueError("template must be a string")
        object.__setattr__(self, "sanitize", _coerce_bool("sanitize", self.sanitize))
        if self.llm_timeout_s is not None:
            object.__setattr__(self, "llm_timeout_s", _coerce_timeout(self.llm_timeout_s))
        if self.language not in _VALID_LANGUAGES:
            raise ValueError(f"language must be one of {sorted(_VALID_LANGUAGES)}, got {self.language!r}")
        if self.on_conflict not in _VALID_ON_CONFLICT:
            raise ValueError(f"on_conflict must be one of {sorted(_VALID_ON_CONFLICT)}, got {self.on_conflict!r}")


def build_config_from_flat_dict(data: dict) -> RenameConfig:
    """Build RenameConfig from a flat dict of option names -> values; unknown keys are ignored."""
    allowed = set(RenameConfig.__dataclass_fields__)
    kwargs = {k: v for k, v in data.items() if k in allowed}
    return RenameConfig(**kwargs)
