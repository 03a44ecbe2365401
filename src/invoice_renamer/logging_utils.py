from __future__ import annotations

import json
import logging
import os
from pathlib import Path

STRUCTURED_LOGS_ENV = "INVOICE_RENAMER_STRUCTURED_LOGS"


class StructuredLogFormatter(logging.Formatter):
    """One JSON object per line, for log shipping."""

    def format(self, record: logging.LogRecord) -> str:
        try:
            message = record.getMessage()
        except Exception as exc:
            message = f"<message unavailable: {exc!s}>"
        payload: dict[str, str] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "message": message,
        }
        if record.name != "root":
            payload["logger"] = record.name
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def _structured_logs_enabled() -> bool:
    return os.environ.get(STRUCTURED_LOGS_ENV, "").strip().lower() in ("1", "true", "yes")


def setup_logging(*, log_file: str | Path | None = "invoice_renamer.log", level: int = logging.INFO) -> None:
    """Attach a console handler and (unless log_file is None) a file handler to the root logger, once."""
    root = logging.getLogger()
    root.setLevel(level)

    if _structured_logs_enabled():
        formatter: logging.Formatter = StructuredLogFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(levelname)s - %(name)s - %(message)s")

    if not any(type(h) is logging.StreamHandler for h in root.handlers):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        root.addHandler(console_handler)

    if log_file and not any(isinstance(h, logging.FileHandler) for h in root.handlers):
        try:
            log_path = Path(log_file)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(str(log_path), encoding="utf-8")
            file_handler.setLevel(level)
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)
        except OSError:
            root.debug("Could not create file handler for %s", log_file)
