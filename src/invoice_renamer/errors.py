"""
Error types raised inside the per-file pipeline.

Storage failures use the built-in PermissionError and OSError.
"""

from __future__ import annotations


class InvoiceRenamerError(Exception):
    """Base class for pipeline errors."""


class DecodeError(InvoiceRenamerError):
    """PDF bytes are unreadable, encrypted or have no pages."""


class ConfigError(InvoiceRenamerError):
    """Required configuration (e.g. a provider API key) is missing."""


class UpstreamError(InvoiceRenamerError):
    """Extraction provider could not be reached or returned a bad response."""


class ParseError(InvoiceRenamerError):
    """Provider content is not a JSON object."""
