"""Commit/transaction handling for artifacts produced by phases."""

from .handler import CommitHandler, CommitRecord, VerificationResult
from .messages import (
    KNOWN_PERSONAS,
    MessageCorrection,
    MessageValidation,
    correct_message_format,
    format_error_report,
    format_message,
    validate_message,
)

__all__ = [
    "CommitHandler",
    "CommitRecord",
    "VerificationResult",
    "KNOWN_PERSONAS",
    "MessageCorrection",
    "MessageValidation",
    "correct_message_format",
    "format_error_report",
    "format_message",
    "validate_message",
]
