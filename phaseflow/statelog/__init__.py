"""Versioned state log stored on a dedicated git reference."""

from .git_log import VersionedStateLog, normalize_key

__all__ = ["VersionedStateLog", "normalize_key"]
