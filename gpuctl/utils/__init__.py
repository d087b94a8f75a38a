"""Utility functions and helpers for the gpuctl application."""
from typing import Any, Iterable, List

from ..config import Config

REDACTED = "[REDACTED]"


def redact_sensitive_data(data: Any) -> Any:
    """Recursively redact sensitive data from dictionaries and lists.

    Args:
        data: Input data that might contain sensitive information

    Returns:
        Data with sensitive values redacted
    """
    if isinstance(data, dict):
        return {
            k: REDACTED if any(
                redact_key.lower() in str(k).lower()
                for redact_key in Config.REDACT_KEYS
            ) else redact_sensitive_data(v)
            for k, v in data.items()
        }
    elif isinstance(data, (list, tuple)):
        return [redact_sensitive_data(item) for item in data]
    return data


def redact_values(text: str, secrets: Iterable[str]) -> str:
    """Replace every occurrence of the given secret values in text."""
    for secret in secrets:
        if secret:
            text = text.replace(secret, REDACTED)
    return text


def redact_argv(argv: Iterable[str], secrets: Iterable[str]) -> List[str]:
    secrets = [s for s in secrets if s]
    return [redact_values(arg, secrets) for arg in argv]
