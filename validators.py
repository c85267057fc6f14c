from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Generic, Optional, Tuple, TypeVar


T = TypeVar("T")

_DIGITS_RE = re.compile(r"[0-9]+")
_ENV_NAME_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


@dataclass
class ValidationResult(Generic[T]):
    value: Optional[T]
    error: Optional[str]

    @property
    def is_valid(self) -> bool:
        return self.error is None


def validate_int(
    value: str | None,
    *,
    default: Optional[int] = None,
    name: str = "value",
    min_value: Optional[int] = None,
    max_value: Optional[int] = None,
) -> ValidationResult[int]:
    if value is None or str(value).strip() == "":
        if default is None:
            return ValidationResult(None, f"{name} must be provided")
        return ValidationResult(default, None)
    try:
        parsed = int(str(value).strip())
    except ValueError:
        return ValidationResult(None, f"{name} must be an integer")
    if min_value is not None and parsed < min_value:
        return ValidationResult(None, f"{name} must be >= {min_value}")
    if max_value is not None and parsed > max_value:
        return ValidationResult(None, f"{name} must be <= {max_value}")
    return ValidationResult(parsed, None)


def validate_port(value: str | None, *, default: Optional[int] = None, name: str = "Port") -> ValidationResult[int]:
    return validate_int(value, default=default, name=name, min_value=1, max_value=65535)


def validate_non_negative_int(value: str | None, *, name: str = "value") -> ValidationResult[str]:
    """Accept only plain digit strings; "abc", "-1" and "12ab" are rejected."""
    if value is None or value == "":
        return ValidationResult(None, f"{name} must be provided")
    if not _DIGITS_RE.fullmatch(value):
        return ValidationResult(None, f"Invalid input for {name}: '{value}'. Please enter a non-negative number.")
    return ValidationResult(value, None)


def validate_absolute_path(value: str | None, *, name: str = "Path") -> ValidationResult[Path]:
    if value is None or value.strip() == "":
        return ValidationResult(None, f"{name} must be provided")
    expanded = os.path.expanduser(value.strip())
    if not os.path.isabs(expanded):
        return ValidationResult(None, f"{name} must be an absolute path (e.g., /path/to/models): {value}")
    return ValidationResult(Path(os.path.normpath(expanded)), None)


def validate_env_line(line: str) -> ValidationResult[Optional[Tuple[str, str]]]:
    """Check one ``.env`` line. Blank lines and comments yield ``(None, None)``."""
    stripped = line.strip()
    if not stripped or stripped.startswith("#"):
        return ValidationResult(None, None)
    if "=" not in stripped:
        return ValidationResult(None, f"missing '=' in '{stripped}'")
    key, _, value = stripped.partition("=")
    if key != key.rstrip():
        return ValidationResult(None, f"space before '=' in '{stripped}'")
    if value[:1].isspace():
        return ValidationResult(None, f"space after '=' in '{stripped}'")
    if not _ENV_NAME_RE.fullmatch(key):
        return ValidationResult(None, f"invalid variable name '{key}'")
    return ValidationResult((key, value), None)
