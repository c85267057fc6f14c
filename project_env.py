"""Locating, validating and loading the project's ``.env`` file."""
from __future__ import annotations

import logging
import os
from collections import ChainMap
from pathlib import Path
from typing import List, Mapping, Optional, Sequence

from dotenv import dotenv_values

from tui_base import PreconditionError
from validators import validate_env_line

logger = logging.getLogger(__name__)

SCRIPT_DIR = Path(__file__).resolve().parent


def candidate_env_files(cwd: Optional[Path] = None) -> List[Path]:
    cwd = cwd or Path.cwd()
    candidates = [cwd / ".env", cwd / "openwebui" / ".env", SCRIPT_DIR / "openwebui" / ".env"]
    unique: List[Path] = []
    for path in candidates:
        if path not in unique:
            unique.append(path)
    return unique


def find_env_file(explicit: Optional[Path] = None, candidates: Sequence[Path] | None = None) -> Optional[Path]:
    if explicit is not None:
        if not explicit.is_file():
            raise PreconditionError(f"Environment file not found: {explicit}")
        return explicit
    for path in candidates if candidates is not None else candidate_env_files():
        if path.is_file():
            return path
    return None


def validate_env_file(path: Path) -> List[str]:
    """Return one message per offending line; an empty list means the file is valid."""
    problems: List[str] = []
    with path.open("r", encoding="utf-8") as fh:
        for number, line in enumerate(fh, start=1):
            result = validate_env_line(line)
            if not result.is_valid:
                problems.append(f"line {number}: {result.error}")
    return problems


def load_env(explicit: Optional[Path] = None, candidates: Sequence[Path] | None = None) -> Mapping[str, str]:
    """Process environment layered over the validated ``.env`` values."""
    path = find_env_file(explicit, candidates)
    if path is None:
        return ChainMap(dict(os.environ))
    problems = validate_env_file(path)
    if problems:
        raise PreconditionError(
            f"Invalid entries in {path}: " + "; ".join(problems),
            hint="Use KEY=value with no spaces around '=' and names made of letters, digits and '_'.",
        )
    values = {key: value for key, value in dotenv_values(path).items() if value is not None}
    logger.info("Loaded %d setting(s) from %s", len(values), path)
    return ChainMap(dict(os.environ), values)
