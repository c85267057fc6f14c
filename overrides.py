"""Reading and writing systemd drop-in override files for ollama.service."""
from __future__ import annotations

import logging
import os
import shlex
import tempfile
from pathlib import Path
from typing import Dict, Iterable, Mapping

from tui_base import ExternalCommandError

logger = logging.getLogger(__name__)

SECTION = "[Service]"


def parse_override(text: str) -> Dict[str, str]:
    """Collect ``Environment=`` assignments in file order.

    Several assignments may share one line (``Environment="A=1" "B=2"``);
    a later assignment of the same key wins, as it does for systemd.
    """
    values: Dict[str, str] = {}
    for raw in text.splitlines():
        line = raw.strip()
        if not line.startswith("Environment="):
            continue
        payload = line[len("Environment="):]
        try:
            tokens = shlex.split(payload)
        except ValueError:
            logger.warning("Skipping malformed override line: %s", line)
            continue
        for token in tokens:
            key, sep, value = token.partition("=")
            if sep and key:
                values[key] = value
    return values


def _quote(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def render_override(values: Mapping[str, str], order: Iterable[str] = ()) -> str:
    """Render ``values`` as a drop-in, known keys in ``order`` first, the rest after."""
    ordered = [key for key in order if key in values]
    ordered += [key for key in values if key not in ordered]
    lines = [SECTION]
    lines += [f'Environment="{key}={_quote(values[key])}"' for key in ordered]
    return "\n".join(lines) + "\n"


def read_override(path: Path) -> Dict[str, str]:
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    except OSError as exc:
        raise ExternalCommandError(f"Could not read {path}: {exc}", command=str(path)) from exc
    return parse_override(text)


def write_atomic(path: Path, text: str, *, mode: int = 0o644) -> None:
    """Replace ``path`` with ``text`` via a temp file in the same directory."""
    tmp_name = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(text)
            fh.flush()
            os.fsync(fh.fileno())
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
        tmp_name = None
    except OSError as exc:
        raise ExternalCommandError(
            f"Could not write {path}: {exc.strerror or exc}",
            command=str(path),
            hint="Configuration changes require root privileges.",
        ) from exc
    finally:
        if tmp_name is not None:
            try:
                os.unlink(tmp_name)
            except OSError:
                logger.warning("Could not remove temporary file %s", tmp_name)
    logger.info("Wrote %s", path)


def remove_file(path: Path) -> bool:
    """Delete ``path``; returns False when it was already absent."""
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    except OSError as exc:
        raise ExternalCommandError(f"Could not remove {path}: {exc.strerror or exc}", command=str(path)) from exc
    logger.info("Removed %s", path)
    return True


def migrate_legacy(legacy: Path, target: Path) -> bool:
    """Move an old single-purpose drop-in to ``target`` when ``target`` does not exist yet."""
    if not legacy.exists() or target.exists():
        return False
    try:
        os.replace(legacy, target)
    except OSError as exc:
        raise ExternalCommandError(f"Could not migrate {legacy} to {target}: {exc.strerror or exc}") from exc
    logger.info("Migrated %s -> %s", legacy, target)
    return True
