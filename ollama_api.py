"""Minimal client for the local Ollama HTTP API."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from constants import SIZE_BANDS
from tui_base import ExternalCommandError, ServiceNotRespondingError

logger = logging.getLogger(__name__)

GIB = 1024 ** 3


@dataclass
class ModelRecord:
    name: str
    size: int = 0
    modified_at: str = ""
    digest: str = ""

    @property
    def size_gb(self) -> float:
        return self.size / GIB

    @property
    def modified(self) -> str:
        return self.modified_at[:10]


@dataclass
class RunningModel:
    name: str
    size: int = 0
    size_vram: int = 0
    context_length: Optional[int] = None
    expires_at: str = ""

    @property
    def processor(self) -> str:
        return "GPU" if self.size_vram > 0 else "CPU"


def format_size(num_bytes: Optional[int]) -> str:
    if num_bytes is None:
        return "?"
    return f"{max(0, num_bytes) / GIB:.2f} GB"


def size_color(num_bytes: int) -> str:
    gb = num_bytes / GIB
    for threshold, color in SIZE_BANDS:
        if gb >= threshold:
            return color
    return SIZE_BANDS[-1][1]


def parse_models(payload: Dict[str, Any]) -> List[ModelRecord]:
    models = [
        ModelRecord(
            name=str(entry.get("name", "")),
            size=int(entry.get("size") or 0),
            modified_at=str(entry.get("modified_at") or ""),
            digest=str(entry.get("digest") or ""),
        )
        for entry in payload.get("models") or []
        if entry.get("name")
    ]
    return sorted(models, key=lambda model: model.name)


def parse_running(payload: Dict[str, Any]) -> List[RunningModel]:
    running = []
    for entry in payload.get("models") or []:
        running.append(
            RunningModel(
                name=str(entry.get("name", "")),
                size=int(entry.get("size") or 0),
                size_vram=int(entry.get("size_vram") or 0),
                context_length=entry.get("context_length"),
                expires_at=str(entry.get("expires_at") or ""),
            )
        )
    return running


class OllamaClient:
    def __init__(self, base_url: str, *, timeout: float = 10.0, opener: Callable = urlopen) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._open = opener

    def _request(self, path: str, *, method: str = "GET", payload: Optional[dict] = None, timeout: Optional[float] = None) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        data = json.dumps(payload).encode("utf-8") if payload is not None else None
        request = Request(url, data=data, method=method, headers={"Content-Type": "application/json"})
        logger.debug("%s %s", method, url)
        try:
            with self._open(request, timeout=timeout or self.timeout) as resp:
                body = resp.read().decode("utf-8")
        except HTTPError as exc:
            raise ExternalCommandError(f"Ollama API {method} {path} returned HTTP {exc.code}", command=url) from exc
        except (URLError, OSError) as exc:
            raise ServiceNotRespondingError(
                f"Could not connect to Ollama API at {url}",
                hint="Is the Ollama service running? Try './ollama_ctl.py status'.",
            ) from exc
        if not body.strip():
            return {}
        try:
            return json.loads(body)
        except json.JSONDecodeError as exc:
            raise ExternalCommandError(f"Ollama API {path} returned invalid JSON", command=url) from exc

    def list_models(self) -> List[ModelRecord]:
        return parse_models(self._request("/api/tags"))

    def running_models(self) -> List[RunningModel]:
        return parse_running(self._request("/api/ps"))

    def delete_model(self, name: str) -> None:
        self._request("/api/delete", method="DELETE", payload={"name": name})
        logger.info("Deleted model %s", name)

    def pull_model(self, name: str) -> str:
        """Pull through the API without progress output; returns the final status."""
        result = self._request("/api/pull", method="POST", payload={"name": name, "stream": False}, timeout=3600)
        status = str(result.get("status", ""))
        if result.get("error"):
            raise ExternalCommandError(f"Pull of {name} failed: {result['error']}")
        logger.info("Pulled model %s (%s)", name, status)
        return status
