"""Current-vs-pending model of the Ollama service settings and the commit that applies it."""
from __future__ import annotations

import logging
import pwd
import shutil
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, TextIO, Tuple

from constants import SERVICE
from overrides import migrate_legacy, read_override, remove_file, render_override, write_atomic
from service import AppContext, ServiceController, restart_ollama, run_step
from tui_base import ExternalCommandError, ServiceNotRespondingError, print_info, print_ok
from validators import ValidationResult, validate_absolute_path, validate_non_negative_int

logger = logging.getLogger(__name__)

KV_CACHE = "KV_CACHE_TYPE"
FLASH_ATTENTION = "OLLAMA_FLASH_ATTENTION"
CONTEXT_LENGTH = "OLLAMA_CONTEXT_LENGTH"
NUM_PARALLEL = "OLLAMA_NUM_PARALLEL"
MODELS_DIR = "OLLAMA_MODELS"

# write order of the advanced drop-in
ADVANCED_KEYS = (KV_CACHE, FLASH_ATTENTION, CONTEXT_LENGTH, NUM_PARALLEL, MODELS_DIR)

HOST_KEY = "OLLAMA_HOST"


class NetworkMode(Enum):
    LOCALHOST = "localhost"
    NETWORK = "network"


class EditResult(Enum):
    CHANGED = "changed"
    UNCHANGED = "unchanged"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Preset:
    value: str
    note: str = ""


@dataclass(frozen=True)
class SettingSpec:
    key: str
    title: str
    description: str = ""
    presets: Tuple[Preset, ...] = ()
    custom_prompt: str = ""
    default_label: str = "(default)"


SETTINGS: Tuple[SettingSpec, ...] = (
    SettingSpec(
        KV_CACHE,
        "KV Cache Type",
        presets=(
            Preset("q8_0", "recommended for most GPUs"),
            Preset("f16", "for high-end GPUs with ample VRAM"),
            Preset("q4_0", "for GPUs with limited VRAM"),
        ),
    ),
    SettingSpec(
        CONTEXT_LENGTH,
        "Context Length",
        "Ollama will use this much context from a model's context window.\n"
        "A larger value requires more VRAM. Default is typically 2048.",
        presets=(Preset("2048", "Default for many models"), Preset("4096"), Preset("8192"), Preset("16384")),
        custom_prompt="Enter custom context length: ",
    ),
    SettingSpec(
        NUM_PARALLEL,
        "Parallel Requests",
        "Sets the number of parallel requests that can be processed at once.\n"
        "Increasing this can improve throughput but significantly increases VRAM usage. Default is 1.",
        presets=(Preset("1", "Default"), Preset("2"), Preset("3"), Preset("4")),
        custom_prompt="Enter custom number of parallel requests: ",
    ),
    SettingSpec(
        MODELS_DIR,
        "Models Directory",
        "This sets the directory where Ollama stores models and manifests.\n"
        "Useful for storing models on a separate, larger drive.",
        custom_prompt="Enter custom models directory path: ",
        default_label="(default: ~/.ollama/models)",
    ),
)

SETTINGS_BY_KEY: Dict[str, SettingSpec] = {spec.key: spec for spec in SETTINGS}


@dataclass
class ConfigState:
    """Persisted configuration. Keys absent from ``advanced`` are unset."""

    network: NetworkMode = NetworkMode.LOCALHOST
    advanced: Dict[str, str] = field(default_factory=dict)

    def get(self, key: str) -> Optional[str]:
        return self.advanced.get(key)

    def copy(self) -> "ConfigState":
        return ConfigState(self.network, dict(self.advanced))


def load_state(ctx: AppContext) -> ConfigState:
    network = NetworkMode.NETWORK if ctx.network_file.exists() else NetworkMode.LOCALHOST
    return ConfigState(network, read_override(ctx.advanced_file))


def migrate_legacy_config(ctx: AppContext) -> bool:
    return migrate_legacy(ctx.legacy_file, ctx.advanced_file)


@dataclass
class CommitPlan:
    network: Optional[NetworkMode] = None
    advanced: Optional[Dict[str, str]] = None
    changed_keys: List[str] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return self.network is None and self.advanced is None


@dataclass
class CommitResult:
    network_changed: bool = False
    advanced_changed: bool = False
    errors: List[ExternalCommandError] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return self.network_changed or self.advanced_changed

    @property
    def ok(self) -> bool:
        return not self.errors


class ConfigSession:
    """Holds the current state and the pending edits staged against it.

    Every ``stage_*`` call reports CHANGED or UNCHANGED relative to the
    pending value just before that call.
    """

    def __init__(self, current: ConfigState) -> None:
        self.current = current
        self.pending = current.copy()

    @classmethod
    def load(cls, ctx: AppContext) -> "ConfigSession":
        return cls(load_state(ctx))

    def value(self, key: str) -> Optional[str]:
        return self.pending.get(key)

    def current_value(self, key: str) -> Optional[str]:
        return self.current.get(key)

    def stage(self, key: str, value: Optional[str]) -> EditResult:
        before = self.pending.get(key)
        if value is None:
            self.pending.advanced.pop(key, None)
        else:
            self.pending.advanced[key] = value
        return EditResult.CHANGED if before != value else EditResult.UNCHANGED

    def stage_kv_cache(self, value: Optional[str]) -> EditResult:
        """Set the KV cache type; flash attention is on exactly when a type is set."""
        value = value or None
        kv_result = self.stage(KV_CACHE, value)
        flash_result = self.stage(FLASH_ATTENTION, "1" if value else None)
        if EditResult.CHANGED in (kv_result, flash_result):
            return EditResult.CHANGED
        return EditResult.UNCHANGED

    def stage_numeric(self, key: str, raw: Optional[str]) -> ValidationResult[EditResult]:
        if raw is None:
            return ValidationResult(self.stage(key, None), None)
        checked = validate_non_negative_int(raw, name=SETTINGS_BY_KEY[key].title if key in SETTINGS_BY_KEY else key)
        if not checked.is_valid:
            return ValidationResult(None, checked.error)
        return ValidationResult(self.stage(key, checked.value), None)

    def stage_models_dir(self, raw: Optional[str]) -> ValidationResult[EditResult]:
        if raw is None:
            return ValidationResult(self.stage(MODELS_DIR, None), None)
        checked = validate_absolute_path(raw, name="Models directory")
        if not checked.is_valid:
            return ValidationResult(None, checked.error)
        return ValidationResult(self.stage(MODELS_DIR, str(checked.value)), None)

    def stage_network(self, mode: NetworkMode) -> EditResult:
        if self.pending.network is mode:
            return EditResult.UNCHANGED
        self.pending.network = mode
        return EditResult.CHANGED

    def expose(self) -> EditResult:
        return self.stage_network(NetworkMode.NETWORK)

    def restrict(self) -> EditResult:
        return self.stage_network(NetworkMode.LOCALHOST)

    def reset_advanced(self) -> EditResult:
        results = [self.stage(key, None) for key in ADVANCED_KEYS]
        return EditResult.CHANGED if EditResult.CHANGED in results else EditResult.UNCHANGED

    def discard(self) -> None:
        self.pending = self.current.copy()

    def has_changes(self) -> bool:
        return not self.plan().empty

    def plan(self) -> CommitPlan:
        plan = CommitPlan()
        if self.pending.network is not self.current.network:
            plan.network = self.pending.network
            plan.changed_keys.append(HOST_KEY)
        keys = list(dict.fromkeys([*self.current.advanced, *self.pending.advanced]))
        changed = [key for key in keys if self.current.get(key) != self.pending.get(key)]
        if changed:
            plan.advanced = dict(self.pending.advanced)
            plan.changed_keys.extend(changed)
        return plan


def apply_network(ctx: AppContext, mode: NetworkMode) -> None:
    if mode is NetworkMode.NETWORK:
        write_atomic(ctx.network_file, render_override({HOST_KEY: SERVICE.EXPOSED_HOST}))
    else:
        remove_file(ctx.network_file)


def write_advanced(ctx: AppContext, values: Dict[str, str]) -> None:
    if values:
        write_atomic(ctx.advanced_file, render_override(values, ADVANCED_KEYS))
    else:
        remove_file(ctx.advanced_file)


def commit(
    session: ConfigSession,
    ctx: AppContext,
    privilege_guard: Optional[Callable[[], None]] = None,
) -> CommitResult:
    """Write the pending state.

    The whole plan is computed before anything touches disk. With nothing to
    change no file is written and the guard is never called. Each file group
    is written independently, and its failure is recorded rather than
    aborting the other group.
    """
    plan = session.plan()
    result = CommitResult()
    if plan.empty:
        logger.info("Commit: nothing to change")
        return result
    logger.info("Commit plan: %s", ", ".join(plan.changed_keys))
    if privilege_guard is not None:
        privilege_guard()

    if plan.network is not None:
        try:
            apply_network(ctx, plan.network)
            result.network_changed = True
            session.current.network = plan.network
        except ExternalCommandError as exc:
            logger.error("Network override not applied: %s", exc.message)
            result.errors.append(exc)

    if plan.advanced is not None:
        try:
            write_advanced(ctx, plan.advanced)
            result.advanced_changed = True
            session.current.advanced = dict(plan.advanced)
        except ExternalCommandError as exc:
            logger.error("Advanced settings not applied: %s", exc.message)
            result.errors.append(exc)
    return result


def finalize(
    result: CommitResult,
    ctx: AppContext,
    controller: ServiceController,
    *,
    interactive: bool,
    auto_restart: bool = False,
    terminal=None,
    stream: TextIO | None = None,
) -> bool:
    """Reload systemd after a commit and restart when asked to; returns True if restarted."""
    if not result.changed:
        if interactive:
            print_ok("No changes to save. Goodbye!", stream)
        else:
            print_info("No changes were made to the configuration.", stream)
        return False

    try:
        run_step("Reloading systemd daemon...", controller.daemon_reload, stream=stream)
    except ExternalCommandError as exc:
        raise ExternalCommandError(
            f"Settings were saved, but the systemd reload failed: {exc.message}",
            hint="Run 'sudo systemctl daemon-reload' and restart Ollama manually.",
        ) from exc

    should_restart = auto_restart
    if interactive and terminal is not None:
        print_info("You must restart the Ollama service for the new settings to apply.", stream)
        should_restart = terminal.confirm("Do you want to restart the Ollama service now?", default=True)

    if not should_restart:
        print_info("Run './ollama_ctl.py restart' or 'sudo systemctl restart ollama' to apply changes.", stream)
        return False

    try:
        restart_ollama(ctx, controller, stream=stream)
    except ServiceNotRespondingError as exc:
        raise ServiceNotRespondingError(
            f"Settings were saved, but Ollama is not responding after the restart ({exc.message}).",
            hint="Check 'journalctl -u ollama.service' for startup errors.",
        ) from exc
    except ExternalCommandError as exc:
        raise ExternalCommandError(
            f"Settings were saved, but the service did not restart: {exc.message}",
            hint=exc.hint,
        ) from exc
    print_ok("Configuration applied and service restarted.", stream)
    return True


def create_models_dir(path: Path, owner: Optional[str] = "ollama") -> None:
    """Create ``path`` and hand it to the service user when that user exists."""
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise ExternalCommandError(f"Could not create {path}: {exc.strerror or exc}", command=str(path)) from exc
    logger.info("Created models directory %s", path)
    if owner is None:
        return
    try:
        pwd.getpwnam(owner)
    except KeyError:
        return
    try:
        shutil.chown(path, user=owner, group=owner)
    except (OSError, LookupError) as exc:
        raise ExternalCommandError(f"Created {path} but could not give it to '{owner}': {exc}") from exc
