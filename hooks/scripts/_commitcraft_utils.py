#!/usr/bin/env python3
"""Shared utilities for the CommitCraft hooks.

This module provides everything the two hook scripts have in common:
- Decision record and JSON output helpers
- Configuration loading from config.json (additive rule extensions)
- Regex matching with timeout defense (ReDoS)
- Wall-clock watchdog for the fail-open timeout contract
- Read-only git status queries
- Logging

Config resolution chain:
    1. $CLAUDE_PROJECT_DIR/.claude/commitcraft/config.json (user custom)
    2. Built-in defaults (_DEFAULT_CONFIG)

Usage:
    from _commitcraft_utils import (
        Decision,
        log_hook,
        load_commitcraft_config,
        safe_regex_search,
        run_with_watchdog,
        get_git_status,
        get_current_branch,
    )

Design Principles:
    1. Fail-open: any internal error or timeout degrades to "allow".
       These hooks are an advisory layer, availability wins over strictness.
    2. Never crash the hook lifecycle: logging and config errors are swallowed.
    3. Rule tables are immutable after startup.
"""

import json
import os
import subprocess
import sys
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Mapping

import regex

# ============================================================
# Constants
# ============================================================

DEBUG_ENVS = ("DEBUG", "COMMITCRAFT_DEBUG")
"""Environment variables that enable DEBUG-level diagnostics."""

DRY_RUN_ENV = "COMMITCRAFT_DRY_RUN"
"""Environment variable to enable dry-run mode.
Set to "1", "true", or "yes" to enable."""

MAX_COMMAND_LENGTH = 100_000
"""Commands longer than this skip regex heuristics (literal checks still run)."""

MAX_PATH_PREVIEW_LENGTH = 60
"""Maximum path length for log display. Paths longer than this are truncated."""

MAX_COMMAND_PREVIEW_LENGTH = 50
"""Maximum command length for log display. Commands longer than this are truncated."""

MAX_LOG_SIZE_BYTES = 1_000_000
"""Maximum log file size before rotation (1 MB)."""

REGEX_TIMEOUT_SECONDS = 0.5
"""Default timeout for regex operations to prevent ReDoS."""

GIT_QUERY_TIMEOUT_SECONDS = 2
"""Timeout for each read-only git query."""

GUARD_TIMEOUT_SECONDS = 5
"""Default wall-clock budget for the pre-tool-use guard."""

PROMPT_TIMEOUT_SECONDS = 3
"""Default wall-clock budget for the prompt enhancer."""

GIT_STATUS_FALLBACK = "Unable to get git status"
"""Returned by get_git_status() when no repository is available."""

VERDICT_ALLOW = "allow"
VERDICT_DENY = "deny"
VERDICT_BLOCK = "block"
VERDICTS = frozenset({VERDICT_ALLOW, VERDICT_DENY, VERDICT_BLOCK})

_LEVELS = {"DEBUG": 0, "INFO": 1, "WARNING": 2, "ERROR": 3}

# Hook name shown in log lines. Set once by each entry script.
_hook_name = "commitcraft"


# ============================================================
# Decision Record
# ============================================================


@dataclass(frozen=True)
class Decision:
    """Terminal result of evaluating one hook event.

    Attributes:
        verdict: One of "allow", "deny", "block".
        message: Optional human-readable notice for the caller.
        modified_params: Tool parameters to substitute (guard only).
        enhanced_prompt: Rewritten prompt text (enhancer only).
        metadata: Extra structured fields (enhancer only).
    """

    verdict: str
    message: str | None = None
    modified_params: Mapping[str, Any] | None = None
    enhanced_prompt: str | None = None
    metadata: Mapping[str, Any] | None = None

    def __post_init__(self):
        if self.verdict not in VERDICTS:
            raise ValueError(f"Unknown verdict: {self.verdict!r}")
        # Freeze nested mappings so the record stays read-only
        if self.modified_params is not None:
            object.__setattr__(self, "modified_params", MappingProxyType(dict(self.modified_params)))
        if self.metadata is not None:
            object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    @property
    def is_allowed(self) -> bool:
        return self.verdict == VERDICT_ALLOW

    def to_guard_output(self) -> dict[str, Any]:
        """Serialize to the pre-tool-use output shape."""
        out: dict[str, Any] = {"decision": self.verdict}
        if self.message is not None:
            out["message"] = self.message
        if self.modified_params:
            out["modifiedParams"] = dict(self.modified_params)
        return out

    def to_prompt_output(self) -> dict[str, Any]:
        """Serialize to the user-prompt-submit output shape."""
        out: dict[str, Any] = {"decision": self.verdict}
        if self.enhanced_prompt is not None:
            out["enhanced_prompt"] = self.enhanced_prompt
        if self.message is not None:
            out["message"] = self.message
        out["metadata"] = dict(self.metadata or {})
        return out


def allow_decision(message: str | None = None, modified_params: Mapping[str, Any] | None = None) -> Decision:
    """Build an allow decision, optionally with a warning or rewritten params."""
    return Decision(VERDICT_ALLOW, message=message, modified_params=modified_params)


def deny_decision(message: str) -> Decision:
    """Build a deny decision.

    In dry-run mode the denial is logged and downgraded to allow.
    """
    if is_dry_run():
        log_hook("INFO", f"Would DENY ({message})")
        return Decision(VERDICT_ALLOW, message=f"[DRY-RUN] {message}")
    return Decision(VERDICT_DENY, message=message)


def timestamp_now() -> str:
    """ISO-8601 timestamp used in metadata and log lines."""
    return datetime.now().isoformat(timespec="milliseconds")


# ============================================================
# Environment Toggles
# ============================================================


def _env_truthy(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in ("1", "true", "yes", "on")


def is_debug() -> bool:
    """Check if DEBUG diagnostics are enabled (DEBUG or COMMITCRAFT_DEBUG)."""
    return any(_env_truthy(name) for name in DEBUG_ENVS)


def is_dry_run() -> bool:
    """Check if running in dry-run (simulation) mode.

    In dry-run mode, the guard logs what it WOULD deny but
    lets the operation through.

    Enable by setting environment variable:
        COMMITCRAFT_DRY_RUN=1

    Returns:
        True if dry-run mode is enabled.
    """
    return _env_truthy(DRY_RUN_ENV)


def get_project_dir() -> str:
    """Get and validate project directory from CLAUDE_PROJECT_DIR.

    Returns:
        Project directory path, or empty string if not set or not a directory.
    """
    project_dir = os.environ.get("CLAUDE_PROJECT_DIR", "")
    if not project_dir:
        return ""
    # No logging here: log_hook() calls get_project_dir()
    if not os.path.isdir(project_dir):
        return ""
    return project_dir


# ============================================================
# Logging with Rotation
# ============================================================


def set_hook_name(name: str) -> None:
    """Set the hook name shown in every log line."""
    global _hook_name
    _hook_name = name


def get_log_file_path() -> Path | None:
    """Path of the project log file, or None without a project dir."""
    project_dir = get_project_dir()
    if not project_dir:
        return None
    return Path(project_dir) / ".claude" / "commitcraft" / "commitcraft.log"


def _rotate_log_if_needed(log_file: Path) -> None:
    """Rotate log file if it exceeds MAX_LOG_SIZE_BYTES.

    Keeps exactly one backup (.log.1). Silent fail on any error.
    """
    try:
        if not log_file.exists():
            return
        if log_file.stat().st_size < MAX_LOG_SIZE_BYTES:
            return
        backup_file = log_file.with_suffix(".log.1")
        # On Windows, the target must be removed first
        if backup_file.exists():
            backup_file.unlink()
        log_file.rename(backup_file)
    except Exception:
        # Rotation is non-critical
        pass


def log_hook(level: str, message: str) -> None:
    """Write one diagnostic line to stderr and the project log.

    Log format:
        TIMESTAMP [LEVEL] [hook] [DRY-RUN] MESSAGE

    DEBUG lines are dropped unless DEBUG/COMMITCRAFT_DEBUG is set.
    Never raises: logging must not affect the decision.

    Args:
        level: DEBUG, INFO, WARNING or ERROR.
        message: Message to log. Newlines are flattened to keep one line per entry.
    """
    level = level.upper()
    if level not in _LEVELS:
        level = "INFO"
    if level == "DEBUG" and not is_debug():
        return

    try:
        mode = "[DRY-RUN] " if is_dry_run() else ""
        flat = str(message).replace("\r", "\\r").replace("\n", "\\n")
        line = f"{timestamp_now()} [{level}] [{_hook_name}] {mode}{flat}\n"
    except Exception:
        return

    try:
        sys.stderr.write(line)
        sys.stderr.flush()
    except Exception:
        pass

    log_file = get_log_file_path()
    if log_file is None:
        return
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        _rotate_log_if_needed(log_file)
        with open(log_file, "a", encoding="utf-8") as f:
            f.write(line)
    except Exception:
        # Silent fail - don't break hook on log error
        pass


def truncate_path(path: str, max_length: int = MAX_PATH_PREVIEW_LENGTH) -> str:
    """Truncate path for display in logs, keeping the end of the path."""
    if len(path) <= max_length:
        return path
    return f"...{path[-(max_length - 3) :]}"


def truncate_command(command: str, max_length: int = MAX_COMMAND_PREVIEW_LENGTH) -> str:
    """Truncate command for display in logs, keeping the start of the command."""
    if len(command) <= max_length:
        return command
    return f"{command[: max_length - 3]}..."


# ============================================================
# Configuration
# ============================================================

_DEFAULT_CONFIG: Mapping[str, Any] = MappingProxyType(
    {
        "hookBehavior": MappingProxyType(
            {
                "guardTimeoutSeconds": GUARD_TIMEOUT_SECONDS,
                "promptTimeoutSeconds": PROMPT_TIMEOUT_SECONDS,
            }
        ),
        "extraDangerousCommands": (),
        "extraProtectedBranches": (),
        "extraSensitivePatterns": (),
    }
)

_LIST_KEYS = ("extraDangerousCommands", "extraProtectedBranches", "extraSensitivePatterns")

_config_cache: dict[str, Any] | None = None
_active_config_path: str | None = None


def get_config_path() -> Path | None:
    """Location of the user config file, or None without a project dir."""
    project_dir = get_project_dir()
    if not project_dir:
        return None
    return Path(project_dir) / ".claude" / "commitcraft" / "config.json"


def validate_commitcraft_config(config: Any) -> list[str]:
    """Validate config structure.

    Problems are reported, never raised. Invalid sections are ignored by
    load_commitcraft_config().

    Args:
        config: Parsed JSON value.

    Returns:
        List of human-readable problems (empty if valid).
    """
    errors: list[str] = []
    if not isinstance(config, dict):
        return [f"Config root must be an object, got {type(config).__name__}"]

    behavior = config.get("hookBehavior", {})
    if not isinstance(behavior, dict):
        errors.append("hookBehavior must be an object")
    else:
        for key in ("guardTimeoutSeconds", "promptTimeoutSeconds"):
            if key not in behavior:
                continue
            value = behavior[key]
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                errors.append(f"hookBehavior.{key} must be a positive number")

    for key in _LIST_KEYS:
        if key not in config:
            continue
        value = config[key]
        if not isinstance(value, list):
            errors.append(f"{key} must be a list of strings")
            continue
        for i, item in enumerate(value):
            if not isinstance(item, str) or not item.strip():
                errors.append(f"{key}[{i}] must be a non-empty string")

    known = set(_DEFAULT_CONFIG) | {"$schema"}
    for key in config:
        if key not in known:
            errors.append(f"Unknown config key: {key}")
    return errors


def _merge_config(user_config: dict[str, Any]) -> dict[str, Any]:
    """Overlay the valid parts of user_config onto the defaults."""
    merged: dict[str, Any] = {
        "hookBehavior": dict(_DEFAULT_CONFIG["hookBehavior"]),
    }
    behavior = user_config.get("hookBehavior")
    if isinstance(behavior, dict):
        for key in ("guardTimeoutSeconds", "promptTimeoutSeconds"):
            value = behavior.get(key)
            if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0:
                merged["hookBehavior"][key] = value

    for key in _LIST_KEYS:
        value = user_config.get(key)
        if isinstance(value, list):
            merged[key] = tuple(item for item in value if isinstance(item, str) and item.strip())
        else:
            merged[key] = ()
    return merged


def load_commitcraft_config() -> dict[str, Any]:
    """Load config.json with caching and fallback.

    The config is cached for the lifetime of the process.
    Since hooks run as separate processes, this is safe.

    Returns:
        Configuration dict. Never raises - returns defaults on any error.
    """
    global _config_cache, _active_config_path
    if _config_cache is not None:
        return _config_cache

    config_path = get_config_path()
    if config_path is not None and config_path.exists():
        try:
            with open(config_path, encoding="utf-8") as f:
                user_config = json.load(f)
            for problem in validate_commitcraft_config(user_config):
                log_hook("WARNING", f"Config validation: {problem}")
            if isinstance(user_config, dict):
                _config_cache = _merge_config(user_config)
                _active_config_path = str(config_path)
                log_hook("DEBUG", f"Loaded config from {config_path}")
                return _config_cache
        except json.JSONDecodeError as e:
            log_hook("ERROR", f"Invalid JSON in {config_path}: {e}. Using defaults.")
        except OSError as e:
            log_hook("ERROR", f"Cannot read {config_path}: {e}. Using defaults.")

    _config_cache = _merge_config({})
    _active_config_path = None
    return _config_cache


def get_active_config_path() -> str | None:
    """Path of the config file actually loaded, or None if defaults are in use."""
    load_commitcraft_config()
    return _active_config_path


def reset_config_cache() -> None:
    """Forget the cached config (used by tests)."""
    global _config_cache, _active_config_path
    _config_cache = None
    _active_config_path = None


def get_hook_timeout(key: str, default: float) -> float:
    """Read a timeout from hookBehavior, falling back to default."""
    try:
        return float(load_commitcraft_config()["hookBehavior"].get(key, default))
    except Exception:
        return default


# ============================================================
# Safe Regex with Timeout Defense (ReDoS Prevention)
# ============================================================


def safe_regex_search(
    pattern: "str | regex.Pattern",
    text: str,
    flags: int = 0,
    timeout: float = REGEX_TIMEOUT_SECONDS,
) -> "regex.Match | None":
    """Regex search with timeout defense against ReDoS.

    Args:
        pattern: Regular expression pattern (string or precompiled).
        text: Text to search.
        flags: Regex flags (only for string patterns).
        timeout: Timeout in seconds (default: REGEX_TIMEOUT_SECONDS).

    Returns:
        Match object if found, None otherwise.
        Returns None on timeout or invalid pattern (treated as no match).
    """
    try:
        if isinstance(pattern, str):
            return regex.search(pattern, text, flags, timeout=timeout)
        return pattern.search(text, timeout=timeout)
    except TimeoutError:
        shown = pattern if isinstance(pattern, str) else pattern.pattern
        log_hook("WARNING", f"Regex timeout ({timeout}s) for pattern: {shown[:50]}...")
        return None
    except regex.error as e:
        log_hook("WARNING", f"Invalid regex pattern: {e}")
        return None


# ============================================================
# Hook Input / Output
# ============================================================


def configure_stdio() -> None:
    """Force UTF-8 on the standard streams.

    Help texts and warnings contain non-ASCII characters; a legacy
    console code page must not turn them into an encoding error.
    """
    for stream in (sys.stdin, sys.stdout, sys.stderr):
        try:
            stream.reconfigure(encoding="utf-8", errors="replace")
        except (AttributeError, ValueError, OSError):
            pass


def read_stdin_text() -> str:
    """Read the whole event payload from stdin.

    Returns empty string if stdin is closed or unreadable.
    """
    try:
        data = sys.stdin.read()
    except (OSError, ValueError) as e:
        log_hook("WARNING", f"Could not read stdin: {e}")
        return ""
    return data or ""


def parse_json_object(raw: str) -> dict[str, Any]:
    """Parse a JSON object payload, treating anything malformed as empty."""
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        log_hook("WARNING", f"Malformed JSON input, treating as empty: {e}")
        return {}
    if not isinstance(data, dict):
        log_hook("WARNING", f"Expected JSON object, got {type(data).__name__}; treating as empty")
        return {}
    return data


_emit_lock = threading.Lock()
_emitted = False


def emit_output(payload: dict[str, Any], indent: int | None = None) -> bool:
    """Print the one and only output payload of this process.

    Both the evaluation thread and the watchdog may try to answer;
    whichever arrives first wins and the other becomes a no-op.

    Returns:
        True if this call printed the payload.
    """
    global _emitted
    with _emit_lock:
        if _emitted:
            return False
        text = json.dumps(payload, indent=indent, ensure_ascii=False)
        sys.stdout.write(text + "\n")
        sys.stdout.flush()
        _emitted = True
        return True


def reset_emit_state() -> None:
    """Allow emit_output() to print again (used by tests)."""
    global _emitted
    with _emit_lock:
        _emitted = False


# ============================================================
# Hook Timeout Handling
# ============================================================


class HookTimeoutError(Exception):
    """Hook execution did not finish within its wall-clock budget."""

    pass


def with_timeout(func: Callable[[], Any], timeout_seconds: float) -> Any:
    """Execute func in a daemon thread with a timeout guard.

    A thread-based guard works on every platform and, unlike SIGALRM,
    can also interrupt a blocked stdin read in the main thread's place.

    Args:
        func: Function to execute (no arguments).
        timeout_seconds: Timeout in seconds.

    Returns:
        func() return value.

    Raises:
        HookTimeoutError: If execution exceeds timeout.
        Exception: Whatever func() raised.
    """
    result = [None]
    exception: list[BaseException | None] = [None]

    def wrapper():
        try:
            result[0] = func()
        except BaseException as e:
            exception[0] = e

    thread = threading.Thread(target=wrapper, name="commitcraft-hook")
    thread.daemon = True
    thread.start()
    thread.join(timeout=timeout_seconds)

    if thread.is_alive():
        raise HookTimeoutError(f"Hook execution timed out after {timeout_seconds}s")
    if exception[0] is not None:
        raise exception[0]
    return result[0]


def run_with_watchdog(
    func: Callable[[], dict[str, Any]],
    timeout_seconds: float,
    timeout_payload: dict[str, Any],
    error_payload: Callable[[Exception], dict[str, Any]],
    indent: int | None = None,
    exit_on_timeout: bool = True,
) -> None:
    """Run a hook body and always print exactly one payload.

    Args:
        func: Reads input, evaluates, returns the output payload.
        timeout_seconds: Wall-clock budget.
        timeout_payload: Fail-open payload printed on expiry.
        error_payload: Builds the fail-open payload for an unexpected error.
        indent: JSON indent for the printed payload.
        exit_on_timeout: Terminate the process (exit 0) after a timeout.
    """
    try:
        payload = with_timeout(func, timeout_seconds)
    except HookTimeoutError as e:
        log_hook("WARNING", f"{e}, allowing operation")
        emit_output(timeout_payload, indent=indent)
        # The worker may still hold the stdin lock; a normal interpreter
        # shutdown would then abort. Leave immediately with success.
        if exit_on_timeout:
            try:
                sys.stderr.flush()
            finally:
                os._exit(0)
        return
    except Exception as e:
        log_hook("ERROR", f"Hook error: {type(e).__name__}: {e}")
        payload = error_payload(e)
    emit_output(payload, indent=indent)


# ============================================================
# Git Status Provider (read-only)
# ============================================================


def _run_git(args: list[str]) -> str | None:
    """Run a read-only git query.

    Returns:
        stdout on success, None if git is missing, fails, or times out.
    """
    cwd = get_project_dir() or None
    try:
        proc = subprocess.run(
            ["git", *args],
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            timeout=GIT_QUERY_TIMEOUT_SECONDS,
            cwd=cwd,
        )
    except (OSError, subprocess.SubprocessError) as e:
        log_hook("DEBUG", f"git {' '.join(args)} unavailable: {type(e).__name__}")
        return None
    if proc.returncode != 0:
        log_hook("DEBUG", f"git {' '.join(args)} failed (rc={proc.returncode})")
        return None
    return proc.stdout


def get_git_status() -> str:
    """Working-tree change list (`git status --porcelain`).

    Returns:
        Raw porcelain output, or GIT_STATUS_FALLBACK outside a repository.
    """
    out = _run_git(["status", "--porcelain"])
    if out is None:
        return GIT_STATUS_FALLBACK
    return out


def get_current_branch() -> str | None:
    """Current branch name, or None (no repo, detached HEAD)."""
    out = _run_git(["branch", "--show-current"])
    if out is None:
        return None
    return out.strip() or None
