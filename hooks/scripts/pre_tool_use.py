#!/usr/bin/env python3
"""Pre-Tool-Use Guard Hook.

Validates a requested tool call before it runs:
1. Cleans AI attribution markers out of `git commit -m` messages (rewrites the command)
2. Blocks dangerous shell commands (recursive delete, force push, ...)
3. Warns on protected-branch checkout/switch/delete
4. Blocks inline credential assignments
5. Advises against broad staging (`git add .`, `git add -A`)
6. Blocks writes to sensitive files and system directories

Input (stdin):  {"tool": "bash", "params": {"command": "..."}}
Output (stdout): {"decision": "allow"|"deny", "message"?: ..., "modifiedParams"?: {...}}

Design Principles:
- Fail-Open: internal errors and timeouts allow the operation
- Exit code is always 0
- Use shared utilities from _commitcraft_utils.py
"""

import json
import sys
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

# Add hooks directory to path
sys.path.insert(0, str(Path(__file__).parent))

try:
    import regex

    from _commitcraft_utils import (
        GUARD_TIMEOUT_SECONDS,
        MAX_COMMAND_LENGTH,
        Decision,
        allow_decision,
        configure_stdio,
        deny_decision,
        emit_output,
        get_hook_timeout,
        load_commitcraft_config,
        log_hook,
        parse_json_object,
        read_stdin_text,
        run_with_watchdog,
        safe_regex_search,
        set_hook_name,
        truncate_command,
        truncate_path,
    )
except ImportError as e:
    # Fail-open: the guard is advisory, a broken install must not block work
    print(json.dumps({"decision": "allow", "message": f"Hook unavailable: {e}"}))
    sys.exit(0)


# ============================================================
# Rule Tables
# ============================================================


@dataclass(frozen=True)
class Rule:
    """One entry of a rule list: what to look for and what it means."""

    pattern: str
    category: str


DANGEROUS_COMMANDS: tuple[Rule, ...] = (
    Rule("rm -rf", "recursive delete"),
    Rule("git push --force", "force push"),
    Rule("git reset --hard", "hard reset"),
    Rule("> /dev/null 2>&1", "output suppression"),
    Rule("chmod 777", "world-writable permissions"),
    Rule("curl | bash", "pipe-to-shell installer"),
    Rule("wget | sh", "pipe-to-shell installer"),
    Rule("Remove-Item -Recurse -Force", "recursive delete (PowerShell)"),
    Rule("Format-", "disk format (PowerShell)"),
    Rule("del /f /s /q", "recursive delete (cmd)"),
)

PROTECTED_BRANCHES: tuple[str, ...] = ("main", "master", "production", "release")

SENSITIVE_PATTERNS: tuple[Rule, ...] = (
    Rule(".env", "env file"),
    Rule(".git/config", "git config"),
    Rule("id_rsa", "ssh key"),
    Rule(".ssh/", "ssh directory"),
    Rule(".aws/", "cloud credentials"),
    Rule("credentials", "credentials file"),
    Rule("secrets", "secrets file"),
    Rule("password", "password file"),
    Rule("token", "token file"),
)

SYSTEM_PATHS: tuple[Rule, ...] = (
    Rule("/etc/", "unix system config"),
    Rule("/usr/", "unix system files"),
    Rule("/System/", "macOS system files"),
    Rule("C:\\Windows\\", "windows system files"),
    Rule("C:\\Program Files\\", "windows program files"),
    Rule("%WINDIR%", "windows system files"),
    Rule("%PROGRAMFILES%", "windows program files"),
)

BROAD_STAGING_COMMANDS: frozenset[str] = frozenset({"git add .", "git add -A"})

SHELL_TOOLS: frozenset[str] = frozenset({"bash", "shell", "cmd", "powershell"})
FILE_TOOLS: frozenset[str] = frozenset({"write", "edit", "multiedit", "notebookedit"})

MSG_DANGEROUS = "Dangerous command blocked for safety"
MSG_CREDENTIAL = "Potential credential exposure"
MSG_BROAD_STAGING = "Consider using specific file staging"
MSG_SENSITIVE_FILE = "Sensitive file protection"
MSG_SYSTEM_FILE = "System file protection"

BRANCH_OPERATION_RE = regex.compile(r"git\s+(?:checkout|switch|branch\s+-[dD])\b")
CREDENTIAL_RE = regex.compile(r"(?:password|token|secret|api[_-]?key)\s*=", regex.IGNORECASE)

# Heredoc form: git commit ... -m "$(cat <<'EOF'\n<message>\nEOF\n)"
# Any delimiter word, quoted or unquoted, with optional <<- tab stripping.
COMMIT_HEREDOC_RE = regex.compile(
    r"""git\s+commit\b[^\n]*?(?:-[a-zA-Z]*m|--message=?)\s*"\$\(\s*cat\s+<<-?\s*(['"]?)(\w+)\1[^\n]*\n"""
    r"""(?P<msg>.*?)\n[ \t]*\2(?=[ \t]*(?:\n|\)|$))""",
    regex.DOTALL,
)

# Simple form: git commit ... -m "message" or -m 'message', any number of times
COMMIT_START_RE = regex.compile(r"git\s+commit\b")
COMMIT_MESSAGE_ARG_RE = regex.compile(
    r"""(?P<lead>[ \t]*)(?<![\w-])(?:-[a-zA-Z]*m|--message=?)\s*"""
    r"""(?:"(?P<dq>(?:[^"\\]|\\.)*)"|'(?P<sq>[^']*)')""",
    regex.DOTALL,
)

AI_MARKER_RE = regex.compile(r"Generated with \[Claude Code\]")
CO_AUTHOR_RE = regex.compile(r"Co-Authored-By:\s*Claude", regex.IGNORECASE)
CO_AUTHOR_EMAIL = "noreply@anthropic.com"


@dataclass(frozen=True)
class RuleSet:
    """All rule lists in effect for this process (built-ins + config extras)."""

    dangerous_commands: tuple[Rule, ...]
    protected_branches: tuple[str, ...]
    sensitive_patterns: tuple[Rule, ...]
    system_paths: tuple[Rule, ...]


_rule_set_cache: RuleSet | None = None


def get_rule_set() -> RuleSet:
    """Build the effective rule set once per process.

    Config entries only extend the built-in tables; built-in rules
    can never be removed.
    """
    global _rule_set_cache
    if _rule_set_cache is not None:
        return _rule_set_cache

    config = load_commitcraft_config()
    extra_dangerous = tuple(
        Rule(p, "custom dangerous command") for p in config.get("extraDangerousCommands", ())
    )
    extra_branches = tuple(
        b for b in config.get("extraProtectedBranches", ()) if b not in PROTECTED_BRANCHES
    )
    extra_sensitive = tuple(
        Rule(p, "custom sensitive path") for p in config.get("extraSensitivePatterns", ())
    )

    _rule_set_cache = RuleSet(
        dangerous_commands=DANGEROUS_COMMANDS + extra_dangerous,
        protected_branches=PROTECTED_BRANCHES + extra_branches,
        sensitive_patterns=SENSITIVE_PATTERNS + extra_sensitive,
        system_paths=SYSTEM_PATHS,
    )
    return _rule_set_cache


def reset_rule_set() -> None:
    """Forget the cached rule set (used by tests)."""
    global _rule_set_cache
    _rule_set_cache = None


# ============================================================
# Commit Message Sanitization
# ============================================================


def _drop_marker_lines(message: str) -> tuple[list[str], int]:
    """Split message into lines, dropping attribution lines. Returns (kept, removed)."""
    kept = []
    removed = 0
    for line in message.split("\n"):
        if AI_MARKER_RE.search(line):
            removed += 1
            continue
        if CO_AUTHOR_RE.search(line) and CO_AUTHOR_EMAIL in line.lower():
            removed += 1
            continue
        kept.append(line)
    return kept, removed


def _tidy(lines: list[str]) -> str:
    cleaned = "\n".join(lines)
    cleaned = regex.sub(r"\n{3,}", "\n\n", cleaned)
    return cleaned.rstrip()


def clean_claude_markers(message: str) -> str:
    """Remove AI attribution lines from a commit message.

    - Drops lines containing "Generated with [Claude Code]"
    - Drops "Co-Authored-By: Claude ... <noreply@anthropic.com>" lines
    - Collapses 3+ consecutive newlines to a single blank line
    - Strips trailing whitespace

    Idempotent: cleaning a cleaned message returns it unchanged.
    """
    kept, _ = _drop_marker_lines(message)
    return _tidy(kept)


def _clean_if_marked(message: str) -> str | None:
    """Cleaned message, or None when it carries no attribution line.

    Messages without markers are never touched, not even their whitespace.
    """
    kept, removed = _drop_marker_lines(message)
    if not removed:
        return None
    return _tidy(kept)


def _substitute_span(command: str, start: int, end: int, replacement: str) -> str:
    return command[:start] + replacement + command[end:]


def sanitize_commit_command(command: str) -> str | None:
    """Rewrite a `git commit -m` command with cleaned messages.

    Every quoted `-m`/`--message` argument after `git commit` is
    cleaned in place; flags, quoting and the heredoc delimiter of the
    original command are preserved. A message argument left empty is
    removed, unless it was the only one.

    Returns:
        The rewritten command, or None if no message carries a marker.
    """
    match = COMMIT_HEREDOC_RE.search(command)
    if match:
        cleaned = _clean_if_marked(match.group("msg"))
        if cleaned is None:
            return None
        return _substitute_span(command, match.start("msg"), match.end("msg"), cleaned)

    commit = COMMIT_START_RE.search(command)
    if not commit:
        return None

    arguments = list(COMMIT_MESSAGE_ARG_RE.finditer(command, commit.end()))
    edits = []
    remaining = 0
    for arg in arguments:
        group = "dq" if arg.group("dq") is not None else "sq"
        cleaned = _clean_if_marked(arg.group(group))
        if cleaned is None:
            remaining += 1
            continue
        if cleaned:
            remaining += 1
        edits.append((arg, group, cleaned))

    if not edits:
        return None

    # Right to left so earlier offsets stay valid
    for arg, group, cleaned in reversed(edits):
        if not cleaned and remaining:
            command = _substitute_span(command, arg.start("lead"), arg.end(), "")
        else:
            command = _substitute_span(command, arg.start(group), arg.end(group), cleaned)
    return command


# ============================================================
# Shell Command Validation
# ============================================================


def match_dangerous_command(command: str, rules: RuleSet | None = None) -> Rule | None:
    """Return the first dangerous-command rule contained in command."""
    rules = rules or get_rule_set()
    for rule in rules.dangerous_commands:
        if rule.pattern in command:
            return rule
    return None


def match_protected_branch(command: str, rules: RuleSet | None = None) -> str | None:
    """Return the protected branch a checkout/switch/branch-delete touches."""
    rules = rules or get_rule_set()
    if not safe_regex_search(BRANCH_OPERATION_RE, command):
        return None
    for branch in rules.protected_branches:
        if safe_regex_search(rf"(?<![\w-]){regex.escape(branch)}(?![\w-])", command):
            return branch
    return None


def has_credential_assignment(command: str) -> bool:
    """Check for password=/token=/secret=/api_key= style assignments."""
    return safe_regex_search(CREDENTIAL_RE, command) is not None


def validate_bash_command(command: str) -> Decision:
    """Evaluate a shell command.

    Order: commit-message cleanup, dangerous list, protected branch,
    credentials, broad staging, default allow.
    """
    cmd_preview = truncate_command(command)
    oversized = len(command) > MAX_COMMAND_LENGTH
    if oversized:
        log_hook(
            "WARNING",
            f"Command exceeds size limit ({len(command)} > {MAX_COMMAND_LENGTH}), "
            "skipping pattern heuristics",
        )

    if not oversized:
        cleaned_command = sanitize_commit_command(command)
        if cleaned_command is not None:
            log_hook("INFO", "Cleaned Claude Code markers from commit message")
            return allow_decision(modified_params={"command": cleaned_command})

    rules = get_rule_set()

    dangerous = match_dangerous_command(command, rules)
    if dangerous is not None:
        log_hook("ERROR", f"Dangerous command blocked: {dangerous.category}")
        return deny_decision(MSG_DANGEROUS)

    if not oversized:
        branch = match_protected_branch(command, rules)
        if branch is not None:
            log_hook("WARNING", f"Protected branch operation: {branch}")
            return allow_decision(message=f"Caution: Protected branch operation on {branch}")

        if has_credential_assignment(command):
            log_hook("ERROR", "Potential credential exposure detected")
            return deny_decision(MSG_CREDENTIAL)

    if command.strip() in BROAD_STAGING_COMMANDS:
        log_hook("WARNING", "Broad staging command detected")
        return allow_decision(message=MSG_BROAD_STAGING)

    log_hook("INFO", f"Command validated: {cmd_preview}")
    return allow_decision()


# ============================================================
# File Operation Validation
# ============================================================


def _normalize_windows_path(path: str) -> str:
    return path.replace("\\", "/").lower()


def match_sensitive_path(file_path: str, rules: RuleSet | None = None) -> Rule | None:
    """Return the first sensitive-path rule contained in file_path."""
    rules = rules or get_rule_set()
    for rule in rules.sensitive_patterns:
        if rule.pattern in file_path:
            return rule
    return None


def match_system_path(file_path: str, rules: RuleSet | None = None) -> Rule | None:
    """Return the system-path rule file_path falls under.

    Unix entries match case-sensitively. Windows entries match
    case-insensitively with either slash style.
    """
    rules = rules or get_rule_set()
    normalized = _normalize_windows_path(file_path)
    for rule in rules.system_paths:
        if rule.pattern.startswith("/"):
            if file_path.startswith(rule.pattern) or rule.pattern in file_path:
                return rule
        elif _normalize_windows_path(rule.pattern) in normalized:
            return rule
    return None


def validate_file_operation(file_path: str) -> Decision:
    """Evaluate a file write/edit target path."""
    path_preview = truncate_path(file_path)
    rules = get_rule_set()

    sensitive = match_sensitive_path(file_path, rules)
    if sensitive is not None:
        log_hook("ERROR", f"Operation on sensitive file blocked ({sensitive.category}): {path_preview}")
        return deny_decision(MSG_SENSITIVE_FILE)

    system = match_system_path(file_path, rules)
    if system is not None:
        log_hook("ERROR", f"System file modification blocked ({system.category}): {path_preview}")
        return deny_decision(MSG_SYSTEM_FILE)

    log_hook("INFO", f"File operation validated: {path_preview}")
    return allow_decision()


# ============================================================
# Dispatch
# ============================================================


def _file_path_param(params: Mapping[str, Any]) -> Any:
    for key in ("file_path", "filePath", "notebook_path"):
        value = params.get(key)
        if value:
            return value
    return None


def validate_tool_use(tool_name: Any, params: Any) -> Decision:
    """Classify one tool call.

    Args:
        tool_name: Tool name (case-insensitive).
        params: Tool parameters mapping.

    Returns:
        Decision. Unknown tools and malformed params are allowed.
    """
    tool = tool_name.lower() if isinstance(tool_name, str) else ""
    if not isinstance(params, Mapping):
        params = {}

    if tool in SHELL_TOOLS:
        command = params.get("command")
        if isinstance(command, str) and command:
            return validate_bash_command(command)
        return allow_decision()

    if tool in FILE_TOOLS:
        file_path = _file_path_param(params)
        if isinstance(file_path, str):
            return validate_file_operation(file_path)
        if file_path is not None:
            log_hook("WARNING", f"Invalid file_path type: {type(file_path).__name__}")
        return allow_decision()

    log_hook("DEBUG", f"Tool not guarded, allowing: {tool or '<none>'}")
    return allow_decision()


def extract_tool_call(event: Mapping[str, Any]) -> tuple[str, dict[str, Any]]:
    """Pull (tool, params) out of an event payload.

    Accepts both {"tool", "params"} and the {"tool_name", "tool_input"} envelope.
    """
    tool = event.get("tool") or event.get("tool_name") or ""
    params = event.get("params")
    if params is None:
        params = event.get("tool_input")
    if not isinstance(tool, str):
        tool = ""
    if not isinstance(params, dict):
        params = {}
    return tool, params


def handle_event(raw: str) -> dict[str, Any]:
    """Evaluate one raw stdin payload and return the output payload."""
    event = parse_json_object(raw)
    tool, params = extract_tool_call(event)

    log_hook("DEBUG", f"Tool: {tool}")
    log_hook("DEBUG", f"Params: {json.dumps(params, ensure_ascii=False, default=str)}")

    return validate_tool_use(tool, params).to_guard_output()


def main() -> None:
    """Main hook entry point."""
    set_hook_name("pre-tool-use")
    configure_stdio()
    timeout = get_hook_timeout("guardTimeoutSeconds", GUARD_TIMEOUT_SECONDS)
    run_with_watchdog(
        lambda: handle_event(read_stdin_text()),
        timeout,
        timeout_payload={"decision": "allow", "message": "Hook timeout"},
        error_payload=lambda e: {"decision": "allow", "message": "Hook error, allowing operation"},
    )


if __name__ == "__main__":
    try:
        main()
    except Exception as e:
        log_hook("ERROR", f"Pre-tool-use guard error: {type(e).__name__}: {e}")
        try:
            emit_output({"decision": "allow", "message": "Hook error, allowing operation"})
        except Exception:
            pass
    sys.exit(0)
