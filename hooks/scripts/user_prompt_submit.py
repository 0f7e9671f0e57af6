#!/usr/bin/env python3
"""User-Prompt-Submit Enhancer Hook.

Rewrites user input for the commit workflow:
1. `/<command> --help` requests are answered directly (blocked with help text)
2. Commit-related prompts get a context block appended (change type,
   language, branch, working-tree preview, workflow stages, warnings)
3. Everything else passes through unchanged

Input (stdin):  raw prompt text, a JSON string, or {"prompt": "..."}
Output (stdout): {"decision": "allow"|"block", "enhanced_prompt"?: ..., "message"?: ..., "metadata": {...}}

Design Principles:
- Fail-Open: internal errors and timeouts pass the prompt through
- Exit code is always 0
- Only read-only git queries (status, current branch)
"""

import json
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

# Add hooks directory to path
sys.path.insert(0, str(Path(__file__).parent))

try:
    import regex

    from _commitcraft_utils import (
        GIT_STATUS_FALLBACK,
        PROMPT_TIMEOUT_SECONDS,
        VERDICT_ALLOW,
        VERDICT_BLOCK,
        Decision,
        configure_stdio,
        emit_output,
        get_current_branch,
        get_git_status,
        get_hook_timeout,
        log_hook,
        read_stdin_text,
        run_with_watchdog,
        set_hook_name,
        timestamp_now,
    )
    from _help_texts import KNOWN_COMMANDS, generate_help_text
except ImportError as e:
    print(json.dumps({"decision": "allow", "metadata": {"error": f"Hook unavailable: {e}"}}))
    sys.exit(0)


# ============================================================
# Keyword Tables
# ============================================================

DEFAULT_PROMPT = "commit my changes"

COMMIT_KEYWORDS: tuple[str, ...] = ("commit", "提交", "git commit", "/commit")

CONTEXT_INDICATORS: tuple[str, ...] = (
    "feat",
    "fix",
    "docs",
    "refactor",
    "test",
    "chore",
    "style",
    "perf",
)

# Keyword inference, checked in this order (first match wins)
CONTEXT_INFERENCE: tuple[tuple["regex.Pattern", str], ...] = (
    (regex.compile(r"bug|fix|修复|问题"), "fix"),
    (regex.compile(r"feature|add|implement|功能|添加"), "feat"),
    (regex.compile(r"document|docs|readme|文档"), "docs"),
    (regex.compile(r"refactor|reorganize|重构"), "refactor"),
    (regex.compile(r"test|测试"), "test"),
)

# A prompt opening with a conventional type word reads as a commit subject
COMMIT_SUBJECT_RE = regex.compile(
    r"^\s*(?:feat|fix|docs|refactor|test|chore|style|perf)(?:\([^)\n]*\))?!?(?::|\s)",
    regex.IGNORECASE,
)

CHINESE_RE = regex.compile(r"中文|chinese|\bzh\b", regex.IGNORECASE)
ENGLISH_RE = regex.compile(r"english|\ben\b", regex.IGNORECASE)

HELP_COMMAND_RE = regex.compile(
    r"^\s*/(" + "|".join(regex.escape(c) for c in KNOWN_COMMANDS) + r")\s+(?:--help|-h|help)\s*$",
    regex.IGNORECASE,
)

# First match wins, at most one note
WORKFLOW_MODES: tuple[tuple["regex.Pattern", str], ...] = (
    (
        regex.compile(r"batch|multiple|批量", regex.IGNORECASE),
        "[Workflow Mode] Batch mode: Will process multiple features separately",
    ),
    (
        regex.compile(r"preview|dry|预览", regex.IGNORECASE),
        "[Workflow Mode] Preview mode: Will show changes without committing",
    ),
    (
        regex.compile(r"quick|fast|快速", regex.IGNORECASE),
        "[Workflow Mode] Quick mode: Minimal interaction, automated decisions",
    ),
)

FORCE_RE = regex.compile(r"force", regex.IGNORECASE)
CAUTION_BRANCHES: frozenset[str] = frozenset({"main", "master"})

STATUS_PREVIEW_LINES = 5
SPLIT_SUGGESTION_THRESHOLD = 10

AGENTS_AND_WORKFLOW = """Available agents:
1. commit-analyzer - Analyze repository changes
2. commit-grouper - Group files logically
3. commit-message - Generate commit messages
4. commit-validator - Validate quality
5. commit-executor - Execute commits

Workflow will:
1. Analyze all changes comprehensively
2. Group files by feature/module
3. Request user confirmation at each step
4. Generate professional commit messages
5. Validate quality before execution"""

FORCE_WARNING = "⚠️ WARNING: Force operation requested. Extra confirmation will be required."
SPLIT_SUGGESTION = "💡 Suggestion: Consider grouping changes into multiple commits"
NO_CHANGES_SUGGESTION = "💡 Suggestion: No changes detected. Check if files are saved"


@dataclass(frozen=True)
class PromptContext:
    """What the enhancer derived from one prompt. Never persisted."""

    commit_intent: bool
    change_type: str
    language_preference: str
    branch: str | None
    status_preview: str
    changed_file_count: int | None


# ============================================================
# Classification
# ============================================================


def is_help_command(prompt: str) -> bool:
    """Check for `/<known-command> --help|-h|help`."""
    return HELP_COMMAND_RE.match(prompt) is not None


def extract_command_from_help(prompt: str) -> str | None:
    """Command name of a help request, lowercased."""
    match = regex.match(r"^\s*/(\S+)\s+(?:--help|-h|help)\s*$", prompt, regex.IGNORECASE)
    return match.group(1).lower() if match else None


def detect_commit_intent(prompt: str) -> bool:
    """Keyword check (any script), or a prompt that reads as a commit subject."""
    prompt_lower = prompt.lower()
    if any(keyword in prompt_lower for keyword in COMMIT_KEYWORDS):
        return True
    return COMMIT_SUBJECT_RE.match(prompt) is not None


def extract_context(prompt: str) -> str:
    """Conventional-commit type implied by the prompt.

    Explicit type tokens win over keyword inference; both are
    checked in fixed priority order.
    """
    prompt_lower = prompt.lower()

    for indicator in CONTEXT_INDICATORS:
        if indicator in prompt_lower:
            return indicator

    for pattern, change_type in CONTEXT_INFERENCE:
        if pattern.search(prompt_lower):
            return change_type

    return "general"


def detect_language_preference(prompt: str) -> str:
    """'chinese', 'english' or 'auto'."""
    if CHINESE_RE.search(prompt):
        return "chinese"
    if ENGLISH_RE.search(prompt):
        return "english"
    return "auto"


# ============================================================
# Context Assembly
# ============================================================


def count_changed_files(status: str) -> int | None:
    """Number of changed-file lines in porcelain output, None if unavailable."""
    if status == GIT_STATUS_FALLBACK:
        return None
    return sum(1 for line in status.splitlines() if line.strip())


def preview_status(status: str, max_lines: int = STATUS_PREVIEW_LINES) -> str:
    """First max_lines lines of the status output."""
    lines = [line for line in status.splitlines() if line.strip()]
    if not lines:
        return "(working tree clean)" if status != GIT_STATUS_FALLBACK else status
    return "\n".join(lines[:max_lines])


def build_prompt_context(
    prompt: str,
    status_provider: Callable[[], str] = get_git_status,
    branch_provider: Callable[[], str | None] = get_current_branch,
) -> PromptContext:
    """Derive the full context for a commit-related prompt.

    Runs the two read-only git queries. Both already fall back
    instead of raising; anything unexpected is logged and replaced.
    """
    try:
        status = status_provider()
    except Exception as e:
        log_hook("WARNING", f"Status query failed: {type(e).__name__}")
        status = GIT_STATUS_FALLBACK
    try:
        branch = branch_provider()
    except Exception as e:
        log_hook("WARNING", f"Branch query failed: {type(e).__name__}")
        branch = None

    return PromptContext(
        commit_intent=True,
        change_type=extract_context(prompt),
        language_preference=detect_language_preference(prompt),
        branch=branch,
        status_preview=preview_status(status),
        changed_file_count=count_changed_files(status),
    )


def workflow_mode_note(prompt: str) -> str | None:
    for pattern, note in WORKFLOW_MODES:
        if pattern.search(prompt):
            return note
    return None


def enhance_prompt(original_prompt: str, context: PromptContext) -> str:
    """Append the commit workflow context to the original prompt."""
    language = (
        "Auto-detect from content"
        if context.language_preference == "auto"
        else context.language_preference
    )
    context_lines = [
        "[CommitCraft Context]",
        f"- Detected Type: {context.change_type}",
        "- Multi-agent workflow enabled",
        "- Quality validation: Required (≥90 score)",
        "- Interactive mode: Enabled",
        f"- Language: {language}",
    ]
    if context.branch:
        context_lines.append(f"- Current branch: {context.branch}")

    sections = [
        original_prompt,
        "\n".join(context_lines),
        f"Current changes preview:\n{context.status_preview}",
        AGENTS_AND_WORKFLOW,
    ]

    note = workflow_mode_note(original_prompt)
    if note:
        sections.append(note)

    if FORCE_RE.search(original_prompt):
        sections.append(FORCE_WARNING)

    if context.branch in CAUTION_BRANCHES:
        sections.append(f"⚠️ CAUTION: You are on the {context.branch} branch.")

    if context.changed_file_count is not None:
        if context.changed_file_count > SPLIT_SUGGESTION_THRESHOLD:
            sections.append(SPLIT_SUGGESTION)
        elif context.changed_file_count == 0:
            sections.append(NO_CHANGES_SUGGESTION)

    return "\n\n".join(sections)


# ============================================================
# Evaluation
# ============================================================


def evaluate_prompt(
    raw_prompt: str,
    status_provider: Callable[[], str] = get_git_status,
    branch_provider: Callable[[], str | None] = get_current_branch,
) -> Decision:
    """Classify a prompt and build the hook decision."""
    prompt = raw_prompt.strip() or DEFAULT_PROMPT

    if is_help_command(prompt):
        command = extract_command_from_help(prompt)
        log_hook("INFO", f"Help requested for /{command}")
        return Decision(
            VERDICT_BLOCK,
            message=generate_help_text(command),
            metadata={
                "is_help_command": True,
                "command": command,
                "timestamp": timestamp_now(),
            },
        )

    if not detect_commit_intent(prompt):
        log_hook("DEBUG", "No commit intent, passing prompt through")
        return Decision(
            VERDICT_ALLOW,
            enhanced_prompt=prompt,
            metadata={
                "language_preference": detect_language_preference(prompt),
                "commit_intent_detected": False,
                "context_type": extract_context(prompt),
                "timestamp": timestamp_now(),
            },
        )

    context = build_prompt_context(prompt, status_provider, branch_provider)
    log_hook(
        "INFO",
        f"Commit intent detected (type={context.change_type}, "
        f"language={context.language_preference}, branch={context.branch or '-'})",
    )
    return Decision(
        VERDICT_ALLOW,
        enhanced_prompt=enhance_prompt(prompt, context),
        metadata={
            "language_preference": context.language_preference,
            "commit_intent_detected": True,
            "context_type": context.change_type,
            "timestamp": timestamp_now(),
        },
    )


def extract_prompt_text(raw: str) -> str:
    """Prompt text from stdin: a JSON string, a JSON object, or bare text."""
    text = raw.strip()
    if not text:
        return ""
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return text
    if isinstance(data, str):
        return data.strip()
    if isinstance(data, dict):
        for key in ("prompt", "user_prompt"):
            value = data.get(key)
            if isinstance(value, str):
                return value.strip()
        log_hook("WARNING", "JSON input without a prompt field, using default prompt")
        return ""
    return text


def handle_event(raw: str) -> dict[str, Any]:
    """Evaluate one raw stdin payload and return the output payload."""
    prompt = extract_prompt_text(raw)
    log_hook("DEBUG", f"Prompt length: {len(prompt)}")
    return evaluate_prompt(prompt).to_prompt_output()


def main() -> None:
    """Main hook entry point."""
    set_hook_name("user-prompt-submit")
    configure_stdio()
    timeout = get_hook_timeout("promptTimeoutSeconds", PROMPT_TIMEOUT_SECONDS)
    run_with_watchdog(
        lambda: handle_event(read_stdin_text()),
        timeout,
        timeout_payload={"decision": "allow", "message": "Hook timeout", "metadata": {}},
        error_payload=lambda e: {"decision": "allow", "metadata": {}},
        indent=2,
    )


if __name__ == "__main__":
    try:
        main()
    except Exception as e:
        log_hook("ERROR", f"User-prompt-submit hook error: {type(e).__name__}: {e}")
        try:
            emit_output({"decision": "allow", "metadata": {}}, indent=2)
        except Exception:
            pass
    sys.exit(0)
