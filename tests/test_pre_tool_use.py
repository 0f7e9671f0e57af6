"""Tests for pre_tool_use.py (command/file guard).

Covers:
- Commit message marker cleanup (simple and heredoc forms)
- Dangerous command block list
- Protected branch warnings
- Credential exposure detection
- Broad staging advice
- Sensitive and system path protection
- Tool dispatch, config extensions, dry-run mode
"""
import json

import pytest

import _bootstrap  # noqa: F401
from pre_tool_use import (
    DANGEROUS_COMMANDS,
    MSG_BROAD_STAGING,
    MSG_CREDENTIAL,
    MSG_DANGEROUS,
    MSG_SENSITIVE_FILE,
    MSG_SYSTEM_FILE,
    SENSITIVE_PATTERNS,
    clean_claude_markers,
    extract_tool_call,
    get_rule_set,
    handle_event,
    match_protected_branch,
    sanitize_commit_command,
    validate_bash_command,
    validate_file_operation,
    validate_tool_use,
)

AI_MARKER = "🤖 Generated with [Claude Code](https://claude.ai/code)"
CO_AUTHOR = "Co-Authored-By: Claude <noreply@anthropic.com>"


# ============================================================
# Commit Message Cleanup
# ============================================================


class TestCleanClaudeMarkers:

    def test_removes_attribution_and_co_author(self):
        message = f"feat: add login\n\nAdds the form.\n\n{AI_MARKER}\n\n{CO_AUTHOR}"
        assert clean_claude_markers(message) == "feat: add login\n\nAdds the form."

    def test_marker_without_emoji_removed(self):
        assert clean_claude_markers("fix: x\nGenerated with [Claude Code]") == "fix: x"

    def test_co_author_without_email_kept(self):
        message = "fix: x\n\nCo-Authored-By: Claude Shannon <claude@example.com>"
        assert clean_claude_markers(message) == message

    def test_human_co_author_kept(self):
        message = "fix: x\n\nCo-Authored-By: Jane Doe <jane@example.com>"
        assert clean_claude_markers(message) == message

    def test_collapses_blank_runs(self):
        assert clean_claude_markers("a\n\n\n\n\nb") == "a\n\nb"

    def test_strips_trailing_whitespace(self):
        assert clean_claude_markers("fix: x  \n\n  ") == "fix: x"

    @pytest.mark.parametrize(
        "message",
        [
            f"feat: add login\n\n{AI_MARKER}\n\n{CO_AUTHOR}",
            "a\n\n\n\nb\n\n\n",
            "plain message",
            f"{AI_MARKER}",
            "",
        ],
    )
    def test_idempotent(self, message):
        once = clean_claude_markers(message)
        assert clean_claude_markers(once) == once


class TestSanitizeCommitCommand:

    def test_simple_double_quoted(self):
        cmd = f'git commit -m "feat: add login\n\n{AI_MARKER}\n\n{CO_AUTHOR}"'
        assert sanitize_commit_command(cmd) == 'git commit -m "feat: add login"'

    def test_simple_single_quoted(self):
        cmd = f"git commit -m 'fix: typo\n\n{CO_AUTHOR}'"
        assert sanitize_commit_command(cmd) == "git commit -m 'fix: typo'"

    def test_other_flags_and_prefix_preserved(self):
        cmd = f'git add a.py && git commit --no-verify -am "fix: typo\n\n{CO_AUTHOR}"'
        assert sanitize_commit_command(cmd) == 'git add a.py && git commit --no-verify -am "fix: typo"'

    def test_escaped_quotes_in_message(self):
        cmd = f'git commit -m "say \\"hi\\"\n\n{CO_AUTHOR}"'
        assert sanitize_commit_command(cmd) == 'git commit -m "say \\"hi\\""'

    def test_heredoc_quoted_delimiter(self):
        cmd = (
            "git commit -m \"$(cat <<'EOF'\n"
            "feat: add login\n\n"
            f"{AI_MARKER}\n\n"
            f"{CO_AUTHOR}\n"
            "EOF\n"
            ")\""
        )
        expected = "git commit -m \"$(cat <<'EOF'\nfeat: add login\nEOF\n)\""
        assert sanitize_commit_command(cmd) == expected

    def test_heredoc_custom_unquoted_delimiter(self):
        cmd = f'git commit -m "$(cat <<MSG\nfix: crash\n\n{CO_AUTHOR}\nMSG\n)"'
        assert sanitize_commit_command(cmd) == 'git commit -m "$(cat <<MSG\nfix: crash\nMSG\n)"'

    def test_heredoc_body_mentioning_delimiter_word(self):
        cmd = f"git commit -m \"$(cat <<'EOF'\ndocs: explain EOF handling\n\n{CO_AUTHOR}\nEOF\n)\""
        assert sanitize_commit_command(cmd) == (
            "git commit -m \"$(cat <<'EOF'\ndocs: explain EOF handling\nEOF\n)\""
        )

    def test_clean_message_not_rewritten(self):
        assert sanitize_commit_command('git commit -m "fix: handle errors"') is None

    def test_clean_heredoc_not_rewritten(self):
        cmd = "git commit -m \"$(cat <<'EOF'\nfix: handle errors\n\nDetails.\nEOF\n)\""
        assert sanitize_commit_command(cmd) is None

    def test_non_commit_command(self):
        assert sanitize_commit_command(f'echo "{CO_AUTHOR}"') is None

    def test_rewritten_command_is_stable(self):
        cmd = f'git commit -m "feat: x\n\n{CO_AUTHOR}"'
        once = sanitize_commit_command(cmd)
        assert sanitize_commit_command(once) is None

    def test_every_message_argument_cleaned(self):
        cmd = f'git commit -m "feat: add login" -m "{AI_MARKER}" -m "{CO_AUTHOR}"'
        assert sanitize_commit_command(cmd) == 'git commit -m "feat: add login"'

    def test_marker_in_later_paragraph_only(self):
        cmd = f'git commit -m "feat: add login" -m "Adds the form.\n\n{CO_AUTHOR}"'
        assert sanitize_commit_command(cmd) == 'git commit -m "feat: add login" -m "Adds the form."'

    def test_long_message_flag(self):
        cmd = f"git commit --message='fix: typo' --message='{CO_AUTHOR}'"
        assert sanitize_commit_command(cmd) == "git commit --message='fix: typo'"

    def test_only_marker_message_left_empty(self):
        assert sanitize_commit_command(f'git commit -m "{CO_AUTHOR}"') == 'git commit -m ""'

    @pytest.mark.parametrize(
        "cmd",
        [
            'git commit -m "wip "',
            'git commit -m "fix: a\n\n\n\nb"',
            "git commit -m 'docs: notes\n\n'",
            "git commit -m \"$(cat <<'EOF'\nfix: a\n\n\n\nb  \nEOF\n)\"",
        ],
    )
    def test_unmarked_whitespace_left_alone(self, cmd):
        assert sanitize_commit_command(cmd) is None


# ============================================================
# Shell Command Validation
# ============================================================


class TestCommitCleanupDecision:

    def test_returns_allow_with_modified_command(self):
        cmd = f'git commit -m "feat: add login\n\n{CO_AUTHOR}"'
        decision = validate_bash_command(cmd)
        assert decision.verdict == "allow"
        assert decision.message is None
        assert decision.to_guard_output() == {
            "decision": "allow",
            "modifiedParams": {"command": 'git commit -m "feat: add login"'},
        }

    def test_cleanup_takes_precedence_over_other_checks(self):
        cmd = f'git commit -m "chore: tidy\n\n{CO_AUTHOR}" && git add .'
        decision = validate_bash_command(cmd)
        assert decision.verdict == "allow"
        assert decision.modified_params["command"].startswith('git commit -m "chore: tidy"')


class TestDangerousCommands:

    def test_rm_rf_scenario(self):
        decision = validate_tool_use("bash", {"command": "rm -rf /tmp/x"})
        assert decision.to_guard_output() == {"decision": "deny", "message": MSG_DANGEROUS}

    @pytest.mark.parametrize("rule", DANGEROUS_COMMANDS, ids=lambda r: r.category)
    def test_every_literal_denied(self, rule):
        decision = validate_bash_command(f"echo start; {rule.pattern} target")
        assert decision.verdict == "deny"
        assert decision.message == MSG_DANGEROUS

    def test_message_does_not_echo_command(self, capsys):
        decision = validate_bash_command("rm -rf /srv/very-private-dir")
        assert "very-private-dir" not in decision.message
        assert "very-private-dir" not in capsys.readouterr().err

    def test_dangerous_wins_over_protected_branch(self):
        decision = validate_bash_command("git checkout main && git reset --hard origin/main")
        assert decision.verdict == "deny"


class TestProtectedBranches:

    @pytest.mark.parametrize(
        "command, branch",
        [
            ("git checkout main", "main"),
            ("git switch master", "master"),
            ("git branch -d production", "production"),
            ("git branch -D release", "release"),
            ("git checkout origin/main -- file.txt", "main"),
        ],
    )
    def test_warns_but_allows(self, command, branch):
        decision = validate_bash_command(command)
        assert decision.verdict == "allow"
        assert decision.message == f"Caution: Protected branch operation on {branch}"

    def test_unprotected_branch(self):
        decision = validate_bash_command("git switch feature/login")
        assert decision.verdict == "allow"
        assert decision.message is None

    def test_branch_name_inside_word_ignored(self):
        assert match_protected_branch("git checkout domain-fix") is None

    def test_branch_mentioned_without_switch(self):
        assert match_protected_branch("git log main") is None


class TestCredentialExposure:

    @pytest.mark.parametrize(
        "command",
        [
            "export PASSWORD=hunter2",
            "curl -d token=abc https://example.com",
            "SECRET = 'x' ./run.sh",
            "API_KEY=abc123 npm start",
            "api-key=abc123 npm start",
            "ApiKey=abc npm start",
        ],
    )
    def test_denied_regardless_of_case(self, command):
        decision = validate_bash_command(command)
        assert decision.verdict == "deny"
        assert decision.message == MSG_CREDENTIAL

    def test_word_without_assignment_allowed(self):
        assert validate_bash_command("grep -r token src/").verdict == "allow"


class TestBroadStaging:

    @pytest.mark.parametrize("command", ["git add .", "git add -A", "  git add .  "])
    def test_advisory(self, command):
        decision = validate_bash_command(command)
        assert decision.verdict == "allow"
        assert decision.message == MSG_BROAD_STAGING

    def test_specific_staging_silent(self):
        decision = validate_bash_command("git add src/app.py")
        assert decision.to_guard_output() == {"decision": "allow"}


class TestDefaultAllow:

    @pytest.mark.parametrize(
        "command",
        [
            "ls -la",
            "git status",
            "git log --oneline -5",
            "npm test",
            'git commit -m "fix: handle empty input"',
            "python -m pytest tests/",
            'git commit -m "wip "',
            'git commit -m "fix: a\n\n\n\nb"',
        ],
    )
    def test_benign_command_unchanged(self, command):
        out = validate_tool_use("bash", {"command": command}).to_guard_output()
        assert out == {"decision": "allow"}

    def test_oversized_command_skips_regex_checks(self):
        command = "echo " + "x" * 100_001 + " password=1"
        assert validate_bash_command(command).verdict == "allow"

    def test_oversized_command_still_checks_literals(self):
        command = "rm -rf " + "x" * 100_001
        assert validate_bash_command(command).verdict == "deny"


# ============================================================
# File Operation Validation
# ============================================================


class TestFileOperations:

    def test_env_write_scenario(self):
        decision = validate_tool_use("write", {"file_path": ".env"})
        assert decision.to_guard_output() == {"decision": "deny", "message": MSG_SENSITIVE_FILE}

    @pytest.mark.parametrize("rule", SENSITIVE_PATTERNS, ids=lambda r: r.pattern)
    def test_every_sensitive_marker_denied(self, rule):
        decision = validate_file_operation(f"project/{rule.pattern}/file")
        assert decision.verdict == "deny"
        assert decision.message == MSG_SENSITIVE_FILE

    @pytest.mark.parametrize(
        "path",
        [
            "/etc/hosts",
            "/usr/local/bin/tool",
            "/System/Library/x.plist",
            "C:\\Windows\\System32\\drivers\\hosts",
            "c:/windows/system32/x.dll",
            "C:\\Program Files\\App\\app.exe",
            "%WINDIR%\\x.ini",
            "%ProgramFiles%\\App\\x.ini",
            "/chroot/etc/hosts",
        ],
    )
    def test_system_paths_denied(self, path):
        decision = validate_file_operation(path)
        assert decision.verdict == "deny"
        assert decision.message == MSG_SYSTEM_FILE

    def test_sensitive_checked_before_system(self):
        assert validate_file_operation("/etc/secrets/db.yml").message == MSG_SENSITIVE_FILE

    def test_regular_file_allowed(self):
        assert validate_file_operation("src/app.py").to_guard_output() == {"decision": "allow"}

    @pytest.mark.parametrize("tool", ["write", "Edit", "MultiEdit", "NotebookEdit"])
    def test_file_tools(self, tool):
        assert validate_tool_use(tool, {"file_path": "/etc/passwd"}).verdict == "deny"

    def test_file_path_camel_case_alias(self):
        assert validate_tool_use("edit", {"filePath": ".env.local"}).verdict == "deny"

    def test_missing_path_allowed(self):
        assert validate_tool_use("write", {"content": "x"}).verdict == "allow"

    def test_non_string_path_allowed(self):
        assert validate_tool_use("write", {"file_path": 42}).verdict == "allow"


# ============================================================
# Dispatch
# ============================================================


class TestDispatch:

    @pytest.mark.parametrize("tool", ["bash", "Bash", "SHELL", "cmd", "powershell"])
    def test_shell_tools_case_insensitive(self, tool):
        assert validate_tool_use(tool, {"command": "rm -rf build"}).verdict == "deny"

    @pytest.mark.parametrize("tool", ["Read", "WebFetch", "Grep", "", None])
    def test_unknown_tools_allowed(self, tool):
        decision = validate_tool_use(tool, {"file_path": ".env", "command": "rm -rf /"})
        assert decision.to_guard_output() == {"decision": "allow"}

    def test_non_mapping_params(self):
        assert validate_tool_use("bash", ["rm -rf /"]).verdict == "allow"

    def test_missing_command(self):
        assert validate_tool_use("bash", {}).verdict == "allow"

    def test_extract_tool_call_envelope_alias(self):
        event = {"tool_name": "Bash", "tool_input": {"command": "ls"}}
        assert extract_tool_call(event) == ("Bash", {"command": "ls"})

    def test_extract_tool_call_bad_types(self):
        assert extract_tool_call({"tool": 3, "params": "x"}) == ("", {})


class TestHandleEvent:

    def test_deny_payload(self):
        raw = json.dumps({"tool": "bash", "params": {"command": "rm -rf /tmp/x"}})
        assert handle_event(raw) == {"decision": "deny", "message": MSG_DANGEROUS}

    def test_malformed_json_treated_as_empty(self):
        assert handle_event("{not json") == {"decision": "allow"}

    def test_empty_input(self):
        assert handle_event("") == {"decision": "allow"}

    def test_json_array_treated_as_empty(self):
        assert handle_event("[1, 2]") == {"decision": "allow"}


# ============================================================
# Config and Dry-Run
# ============================================================


class TestConfigExtensions:

    def test_extra_rules_added(self, write_config):
        write_config(
            {
                "extraDangerousCommands": ["git clean -fdx"],
                "extraProtectedBranches": ["develop"],
                "extraSensitivePatterns": [".npmrc"],
            }
        )
        assert validate_bash_command("git clean -fdx").verdict == "deny"
        assert validate_bash_command("git checkout develop").message == (
            "Caution: Protected branch operation on develop"
        )
        assert validate_file_operation("home/.npmrc").verdict == "deny"

    def test_builtins_always_present(self, write_config):
        write_config({"extraDangerousCommands": []})
        rules = get_rule_set()
        assert rules.dangerous_commands[: len(DANGEROUS_COMMANDS)] == DANGEROUS_COMMANDS
        assert validate_bash_command("rm -rf x").verdict == "deny"

    def test_invalid_config_falls_back(self, write_config):
        write_config("{broken")
        assert get_rule_set().dangerous_commands == DANGEROUS_COMMANDS

    def test_rule_set_is_immutable(self):
        rules = get_rule_set()
        with pytest.raises(AttributeError):
            rules.dangerous_commands = ()
        assert isinstance(rules.protected_branches, tuple)


class TestDryRun:

    def test_deny_downgraded(self, monkeypatch):
        monkeypatch.setenv("COMMITCRAFT_DRY_RUN", "1")
        decision = validate_bash_command("rm -rf /tmp/x")
        assert decision.verdict == "allow"
        assert decision.message == f"[DRY-RUN] {MSG_DANGEROUS}"

    def test_warnings_unchanged(self, monkeypatch):
        monkeypatch.setenv("COMMITCRAFT_DRY_RUN", "true")
        assert validate_bash_command("git add .").message == MSG_BROAD_STAGING
