"""Bootstrap module for CommitCraft hook tests.

Discovers the repo root and adds hooks/scripts/ to sys.path.

Usage at top of any test file:
    import _bootstrap  # noqa: F401 (side-effect import)
    from pre_tool_use import validate_tool_use, ...
"""
import sys
from pathlib import Path


def _find_repo_root():
    """Walk up from this file to find the repo root (contains hooks/scripts/)."""
    current = Path(__file__).resolve().parent
    while current != current.parent:
        if (current / "hooks" / "scripts" / "pre_tool_use.py").exists():
            return current
        current = current.parent
    raise RuntimeError("Cannot find commitcraft-hooks repo root from tests/_bootstrap.py")


_REPO_ROOT = _find_repo_root()
_SCRIPTS_DIR = str(_REPO_ROOT / "hooks" / "scripts")

if _SCRIPTS_DIR not in sys.path:
    sys.path.insert(0, _SCRIPTS_DIR)

PRE_TOOL_USE_SCRIPT = str(_REPO_ROOT / "hooks" / "scripts" / "pre_tool_use.py")
USER_PROMPT_SUBMIT_SCRIPT = str(_REPO_ROOT / "hooks" / "scripts" / "user_prompt_submit.py")
