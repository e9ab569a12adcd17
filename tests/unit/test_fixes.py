"""Tests for repo_autopilot/engine/fixes.py."""

import subprocess
from unittest.mock import AsyncMock, patch

import pytest

from repo_autopilot.engine.fixes import CommandFixExecutor, resolve_conflict_markers, resolve_hunk
from repo_autopilot.engine.recovery import (
    AutomergeConflictResolution,
    BuildFailed,
    CommandExecuted,
    FixType,
    MergeConflictFound,
)
from repo_autopilot.exceptions import RecoveryError


class TestResolveHunk:
    """Tests for single-hunk resolution rules."""

    def test_python_imports_are_merged_and_sorted(self):
        ours = ["import os", "from typing import Any"]
        theirs = ["import sys", "import os"]

        assert resolve_hunk(ours, theirs, "app/main.py") == ["from typing import Any", "import os", "import sys"]

    def test_imports_outside_python_files_keep_ours(self):
        assert resolve_hunk(["import a"], ["import b"], "notes.md") == ["import a"]

    def test_toml_keeps_higher_version(self):
        ours = ['version = "1.2.0"']
        theirs = ['version = "1.10.0"']

        assert resolve_hunk(ours, theirs, "pyproject.toml") == theirs
        assert resolve_hunk(theirs, ours, "pyproject.toml") == theirs

    def test_comment_hunks_keep_both_sides(self):
        ours = ["# ours"]
        theirs = ["# theirs", ""]

        assert resolve_hunk(ours, theirs, "config.yaml") == ["# ours", "# theirs", ""]

    def test_code_hunks_keep_ours(self):
        assert resolve_hunk(["x = 1"], ["x = 2"], "app/settings.py") == ["x = 1"]


class TestResolveConflictMarkers:
    """Tests for whole-file conflict marker resolution."""

    def test_no_markers_returns_none(self):
        assert resolve_conflict_markers("print('hi')\n", "a.py") is None

    def test_resolves_every_hunk(self):
        content = "\n".join(
            [
                "<<<<<<< HEAD",
                "import os",
                "=======",
                "import sys",
                ">>>>>>> feature",
                "",
                "def main():",
                "<<<<<<< HEAD",
                "    return 1",
                "=======",
                "    return 2",
                ">>>>>>> feature",
            ]
        )

        resolved = resolve_conflict_markers(content, "main.py")

        assert resolved == "import os\nimport sys\n\ndef main():\n    return 1\n"
        assert "<<<<<<<" not in resolved


class TestCommandFixExecutor:
    """Tests for the shell-command fix executor."""

    @pytest.mark.asyncio
    async def test_runs_configured_commands_in_order(self, tmp_path):
        executor = CommandFixExecutor(
            commands={FixType.CODE_FORMATTING: ["ruff format .", "ruff check --fix ."]},
            working_directory=tmp_path,
            timeout_seconds=30.0,
        )

        with patch("repo_autopilot.engine.fixes.run_shell_command", new=AsyncMock(return_value=("", "", 0))) as run:
            actions = await executor.apply_fix(FixType.CODE_FORMATTING, BuildFailed("check", "lint"))

        assert actions == [
            CommandExecuted(command="ruff format .", exit_code=0),
            CommandExecuted(command="ruff check --fix .", exit_code=0),
        ]
        assert run.await_count == 2
        run.assert_awaited_with("ruff check --fix .", cwd=tmp_path, check=True, timeout=30.0)

    @pytest.mark.asyncio
    async def test_missing_command_raises(self, tmp_path):
        executor = CommandFixExecutor(commands={}, working_directory=tmp_path)

        with pytest.raises(RecoveryError, match="No fix command configured for build_error_fix"):
            await executor.apply_fix(FixType.BUILD_ERROR_FIX, BuildFailed("compile", "syntax"))

    @pytest.mark.asyncio
    async def test_failing_command_propagates(self, tmp_path):
        executor = CommandFixExecutor(commands={FixType.DEPENDENCY_UPDATE: ["uv lock"]}, working_directory=tmp_path)
        failure = subprocess.CalledProcessError(1, "uv lock", "", "resolution failed")

        with patch("repo_autopilot.engine.fixes.run_shell_command", new=AsyncMock(side_effect=failure)):
            with pytest.raises(subprocess.CalledProcessError):
                await executor.apply_fix(FixType.DEPENDENCY_UPDATE, BuildFailed("dependencies", "resolver"))

    @pytest.mark.asyncio
    async def test_merge_conflicts_resolved_locally_without_commands(self, tmp_path):
        conflicted = tmp_path / "app.py"
        conflicted.write_text("<<<<<<< HEAD\nimport os\n=======\nimport re\n>>>>>>> main\n")
        executor = CommandFixExecutor(commands={}, working_directory=tmp_path)

        actions = await executor.apply_fix(
            FixType.MERGE_CONFLICT_RESOLUTION, MergeConflictFound(("app.py", "missing.py"), 1)
        )

        assert actions == [AutomergeConflictResolution(files=("app.py",))]
        assert conflicted.read_text() == "import os\nimport re\n"

    @pytest.mark.asyncio
    async def test_merge_conflicts_then_commands(self, tmp_path):
        (tmp_path / "clean.py").write_text("x = 1\n")
        executor = CommandFixExecutor(
            commands={FixType.MERGE_CONFLICT_RESOLUTION: ["git commit -am 'Resolve conflicts'"]},
            working_directory=tmp_path,
        )

        with patch("repo_autopilot.engine.fixes.run_shell_command", new=AsyncMock(return_value=("", "", 0))):
            actions = await executor.apply_fix(
                FixType.MERGE_CONFLICT_RESOLUTION, MergeConflictFound(("clean.py",), 1)
            )

        assert actions == [CommandExecuted(command="git commit -am 'Resolve conflicts'", exit_code=0)]
