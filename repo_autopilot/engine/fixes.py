"""
Command-based automated fixes.

The recovery engine hands AutomatedFix strategies to a FixExecutor. The
executor here runs operator-configured shell commands per fix type (a
formatter for CODE_FORMATTING, a lockfile refresh for DEPENDENCY_UPDATE, and
so on) inside the agent's checkout. Merge conflicts get a textual pass over
conflict markers first, then the configured commands run to commit and push
the result.

Conflict Hunk Resolution:
    1. Python import lines on either side: union of both, sorted
    2. ``version = "x.y.z"`` lines in TOML files: keep the higher version
    3. Comment-only hunks: keep both sides, ours first
    4. Anything else: keep ours
"""

import re
from pathlib import Path

import structlog

from repo_autopilot.engine.recovery import (
    AutomergeConflictResolution,
    CommandExecuted,
    ErrorType,
    FixExecutor,
    FixType,
    MergeConflictFound,
    RecoveryAction,
)
from repo_autopilot.exceptions import RecoveryError
from repo_autopilot.utils.async_subprocess import run_shell_command

log = structlog.get_logger(__name__)

_VERSION_PATTERN = re.compile(r'version\s*=\s*"([^"]+)"')


def _is_import(line: str) -> bool:
    stripped = line.strip()
    return stripped.startswith("import ") or stripped.startswith("from ")


def _is_comment(line: str) -> bool:
    stripped = line.strip()
    return not stripped or stripped.startswith("#")


def _version_of(lines: list[str]) -> tuple[int, ...] | None:
    for line in lines:
        match = _VERSION_PATTERN.search(line)
        if match:
            return tuple(int(part) for part in match.group(1).split(".") if part.isdigit())
    return None


def resolve_hunk(ours: list[str], theirs: list[str], file_path: str) -> list[str]:
    """Pick the resolution for a single conflict hunk."""
    if file_path.endswith(".py") and any(_is_import(line) for line in ours + theirs):
        return sorted(set(ours) | set(theirs))

    if file_path.endswith(".toml"):
        our_version = _version_of(ours)
        their_version = _version_of(theirs)
        if our_version is not None and their_version is not None:
            return ours if our_version >= their_version else theirs

    if all(_is_comment(line) for line in ours + theirs):
        return ours + theirs

    return ours


def resolve_conflict_markers(content: str, file_path: str) -> str | None:
    """Resolve every conflict hunk in ``content``.

    Returns:
        The resolved text, or None when the content has no conflict markers
    """
    if "<<<<<<< " not in content or ">>>>>>> " not in content:
        return None

    resolved: list[str] = []
    ours: list[str] = []
    theirs: list[str] = []
    in_conflict = False
    in_ours = True

    for line in content.splitlines():
        if line.startswith("<<<<<<< "):
            in_conflict, in_ours = True, True
            ours, theirs = [], []
        elif line.startswith("=======") and in_conflict:
            in_ours = False
        elif line.startswith(">>>>>>> ") and in_conflict:
            in_conflict = False
            resolved.extend(resolve_hunk(ours, theirs, file_path))
        elif in_conflict:
            (ours if in_ours else theirs).append(line)
        else:
            resolved.append(line)

    return "\n".join(resolved) + "\n"


class CommandFixExecutor(FixExecutor):
    """Run configured shell commands to fix a classified failure.

    Args:
        commands: Shell commands to run per fix type, in order
        working_directory: Checkout the commands run in
        timeout_seconds: Limit applied to each command
    """

    def __init__(
        self,
        commands: dict[FixType, list[str]],
        working_directory: Path | str = ".",
        timeout_seconds: float = 600.0,
    ) -> None:
        self.commands = commands
        self.working_directory = Path(working_directory)
        self.timeout_seconds = timeout_seconds

    async def apply_fix(self, fix_type: FixType, error_type: ErrorType) -> list[RecoveryAction]:
        actions: list[RecoveryAction] = []

        if fix_type is FixType.MERGE_CONFLICT_RESOLUTION and isinstance(error_type, MergeConflictFound):
            resolved = self._resolve_local_conflicts(error_type.files)
            if resolved:
                actions.append(AutomergeConflictResolution(files=tuple(resolved)))

        commands = self.commands.get(fix_type, [])
        if not commands and not actions:
            raise RecoveryError(f"No fix command configured for {fix_type.value}")

        for command in commands:
            log.info("fix_command_started", fix_type=fix_type.value, command=command)
            _, _, code = await run_shell_command(
                command,
                cwd=self.working_directory,
                check=True,
                timeout=self.timeout_seconds,
            )
            actions.append(CommandExecuted(command=command, exit_code=code))

        return actions

    def _resolve_local_conflicts(self, files: tuple[str, ...]) -> list[str]:
        resolved_files = []
        for name in files:
            path = self.working_directory / name
            if not path.is_file():
                log.debug("conflict_file_missing", file=name)
                continue
            resolved = resolve_conflict_markers(path.read_text(), name)
            if resolved is None:
                continue
            path.write_text(resolved)
            resolved_files.append(name)
            log.info("conflict_markers_resolved", file=name)
        return resolved_files
