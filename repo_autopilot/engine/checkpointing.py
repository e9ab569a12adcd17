"""
Checkpoints for workflow continuity.

The coordinator calls a CheckpointHook on every terminal transition and,
from its status task, periodically while a workflow is live. A checkpoint is
advisory: on resume the coordinator re-enters the workflow at ``Assigned``
for the recorded issue rather than trusting the recorded state.

Only the newest ``keep_latest`` files are kept per agent; older ones are
pruned on every save.
"""

import asyncio
import json
import time
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import structlog

log = structlog.get_logger(__name__)


class CheckpointHook(ABC):
    """Persistence collaborator for workflow snapshots."""

    @abstractmethod
    async def save(self, agent_id: str, snapshot: dict[str, Any]) -> str:
        """Store a snapshot and return its checkpoint id."""
        pass

    @abstractmethod
    async def load_latest(self, agent_id: str) -> dict[str, Any] | None:
        pass


class CheckpointManager(CheckpointHook):
    """JSON file checkpoints, one file per snapshot."""

    def __init__(self, checkpoint_dir: Path | str = ".autopilot/checkpoints", keep_latest: int = 5) -> None:
        self.checkpoint_dir = Path(checkpoint_dir)
        self.keep_latest = max(1, keep_latest)
        self.checkpoint_dir.mkdir(parents=True, exist_ok=True)
        self._locks: dict[str, asyncio.Lock] = {}

    def _get_lock(self, agent_id: str) -> asyncio.Lock:
        if agent_id not in self._locks:
            self._locks[agent_id] = asyncio.Lock()
        return self._locks[agent_id]

    @staticmethod
    def _file_prefix(agent_id: str) -> str:
        return agent_id.replace("/", "_")

    async def save(self, agent_id: str, snapshot: dict[str, Any]) -> str:
        now = datetime.now(UTC)
        checkpoint_id = f"{self._file_prefix(agent_id)}-{time.time_ns()}"

        checkpoint = {
            "checkpoint_id": checkpoint_id,
            "agent_id": agent_id,
            "created_at": now.isoformat(),
            "data": snapshot,
        }

        async with self._get_lock(agent_id):
            checkpoint_file = self.checkpoint_dir / f"{checkpoint_id}.json"
            checkpoint_file.write_text(json.dumps(checkpoint, indent=2, default=str))
            for stale in self._agent_checkpoints(agent_id)[self.keep_latest :]:
                stale.unlink(missing_ok=True)

        log.info("checkpoint_created", checkpoint_id=checkpoint_id, state=snapshot.get("state"))
        return checkpoint_id

    async def load_latest(self, agent_id: str) -> dict[str, Any] | None:
        for checkpoint_file in self._agent_checkpoints(agent_id):
            try:
                checkpoint = json.loads(checkpoint_file.read_text())
            except (json.JSONDecodeError, OSError) as e:
                log.warning("invalid_checkpoint_file", file=str(checkpoint_file), error=str(e))
                continue
            log.info("checkpoint_loaded", checkpoint_id=checkpoint["checkpoint_id"])
            return checkpoint
        return None

    async def delete_checkpoints(self, agent_id: str) -> None:
        """Delete all checkpoints for an agent."""
        async with self._get_lock(agent_id):
            for checkpoint_file in self._agent_checkpoints(agent_id):
                checkpoint_file.unlink(missing_ok=True)
        log.info("checkpoints_deleted", agent_id=agent_id)

    async def cleanup_old_checkpoints(self, max_age_days: int = 30) -> int:
        """
        Clean up checkpoints older than max_age_days across all agents.
        Returns number of checkpoints deleted.
        """
        cutoff = datetime.now(UTC).timestamp() - (max_age_days * 24 * 3600)
        deleted = 0

        for checkpoint_file in self.checkpoint_dir.glob("*.json"):
            try:
                checkpoint = json.loads(checkpoint_file.read_text())
                created_at = datetime.fromisoformat(checkpoint["created_at"])
            except (json.JSONDecodeError, KeyError, ValueError, OSError) as e:
                log.warning("invalid_checkpoint_file", file=str(checkpoint_file), error=str(e))
                continue

            if created_at.timestamp() < cutoff:
                checkpoint_file.unlink(missing_ok=True)
                deleted += 1

        if deleted > 0:
            log.info("old_checkpoints_cleaned", count=deleted, max_age_days=max_age_days)
        return deleted

    def _agent_checkpoints(self, agent_id: str) -> list[Path]:
        """Checkpoint files of one agent, newest first."""
        prefix = self._file_prefix(agent_id)
        stamped: list[tuple[int, Path]] = []
        for path in self.checkpoint_dir.glob(f"{prefix}-*.json"):
            owner, _, stamp = path.stem.rpartition("-")
            if owner == prefix and stamp.isdigit():
                stamped.append((int(stamp), path))
        return [path for _, path in sorted(stamped, reverse=True)]
