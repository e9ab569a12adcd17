"""
Assignment bookkeeping shared by the coordinators of one process.

AssignmentLedger records which agent holds which issue and enforces the
process-wide capacity. It is created once at startup and passed to every
coordinator by reference; all access goes through its asyncio.Lock.

LedgerInconsistencyRecovery reconciles the ledger with the labels on the
host. It backs the AutoRecover event. Every claim carries an owner label
naming the agent; an ``in-progress`` issue is returned to the ready queue only
when its owner is one of this process's agents and the ledger no longer holds
it, so claims held by peer processes are never touched. Claims whose labels
were removed by hand get them back.
"""

import asyncio
import time
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime

import structlog

from repo_autopilot.config.settings import LabelsConfig
from repo_autopilot.exceptions import RecoveryError
from repo_autopilot.models.domain import AgentId, InconsistencyReport
from repo_autopilot.providers.base import HostProvider, InconsistencyRecovery

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Assignment:
    issue_number: int
    agent: AgentId
    claimed_at: datetime


class AssignmentLedger:
    """Lock-guarded record of issue claims.

    An issue is held by at most one agent and an agent holds at most one
    issue. The number of concurrent claims never exceeds ``capacity``.
    """

    def __init__(self, capacity: int = 3) -> None:
        self.capacity = capacity
        self._assignments: dict[int, Assignment] = {}
        self._lock = asyncio.Lock()

    async def claim(self, issue_number: int, agent: AgentId) -> bool:
        """Claim an issue for an agent.

        Returns:
            True if the claim was recorded (or the agent already holds it)
        """
        async with self._lock:
            existing = self._assignments.get(issue_number)
            if existing is not None:
                return existing.agent == agent
            if any(a.agent == agent for a in self._assignments.values()):
                log.debug("claim_rejected_agent_busy", agent=agent, issue=issue_number)
                return False
            if len(self._assignments) >= self.capacity:
                log.debug("claim_rejected_capacity", agent=agent, issue=issue_number, capacity=self.capacity)
                return False
            self._assignments[issue_number] = Assignment(issue_number, agent, datetime.now(UTC))

        log.info("issue_claimed", agent=agent, issue=issue_number)
        return True

    async def release(self, issue_number: int) -> None:
        async with self._lock:
            removed = self._assignments.pop(issue_number, None)
        if removed is not None:
            log.info("issue_released", agent=removed.agent, issue=issue_number)

    async def assignment_for(self, agent: AgentId) -> Assignment | None:
        async with self._lock:
            return next((a for a in self._assignments.values() if a.agent == agent), None)

    async def active(self) -> tuple[Assignment, ...]:
        async with self._lock:
            return tuple(self._assignments.values())

    async def available_slots(self) -> int:
        async with self._lock:
            return self.capacity - len(self._assignments)


class LedgerInconsistencyRecovery(InconsistencyRecovery):
    """Reconcile ledger claims with ``in-progress`` and owner labels on the host.

    Args:
        host: Host whose labels are repaired
        ledger: This process's assignment ledger
        labels: Label names
        agents: Agents served by this process. Stale claims are only
            reclaimed from these.
    """

    def __init__(
        self,
        host: HostProvider,
        ledger: AssignmentLedger,
        labels: LabelsConfig,
        agents: Iterable[AgentId] = (),
    ) -> None:
        self.host = host
        self.ledger = ledger
        self.labels = labels
        self.agents = frozenset(agents)

    async def recover_all_inconsistencies(self) -> InconsistencyReport:
        started = time.perf_counter()

        try:
            labelled = await self.host.get_issues(labels=[self.labels.in_progress])
        except Exception as e:
            raise RecoveryError(f"Cannot list in-progress issues: {e}") from e

        assignments = {a.issue_number: a for a in await self.ledger.active()}
        claimed = set(assignments)
        owners = {issue.number: self.labels.owner_of(issue.labels) for issue in labelled}
        labelled_numbers = set(owners)

        recovered: list[str] = []
        failed: list[tuple[str, str]] = []
        skipped: list[str] = []

        for number in sorted(labelled_numbers - claimed):
            item = f"issue-{number}"
            owner = owners[number]
            if owner not in self.agents:
                log.debug("foreign_claim_left_alone", issue=number, owner=owner)
                skipped.append(item)
                continue
            try:
                await self.host.remove_label(number, self.labels.in_progress)
                await self.host.remove_label(number, self.labels.owner_label(owner))
                await self.host.add_labels(number, [self.labels.ready])
                recovered.append(item)
            except Exception as e:
                log.warning("stale_claim_recovery_failed", issue=number, error=str(e))
                failed.append((item, str(e)))

        for number in sorted(claimed - labelled_numbers):
            item = f"issue-{number}"
            try:
                owner_label = self.labels.owner_label(assignments[number].agent)
                await self.host.add_labels(number, [self.labels.in_progress, owner_label])
                recovered.append(item)
            except Exception as e:
                log.warning("missing_label_recovery_failed", issue=number, error=str(e))
                failed.append((item, str(e)))

        skipped.extend(f"issue-{number}" for number in sorted(claimed & labelled_numbers))

        report = InconsistencyReport(
            recovered=tuple(recovered),
            failed=tuple(failed),
            skipped=tuple(skipped),
            total_inconsistencies=len(recovered) + len(failed),
            duration_ms=int((time.perf_counter() - started) * 1000),
            recovered_at=datetime.now(UTC),
        )
        log.info(
            "inconsistencies_recovered",
            recovered=len(report.recovered),
            failed=len(report.failed),
            skipped=len(report.skipped),
        )
        return report
