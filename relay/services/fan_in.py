"""Fan-in gate — converge a fixed group of sessions on one downstream action.

Several independent sessions (roadmap personas, spawned sub-reviewers)
run in parallel; when the last one reaches a terminal state exactly one
caller is told to launch the downstream action.  The check "is every
member terminal now?" and the claim of the trigger happen in a single
atomic step inside the store, so simultaneous completions cannot both
win.  Losing the race is not an error.

A failed member counts as terminal: the downstream action runs on the
partial results.  When every member failed nothing is launched and the
group is closed as ``all_failed`` in the same atomic step, so it never
sits in ``waiting`` with nothing left to wait for.

If the downstream action fails to start, the group is marked
``trigger_failed`` and the member records stay as they are;
:meth:`FanInGate.retry_trigger` re-derives completion from those records
and claims the trigger again.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable
from uuid import UUID, uuid4

from relay.errors import DownstreamTriggerFailure, NotFoundError
from relay.repos import fan_in_repo
from relay.repos.db import Database

logger = logging.getLogger(__name__)

PERSONAS = ("visionary", "iterative", "tech_lead", "pathfinder")

Trigger = Callable[[UUID], Awaitable[None]]


@dataclass(frozen=True)
class FanInResult:
    all_complete: bool
    is_triggering_caller: bool
    all_succeeded: bool = False
    completed: int = 0
    failed: int = 0
    expected: int = 0
    trigger_state: str = ""

    @classmethod
    def from_counts(cls, counts: dict) -> "FanInResult":
        terminal = counts["completed"] + counts["failed"]
        all_complete = terminal == counts["expected"]
        return cls(
            all_complete=all_complete,
            is_triggering_caller=counts["is_triggering"],
            all_succeeded=all_complete and counts["failed"] == 0,
            completed=counts["completed"],
            failed=counts["failed"],
            expected=counts["expected"],
            trigger_state=counts.get("trigger_state", ""),
        )


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


class FanInStore(ABC):
    """Persistence for groups and members.

    ``record_outcome`` and ``claim_retry`` must each be atomic and return
    ``completed``, ``failed``, ``expected``, ``is_triggering`` and the
    resulting ``trigger_state``.
    """

    @abstractmethod
    async def create_group(self, member_ids: list[str], *, group_id: UUID | None = None) -> dict: ...

    @abstractmethod
    async def get_group(self, group_id: UUID) -> dict | None: ...

    @abstractmethod
    async def list_members(self, group_id: UUID) -> list[dict]: ...

    @abstractmethod
    async def mark_member_running(self, group_id: UUID, member_id: str, session_id: UUID | None) -> None: ...

    @abstractmethod
    async def record_outcome(
        self, group_id: UUID, member_id: str, *, status: str, payload: object = None, error: str | None = None
    ) -> dict: ...

    @abstractmethod
    async def claim_retry(self, group_id: UUID) -> dict: ...

    @abstractmethod
    async def mark_trigger_failed(self, group_id: UUID, error: str) -> None: ...


class PostgresFanInStore(FanInStore):
    """Row lock plus compare-and-set on ``fan_in_groups.triggered_at``."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def create_group(self, member_ids, *, group_id=None):
        return await fan_in_repo.create_group(self._db, member_ids, group_id=group_id)

    async def get_group(self, group_id):
        return await fan_in_repo.get_group(self._db, group_id)

    async def list_members(self, group_id):
        return await fan_in_repo.list_members(self._db, group_id)

    async def mark_member_running(self, group_id, member_id, session_id):
        await fan_in_repo.mark_member_running(self._db, group_id, member_id, session_id)

    async def record_outcome(self, group_id, member_id, *, status, payload=None, error=None):
        return await fan_in_repo.record_member_outcome(
            self._db, group_id, member_id, status=status, payload=payload, error=error
        )

    async def claim_retry(self, group_id):
        return await fan_in_repo.claim_retry(self._db, group_id)

    async def mark_trigger_failed(self, group_id, error):
        await fan_in_repo.mark_trigger_failed(self._db, group_id, error)


class MemoryFanInStore(FanInStore):
    """In-process store; one ``asyncio.Lock`` serialises every check-and-mark.

    Only correct when every member reports to the same process.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._groups: dict[UUID, dict] = {}
        self._members: dict[UUID, dict[str, dict]] = {}

    async def create_group(self, member_ids, *, group_id=None):
        if not member_ids:
            raise ValueError("A fan-in group needs at least one member")
        group_id = group_id or uuid4()
        async with self._lock:
            if group_id in self._groups:
                raise ValueError(f"Fan-in group {group_id} already exists")
            group = {
                "id": group_id,
                "expected_count": len(member_ids),
                "trigger_state": "waiting",
                "triggered_at": None,
                "trigger_error": None,
                "created_at": datetime.now(timezone.utc),
            }
            self._groups[group_id] = group
            self._members[group_id] = {
                m: {
                    "group_id": group_id,
                    "member_id": m,
                    "status": "pending",
                    "session_id": None,
                    "payload": None,
                    "error": None,
                    "completed_at": None,
                }
                for m in member_ids
            }
        return dict(group)

    async def get_group(self, group_id):
        group = self._groups.get(group_id)
        return dict(group) if group else None

    async def list_members(self, group_id):
        members = self._members.get(group_id, {})
        return [dict(members[m]) for m in sorted(members)]

    async def mark_member_running(self, group_id, member_id, session_id):
        async with self._lock:
            member = self._members.get(group_id, {}).get(member_id)
            if member is not None and member["status"] == "pending":
                member["status"] = "running"
                member["session_id"] = session_id

    def _counts(self, group_id: UUID) -> tuple[int, int]:
        statuses = [m["status"] for m in self._members[group_id].values()]
        return statuses.count("completed"), statuses.count("failed")

    async def record_outcome(self, group_id, member_id, *, status, payload=None, error=None):
        if status not in ("completed", "failed"):
            raise ValueError(f"Invalid terminal status: {status}")
        async with self._lock:
            group = self._groups.get(group_id)
            if group is None:
                raise ValueError(f"Fan-in group {group_id} not found")
            member = self._members[group_id].get(member_id)
            if member is None:
                raise ValueError(f"Member {member_id!r} is not part of fan-in group {group_id}")

            changed = member["status"] in ("pending", "running")
            if changed:
                member.update(
                    status=status,
                    payload=payload,
                    error=error,
                    completed_at=datetime.now(timezone.utc),
                )

            completed, failed = self._counts(group_id)
            expected = group["expected_count"]
            is_triggering = False
            if changed and completed + failed == expected:
                if completed > 0 and group["triggered_at"] is None:
                    group["trigger_state"] = "triggered"
                    group["triggered_at"] = datetime.now(timezone.utc)
                    is_triggering = True
                elif completed == 0 and group["trigger_state"] == "waiting":
                    group["trigger_state"] = "all_failed"
            state = group["trigger_state"]

        return {
            "changed": changed,
            "completed": completed,
            "failed": failed,
            "expected": expected,
            "is_triggering": is_triggering,
            "trigger_state": state,
        }

    async def claim_retry(self, group_id):
        async with self._lock:
            group = self._groups.get(group_id)
            if group is None:
                raise ValueError(f"Fan-in group {group_id} not found")
            completed, failed = self._counts(group_id)
            expected = group["expected_count"]
            all_terminal = completed + failed == expected
            is_triggering = False
            if all_terminal and completed > 0 and group["trigger_state"] in ("waiting", "trigger_failed"):
                group["trigger_state"] = "triggered"
                group["triggered_at"] = datetime.now(timezone.utc)
                group["trigger_error"] = None
                is_triggering = True
            elif all_terminal and completed == 0 and group["trigger_state"] == "waiting":
                group["trigger_state"] = "all_failed"
            state = group["trigger_state"]

        return {
            "changed": False,
            "completed": completed,
            "failed": failed,
            "expected": expected,
            "is_triggering": is_triggering,
            "trigger_state": state,
        }

    async def mark_trigger_failed(self, group_id, error):
        async with self._lock:
            group = self._groups.get(group_id)
            if group is not None and group["trigger_state"] == "triggered":
                group["trigger_state"] = "trigger_failed"
                group["trigger_error"] = error[:4000]


def make_store(kind: str, db: Database | None = None) -> FanInStore:
    if kind == "memory":
        return MemoryFanInStore()
    if kind == "postgres":
        if db is None:
            raise ValueError("The postgres fan-in store needs a Database")
        return PostgresFanInStore(db)
    raise ValueError(f"Unknown fan-in store: {kind!r}")


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------


class FanInGate:
    def __init__(self, store: FanInStore) -> None:
        self._store = store

    @property
    def store(self) -> FanInStore:
        return self._store

    async def create_group(self, member_ids: list[str], *, group_id: UUID | None = None) -> dict:
        group = await self._store.create_group(list(member_ids), group_id=group_id)
        logger.info("Fan-in group %s created (%d members)", group["id"], len(member_ids))
        return group

    async def get_group(self, group_id: UUID) -> dict:
        group = await self._store.get_group(group_id)
        if group is None:
            raise NotFoundError(f"Fan-in group {group_id} not found")
        return group

    async def members(self, group_id: UUID) -> list[dict]:
        return await self._store.list_members(group_id)

    async def mark_running(self, group_id: UUID, member_id: str, session_id: UUID | None = None) -> None:
        await self._store.mark_member_running(group_id, member_id, session_id)

    async def record_completion(self, group_id: UUID, member_id: str, payload: object = None) -> FanInResult:
        counts = await self._store.record_outcome(group_id, member_id, status="completed", payload=payload)
        return self._result(group_id, member_id, "completed", counts)

    async def record_failure(self, group_id: UUID, member_id: str, error: str) -> FanInResult:
        counts = await self._store.record_outcome(group_id, member_id, status="failed", error=error)
        return self._result(group_id, member_id, "failed", counts)

    def _result(self, group_id: UUID, member_id: str, status: str, counts: dict) -> FanInResult:
        result = FanInResult.from_counts(counts)
        if not counts["changed"]:
            logger.debug("Fan-in %s: member %s already terminal", group_id, member_id)
        logger.info(
            "Fan-in %s: member %s %s (%d/%d done, %d failed)%s",
            group_id,
            member_id,
            status,
            result.completed + result.failed,
            result.expected,
            result.failed,
            " -> triggering" if result.is_triggering_caller else "",
        )
        if counts["changed"] and result.trigger_state == "all_failed":
            logger.error("Fan-in %s: every member failed; downstream action not started", group_id)
        return result

    async def start_trigger(self, group_id: UUID, trigger: Trigger, *, raise_on_failure: bool = False) -> bool:
        """Launch the downstream action for a group this caller claimed.

        On failure the group is marked ``trigger_failed``; member records
        are left untouched so :meth:`retry_trigger` can try again.
        """
        try:
            await trigger(group_id)
        except Exception as exc:
            failure = DownstreamTriggerFailure(group_id, exc)
            logger.error("%s", failure, exc_info=exc)
            await self._store.mark_trigger_failed(group_id, str(exc))
            if raise_on_failure:
                raise failure from exc
            return False
        logger.info("Fan-in %s: downstream action started", group_id)
        return True

    async def retry_trigger(self, group_id: UUID, trigger: Trigger, *, raise_on_failure: bool = False) -> FanInResult:
        """Re-derive completion from the stored records and re-claim the trigger.

        A group whose every member failed reports ``trigger_state ==
        "all_failed"`` and the trigger is not called.
        """
        counts = await self._store.claim_retry(group_id)
        result = FanInResult.from_counts(counts)
        if result.trigger_state == "all_failed":
            logger.warning(
                "Fan-in %s: retry refused, all %d member(s) failed", group_id, result.expected
            )
            return result
        if not result.is_triggering_caller:
            logger.info(
                "Fan-in %s: retry not claimed (%d/%d terminal, %d completed)",
                group_id,
                result.completed + result.failed,
                result.expected,
                result.completed,
            )
            return result
        await self.start_trigger(group_id, trigger, raise_on_failure=raise_on_failure)
        return result


# ---------------------------------------------------------------------------
# Fan-out helpers
# ---------------------------------------------------------------------------


def _label(member_id: str) -> str:
    return member_id.replace("_", " ")


def format_member_payloads(members: list[dict]) -> str:
    """Render member results as the downstream session's opening message.

    Completed members contribute their payload; failed members get a
    placeholder so the reader knows the result is partial.
    """
    completed = sum(1 for m in members if m["status"] == "completed")
    sections = [f"{completed} of {len(members)} members produced a result.", ""]
    for m in sorted(members, key=lambda m: m["member_id"]):
        sections.append(f"--- {_label(m['member_id']).upper()} ---")
        if m["status"] != "completed":
            sections.append(f"({_label(m['member_id']).title()} failed to produce a result.)")
        else:
            payload = m.get("payload")
            sections.append(
                payload if isinstance(payload, str) else json.dumps(payload, indent=2, default=str)
            )
        sections.append("")
    return "\n".join(sections).rstrip() + "\n"


MemberRunner = Callable[[UUID, str], Awaitable[object]]


async def run_fan_out(
    gate: FanInGate,
    member_ids: list[str],
    run_member: MemberRunner,
    trigger: Trigger,
    *,
    group_id: UUID | None = None,
) -> tuple[UUID, list[FanInResult]]:
    """Run every member concurrently and launch *trigger* exactly once.

    ``run_member(group_id, member_id)`` returns the member's payload or
    raises; either way the outcome is recorded with the gate.
    """
    group = await gate.create_group(member_ids, group_id=group_id)
    gid = group["id"]

    async def _one(member_id: str) -> FanInResult:
        try:
            payload = await run_member(gid, member_id)
        except Exception as exc:
            logger.error("Fan-in %s: member %s failed: %s", gid, member_id, exc)
            result = await gate.record_failure(gid, member_id, str(exc))
        else:
            result = await gate.record_completion(gid, member_id, payload)
        if result.is_triggering_caller:
            await gate.start_trigger(gid, trigger)
        return result

    results = await asyncio.gather(*(_one(m) for m in member_ids))
    return gid, list(results)
