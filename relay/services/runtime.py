"""Runtime registry: the process-wide objects, owned by the composition root.

``RelayRuntime`` builds the database handle, provider registry, tool
registry, workspace pool, dispatcher, turn log, enforcer, session control
and fan-in gate once, and tears them down in ``shutdown()``.  The FastAPI lifespan
creates one and stores it on ``app.state.runtime``.
"""

from __future__ import annotations

import logging
from uuid import UUID, uuid4

from relay.clients.downstream_client import DownstreamWebhook
from relay.config import settings
from relay.errors import ConflictError, NotFoundError
from relay.repos.db import Database
from relay.services.fan_in import FanInGate, Trigger, format_member_payloads, make_store, run_fan_out
from relay.services.session_driver import SessionControl, SessionDriver, SessionOutcome
from relay.services.tool_dispatcher import ToolDispatcher
from relay.services.tools import register_builtin_tools
from relay.services.turn_log import TurnLog
from relay.services.turn_protocol import StreamFactory, TerminalAction, TurnProtocolEnforcer
from relay.streaming import default_provider_registry
from relay.streaming.normalizer import ProviderRegistry
from relay_ide.registry import Registry
from relay_ide.workspace import WorkspacePool

logger = logging.getLogger(__name__)


class RelayRuntime:
    def __init__(
        self,
        *,
        providers: ProviderRegistry | None = None,
        turn_log: TurnLog | None = None,
        fan_in: FanInGate | None = None,
        terminal_tools: dict[str, TerminalAction] | None = None,
        db: Database | None = None,
        default_trigger: Trigger | None = None,
    ) -> None:
        self.db = db or Database(settings.DATABASE_URL)
        self.providers = providers or default_provider_registry()
        self.workspaces = WorkspacePool()
        self.tools = register_builtin_tools(Registry())
        self.dispatcher = ToolDispatcher(self.tools, self.workspaces)
        self.turn_log = turn_log or TurnLog(self.db)
        self.enforcer = TurnProtocolEnforcer(
            self.providers, self.dispatcher, self.turn_log, terminal_tools=terminal_tools
        )
        self.control = SessionControl()
        self.driver = SessionDriver(self.enforcer, self.turn_log, self.control)
        self.fan_in = fan_in or FanInGate(make_store(settings.FAN_IN_STORE, self.db))
        # Downstream actions by group, held until the action has started so
        # an operator can retry it; groups created before a restart fall
        # back to default_trigger.
        self._webhook: DownstreamWebhook | None = None
        if default_trigger is None and settings.FAN_IN_DOWNSTREAM_URL:
            self._webhook = DownstreamWebhook(
                settings.FAN_IN_DOWNSTREAM_URL,
                self.fan_in_message,
                timeout=settings.FAN_IN_DOWNSTREAM_TIMEOUT_S,
            )
            default_trigger = self._webhook
        self.default_trigger: Trigger | None = default_trigger
        self._triggers: dict[UUID, Trigger] = {}
        self._closed = False

    # -- sessions -------------------------------------------------------------

    async def start_session(
        self,
        context_type: str,
        context_id: str,
        agent_role: str,
        message: str,
        stream_factory: StreamFactory,
        *,
        root: str,
        alt_root: str | None = None,
        provider: str | None = None,
    ) -> SessionOutcome:
        self._check_open()
        session = await self.turn_log.create_session(
            context_type, context_id, agent_role, provider=provider or settings.DEFAULT_PROVIDER
        )
        return await self.driver.run(
            session["id"], message, stream_factory, root=root, alt_root=alt_root
        )

    async def cancel_session(self, session_id: UUID) -> dict:
        """Cancel a session.

        A running session is flagged and stops after its in-flight tool
        call; an idle active session is failed immediately.
        """
        session = await self.turn_log.get_session(session_id)
        if self.control.request_cancel(session_id):
            logger.info("Session %s: cancellation requested", session_id)
            return {"session_id": session_id, "cancelled": True, "in_flight": True}
        if session["status"] != "active":
            raise ConflictError(f"Session {session_id} is already {session['status']}")
        await self.turn_log.skip_pending_questions(session_id)
        await self.turn_log.fail_session(session_id, "cancelled")
        logger.info("Session %s: cancelled while idle", session_id)
        return {"session_id": session_id, "cancelled": True, "in_flight": False}

    # -- fan-out --------------------------------------------------------------

    async def fan_out_sessions(
        self,
        context_type: str,
        context_id: str,
        member_roles: list[str],
        message: str,
        stream_factory: StreamFactory,
        downstream: Trigger,
        *,
        root: str,
        provider: str | None = None,
    ):
        """One session per role in parallel; *downstream* runs once, after the last."""
        self._check_open()

        async def _run_member(group_id: UUID, role: str) -> object:
            session = await self.turn_log.create_session(
                context_type, context_id, role, provider=provider or settings.DEFAULT_PROVIDER
            )
            await self.fan_in.mark_running(group_id, role, session["id"])
            outcome = await self.driver.run(session["id"], message, stream_factory, root=root)
            if outcome.status != "completed":
                raise RuntimeError(f"{role} session ended {outcome.status} ({outcome.end_reason})")
            return outcome.payload

        group_id = uuid4()
        self._triggers[group_id] = downstream
        try:
            result = await run_fan_out(
                self.fan_in, member_roles, _run_member, downstream, group_id=group_id
            )
        except Exception:
            self._triggers.pop(group_id, None)
            raise
        group = await self.fan_in.get_group(group_id)
        if group["trigger_state"] != "trigger_failed":
            self._triggers.pop(group_id, None)
        return result

    async def fan_in_message(self, group_id: UUID) -> str:
        """Opening message for the downstream session of a finished group."""
        return format_member_payloads(await self.fan_in.members(group_id))

    async def retry_fan_in(self, group_id: UUID) -> dict:
        """Operator retry of a group whose downstream action failed to start."""
        group = await self.fan_in.get_group(group_id)
        if group["trigger_state"] == "triggered":
            raise ConflictError(f"Fan-in group {group_id} has already triggered")
        trigger = self._triggers.get(group_id) or self.default_trigger
        if trigger is None:
            raise NotFoundError(f"No downstream action registered for fan-in group {group_id}")
        result = await self.fan_in.retry_trigger(group_id, trigger, raise_on_failure=True)
        if result.is_triggering_caller or result.trigger_state == "all_failed":
            self._triggers.pop(group_id, None)
        return {
            "group_id": group_id,
            "triggered": result.is_triggering_caller,
            "trigger_state": result.trigger_state,
            "all_complete": result.all_complete,
            "all_succeeded": result.all_succeeded,
            "completed": result.completed,
            "failed": result.failed,
            "expected": result.expected,
        }

    # -- lifecycle ------------------------------------------------------------

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError("Runtime has been shut down")

    async def shutdown(self) -> None:
        if self._closed:
            return
        self._closed = True
        flagged = self.control.cancel_all()
        if flagged:
            logger.info("Shutdown: cancelling %d running session(s)", flagged)
        self.workspaces.close()
        self._triggers.clear()
        if self._webhook is not None:
            await self._webhook.aclose()
        await self.db.close()
        logger.info("Runtime shut down")
