"""
Build orchestration loop.

``BuildOrchestrator`` owns the resolve -> dispatch -> gate -> commit cycle for builds
stored in one state DB. Agent calls and gate runs for independent tasks proceed
concurrently (one asyncio task per dispatched task, bounded by
``execution.max_concurrency``), while every mutation of a build goes through a single
``asyncio.Lock`` guarded commit that writes the build row, its events and a checkpoint in
one SQLite transaction.

Cross-cutting behavior (audit, cost, notes, memory) lives in lifecycle hooks; failures
route through ``RetryController``; wall-clock and cost limits through ``BuildBudget``.
"""

from __future__ import annotations

import asyncio
import sqlite3
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Final, cast

import structlog

from build_orchestrator.agents.client import (
    AgentContext,
    AgentRegistry,
    AgentResult,
    invoke_agent,
)
from build_orchestrator.config.schema import assert_valid_config, default_config, merge_config
from build_orchestrator.control_plane.budgets import BudgetDecision, BuildBudget
from build_orchestrator.control_plane.escalation import (
    FailureKind,
    RetryController,
    RetryRequest,
    TaskFailure,
    classify_error,
)
from build_orchestrator.control_plane.features import feature_flags, install_feature_hooks
from build_orchestrator.control_plane.hooks import (
    HandoffInfo,
    HookContext,
    HookFailure,
    HookPhase,
    HookRegistry,
    ResolvedHooks,
)
from build_orchestrator.control_plane.resolver import (
    BlockedReport,
    diagnose,
    find_blocked,
    phase_order_violations,
    ready_tasks,
)
from build_orchestrator.domain.events import EventKind
from build_orchestrator.domain.models import (
    AtomicTask,
    Build,
    BuildStatus,
    EscalationLevel,
    EscalationRecord,
    EscalationTrigger,
    JSONValue,
    PhaseStatus,
    TaskRef,
    TaskStatus,
)
from build_orchestrator.observability.logging import correlation_scope
from build_orchestrator.persistence.builds import BuildStore
from build_orchestrator.persistence.checkpoints import CheckpointStore, RetentionPolicy
from build_orchestrator.persistence.escalations import EscalationStore
from build_orchestrator.persistence.event_log import EventLog
from build_orchestrator.persistence.state_db import StateDB
from build_orchestrator.planning.graph_input import build_from_document
from build_orchestrator.planning.task_graph import task_node_key
from build_orchestrator.utils.concurrency import (
    BoundedSemaphore,
    StallTimeoutError,
    run_with_stall_detection,
)
from build_orchestrator.verification_plane.gates import Gate, GatePipeline, GateReport

try:
    from datetime import UTC
except ImportError:
    UTC = timezone.utc  # noqa: UP017

WallClock = Callable[[], datetime]
PendingEvent = tuple[EventKind, dict[str, JSONValue]]

_INTERRUPTED_STATUSES: Final[frozenset[TaskStatus]] = frozenset(
    {TaskStatus.ASSIGNED, TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED}
)
_INTERRUPTED_MESSAGE: Final[str] = "task was in flight when the orchestrator stopped"


class OrchestratorError(RuntimeError):
    """Raised for operations that do not apply to the build's current state."""


class BuildNotFoundError(OrchestratorError, LookupError):
    pass


@dataclass(frozen=True, slots=True)
class BuildOutcome:
    """Normalized result returned by ``BuildOrchestrator.run`` and ``resume``."""

    build_id: str
    status: BuildStatus
    build: Build
    dispatches: int

    @property
    def done(self) -> bool:
        return self.status is BuildStatus.DONE


@dataclass(slots=True)
class _RunState:
    build: Build
    lock: asyncio.Lock
    budget: BuildBudget
    hooks: ResolvedHooks
    semaphore: BoundedSemaphore
    in_flight: dict[TaskRef, asyncio.Task[None]] = field(default_factory=dict)
    dispatches: int = 0
    budget_stop: BudgetDecision | None = None


class BuildOrchestrator:
    """Durable build state machine driven over pluggable agents and gates."""

    def __init__(
        self,
        db: StateDB,
        agents: AgentRegistry,
        gates: GatePipeline | Sequence[Gate] = (),
        *,
        hooks: HookRegistry | None = None,
        config: Mapping[str, object] | None = None,
        clock: WallClock | None = None,
        logger: Any | None = None,
    ) -> None:
        self._config = _effective_config(config)
        self._clock = clock if clock is not None else _utc_now
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._db = db
        self._agents = agents
        if isinstance(gates, GatePipeline):
            self._gates = gates
        else:
            self._gates = GatePipeline.from_config(tuple(gates), self._config)
        if hooks is None:
            hooks = HookRegistry()
            install_feature_hooks(hooks, self._config, logger=logger)
        self._hook_registry = hooks

        execution = cast("Mapping[str, Any]", self._config["execution"])
        retry = cast("Mapping[str, Any]", self._config["retry"])
        paths = cast("Mapping[str, Any]", self._config["paths"])
        checkpoints = cast("Mapping[str, Any]", self._config["checkpoints"])
        self._max_concurrency = int(execution["max_concurrency"])
        self._stall_timeout_seconds = float(execution["stall_timeout_seconds"])
        self._hook_timeout_seconds = float(execution["hook_timeout_seconds"])
        self._checkpoint_interval_seconds = float(checkpoints["interval_seconds"])
        self._retention = RetentionPolicy.from_config(self._config)

        self._builds = BuildStore(db)
        self._events = EventLog(
            db,
            clock=self._clock,
            redact=bool(cast("Mapping[str, Any]", self._config["observability"])["redact_secrets"]),
        )
        self._checkpoints = CheckpointStore(db, clock=self._clock, logger=logger)
        self._escalations = EscalationStore(
            db, escalation_dir=paths.get("escalation_dir"), clock=self._clock, logger=logger
        )
        self._retry = RetryController(
            max_retries_per_task=int(retry["max_retries_per_task"]),
            phase_failure_limit=int(retry["phase_failure_limit"]),
            logger=logger,
        )
        self._active_builds: set[str] = set()

    @property
    def config(self) -> dict[str, Any]:
        return self._config

    @property
    def builds(self) -> BuildStore:
        return self._builds

    @property
    def events(self) -> EventLog:
        return self._events

    @property
    def checkpoints(self) -> CheckpointStore:
        return self._checkpoints

    @property
    def escalations(self) -> EscalationStore:
        return self._escalations

    def get_build(self, build_id: str) -> Build:
        build = self._builds.get(build_id)
        if build is None:
            raise BuildNotFoundError(f"build not found: {build_id}")
        return build

    def submit(self, document: object, *, build_id: str | None = None) -> Build:
        """Validate ``document`` and persist a new pending build; nothing is stored on error."""
        build = build_from_document(document, build_id=build_id, now=self._clock())
        with self._db.transaction() as conn:
            self._builds.save(build, conn=conn)
            self._events.append(
                build.id,
                EventKind.BUILD_SUBMITTED,
                {
                    "graph_id": build.graph_id,
                    "title": build.title,
                    "phases": len(build.phases),
                    "tasks": sum(1 for _ in build.iter_tasks()),
                },
                conn=conn,
            )
            self._checkpoints.save(build, conn=conn)
        self._logger.info(
            "control_plane_build_submitted",
            build_id=build.id,
            graph_id=build.graph_id,
            phases=len(build.phases),
        )
        return build

    async def run(self, build_id: str) -> BuildOutcome:
        """Drive ``build_id`` until it is done, blocked or escalated."""
        build = self.get_build(build_id)
        if build.status is BuildStatus.RUNNING:
            return await self.resume(build_id)
        return await self._drive(build, resumed=False)

    async def resume(self, build_id: str) -> BuildOutcome:
        """Continue a build after a restart; tasks left in flight are failed as interrupted."""
        build = self.get_build(build_id)
        return await self._drive(build, resumed=True)

    def clear_escalation(
        self, build_id: str, *, actor: str, note: str | None = None
    ) -> Build:
        """
        Resolve open escalation records and return the build to ``pending``.

        The build is restored from its latest checkpoint; failed tasks get a fresh
        retry allowance and phase failure counters are reset.
        """
        if not actor.strip():
            raise ValueError("actor must be a non-empty string")
        current = self.get_build(build_id)
        if current.status not in {BuildStatus.ESCALATED, BuildStatus.BLOCKED}:
            raise OrchestratorError(
                f"build {build_id} is {current.status.value}; only blocked or escalated "
                "builds can be cleared"
            )
        if build_id in self._active_builds:
            raise OrchestratorError(f"build {build_id} is running")

        build = self._checkpoints.latest(build_id) or current
        reset_tasks: list[str] = []
        for ref, task in build.iter_tasks():
            if task.status in _INTERRUPTED_STATUSES:
                if task.status is TaskStatus.ASSIGNED:
                    task.transition(TaskStatus.IN_PROGRESS)
                task.transition(TaskStatus.FAILED)
            if task.status is TaskStatus.FAILED:
                task.attempts = 0
                task.escalation = EscalationLevel.NONE
                task.last_error = None
                task.gate_errors = ()
                reset_tasks.append(task_node_key(build, ref))
        for phase in build.phases:
            phase.failed_task_ids = ()
            if phase.status in {PhaseStatus.FAILED, PhaseStatus.BLOCKED}:
                started = any(task.status is not TaskStatus.QUEUED for task in phase.tasks)
                phase.status = PhaseStatus.RUNNING if started else PhaseStatus.PENDING
        passed_events = _mark_passed_phases(build)
        build.escalation_level = EscalationLevel.NONE
        build.last_error = None
        build.transition(BuildStatus.PENDING)

        with self._db.transaction() as conn:
            resolved = [
                self._escalations.resolve(record.id, actor=actor, note=note, conn=conn).id
                for record in self._escalations.open_for_build(build_id)
            ]
            self._persist(
                build,
                [
                    (
                        EventKind.ESCALATION_CLEARED,
                        {
                            "actor": actor,
                            "note": note,
                            "resolved_escalations": list(resolved),
                            "reset_tasks": list(reset_tasks),
                        },
                    ),
                    *passed_events,
                ],
                conn=conn,
            )
        self._logger.info(
            "control_plane_escalation_cleared",
            build_id=build_id,
            actor=actor,
            resolved=len(resolved),
            reset_tasks=len(reset_tasks),
        )
        return build

    def prune_checkpoints(self, policy: RetentionPolicy | None = None) -> int:
        return self._checkpoints.prune(policy if policy is not None else self._retention)

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------

    async def _drive(self, build: Build, *, resumed: bool) -> BuildOutcome:
        if build.id in self._active_builds:
            raise OrchestratorError(f"build {build.id} is already running")
        if build.status is not BuildStatus.PENDING and build.status is not BuildStatus.RUNNING:
            self._logger.info(
                "control_plane_build_not_runnable", build_id=build.id, status=build.status.value
            )
            return BuildOutcome(build.id, build.status, build, dispatches=0)

        self._active_builds.add(build.id)
        try:
            with correlation_scope(build_id=build.id):
                return await self._drive_locked(build, resumed=resumed)
        finally:
            self._active_builds.discard(build.id)

    async def _drive_locked(self, build: Build, *, resumed: bool) -> BuildOutcome:
        state = _RunState(
            build=build,
            lock=asyncio.Lock(),
            budget=BuildBudget.from_config(self._config, logger=self._logger),
            hooks=self._hook_registry.resolve(
                feature_flags(self._config),
                timeout_seconds=self._hook_timeout_seconds,
                logger=self._logger,
            ),
            semaphore=BoundedSemaphore(self._max_concurrency),
        )
        state.budget.start(build)

        if build.status is BuildStatus.PENDING:
            if self._block_if_unschedulable(state):
                return self._outcome(state)
            build.transition(BuildStatus.RUNNING)
            events: list[PendingEvent] = [
                (EventKind.BUILD_STARTED, {"resumed": resumed, "retry_count": build.retry_count})
            ]
            events.extend(_mark_passed_phases(build))
            finished = self._finish_if_complete(state, events)
            self._commit(state, events)
            self._logger.info("control_plane_build_started", build_id=build.id)
        else:
            finished = self._recover_interrupted(state)

        if finished:
            await self._run_hooks(state, HookPhase.BUILD_COMPLETE)
            return self._outcome(state)
        if build.status is not BuildStatus.RUNNING:
            return self._outcome(state)

        await self._run_hooks(state, HookPhase.BEFORE_BUILD)

        ticker = (
            asyncio.create_task(self._checkpoint_ticker(state))
            if self._checkpoint_interval_seconds > 0
            else None
        )
        try:
            await self._loop(state)
        finally:
            if ticker is not None:
                ticker.cancel()
                await asyncio.gather(ticker, return_exceptions=True)
            await self._cancel_in_flight(state)

        self.prune_checkpoints()
        self._logger.info(
            "control_plane_build_finished",
            build_id=build.id,
            status=build.status.value,
            dispatches=state.dispatches,
            retry_count=build.retry_count,
            cost_spent_usd=build.cost_spent_usd,
        )
        return self._outcome(state)

    async def _loop(self, state: _RunState) -> None:
        build = state.build
        while True:
            async with state.lock:
                if build.status is BuildStatus.RUNNING and state.budget_stop is None:
                    decision = state.budget.check(build)
                    if decision.should_stop:
                        state.budget_stop = decision
                        self._logger.warning(
                            "control_plane_dispatch_halted",
                            build_id=build.id,
                            reason=decision.describe(),
                            in_flight=len(state.in_flight),
                        )
                dispatchable = (
                    build.status is BuildStatus.RUNNING and state.budget_stop is None
                )
                if dispatchable:
                    ready = ready_tasks(build, exclude=state.in_flight)
                    for ref in ready[: state.semaphore.available]:
                        await state.semaphore.acquire()
                        self._dispatch(state, ref)

            if state.in_flight:
                done, _pending = await asyncio.wait(
                    set(state.in_flight.values()), return_when=asyncio.FIRST_COMPLETED
                )
                for finished in done:
                    finished.result()
                continue

            async with state.lock:
                if build.status is not BuildStatus.RUNNING:
                    return
                if state.budget_stop is not None:
                    self._halt_on_budget(state, state.budget_stop)
                    return
                if ready_tasks(build):
                    continue
                report = find_blocked(build) or diagnose(build)
                self._block(state, report)
                return

    def _dispatch(self, state: _RunState, ref: TaskRef) -> None:
        """Claim ``ref`` for execution; runs inside the commit lock."""
        build = state.build
        phase = build.phases[ref.phase_index]
        task = build.task(ref)
        retry_request = _retry_request_for(build, ref) if task.status is TaskStatus.FAILED else None

        events: list[PendingEvent] = []
        if phase.status is PhaseStatus.PENDING:
            phase.status = PhaseStatus.RUNNING
            events.append(
                (EventKind.PHASE_STARTED, {"phase_id": phase.id, "phase_index": ref.phase_index})
            )
        task.transition(TaskStatus.ASSIGNED)
        task.attempts += 1
        if retry_request is not None:
            build.retry_count += 1
        events.append(
            (
                EventKind.TASK_ASSIGNED,
                {
                    "task": task_node_key(build, ref),
                    "capability": task.capability.value,
                    "attempt": task.attempts,
                },
            )
        )
        self._commit(state, events)

        state.dispatches += 1
        state.in_flight[ref] = asyncio.create_task(
            self._execute(state, ref, retry_request), name=f"task:{task_node_key(build, ref)}"
        )

    async def _execute(
        self, state: _RunState, ref: TaskRef, retry_request: RetryRequest | None
    ) -> None:
        build = state.build
        phase_id = build.phases[ref.phase_index].id
        try:
            with correlation_scope(phase_id=phase_id, task_id=ref.task_id):
                await self._execute_task(state, ref, retry_request)
        finally:
            state.in_flight.pop(ref, None)
            state.semaphore.release()

    async def _execute_task(
        self, state: _RunState, ref: TaskRef, retry_request: RetryRequest | None
    ) -> None:
        build = state.build
        task = build.task(ref)
        context = AgentContext(
            build_id=build.id,
            phase_id=build.phases[ref.phase_index].id,
            task_id=task.id,
            attempt=task.attempts,
            prior_outputs=_prior_outputs(build, ref),
            retry=retry_request,
        )
        auxiliary = await self._run_hooks(state, HookPhase.BEFORE_TASK, task_ref=ref)
        context.auxiliary.update(auxiliary)

        async with state.lock:
            task.transition(TaskStatus.IN_PROGRESS)
            self._commit(
                state,
                [
                    (
                        EventKind.TASK_STARTED,
                        {"task": task_node_key(build, ref), "attempt": task.attempts},
                    )
                ],
            )

        try:
            client = self._agents.resolve(task.capability)
            result = await run_with_stall_detection(
                invoke_agent(client, _detached(task), context),
                context.heartbeat,
                self._stall_timeout_seconds,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            failure = TaskFailure.from_exception(exc)
            await self._fail(state, ref, failure, stalled=isinstance(exc, StallTimeoutError))
            return

        async with state.lock:
            task.transition(TaskStatus.COMPLETED)
            task.output_value = dict(result.output)
            task.cost_usd = round(task.cost_usd + result.cost_usd, 12)
            build.cost_spent_usd = round(build.cost_spent_usd + result.cost_usd, 12)
            self._commit(
                state,
                [
                    (
                        EventKind.TASK_COMPLETED,
                        {
                            "task": task_node_key(build, ref),
                            "attempt": task.attempts,
                            "cost_usd": result.cost_usd,
                            "outputs": sorted(result.output),
                        },
                    )
                ],
            )

        report = await self._gates.run_gates(_detached(task), result)
        if not report.passed:
            failure = TaskFailure.from_gate_report(report)
            await self._fail(state, ref, failure, report=report, result=result)
            return

        async with state.lock:
            task.transition(TaskStatus.VALIDATED)
            task.gate_errors = ()
            self._commit(
                state,
                [
                    (
                        EventKind.TASK_VALIDATED,
                        {"task": task_node_key(build, ref), "gates": report.to_payload()},
                    )
                ],
            )
            handoff, completed = self._advance_phases(state, ref.phase_index)

        await self._run_hooks(
            state, HookPhase.AFTER_TASK, task_ref=ref, result=result, gate_report=report
        )
        if handoff is not None:
            await self._run_hooks(state, HookPhase.ON_HANDOFF, handoff=handoff)
        if completed:
            await self._run_hooks(state, HookPhase.BUILD_COMPLETE)

    async def _fail(
        self,
        state: _RunState,
        ref: TaskRef,
        failure: TaskFailure,
        *,
        stalled: bool = False,
        report: GateReport | None = None,
        result: AgentResult | None = None,
    ) -> None:
        build = state.build
        task = build.task(ref)
        async with state.lock:
            task.transition(TaskStatus.FAILED)
            events: list[PendingEvent] = []
            if stalled:
                events.append(
                    (
                        EventKind.TASK_STALLED,
                        {"task": task_node_key(build, ref), "error": failure.message},
                    )
                )
            record = self._decide(state, ref, failure, events, report=report)
            self._commit(state, events, records=() if record is None else (record,))

        await self._run_hooks(
            state,
            HookPhase.ON_TASK_ERROR,
            task_ref=ref,
            result=result,
            gate_report=report,
            error=failure.message,
        )

    def _decide(
        self,
        state: _RunState,
        ref: TaskRef,
        failure: TaskFailure,
        events: list[PendingEvent],
        *,
        report: GateReport | None = None,
    ) -> EscalationRecord | None:
        """Route one failed attempt through the retry controller; commit lock held."""
        build = state.build
        node = task_node_key(build, ref)
        decision = self._retry.on_failure(build, ref, failure)
        already_escalated = build.status is BuildStatus.ESCALATED
        self._retry.apply(build, decision)

        failed_payload: dict[str, JSONValue] = {
            "task": node,
            "attempt": build.task(ref).attempts,
            "failure": failure.to_dict(),
        }
        if report is not None:
            failed_payload["gates"] = report.to_payload()
        events.append((EventKind.TASK_FAILED, failed_payload))

        if decision.should_retry:
            events.append((EventKind.TASK_RETRY, decision.to_dict()))
            return None

        phase = build.phases[ref.phase_index]
        events.append(
            (
                EventKind.PHASE_FAILED,
                {"phase_id": phase.id, "failed_tasks": list(phase.failed_task_ids)},
            )
        )
        record = self._retry.record_for_decision(build, decision, now=self._clock())
        if not already_escalated:
            events.append((EventKind.BUILD_ESCALATED, _record_payload(record)))
        self._logger.warning(
            "control_plane_build_escalated",
            build_id=build.id,
            trigger=record.trigger.value,
            reason=record.reason,
        )
        return record

    def _advance_phases(
        self, state: _RunState, phase_index: int
    ) -> tuple[HandoffInfo | None, bool]:
        """
        Mark passed phases and completion after a validation; commit lock held.

        A phase passes as soon as all of its tasks validate, even while the build is
        escalated by a failure elsewhere. Only the move to ``done`` needs a running build.
        """
        build = state.build
        phase = build.phases[phase_index]
        if not phase.all_validated:
            return None, False

        newly_passed = phase.status is not PhaseStatus.PASSED
        events = _mark_passed_phases(build)
        handoff: HandoffInfo | None = None
        if newly_passed and phase_index + 1 < len(build.phases):
            handoff = HandoffInfo(
                from_phase_id=phase.id,
                to_phase_id=build.phases[phase_index + 1].id,
                from_phase_index=phase_index,
                to_phase_index=phase_index + 1,
            )
            events.append(
                (
                    EventKind.HANDOFF,
                    {"from_phase_id": handoff.from_phase_id, "to_phase_id": handoff.to_phase_id},
                )
            )
        completed = self._finish_if_complete(state, events)
        self._commit(state, events)
        return handoff, completed

    def _finish_if_complete(self, state: _RunState, events: list[PendingEvent]) -> bool:
        build = state.build
        if build.status is not BuildStatus.RUNNING:
            return False
        if build.current_phase_index < len(build.phases):
            return False
        build.transition(BuildStatus.DONE)
        state.budget.sync(build)
        events.append(
            (
                EventKind.BUILD_COMPLETE,
                {
                    "retry_count": build.retry_count,
                    "cost_spent_usd": build.cost_spent_usd,
                    "elapsed_seconds": build.elapsed_seconds,
                },
            )
        )
        return True

    def _block_if_unschedulable(self, state: _RunState) -> bool:
        """Cycles and forward phase references halt the build before any dispatch."""
        build = state.build
        report = diagnose(build)
        if not (phase_order_violations(build) or report.cycles or report.unresolved_references):
            return False
        self._block(state, report)
        return True

    def _block(self, state: _RunState, report: BlockedReport) -> None:
        build = state.build
        reason = report.describe()
        self._retry.block_build(build, reason)
        for phase in build.phases:
            if phase.status in {PhaseStatus.PENDING, PhaseStatus.RUNNING} and any(
                task.status is TaskStatus.QUEUED for task in phase.tasks
            ):
                phase.status = PhaseStatus.BLOCKED
        record = self._retry.escalation_record(
            build,
            EscalationTrigger.CYCLE_DETECTED,
            reason=reason,
            last_error=reason,
            now=self._clock(),
        )
        payload = _record_payload(record)
        payload["stuck_tasks"] = list(report.stuck_tasks)
        payload["cycles"] = [list(cycle) for cycle in report.cycles]
        self._commit(state, [(EventKind.BUILD_BLOCKED, payload)], records=(record,))
        self._logger.warning("control_plane_build_blocked", build_id=build.id, reason=reason)

    def _halt_on_budget(self, state: _RunState, decision: BudgetDecision) -> None:
        build = state.build
        reason = decision.describe()
        self._retry.block_build(build, reason)
        record = self._retry.escalation_record(
            build,
            EscalationTrigger.BUDGET_EXHAUSTED,
            reason=reason,
            last_error=reason,
            now=self._clock(),
        )
        self._commit(
            state,
            [
                (EventKind.BUDGET_EXHAUSTED, cast("dict[str, JSONValue]", decision.to_dict())),
                (EventKind.BUILD_BLOCKED, _record_payload(record)),
            ],
            records=(record,),
        )
        self._logger.warning("control_plane_build_blocked", build_id=build.id, reason=reason)

    def _recover_interrupted(self, state: _RunState) -> bool:
        """
        Fail every task a previous process left in flight and route it through retry.

        Phases whose tasks all validated before the stop are passed here; returns True
        when that completes the build.
        """
        build = state.build
        events: list[PendingEvent] = [(EventKind.BUILD_RESUMED, {"retry_count": build.retry_count})]
        records: list[EscalationRecord] = []
        for ref, task in build.iter_tasks():
            if task.status not in _INTERRUPTED_STATUSES:
                continue
            if task.status is TaskStatus.ASSIGNED:
                task.transition(TaskStatus.IN_PROGRESS)
            task.transition(TaskStatus.FAILED)
            events.append(
                (
                    EventKind.TASK_INTERRUPTED,
                    {"task": task_node_key(build, ref), "attempt": task.attempts},
                )
            )
            failure = TaskFailure(kind=FailureKind.INTERRUPTED, message=_INTERRUPTED_MESSAGE)
            record = self._decide(state, ref, failure, events)
            if record is not None:
                records.append(record)
        events.extend(_mark_passed_phases(build))
        finished = self._finish_if_complete(state, events)

        self._commit(state, events, records=records)
        self._logger.info(
            "control_plane_build_resumed",
            build_id=build.id,
            interrupted=sum(1 for kind, _payload in events if kind is EventKind.TASK_INTERRUPTED),
            status=build.status.value,
        )
        return finished

    async def _checkpoint_ticker(self, state: _RunState) -> None:
        while True:
            await asyncio.sleep(self._checkpoint_interval_seconds)
            async with state.lock:
                if state.build.status is not BuildStatus.RUNNING:
                    return
                state.budget.sync(state.build)
                with self._db.transaction() as conn:
                    self._builds.save(state.build, conn=conn)
                    checkpoint_id = self._checkpoints.save(state.build, conn=conn)
            self._logger.debug(
                "control_plane_checkpoint_tick",
                build_id=state.build.id,
                checkpoint_id=checkpoint_id,
            )

    async def _cancel_in_flight(self, state: _RunState) -> None:
        tasks = list(state.in_flight.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _run_hooks(
        self,
        state: _RunState,
        phase: HookPhase,
        *,
        task_ref: TaskRef | None = None,
        result: AgentResult | None = None,
        gate_report: GateReport | None = None,
        error: str | None = None,
        handoff: HandoffInfo | None = None,
    ) -> dict[str, object]:
        """Invoke ``phase`` hooks outside the commit lock; returns the auxiliary mapping."""
        if not state.hooks.has_hooks(phase):
            return {}
        build = state.build
        context = HookContext(
            phase=phase,
            build=build.snapshot(),
            task_ref=task_ref,
            task=_detached(build.task(task_ref)) if task_ref is not None else None,
            result=result,
            gate_report=gate_report,
            error=error,
            handoff=handoff,
        )
        failures = await state.hooks.invoke(phase, context)
        if failures:
            await self._record_hook_failures(state, failures)
        return context.auxiliary

    async def _record_hook_failures(
        self, state: _RunState, failures: tuple[HookFailure, ...]
    ) -> None:
        async with state.lock:
            self._commit(
                state,
                [(EventKind.HOOK_FAILED, failure.to_dict()) for failure in failures],
                checkpoint=False,
            )

    def _commit(
        self,
        state: _RunState,
        events: list[PendingEvent],
        *,
        records: Sequence[EscalationRecord] = (),
        checkpoint: bool = True,
    ) -> None:
        state.budget.sync(state.build)
        self._persist(state.build, events, records=records, checkpoint=checkpoint)

    def _persist(
        self,
        build: Build,
        events: list[PendingEvent],
        *,
        records: Sequence[EscalationRecord] = (),
        checkpoint: bool = True,
        conn: sqlite3.Connection | None = None,
    ) -> None:
        """The single commit path: build row, events, escalation records and checkpoint."""
        now = self._clock()
        if now > build.updated_at:
            build.updated_at = now
        with self._db.transaction(conn=conn) as tx:
            self._builds.save(build, conn=tx)
            for kind, payload in events:
                self._events.append(build.id, kind, payload, conn=tx)
            for record in records:
                self._escalations.save(record, conn=tx)
            if checkpoint:
                self._checkpoints.save(build, conn=tx)

    def _outcome(self, state: _RunState) -> BuildOutcome:
        return BuildOutcome(
            build_id=state.build.id,
            status=state.build.status,
            build=state.build.snapshot(),
            dispatches=state.dispatches,
        )


def _mark_passed_phases(build: Build) -> list[PendingEvent]:
    """Pass every fully validated phase and point ``current_phase_index`` at the first open one."""
    events: list[PendingEvent] = []
    for index, phase in enumerate(build.phases):
        if phase.status is not PhaseStatus.PASSED and phase.all_validated:
            phase.status = PhaseStatus.PASSED
            events.append((EventKind.PHASE_PASSED, {"phase_id": phase.id, "phase_index": index}))
    build.current_phase_index = next(
        (
            index
            for index, phase in enumerate(build.phases)
            if phase.status is not PhaseStatus.PASSED
        ),
        len(build.phases),
    )
    return events


def _retry_request_for(build: Build, ref: TaskRef) -> RetryRequest:
    task = build.task(ref)
    previous_error = task.last_error or "previous attempt failed"
    return RetryRequest(
        task_id=task.id,
        phase_id=build.phases[ref.phase_index].id,
        attempt=task.attempts + 1,
        description=task.description,
        gate_failures=task.gate_errors,
        previous_error=previous_error,
        classification=classify_error(previous_error),
    )


def _prior_outputs(build: Build, ref: TaskRef) -> dict[str, dict[str, JSONValue]]:
    outputs: dict[str, dict[str, JSONValue]] = {}
    for reference in build.task(ref).input:
        upstream = build.resolve_input(ref, reference)
        if upstream is not None:
            outputs[reference] = dict(build.task(upstream).output_value)
    return outputs


def _detached(task: AtomicTask) -> AtomicTask:
    return AtomicTask.from_dict(task.to_dict())


def _record_payload(record: EscalationRecord) -> dict[str, JSONValue]:
    return {
        "escalation_id": record.id,
        "trigger": record.trigger.value,
        "reason": record.reason,
        "last_error": record.last_error,
        "required_action": record.required_action,
        "task_id": record.task_id,
        "phase_id": record.phase_id,
    }


def _effective_config(config: Mapping[str, object] | None) -> dict[str, Any]:
    merged = merge_config(default_config(), config or {})
    return assert_valid_config(merged)


def _utc_now() -> datetime:
    return datetime.now(UTC)


__all__ = ["BuildNotFoundError", "BuildOrchestrator", "BuildOutcome", "OrchestratorError"]
