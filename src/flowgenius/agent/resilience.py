"""Resilience layer wrapped around every workflow node.

A node failure never escapes as an exception. The layer retries transient
errors with exponential backoff (tenacity), keeps a per-node circuit breaker
and converts whatever is left into a partial state update chosen by the
node's recovery strategy.
"""

from __future__ import annotations

import asyncio
import copy
import enum
import time
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable

import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from flowgenius.agent.state import (
    CLEAR,
    SessionState,
    SessionUpdate,
    Stage,
    assistant_message,
    snapshot,
    utcnow,
)
from flowgenius.config.settings import settings
from flowgenius.errors import describe_error

log = structlog.get_logger(__name__)

NodeFn = Callable[[SessionState], Awaitable[SessionUpdate]]
Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]

CIRCUIT_OPEN_ERROR = (
    "Service temporarily unavailable. The {node} component is experiencing issues. "
    "Please try again later."
)
CIRCUIT_OPEN_MESSAGE = (
    "This feature is temporarily unavailable due to technical issues. "
    "Please try again in a few minutes."
)
MANUAL_MESSAGE = "I encountered an error that requires assistance. {detail}"
ROLLBACK_MESSAGE = "I encountered an error: {detail} Let's try again from where we were."

# Fields a rollback restores from the snapshot.
ROLLBACK_FIELDS = (
    "current_stage",
    "last_user_action",
    "title",
    "checklist_state",
    "voice_audio_pending",
    "voice_transcription",
)


class CircuitState(enum.StrEnum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class RecoveryStrategy(enum.StrEnum):
    RETRY = "retry"
    ROLLBACK = "rollback"
    SKIP = "skip"
    FALLBACK = "fallback"
    MANUAL = "manual"


class HealthVerdict(enum.StrEnum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_delay: float = 1.0
    backoff_factor: float = 2.0
    max_delay: float = 10.0
    # Case-insensitive substrings of retryable error messages. Empty = retry everything.
    retryable_errors: tuple[str, ...] = ("NETWORK_ERROR", "TIMEOUT", "RATE_LIMIT")

    @classmethod
    def from_settings(cls, **overrides: Any) -> RetryPolicy:
        values: dict[str, Any] = {
            "max_attempts": settings.retry_max_attempts,
            "initial_delay": settings.retry_initial_delay_seconds,
            "backoff_factor": settings.retry_backoff_factor,
            "max_delay": settings.retry_max_delay_seconds,
            "retryable_errors": tuple(settings.retryable_errors),
        }
        values.update(overrides)
        return cls(**values)

    def is_retryable(self, error: BaseException) -> bool:
        if not self.retryable_errors:
            return True
        message = str(error).lower()
        return any(marker.lower() in message for marker in self.retryable_errors)


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5
    reset_timeout: float = 60.0  # seconds before an open breaker admits a trial call

    @classmethod
    def from_settings(cls) -> CircuitBreakerConfig:
        return cls(
            failure_threshold=settings.circuit_failure_threshold,
            reset_timeout=settings.circuit_reset_timeout_seconds,
        )


@dataclass(frozen=True)
class RecoveryPlan:
    strategy: RecoveryStrategy = RecoveryStrategy.MANUAL
    retry_policy: RetryPolicy | None = None
    fallback_value: SessionUpdate | None = None
    skip_condition: Callable[[SessionState], bool] | None = None


@dataclass
class NodeHealth:
    node_name: str
    success_count: int = 0
    failure_count: int = 0  # consecutive handled failures, zeroed by any success
    circuit_state: CircuitState = CircuitState.CLOSED
    last_failure_time: float | None = None
    average_execution_time: float = 0.0
    last_error: str | None = None
    attempts: int = field(default=0, repr=False)


@dataclass
class WorkflowHealth:
    overall: HealthVerdict
    nodes: dict[str, NodeHealth]
    recommendations: list[str]


@dataclass(frozen=True)
class HistoryEntry:
    state: SessionState
    node_name: str | None
    recorded_at: datetime


class StateHistory:
    """Bounded ring buffer of state snapshots; the oldest entry is evicted first."""

    def __init__(self, capacity: int | None = None) -> None:
        self.capacity = capacity or settings.state_history_capacity
        self._entries: deque[HistoryEntry] = deque(maxlen=self.capacity)

    def __len__(self) -> int:
        return len(self._entries)

    def add(self, state: SessionState, node_name: str | None = None) -> None:
        self._entries.append(HistoryEntry(snapshot(state), node_name, utcnow()))

    def entries(self) -> list[HistoryEntry]:
        return list(self._entries)

    def latest_good_entry(self) -> HistoryEntry | None:
        """Most recent entry whose snapshot carries no error and is not mid-processing."""
        for entry in reversed(self._entries):
            if not entry.state.get("error") and not entry.state.get("is_processing"):
                return entry
        return None

    def latest_good(self) -> SessionState | None:
        entry = self.latest_good_entry()
        return snapshot(entry.state) if entry is not None else None

    def clear(self) -> None:
        self._entries.clear()


class ResilienceLayer:
    """Retry, circuit breaking and recovery dispatch for named nodes.

    Args:
        node_names: Nodes to create health records for up front.
        plans: Recovery plan per node; unlisted nodes use MANUAL.
        retry_policy: Default policy for RETRY plans without their own.
        breaker: Default circuit breaker thresholds.
        clock: Monotonic seconds, injectable for tests.
        sleep: Async sleep used for backoff waits, injectable for tests.
    """

    def __init__(
        self,
        node_names: Iterable[str] = (),
        plans: dict[str, RecoveryPlan] | None = None,
        retry_policy: RetryPolicy | None = None,
        breaker: CircuitBreakerConfig | None = None,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._plans: dict[str, RecoveryPlan] = dict(plans or {})
        self._breakers: dict[str, CircuitBreakerConfig] = {}
        self._default_policy = retry_policy or RetryPolicy.from_settings()
        self._default_breaker = breaker or CircuitBreakerConfig.from_settings()
        self._clock = clock
        self._sleep = sleep
        self._health: dict[str, NodeHealth] = {name: NodeHealth(name) for name in node_names}

    # ── Configuration ──────────────────────────────────────────────────────

    def configure(
        self,
        node_name: str,
        plan: RecoveryPlan | None = None,
        breaker: CircuitBreakerConfig | None = None,
    ) -> None:
        if plan is not None:
            self._plans[node_name] = plan
        if breaker is not None:
            self._breakers[node_name] = breaker
        self._health.setdefault(node_name, NodeHealth(node_name))

    def plan_for(self, node_name: str) -> RecoveryPlan:
        return self._plans.get(node_name, RecoveryPlan())

    def breaker_for(self, node_name: str) -> CircuitBreakerConfig:
        return self._breakers.get(node_name, self._default_breaker)

    def policy_for(self, node_name: str) -> RetryPolicy:
        return self.plan_for(node_name).retry_policy or self._default_policy

    # ── Health bookkeeping ─────────────────────────────────────────────────

    def health_for(self, node_name: str) -> NodeHealth:
        return self._health.setdefault(node_name, NodeHealth(node_name))

    def circuit_state(self, node_name: str) -> CircuitState:
        """Current breaker state. An open breaker past its reset timeout turns half-open here."""
        health = self.health_for(node_name)
        if health.circuit_state is CircuitState.OPEN and health.last_failure_time is not None:
            if self._clock() - health.last_failure_time >= self.breaker_for(node_name).reset_timeout:
                health.circuit_state = CircuitState.HALF_OPEN
                log.info("circuit_half_open", node=node_name)
        return health.circuit_state

    def _record_timing(self, node_name: str, elapsed: float) -> None:
        health = self.health_for(node_name)
        health.attempts += 1
        health.average_execution_time += (elapsed - health.average_execution_time) / health.attempts

    def _record_success(self, node_name: str) -> None:
        health = self.health_for(node_name)
        health.success_count += 1
        health.failure_count = 0
        health.last_error = None
        if health.circuit_state is not CircuitState.CLOSED:
            log.info("circuit_closed", node=node_name)
        health.circuit_state = CircuitState.CLOSED

    def _record_failure(self, node_name: str, error: BaseException) -> None:
        health = self.health_for(node_name)
        was_half_open = self.circuit_state(node_name) is CircuitState.HALF_OPEN
        health.failure_count += 1
        health.last_failure_time = self._clock()
        health.last_error = str(error)
        threshold = self.breaker_for(node_name).failure_threshold
        if health.circuit_state is not CircuitState.OPEN and (
            was_half_open or health.failure_count >= threshold
        ):
            health.circuit_state = CircuitState.OPEN
            log.warning("circuit_opened", node=node_name, failures=health.failure_count)

    def get_workflow_health(self) -> WorkflowHealth:
        """Aggregate node health into an overall verdict with recommendations."""
        for name in list(self._health):
            self.circuit_state(name)
        nodes = {name: replace(health) for name, health in self._health.items()}
        open_nodes = [h for h in nodes.values() if h.circuit_state is CircuitState.OPEN]
        failing = [h for h in nodes.values() if h.failure_count > 0]

        recommendations: list[str] = []
        if open_nodes:
            overall = HealthVerdict.UNHEALTHY
            recommendations.append(f"{len(open_nodes)} nodes have open circuit breakers")
            now = self._clock()
            for health in open_nodes:
                elapsed = now - (health.last_failure_time or now)
                remaining = max(self.breaker_for(health.node_name).reset_timeout - elapsed, 0.0)
                recommendations.append(
                    f"{health.node_name}: Circuit breaker open. Will retry in {remaining:.0f}s"
                )
        elif failing:
            overall = HealthVerdict.DEGRADED
            recommendations.append(f"{len(failing)} nodes have recent failures")
            for health in failing:
                recommendations.append(
                    f"{health.node_name}: {health.failure_count} consecutive failures ({health.last_error})"
                )
        else:
            overall = HealthVerdict.HEALTHY
        return WorkflowHealth(overall=overall, nodes=nodes, recommendations=recommendations)

    def reset_node_health(self, node_name: str | None = None) -> None:
        """Reset one node's record, or every record when ``node_name`` is None."""
        names = [node_name] if node_name is not None else list(self._health)
        for name in names:
            self._health[name] = NodeHealth(name)
        log.info("node_health_reset", nodes=names)

    # ── Invocation ─────────────────────────────────────────────────────────

    async def _attempt(self, node_name: str, node_fn: NodeFn, state: SessionState) -> SessionUpdate:
        started = self._clock()
        try:
            update = await node_fn(state)
        finally:
            self._record_timing(node_name, self._clock() - started)
        self._record_success(node_name)
        return update

    async def _retry(
        self, node_name: str, node_fn: NodeFn, state: SessionState, policy: RetryPolicy
    ) -> SessionUpdate:
        def _before_sleep(retry_state: RetryCallState) -> None:
            outcome = retry_state.outcome
            log.warning(
                "node_retry_scheduled",
                node=node_name,
                attempt=retry_state.attempt_number,
                max_attempts=policy.max_attempts,
                delay=retry_state.next_action.sleep if retry_state.next_action else None,
                error=str(outcome.exception()) if outcome else None,
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(policy.max_attempts),
            wait=wait_exponential(
                multiplier=policy.initial_delay, exp_base=policy.backoff_factor, max=policy.max_delay
            ),
            retry=retry_if_exception(policy.is_retryable),
            sleep=self._sleep,
            before_sleep=_before_sleep,
            reraise=True,
        )
        update: SessionUpdate = {}
        async for attempt in retrying:
            with attempt:
                update = await self._attempt(node_name, node_fn, {**state, "error": None})
        return update

    async def run(
        self,
        node_name: str,
        node_fn: NodeFn,
        state: SessionState,
        history: StateHistory | None = None,
    ) -> SessionUpdate:
        """Invoke ``node_fn`` under the node's breaker and recovery plan.

        Always returns a partial update. RETRY plans make up to
        ``max_attempts`` invocations in total; other plans invoke once and
        hand any failure to ``handle_node_error``.
        """
        if self.circuit_state(node_name) is CircuitState.OPEN:
            log.warning("circuit_open_fail_fast", node=node_name)
            return self._circuit_open_update(node_name, state)

        plan = self.plan_for(node_name)
        if plan.strategy is RecoveryStrategy.RETRY:
            try:
                return await self._retry(node_name, node_fn, state, self.policy_for(node_name))
            except Exception as exc:
                log.error("node_retries_exhausted", node=node_name, error=str(exc))
                self._record_failure(node_name, exc)
                if self.circuit_state(node_name) is CircuitState.OPEN:
                    return self._circuit_open_update(node_name, state)
                return self._error_update(exc, state)

        try:
            return await self._attempt(node_name, node_fn, state)
        except Exception as exc:
            log.warning("node_failed", node=node_name, error=str(exc), strategy=str(plan.strategy))
            return await self.handle_node_error(exc, node_name, state, history=history)

    async def handle_node_error(
        self,
        error: BaseException,
        node_name: str,
        state: SessionState,
        node_fn: NodeFn | None = None,
        history: StateHistory | None = None,
    ) -> SessionUpdate:
        """Turn a node failure that already happened into a recovery update.

        Counts one failure against the node, fails fast if that opened the
        breaker, then applies the node's recovery strategy. For RETRY the
        node is invoked again up to ``max_attempts`` times.
        """
        self._record_failure(node_name, error)
        if self.circuit_state(node_name) is CircuitState.OPEN:
            log.warning("circuit_open_fail_fast", node=node_name)
            return self._circuit_open_update(node_name, state)

        plan = self.plan_for(node_name)
        if plan.strategy is RecoveryStrategy.RETRY:
            if node_fn is None:
                return self._error_update(error, state)
            try:
                return await self._retry(node_name, node_fn, state, self.policy_for(node_name))
            except Exception as exc:
                log.error("node_retries_exhausted", node=node_name, error=str(exc))
                return self._error_update(exc, state)

        if plan.strategy is RecoveryStrategy.ROLLBACK:
            return self._rollback(error, state, history)

        if plan.strategy is RecoveryStrategy.SKIP:
            if plan.skip_condition is not None and plan.skip_condition(state):
                log.info("node_failure_skipped", node=node_name)
                return {"is_processing": False, "error": CLEAR}
            return self._error_update(error, state)

        if plan.strategy is RecoveryStrategy.FALLBACK:
            if plan.fallback_value is None:
                return self._error_update(error, state)
            log.info("node_fallback_applied", node=node_name)
            return self._fallback_update(plan.fallback_value, state)

        detail = describe_error(error)
        return {
            "error": detail,
            "is_processing": False,
            "messages": [assistant_message(MANUAL_MESSAGE.format(detail=detail), _stage(state))],
        }

    # ── Recovery updates ───────────────────────────────────────────────────

    def _error_update(self, error: BaseException, state: SessionState) -> SessionUpdate:
        detail = describe_error(error)
        return {
            "error": detail,
            "is_processing": False,
            "messages": [assistant_message(detail, _stage(state))],
        }

    def _circuit_open_update(self, node_name: str, state: SessionState) -> SessionUpdate:
        plan = self.plan_for(node_name)
        if plan.strategy is RecoveryStrategy.FALLBACK and plan.fallback_value is not None:
            # Fallback consumes the pending input even while the breaker is open.
            log.info("circuit_open_fallback_applied", node=node_name)
            return self._fallback_update(plan.fallback_value, state)
        return {
            "error": CIRCUIT_OPEN_ERROR.format(node=node_name),
            "is_processing": False,
            "messages": [assistant_message(CIRCUIT_OPEN_MESSAGE, _stage(state))],
        }

    def _rollback(
        self, error: BaseException, state: SessionState, history: StateHistory | None
    ) -> SessionUpdate:
        entry = history.latest_good_entry() if history is not None else None
        if entry is None:
            log.warning("rollback_without_snapshot")
            return self._error_update(error, state)

        restored = snapshot(entry.state)
        detail = describe_error(error)
        update: SessionUpdate = {
            name: CLEAR if restored.get(name) is None else restored[name]  # type: ignore[literal-required]
            for name in ROLLBACK_FIELDS
        }
        stage = restored.get("current_stage") or _stage(state)
        update.update(
            error=detail,
            is_processing=False,
            messages=[assistant_message(ROLLBACK_MESSAGE.format(detail=detail), stage)],
        )
        log.info(
            "state_rolled_back",
            stage=str(stage),
            restored_from=entry.node_name,
            recorded_at=entry.recorded_at.isoformat(),
        )
        return update

    def _fallback_update(self, fallback: SessionUpdate, state: SessionState) -> SessionUpdate:
        update = copy.deepcopy(fallback)
        stage = _stage(state)
        update["messages"] = [
            {**message, "created_at": utcnow(), "stage_at_creation": message.get("stage_at_creation") or stage}
            for message in update.get("messages", [])
        ]
        update.setdefault("is_processing", False)
        return update


def _stage(state: SessionState) -> Stage:
    return Stage(state.get("current_stage") or Stage.BRAINSTORM)
