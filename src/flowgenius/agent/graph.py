"""Workflow graph: resilience-wrapped nodes joined by the router.

Usage:
    workflow = Workflow(Services.from_settings())
    state = workflow.create_session("session-1")
    state = await workflow.invoke(state)
"""

from __future__ import annotations

from functools import partial
from typing import Any, Awaitable, Callable, Mapping

import structlog
from langchain_core.runnables import RunnableConfig
from langgraph.errors import GraphRecursionError
from langgraph.graph import END, START, StateGraph

from flowgenius.agent.nodes import market, summary, turn, voice
from flowgenius.agent.resilience import (
    NodeFn,
    RecoveryPlan,
    RecoveryStrategy,
    ResilienceLayer,
    RetryPolicy,
    StateHistory,
    WorkflowHealth,
)
from flowgenius.agent.router import NodeName, route, route_entry
from flowgenius.agent.state import (
    SessionState,
    SessionUpdate,
    as_overwrite,
    create_session,
    utcnow,
    validate_state,
    with_defaults,
)
from flowgenius.config.settings import settings
from flowgenius.errors import FlowGeniusError, WorkflowError, WorkflowIterationError
from flowgenius.integrations.services import Services

log = structlog.get_logger(__name__)

ServiceNode = Callable[[SessionState, Services], Awaitable[SessionUpdate]]

NODES: dict[NodeName, ServiceNode] = {
    NodeName.PROCESS_USER_TURN: turn.run,
    NodeName.PROCESS_VOICE_INPUT: voice.run,
    NodeName.GENERATE_SUMMARY: summary.run,
    NodeName.EVALUATE_MARKET_LANDSCAPE: market.run,
}

PATH_MAP: dict[Any, str] = {**{name: name.value for name in NodeName}, END: END}

HISTORY_KEY = "state_history"


def default_plans() -> dict[str, RecoveryPlan]:
    return {
        NodeName.PROCESS_USER_TURN: RecoveryPlan(RecoveryStrategy.RETRY),
        NodeName.PROCESS_VOICE_INPUT: RecoveryPlan(
            RecoveryStrategy.FALLBACK, fallback_value=voice.FALLBACK_UPDATE
        ),
        NodeName.GENERATE_SUMMARY: RecoveryPlan(
            RecoveryStrategy.RETRY,
            retry_policy=RetryPolicy.from_settings(max_attempts=settings.summary_retry_max_attempts),
        ),
        NodeName.EVALUATE_MARKET_LANDSCAPE: RecoveryPlan(RecoveryStrategy.ROLLBACK),
    }


def default_resilience() -> ResilienceLayer:
    return ResilienceLayer(node_names=list(NodeName), plans=default_plans())


def _wrap(name: NodeName, node_fn: NodeFn, resilience: ResilienceLayer):
    async def _node(state: SessionState, config: RunnableConfig) -> SessionUpdate:
        history: StateHistory | None = (config.get("configurable") or {}).get(HISTORY_KEY)
        if history is not None:
            history.add(state, name)
        log.info("node_started", node=name.value)
        update = await resilience.run(name, node_fn, state, history=history)
        log.info("node_finished", node=name.value, error=update.get("error"), keys=sorted(update))
        return {**update, "updated_at": utcnow()}

    return _node


def build_graph(
    services: Services,
    resilience: ResilienceLayer,
    nodes: Mapping[NodeName, ServiceNode] | None = None,
) -> StateGraph:
    """Assemble the StateGraph. ``nodes`` overrides individual node functions."""
    table = {**NODES, **(nodes or {})}
    builder = StateGraph(SessionState)
    for name in NodeName:
        builder.add_node(name.value, _wrap(name, partial(table[name], services=services), resilience))

    builder.add_conditional_edges(START, route_entry, PATH_MAP)
    for name in NodeName:
        builder.add_conditional_edges(name.value, route, PATH_MAP)
    return builder


class Workflow:
    """Runs a session through the graph until the router yields END.

    Args:
        services: External services injected into every node.
        resilience: Shared resilience layer; defaults to the standard recovery plans.
        checkpointer: Optional LangGraph checkpointer keyed by session id. ``invoke``
            always takes the full host state, which overwrites the stored checkpoint.
        nodes: Node function overrides, mainly for tests.
        max_iterations: Node executions allowed per invocation.
    """

    def __init__(
        self,
        services: Services,
        resilience: ResilienceLayer | None = None,
        checkpointer: Any | None = None,
        nodes: Mapping[NodeName, ServiceNode] | None = None,
        max_iterations: int | None = None,
    ) -> None:
        self.services = services
        self.resilience = resilience or default_resilience()
        self.max_iterations = max_iterations or settings.max_workflow_iterations
        self.checkpointer = checkpointer
        self._app = build_graph(services, self.resilience, nodes).compile(checkpointer=checkpointer)

    def create_session(self, session_id: str, user_id: str | None = None) -> SessionState:
        return create_session(session_id, user_id=user_id)

    def health(self) -> WorkflowHealth:
        return self.resilience.get_workflow_health()

    async def _graph_input(self, state: SessionState, config: RunnableConfig) -> SessionUpdate:
        # Stored values survive a plain None, so fields the host emptied are sent as CLEAR.
        if self.checkpointer is not None:
            stored = await self._app.aget_state(config)
            if stored.values:
                log.debug("workflow_resuming_checkpoint", session_id=state["session_id"])
                return as_overwrite(state)
        return with_defaults(state)

    async def invoke(self, state: SessionState) -> SessionState:
        """Run from ``state`` until the workflow pauses and return the final state.

        Raises:
            StateValidationError: ``state`` is malformed.
            WorkflowIterationError: More than ``max_iterations`` node executions.
            WorkflowError: Anything else escaped the graph.
        """
        validate_state(state)
        session_id = state["session_id"]
        config: RunnableConfig = {
            "recursion_limit": self.max_iterations,
            "configurable": {
                "thread_id": session_id,
                HISTORY_KEY: StateHistory(settings.state_history_capacity),
            },
        }
        with structlog.contextvars.bound_contextvars(session_id=session_id):
            log.info("workflow_invoked", stage=str(state.get("current_stage")))
            try:
                final = await self._app.ainvoke(await self._graph_input(state, config), config=config)
            except GraphRecursionError as exc:
                log.error("workflow_iteration_limit", limit=self.max_iterations)
                raise WorkflowIterationError(
                    f"Workflow exceeded {self.max_iterations} iterations without pausing"
                ) from exc
            except FlowGeniusError:
                raise
            except Exception as exc:
                log.exception("workflow_failed")
                raise WorkflowError(f"Workflow execution failed: {exc}") from exc
            log.info("workflow_paused", stage=str(final.get("current_stage")), error=final.get("error"))
        return final  # type: ignore[return-value]
