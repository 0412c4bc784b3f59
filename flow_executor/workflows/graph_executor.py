"""
Graph Executor

The top-level interpreter. Walks a validated flow from its start node,
materializes each node's inputs through the variable resolver, invokes the
node's behavior, writes the result into the execution context, and selects
the successor edges to follow.

Traversal rules:
- Ordinary nodes fan out along every outgoing edge; each successor branch
  continues with its own fork of the context
- Condition nodes follow exactly one tagged edge
- Loop nodes run their `each` subgraph once per iteration, then continue
  along `after` and untagged edges with the outer context
- A node runs at most once per scope (top level, or one loop iteration);
  later arrivals at a node that already ran are skipped
- An edge from a loop body back to an enclosing loop node ends that
  iteration branch; the loop itself moves on to its next iteration
- A failing node with failurePolicy=stop aborts its branch; with
  failurePolicy=continue the failure is recorded and traversal goes on
- Once the run's cancellation signal is raised no new node starts
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping

from flow_executor.activities import default_registry
from flow_executor.activities.condition import BRANCH_TAGS_KEY
from flow_executor.activities.registry import ActionRegistry, NodeBehavior
from flow_executor.core.config import config
from flow_executor.core.context import ExecutionContext, RunJournal
from flow_executor.core.errors import ActionError
from flow_executor.core.graph import FlowGraph, validate_flow
from flow_executor.core.loop_controller import IterationResult, LoopController, LoopSettings
from flow_executor.core.sources import (
    EMPTY_SOURCE,
    DaprSecretSource,
    EnvironmentSource,
    MappingSource,
    VariableSource,
)
from flow_executor.core.types import (
    BRANCH_AFTER,
    BRANCH_EACH,
    LOOP_KINDS,
    FailurePolicy,
    FlowDocument,
    FlowEdge,
    FlowNode,
    NodeKind,
    NodeState,
    RunOutcome,
    RunStatus,
)
from flow_executor.core.variable_resolver import resolve_value

logger = logging.getLogger(__name__)


@dataclass
class BranchOutcome:
    """What one traversal branch reports back to whoever started it."""
    aborted: bool = False
    errors: dict[str, str] = field(default_factory=dict)
    # nodeId -> result as this branch saw it, in execution order
    outputs: dict[str, Any] = field(default_factory=dict)

    def merge(self, other: BranchOutcome) -> None:
        self.aborted = self.aborted or other.aborted
        self.errors.update(other.errors)
        self.outputs.update(other.outputs)


def _as_source(value: VariableSource | Mapping[str, Any] | None, case_insensitive: bool = False) -> VariableSource:
    if value is None:
        return EMPTY_SOURCE
    if isinstance(value, Mapping):
        return MappingSource(value, case_insensitive=case_insensitive)
    return value


class GraphExecutor:
    """
    Runs flows against an action registry.

    One executor can serve any number of concurrent runs: all per-run state
    lives in the RunJournal and ExecutionContext created for each run.
    """

    def __init__(
        self,
        registry: ActionRegistry | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        default_max_iterations: int | None = None,
    ):
        self.registry = registry or default_registry()
        self._sleep = sleep
        self.default_max_iterations = (
            default_max_iterations if default_max_iterations is not None else config.DEFAULT_MAX_ITERATIONS
        )

    async def run(
        self,
        flow: FlowDocument | FlowGraph,
        trigger_data: dict[str, Any] | None = None,
        flow_variables: VariableSource | Mapping[str, Any] | None = None,
        env: VariableSource | Mapping[str, Any] | None = None,
        secrets: VariableSource | Mapping[str, Any] | None = None,
        journal: RunJournal | None = None,
    ) -> RunOutcome:
        """
        Execute a flow to completion.

        Args:
            flow: The flow document (validated here) or an already validated graph
            trigger_data: Payload emitted by the start node
            flow_variables: Declared flow variables
            env: Environment values; the process environment is added only when
                EXPOSE_PROCESS_ENV is set
            secrets: Secret source; defaults to the Dapr secret store when enabled
            journal: Pre-created journal, so callers can cancel the run while it executes

        Returns:
            RunOutcome with final status, context and failed node ids

        Raises:
            FlowValidationError: If the flow is malformed; no node runs
        """
        graph = flow if isinstance(flow, FlowGraph) else validate_flow(flow)

        if journal is None:
            journal = RunJournal(run_id=str(uuid.uuid4()))
        journal.trigger_data = trigger_data or {}

        if secrets is None and config.SECRETS_ENABLED:
            secrets = DaprSecretSource(config.DAPR_SECRETS_STORE)
        if env is None or isinstance(env, Mapping):
            env = EnvironmentSource(env, include_process_env=config.EXPOSE_PROCESS_ENV)

        context = ExecutionContext(
            journal=journal,
            flow_variables=_as_source(flow_variables),
            env=env,
            secrets=_as_source(secrets, case_insensitive=True),
        )

        start_time = time.time()
        logger.info(f"[GraphExecutor] Run {journal.run_id} started: {graph.summary()}")

        outcome = await self._walk(graph, graph.start_node.id, context)

        if outcome.aborted:
            status = RunStatus.FAILED
        elif journal.cancelled:
            status = RunStatus.CANCELLED
        else:
            status = RunStatus.SUCCEEDED

        duration_ms = int((time.time() - start_time) * 1000)
        logger.info(
            f"[GraphExecutor] Run {journal.run_id} finished: status={status.value}, "
            f"failed={journal.failed_node_ids}, duration_ms={duration_ms}"
        )

        return RunOutcome(
            runId=journal.run_id,
            status=status,
            context=journal.results,
            failedNodeIds=list(journal.failed_node_ids),
            errors=dict(journal.errors),
            output=journal.output,
            logs=list(journal.logs),
            nodeStates={
                node_id: journal.node_states.get(node_id, NodeState.UNVISITED)
                for node_id in graph.nodes
            },
            durationMs=duration_ms,
        )

    async def _walk(self, graph: FlowGraph, node_id: str, context: ExecutionContext) -> BranchOutcome:
        """Run a branch starting at `node_id` until it ends, fans out or aborts."""
        outcome = BranchOutcome()
        journal = context.journal

        while True:
            if context.cancelled:
                logger.info(f"[GraphExecutor] Run {journal.run_id} cancelled, not starting {node_id}")
                return outcome

            node = graph.node(node_id)
            if context.in_iteration_of(node_id):
                logger.info(f"[GraphExecutor] Edge back to enclosing loop {node_id}, ending iteration branch")
                return outcome

            if not journal.claim(context.scope, node_id):
                logger.info(f"[GraphExecutor] Node {node_id} already ran in this scope, skipping")
                journal.log(node_id, node.display_name, "warning", "Already executed in this scope, skipped")
                return outcome

            if node.is_disabled:
                logger.info(f"[GraphExecutor] Node {node_id} is disabled, skipping")
                journal.log(node_id, node.display_name, "info", "Node disabled, skipped")
                successors = graph.untagged_outgoing(node_id)
            else:
                successors = await self._step(graph, node, context, outcome)
                outcome.outputs[node_id] = context.get(node_id)
                if outcome.aborted:
                    return outcome

            if not successors:
                return outcome
            if len(successors) == 1:
                node_id = successors[0].target
                continue

            branches = await asyncio.gather(*[
                self._walk(graph, edge.target, context.fork()) for edge in successors
            ])
            for branch in branches:
                outcome.merge(branch)
            return outcome

    async def _step(
        self,
        graph: FlowGraph,
        node: FlowNode,
        context: ExecutionContext,
        outcome: BranchOutcome,
    ) -> list[FlowEdge]:
        """Execute one node, write its result and return the edges to follow."""
        journal = context.journal
        logger.info(f"[GraphExecutor] Executing node {node.id} ({node.kind})")
        journal.log(node.id, node.display_name, "info", f"Executing {node.kind} node")

        result: dict[str, Any] = {}
        error: str | None = None
        details: dict[str, Any] = {}
        behavior: NodeBehavior | None = None

        try:
            journal.node_states[node.id] = NodeState.RESOLVING_INPUTS
            if node.kind in LOOP_KINDS:
                resolved = resolve_value(node.config, context)
                journal.node_states[node.id] = NodeState.INVOKING
                result = await self._run_loop(graph, node, resolved, context)
            else:
                behavior = self.registry.get(node.kind)
                resolved = resolve_value(node.config, context) if behavior.resolve_config else dict(node.config)
                journal.node_states[node.id] = NodeState.INVOKING
                result = await self.registry.invoke(node.kind, resolved, context)
        except ActionError as e:
            error = str(e)
            details = e.details
        except Exception as e:
            logger.exception(f"[GraphExecutor] Node {node.id} raised unexpectedly")
            error = f"{type(e).__name__}: {e}"

        if error is None and not isinstance(result, dict):
            error = f"Action returned {type(result).__name__}, expected an object"
            result = {}
        if error is None and result.get("success") is False:
            error = str(result.get("error") or "Action reported failure")

        stored = {k: v for k, v in result.items() if k != BRANCH_TAGS_KEY}

        if error is not None:
            journal.node_states[node.id] = NodeState.FAILED
            journal.record_failure(node.id, error)
            journal.log(node.id, node.display_name, "error", error)
            outcome.errors[node.id] = error

            failure: dict[str, Any] = {**stored, "success": False, "error": error}
            if details:
                failure["errorDetails"] = details

            if node.failurePolicy == FailurePolicy.CONTINUE:
                logger.warning(f"[GraphExecutor] Node {node.id} failed, continuing: {error}")
                failure["_failedNode"] = True
                context.write(node.id, failure)
                return self._successors(graph, node, behavior, result)

            logger.error(f"[GraphExecutor] Node {node.id} failed, aborting branch: {error}")
            context.write(node.id, failure)
            outcome.aborted = True
            return []

        stored["success"] = True
        context.write(node.id, stored)
        journal.node_states[node.id] = NodeState.COMPLETED
        journal.log(node.id, node.display_name, "success", "Completed")
        logger.info(f"[GraphExecutor] Node {node.id} completed")

        if node.kind == NodeKind.RESPONSE.value:
            journal.output = context.get(node.id)

        return self._successors(graph, node, behavior, result)

    def _successors(
        self,
        graph: FlowGraph,
        node: FlowNode,
        behavior: NodeBehavior | None,
        result: dict[str, Any],
    ) -> list[FlowEdge]:
        if node.kind in LOOP_KINDS:
            return [e for e in graph.outgoing(node.id) if e.branch in (None, "", BRANCH_AFTER)]
        if behavior is None:
            return graph.untagged_outgoing(node.id)
        return behavior.select_successors(node, result, graph)

    async def _run_loop(
        self,
        graph: FlowGraph,
        node: FlowNode,
        resolved: dict[str, Any],
        context: ExecutionContext,
    ) -> dict[str, Any]:
        settings = LoopSettings.from_config(resolved, self.default_max_iterations)
        controller = LoopController(node.id, settings, sleep=self._sleep)
        body_edges = graph.tagged_outgoing(node.id, BRANCH_EACH)
        if not body_edges:
            logger.warning(f"[GraphExecutor] Loop {node.id} has no '{BRANCH_EACH}' edges, body is empty")

        async def run_body(iteration_ctx: ExecutionContext) -> IterationResult:
            body = BranchOutcome()
            if len(body_edges) == 1:
                body.merge(await self._walk(graph, body_edges[0].target, iteration_ctx))
            elif body_edges:
                branches = await asyncio.gather(*[
                    self._walk(graph, edge.target, iteration_ctx.fork()) for edge in body_edges
                ])
                for branch in branches:
                    body.merge(branch)

            return IterationResult(
                success=not body.errors,
                aborted=body.aborted,
                output=body.outputs,
                errors=body.errors,
            )

        loop_result = await controller.run(context, run_body)
        return loop_result.to_output()
