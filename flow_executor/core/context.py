"""
Execution Context

The only mutable state of a run. Each traversal branch works on its own
ExecutionContext view (forked at fan-out time), while every fork of one run
shares a single RunJournal that collects the final context, the failed node
ids, the run log and the cancellation signal.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from flow_executor.core.sources import EMPTY_SOURCE, VariableSource
from flow_executor.core.types import NodeState, RunLogEntry

logger = logging.getLogger(__name__)

# A scope identifies one execution "slot" for nodes: the top level of a run is
# the empty tuple, each loop iteration appends (loopNodeId, iterationIndex).
Scope = tuple[tuple[str, int], ...]


@dataclass
class RunJournal:
    """Run-wide record shared by every context fork of a single run."""
    run_id: str
    trigger_data: Any = None
    results: dict[str, dict[str, Any]] = field(default_factory=dict)
    failed_node_ids: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    logs: list[RunLogEntry] = field(default_factory=list)
    output: Any = None
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    node_states: dict[str, NodeState] = field(default_factory=dict)
    _executed: set[tuple[Scope, str]] = field(default_factory=set)

    def claim(self, scope: Scope, node_id: str) -> bool:
        """Reserve a node for execution in a scope; False if it already ran there."""
        key = (scope, node_id)
        if key in self._executed:
            return False
        self._executed.add(key)
        return True

    def record_failure(self, node_id: str, error: str) -> None:
        if node_id not in self.failed_node_ids:
            self.failed_node_ids.append(node_id)
        self.errors[node_id] = error

    def log(self, node_id: str, node_name: str, type_: str, message: str) -> None:
        self.logs.append(RunLogEntry(
            nodeId=node_id,
            nodeName=node_name,
            type=type_,
            message=message,
            timestamp=int(time.time() * 1000),
        ))

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self) -> None:
        self.cancel_event.set()


class ExecutionContext:
    """
    A branch-local view of a run's state.

    Attributes:
        journal: The run-wide journal shared by all forks
        results: nodeId -> last result visible to this branch
        flow_variables: Declared flow variables
        env: Environment variables
        secrets: Secret store
        loop_scope: Ambient bindings of the innermost enclosing loop iteration
        loop_frames: loopNodeId -> `_loop` bindings of that loop's current iteration
        scope: Execution scope used for the once-per-scope guard
    """

    def __init__(
        self,
        journal: RunJournal,
        results: dict[str, dict[str, Any]] | None = None,
        flow_variables: VariableSource = EMPTY_SOURCE,
        env: VariableSource = EMPTY_SOURCE,
        secrets: VariableSource = EMPTY_SOURCE,
        loop_scope: dict[str, Any] | None = None,
        loop_frames: dict[str, dict[str, Any]] | None = None,
        scope: Scope = (),
    ):
        self.journal = journal
        self.results = results if results is not None else {}
        self.flow_variables = flow_variables
        self.env = env
        self.secrets = secrets
        self.loop_scope = loop_scope or {}
        self.loop_frames = loop_frames or {}
        self.scope = scope

    def fork(self) -> ExecutionContext:
        """Copy this view for a new branch; later writes are not shared back."""
        return ExecutionContext(
            journal=self.journal,
            results=dict(self.results),
            flow_variables=self.flow_variables,
            env=self.env,
            secrets=self.secrets,
            loop_scope=dict(self.loop_scope),
            loop_frames=dict(self.loop_frames),
            scope=self.scope,
        )

    def enter_iteration(
        self,
        loop_node_id: str,
        index: int,
        bindings: dict[str, Any],
        frame: dict[str, Any],
    ) -> ExecutionContext:
        """Fork into one loop iteration, overlaying its bindings on any outer loop's."""
        child = self.fork()
        child.loop_scope.update(bindings)
        child.loop_frames[loop_node_id] = frame
        child.scope = self.scope + ((loop_node_id, index),)
        return child

    def in_iteration_of(self, loop_node_id: str) -> bool:
        """True when this view runs inside an iteration of `loop_node_id`."""
        return any(scope_node == loop_node_id for scope_node, _ in self.scope)

    def write(self, node_id: str, result: dict[str, Any]) -> None:
        """Store a node's result in this view and in the run-wide context."""
        stored = copy.deepcopy(result)
        self.results[node_id] = stored
        self.journal.results[node_id] = stored

    def get(self, node_id: str) -> dict[str, Any] | None:
        return self.results.get(node_id)

    @property
    def cancelled(self) -> bool:
        return self.journal.cancelled
