"""
Core Types for the Flow Executor

These types define the flow document exchanged with the visual editor,
the graph model walked by the executor, and the outcome returned to callers.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field


START_KINDS = frozenset({"start", "trigger"})
CONDITION_KINDS = frozenset({"condition"})
LOOP_KINDS = frozenset({"loop", "for-each-loop"})

# Branch tags reserved by condition and loop nodes
BRANCH_TRUE = "true"
BRANCH_FALSE = "false"
BRANCH_ELSE = "else"
BRANCH_EACH = "each"
BRANCH_AFTER = "after"


class NodeKind(str, Enum):
    """Node kinds with built-in behavior."""
    START = "start"
    TRIGGER = "trigger"
    CONDITION = "condition"
    LOOP = "loop"
    FOR_EACH_LOOP = "for-each-loop"
    HTTP_REQUEST = "http-request"
    SET_VARIABLE = "set-variable"
    DELAY = "delay"
    LOGGER = "logger"
    RESPONSE = "response"
    DATA_FILTER = "data-filter"
    PUBLISH_EVENT = "publish-event"


class FailurePolicy(str, Enum):
    """Whether a failing node aborts its branch or is recorded and skipped past."""
    STOP = "stop"
    CONTINUE = "continue"


class FlowNode(BaseModel):
    """A single action node as authored in the editor."""
    id: str
    kind: str
    label: str = ""
    config: dict[str, Any] = Field(default_factory=dict)
    failurePolicy: FailurePolicy = FailurePolicy.STOP
    position: dict[str, Any] | None = None

    class Config:
        extra = "allow"

    @property
    def is_start(self) -> bool:
        return self.kind in START_KINDS

    @property
    def is_disabled(self) -> bool:
        extra = self.model_extra or {}
        return bool(extra.get("disabled")) or bool(self.config.get("disabled"))

    @property
    def display_name(self) -> str:
        return self.label or self.id


class FlowEdge(BaseModel):
    """A directed edge; `branch` is only meaningful on condition and loop nodes."""
    id: str
    source: str
    target: str
    branch: str | None = None

    class Config:
        extra = "allow"


class FlowDocument(BaseModel):
    """Serializable snapshot of a flow, scoped to a trigger on a component."""
    nodes: list[FlowNode] = Field(default_factory=list)
    edges: list[FlowEdge] = Field(default_factory=list)
    trigger: str = ""
    componentId: str = ""

    class Config:
        extra = "allow"

    @classmethod
    def from_json(cls, text: str) -> FlowDocument:
        return cls.model_validate_json(text)

    def to_json(self) -> str:
        """Dump only the fields that were present on load, so documents round-trip."""
        return json.dumps(
            self.model_dump(mode="json", exclude_unset=True),
            separators=(",", ":"),
        )


class LoopVariable(BaseModel):
    """Binds a loop symbol to an upstream node's output field."""
    id: str = ""
    variableName: str = "item"
    sourceNodeId: str = ""
    sourceField: str = ""


class ConditionCase(BaseModel):
    """One ordered case of a multi-condition node."""
    id: str
    label: str | None = None
    leftOperand: Any = None
    operator: str = "equals"
    rightOperand: Any = None
    rightOperandType: Literal["static", "variable"] = "static"
    returnValue: Any = "true"
    useCustomExpression: bool = False
    condition: str | None = None

    class Config:
        extra = "allow"


class RunStatus(str, Enum):
    """Run lifecycle states."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class NodeState(str, Enum):
    """Per-node lifecycle states, as reported in the run log."""
    UNVISITED = "unvisited"
    RESOLVING_INPUTS = "resolving_inputs"
    INVOKING = "invoking"
    COMPLETED = "completed"
    FAILED = "failed"


class RunLogEntry(BaseModel):
    """One chronological entry of the run journal."""
    nodeId: str
    nodeName: str = ""
    type: Literal["info", "success", "error", "warning"] = "info"
    message: str = ""
    timestamp: int = 0


class RunOutcome(BaseModel):
    """What a finished run reports back to its caller."""
    runId: str
    status: RunStatus
    context: dict[str, Any] = Field(default_factory=dict)
    failedNodeIds: list[str] = Field(default_factory=list)
    errors: dict[str, str] = Field(default_factory=dict)
    output: Any | None = None
    logs: list[RunLogEntry] = Field(default_factory=list)
    nodeStates: dict[str, NodeState] = Field(default_factory=dict)
    durationMs: int = 0
