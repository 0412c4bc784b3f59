"""
Loop Controller

Drives the body of a loop node once per item of its bound collections.

Iteration count:
- no loop variables declared        -> maxIterations (counter loop)
- linkedVariableId names a variable -> len(that variable's array)
- otherwise                         -> len(longest array)
and is always capped at maxIterations.

Per iteration `i` every loop variable `name` is bound to `source[i]` (absent
when out of range) and `nameIndex` to `i`, alongside `loop_iteration`,
`loop.isFirst`, `loop.isLast` and `loop.total`.

loopType "sequential" (default) runs one iteration at a time; "async" runs
`batchSize` iterations concurrently and waits for the whole batch before
starting the next. delayMs applies between batches, and errorHandling=stop
ends the loop after the first batch that contains a failure. Results are
always reported in index order.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from flow_executor.core.errors import LoopConfigurationError
from flow_executor.core.types import LoopVariable
from flow_executor.core.variable_resolver import get_nested_value

if TYPE_CHECKING:
    from flow_executor.core.context import ExecutionContext

logger = logging.getLogger(__name__)

ERROR_HANDLING_CONTINUE = "continue"
ERROR_HANDLING_STOP = "stop"

LOOP_TYPE_SEQUENTIAL = "sequential"
LOOP_TYPE_ASYNC = "async"
DEFAULT_BATCH_SIZE = 5


def _to_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


@dataclass
class LoopSettings:
    """Iteration controls of a loop node."""
    loop_variables: list[LoopVariable] = field(default_factory=list)
    max_iterations: int = 500
    loop_counter_start: int = 1
    delay_ms: int = 0
    error_handling: str = ERROR_HANDLING_CONTINUE
    linked_variable_id: str | None = None
    trim_whitespace: bool = True
    loop_type: str = LOOP_TYPE_SEQUENTIAL
    batch_size: int = DEFAULT_BATCH_SIZE

    @classmethod
    def from_config(cls, config: dict[str, Any], default_max_iterations: int = 500) -> LoopSettings:
        raw_variables = config.get("loopVariables") or []
        loop_variables = [
            LoopVariable.model_validate(v) for v in raw_variables if isinstance(v, dict)
        ]

        # Legacy single-variable format
        if not loop_variables and config.get("sourceNodeId") and config.get("sourceField"):
            loop_variables.append(LoopVariable(
                id="legacy-1",
                variableName=config.get("variableName") or "item",
                sourceNodeId=config["sourceNodeId"],
                sourceField=config["sourceField"],
            ))

        error_handling = str(config.get("errorHandling") or ERROR_HANDLING_CONTINUE)
        if error_handling not in (ERROR_HANDLING_CONTINUE, ERROR_HANDLING_STOP):
            logger.warning(f"[LoopController] Unknown errorHandling '{error_handling}', using continue")
            error_handling = ERROR_HANDLING_CONTINUE

        loop_type = str(config.get("loopType") or LOOP_TYPE_SEQUENTIAL)
        if loop_type not in (LOOP_TYPE_SEQUENTIAL, LOOP_TYPE_ASYNC):
            logger.warning(f"[LoopController] Unknown loopType '{loop_type}', using sequential")
            loop_type = LOOP_TYPE_SEQUENTIAL

        counter_start = config.get("loopCounterStart")
        return cls(
            loop_variables=loop_variables,
            max_iterations=max(0, _to_int(config.get("maxIterations"), default_max_iterations)),
            loop_counter_start=_to_int(counter_start, 1) if counter_start is not None else 1,
            delay_ms=max(0, _to_int(config.get("delayMs"), 0)),
            error_handling=error_handling,
            linked_variable_id=config.get("linkedVariableId") or None,
            trim_whitespace=config.get("trimWhitespace") is not False,
            loop_type=loop_type,
            batch_size=max(1, _to_int(config.get("batchSize"), DEFAULT_BATCH_SIZE)),
        )


@dataclass
class IterationResult:
    """Outcome of one pass over the loop body."""
    index: int = 0
    success: bool = True
    aborted: bool = False
    output: dict[str, Any] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "index": self.index,
            "success": self.success,
            "output": self.output,
        }
        if self.errors:
            data["errors"] = self.errors
            data["failedNodeIds"] = list(self.errors)
        return data


@dataclass
class LoopResult:
    """Aggregate outcome of a loop node."""
    iteration_count: int
    iterations: list[IterationResult] = field(default_factory=list)
    success: bool = True
    stopped_early: bool = False
    cancelled: bool = False
    error: str | None = None

    @property
    def failed_iterations(self) -> int:
        return sum(1 for it in self.iterations if not it.success)

    def to_output(self) -> dict[str, Any]:
        output: dict[str, Any] = {
            "success": self.success,
            "results": [it.to_dict() for it in self.iterations],
            "totalProcessed": len(self.iterations),
            "iterationCount": self.iteration_count,
            "failedIterations": self.failed_iterations,
            "stoppedEarly": self.stopped_early,
        }
        if self.error:
            output["error"] = self.error
        return output


BodyRunner = Callable[["ExecutionContext"], Awaitable[IterationResult]]


class LoopController:
    """Runs a loop node's body for each iteration with per-iteration scoping."""

    def __init__(
        self,
        node_id: str,
        settings: LoopSettings,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.node_id = node_id
        self.settings = settings
        self._sleep = sleep

    def collect_sources(self, context: ExecutionContext) -> list[tuple[LoopVariable, list[Any]]]:
        """Resolve every loop variable's source into an array, skipping unusable ones."""
        arrays: list[tuple[LoopVariable, list[Any]]] = []
        for loop_var in self.settings.loop_variables:
            if not loop_var.sourceNodeId or not loop_var.sourceField:
                continue

            data_key = f"{loop_var.sourceNodeId}.{loop_var.sourceField}"
            data = get_nested_value(context.results.get(loop_var.sourceNodeId), loop_var.sourceField)

            if data is None:
                logger.warning(
                    f"[LoopController] No data found at {data_key} for variable "
                    f"'{loop_var.variableName}'"
                )
                continue

            if isinstance(data, str):
                parts = data.split(",")
                data = [p.strip() for p in parts] if self.settings.trim_whitespace else parts
            elif isinstance(data, tuple):
                data = list(data)

            if not isinstance(data, list):
                logger.warning(
                    f"[LoopController] Data for '{loop_var.variableName}' is not an array "
                    f"(found: {type(data).__name__})"
                )
                continue

            arrays.append((loop_var, data))
        return arrays

    def iteration_count(self, arrays: list[tuple[LoopVariable, list[Any]]]) -> int:
        cap = self.settings.max_iterations
        if not self.settings.loop_variables:
            return cap

        available = max((len(data) for _, data in arrays), default=0)
        linked_id = self.settings.linked_variable_id
        if linked_id:
            for loop_var, data in arrays:
                if loop_var.id == linked_id:
                    available = len(data)
                    break
            else:
                logger.warning(
                    f"[LoopController] Linked variable '{linked_id}' has no array data, "
                    f"using longest source"
                )
        return min(available, cap)

    def bindings_for(
        self,
        index: int,
        count: int,
        arrays: list[tuple[LoopVariable, list[Any]]],
    ) -> tuple[dict[str, Any], dict[str, Any]]:
        """Ambient loop-scope bindings and the node's `_loop` frame for one iteration."""
        counter = self.settings.loop_counter_start + index
        bindings: dict[str, Any] = {
            "loop_iteration": counter,
            "loop.index": index,
            "loop.isFirst": index == 0,
            "loop.isLast": index == count - 1,
            "loop.total": count,
        }
        frame: dict[str, Any] = {
            "index": index,
            "iteration": counter,
            "total": count,
            "isFirst": index == 0,
            "isLast": index == count - 1,
        }

        for loop_var, data in arrays:
            value = data[index] if index < len(data) else None
            bindings[loop_var.variableName] = value
            bindings[f"{loop_var.variableName}Index"] = index
            frame[loop_var.variableName] = value

        if arrays:
            first = arrays[0][1]
            frame["current"] = first[index] if index < len(first) else None
            frame["arrayLength"] = len(first)
        else:
            frame["current"] = index
        return bindings, frame

    async def run(self, context: ExecutionContext, run_body: BodyRunner) -> LoopResult:
        """
        Drive the loop body.

        Args:
            context: The loop node's execution context
            run_body: Runs the body subgraph in an iteration context

        Returns:
            LoopResult with one IterationResult per started iteration

        Raises:
            LoopConfigurationError: If loop variables are declared but none
                yields usable data
        """
        arrays = self.collect_sources(context)
        if self.settings.loop_variables and not arrays:
            raise LoopConfigurationError(
                "No valid array data found for any configured loop variables."
            )

        count = self.iteration_count(arrays)
        result = LoopResult(iteration_count=count)
        batch_size = self.settings.batch_size if self.settings.loop_type == LOOP_TYPE_ASYNC else 1
        logger.info(
            f"[LoopController] {self.node_id}: starting {count} {self.settings.loop_type} iterations "
            f"across {len(arrays)} variable(s) (maxIterations={self.settings.max_iterations}, "
            f"batchSize={batch_size})"
        )

        for batch_start in range(0, count, batch_size):
            if context.cancelled:
                logger.info(f"[LoopController] {self.node_id}: cancelled before iteration {batch_start + 1}")
                result.cancelled = True
                result.stopped_early = True
                break

            indices = range(batch_start, min(batch_start + batch_size, count))
            iterations = await asyncio.gather(*[
                run_body(self._enter_iteration(context, index, count, arrays)) for index in indices
            ])

            failures: list[IterationResult] = []
            for index, iteration in zip(indices, iterations):
                iteration.index = index
                result.iterations.append(iteration)
                if not iteration.success:
                    logger.warning(
                        f"[LoopController] {self.node_id}: iteration {index + 1} failed: "
                        f"{', '.join(iteration.errors.values()) or 'unknown error'}"
                    )
                    failures.append(iteration)

            last_index = indices[-1]
            if failures and self.settings.error_handling == ERROR_HANDLING_STOP:
                result.stopped_early = last_index < count - 1
                aborted = next((it for it in failures if it.aborted), None)
                if aborted is not None:
                    result.success = False
                    result.error = (
                        f"Iteration {aborted.index + 1} failed: "
                        f"{'; '.join(aborted.errors.values()) or 'unknown error'}"
                    )
                break

            if self.settings.delay_ms > 0 and last_index < count - 1:
                await self._sleep(self.settings.delay_ms / 1000)

        logger.info(
            f"[LoopController] {self.node_id}: completed {len(result.iterations)} iterations "
            f"({result.failed_iterations} failed)"
        )
        return result

    def _enter_iteration(
        self,
        context: ExecutionContext,
        index: int,
        count: int,
        arrays: list[tuple[LoopVariable, list[Any]]],
    ) -> ExecutionContext:
        bindings, frame = self.bindings_for(index, count, arrays)
        logger.debug(
            f"[LoopController] {self.node_id}: iteration {index + 1}/{count} "
            f"(loop_iteration={bindings['loop_iteration']})"
        )
        return context.enter_iteration(self.node_id, index, bindings, frame)
