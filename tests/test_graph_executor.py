from __future__ import annotations

import asyncio

import pytest

from flow_executor.activities import default_registry
from flow_executor.core.config import config
from flow_executor.core.errors import ActionError, FlowValidationError
from flow_executor.core.types import FlowDocument, NodeState, RunStatus
from flow_executor.workflows.graph_executor import GraphExecutor


def _flow(nodes, edges):
    return FlowDocument.model_validate({
        "nodes": nodes,
        "edges": [
            {"id": f"e{i}", "source": e[0], "target": e[1], **({"branch": e[2]} if len(e) > 2 else {})}
            for i, e in enumerate(edges)
        ],
        "trigger": "onClick",
        "componentId": "button-1",
    })


def _node(node_id, kind="capture", config=None, **extra):
    return {"id": node_id, "kind": kind, "config": config or {}, **extra}


def _executor(calls):
    """Default behaviors plus test kinds that record what they were called with."""
    registry = default_registry()

    @registry.action("capture")
    async def capture(config, context):
        calls.append(("capture", dict(config)))
        return {"success": True, **config}

    @registry.action("explode")
    async def explode(config, context):
        calls.append(("explode", dict(config)))
        raise ActionError(config.get("message") or "boom")

    @registry.action("yield-then-capture")
    async def yield_then_capture(config, context):
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        calls.append(("yield-then-capture", dict(config)))
        return {"success": True, **config}

    @registry.action("cancel-run")
    async def cancel_run(config, context):
        context.journal.cancel()
        return {"success": True}

    return GraphExecutor(registry=registry)


def _run(flow, calls=None, **kwargs):
    calls = calls if calls is not None else []
    return asyncio.run(_executor(calls).run(flow, env={}, **kwargs))


def _condition_flow(condition_config):
    return _flow(
        [
            _node("start", "start"),
            _node("check", "condition", condition_config),
            _node("A", config={"path": "A"}),
            _node("B", config={"path": "B"}),
        ],
        [("start", "check"), ("check", "A", "true"), ("check", "B", "false")],
    )


CASE_CONFIG = {
    "multipleConditions": True,
    "returnType": "boolean",
    "cases": [{
        "id": "c1",
        "leftOperand": "{{start.count}}",
        "operator": "greaterThan",
        "rightOperand": "5",
        "returnValue": "true",
    }],
}


@pytest.mark.parametrize("config", [CASE_CONFIG, {"condition": "{{start.count}} > 5"}])
def test_condition_selects_exactly_one_branch(config):
    flow = _condition_flow(config)

    outcome = _run(flow, trigger_data={"count": 10})
    assert outcome.status == RunStatus.SUCCEEDED
    assert "A" in outcome.context and "B" not in outcome.context
    assert outcome.context["check"]["result"] is True

    outcome = _run(flow, trigger_data={"count": 3})
    assert "B" in outcome.context and "A" not in outcome.context
    assert outcome.context["check"]["result"] is False


def test_string_condition_routes_by_case_id_or_else():
    config = {
        "multipleConditions": True,
        "returnType": "string",
        "cases": [
            {"id": "gold", "leftOperand": "{{start.tier}}", "operator": "equals",
             "rightOperand": "gold", "returnValue": "premium"},
            {"id": "silver", "leftOperand": "{{start.tier}}", "operator": "equals",
             "rightOperand": "silver", "returnValue": "standard"},
        ],
    }
    flow = _flow(
        [_node("start", "start"), _node("check", "condition", config),
         _node("G"), _node("S"), _node("E")],
        [("start", "check"), ("check", "G", "gold"), ("check", "S", "standard"), ("check", "E", "else")],
    )

    assert set(_run(flow, trigger_data={"tier": "gold"}).context) == {"start", "check", "G"}
    # tag may also be the case's return value
    assert set(_run(flow, trigger_data={"tier": "silver"}).context) == {"start", "check", "S"}
    assert set(_run(flow, trigger_data={"tier": "bronze"}).context) == {"start", "check", "E"}


def test_start_node_emits_trigger_payload():
    flow = _flow([_node("start", "start"), _node("A", config={"n": "{{start.count}}"})], [("start", "A")])
    calls = []
    outcome = _run(flow, calls, trigger_data={"count": 7})
    assert calls == [("capture", {"n": 7})]
    assert outcome.context["start"]["payload"] == {"count": 7}


def test_continue_policy_records_failure_and_keeps_going():
    flow = _flow(
        [_node("start", "start"), _node("boom", "explode", failurePolicy="continue"),
         _node("after", config={"failed": "{{boom._failedNode}}"})],
        [("start", "boom"), ("boom", "after")],
    )
    calls = []
    outcome = _run(flow, calls)

    assert outcome.status == RunStatus.SUCCEEDED
    assert outcome.context["boom"]["success"] is False
    assert outcome.context["boom"]["_failedNode"] is True
    assert outcome.context["boom"]["error"] == "boom"
    assert ("capture", {"failed": True}) in calls
    assert outcome.failedNodeIds == ["boom"]
    assert outcome.nodeStates["boom"] == NodeState.FAILED
    assert outcome.nodeStates["after"] == NodeState.COMPLETED


def test_stop_policy_fails_run_and_skips_successors():
    flow = _flow(
        [_node("start", "start"), _node("boom", "explode"), _node("after")],
        [("start", "boom"), ("boom", "after")],
    )
    calls = []
    outcome = _run(flow, calls)

    assert outcome.status == RunStatus.FAILED
    assert outcome.failedNodeIds == ["boom"]
    assert outcome.errors == {"boom": "boom"}
    assert "_failedNode" not in outcome.context["boom"]
    assert "after" not in outcome.context
    assert outcome.nodeStates["after"] == NodeState.UNVISITED
    assert all(kind != "capture" for kind, _ in calls)


def test_failed_branch_does_not_cancel_sibling():
    flow = _flow(
        [_node("start", "start"), _node("boom", "explode"), _node("ok"), _node("ok2")],
        [("start", "boom"), ("start", "ok"), ("ok", "ok2")],
    )
    outcome = _run(flow)
    assert outcome.status == RunStatus.FAILED
    assert "ok2" in outcome.context


def test_fan_out_branches_do_not_see_each_others_writes():
    flow = _flow(
        [
            _node("start", "start"),
            _node("slow", "yield-then-capture", {"v": "slow"}),
            _node("slowNext", config={"seen": "{{fast.v}}"}),
            _node("fast", config={"v": "fast"}),
        ],
        [("start", "slow"), ("start", "fast"), ("slow", "slowNext")],
    )
    calls = []
    outcome = _run(flow, calls)

    assert ("capture", {"seen": None}) in calls
    # the run-wide context still holds both branches
    assert outcome.context["fast"]["v"] == "fast"
    assert outcome.context["slowNext"]["seen"] is None


def test_diamond_join_runs_once():
    flow = _flow(
        [_node("start", "start"), _node("a"), _node("b"), _node("join", config={"tag": "join"})],
        [("start", "a"), ("start", "b"), ("a", "join"), ("b", "join")],
    )
    calls = []
    outcome = _run(flow, calls)
    assert calls.count(("capture", {"tag": "join"})) == 1
    assert outcome.status == RunStatus.SUCCEEDED


def test_cycle_outside_loop_terminates():
    flow = _flow(
        [_node("start", "start"), _node("a", config={"tag": "a"}), _node("b", config={"tag": "b"})],
        [("start", "a"), ("a", "b"), ("b", "a")],
    )
    calls = []
    _run(flow, calls)
    assert calls == [("capture", {"tag": "a"}), ("capture", {"tag": "b"})]


def test_cancellation_stops_new_nodes():
    flow = _flow(
        [_node("start", "start"), _node("stopper", "cancel-run"), _node("after")],
        [("start", "stopper"), ("stopper", "after")],
    )
    outcome = _run(flow)
    assert outcome.status == RunStatus.CANCELLED
    # partial context is kept
    assert outcome.context["stopper"]["success"] is True
    assert "after" not in outcome.context


def test_invalid_flow_is_rejected_before_running():
    flow = _flow([_node("s1", "start"), _node("s2", "start"), _node("a")], [("s1", "a"), ("a", "ghost")])
    calls = []
    with pytest.raises(FlowValidationError) as exc_info:
        _run(flow, calls)
    assert any("2 start nodes" in p for p in exc_info.value.problems)
    assert any("ghost" in p for p in exc_info.value.problems)
    assert calls == []


def test_flow_without_start_is_rejected():
    with pytest.raises(FlowValidationError):
        _run(_flow([_node("a")], []))


def test_loop_runs_body_per_item_then_continues_after():
    flow = _flow(
        [
            _node("start", "start"),
            _node("fetch", "set-variable", {"variableName": "items", "value": ["a", "b", "c"]}),
            _node("loop1", "loop", {
                "loopVariables": [
                    {"id": "v1", "variableName": "item", "sourceNodeId": "fetch", "sourceField": "items"},
                ],
                "maxIterations": 500,
            }),
            _node("body", config={"item": "{{item}}", "index": "{{itemIndex}}", "n": "{{loop_iteration}}"}),
            _node("done", config={"total": "{{loop1.iterationCount}}"}),
        ],
        [("start", "fetch"), ("fetch", "loop1"), ("loop1", "body", "each"), ("loop1", "done", "after")],
    )
    calls = []
    outcome = _run(flow, calls)

    body_calls = [c for k, c in calls if "item" in c]
    assert [c["item"] for c in body_calls] == ["a", "b", "c"]
    assert [c["index"] for c in body_calls] == [0, 1, 2]
    assert [c["n"] for c in body_calls] == [1, 2, 3]
    assert ("capture", {"total": 3}) in calls
    assert outcome.context["loop1"]["success"] is True
    assert len(outcome.context["loop1"]["results"]) == 3
    assert outcome.context["loop1"]["results"][2]["output"]["body"]["item"] == "c"
    assert outcome.status == RunStatus.SUCCEEDED


def test_loop_stop_mode_fails_loop_node():
    flow = _flow(
        [
            _node("start", "start"),
            _node("loop1", "loop", {"maxIterations": 3, "errorHandling": "stop"}),
            _node("body", "explode"),
            _node("done"),
        ],
        [("start", "loop1"), ("loop1", "body", "each"), ("loop1", "done", "after")],
    )
    calls = []
    outcome = _run(flow, calls)

    assert [k for k, _ in calls] == ["explode"]
    assert outcome.status == RunStatus.FAILED
    assert set(outcome.failedNodeIds) == {"body", "loop1"}
    assert outcome.context["loop1"]["stoppedEarly"] is True
    assert "done" not in outcome.context


def test_loop_continue_mode_keeps_loop_node_succeeded():
    flow = _flow(
        [
            _node("start", "start"),
            _node("loop1", "loop", {"maxIterations": 3, "errorHandling": "continue"}),
            _node("body", "explode"),
            _node("done"),
        ],
        [("start", "loop1"), ("loop1", "body", "each"), ("loop1", "done", "after")],
    )
    calls = []
    outcome = _run(flow, calls)

    assert [k for k, _ in calls] == ["explode", "explode", "explode", "capture"]
    assert outcome.context["loop1"]["success"] is True
    assert outcome.context["loop1"]["failedIterations"] == 3
    assert outcome.status == RunStatus.SUCCEEDED
    assert outcome.failedNodeIds == ["body"]


def test_loop_delay_uses_injected_sleep():
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    calls = []
    executor = _executor(calls)
    executor._sleep = fake_sleep
    flow = _flow(
        [_node("start", "start"), _node("loop1", "loop", {"maxIterations": 3, "delayMs": 100}), _node("body")],
        [("start", "loop1"), ("loop1", "body", "each")],
    )
    asyncio.run(executor.run(flow, env={}))
    assert sleeps == [0.1, 0.1]
    assert len(calls) == 3


def test_disabled_node_is_skipped():
    flow = _flow(
        [_node("start", "start"), _node("off", config={"tag": "off"}, disabled=True), _node("on", config={"tag": "on"})],
        [("start", "off"), ("off", "on")],
    )
    calls = []
    outcome = _run(flow, calls)
    assert calls == [("capture", {"tag": "on"})]
    assert "off" not in outcome.context


def test_missing_required_field_fails_node():
    flow = _flow(
        [_node("start", "start"), _node("call", "http-request", {"url": "{{start.missing}}"}, failurePolicy="continue")],
        [("start", "call")],
    )
    outcome = _run(flow)
    assert outcome.context["call"]["error"] == "Missing required fields: url"
    assert outcome.context["call"]["errorDetails"] == {"missingFields": ["url"]}


def test_unknown_kind_fails_node():
    flow = _flow([_node("start", "start"), _node("mystery", "teleport")], [("start", "mystery")])
    outcome = _run(flow)
    assert outcome.status == RunStatus.FAILED
    assert outcome.errors["mystery"] == "Unknown node kind: teleport"


def test_response_node_becomes_run_output():
    flow = _flow(
        [_node("start", "start"), _node("reply", "response", {"statusCode": "201", "body": {"id": "{{start.id}}"}})],
        [("start", "reply")],
    )
    outcome = _run(flow, trigger_data={"id": 42})
    assert outcome.output["statusCode"] == 201
    assert outcome.output["body"] == {"id": 42}


def test_flow_variables_and_env_are_bindable():
    flow = _flow(
        [_node("start", "start"), _node("a", config={"limit": "{{limit}}", "url": "{{env.BASE_URL}}/x"})],
        [("start", "a")],
    )
    calls = []
    asyncio.run(_executor(calls).run(
        flow,
        flow_variables={"limit": 5},
        env={"BASE_URL": "https://example.com"},
        secrets={},
    ))
    assert calls == [("capture", {"limit": 5, "url": "https://example.com/x"})]


def test_run_logs_are_chronological():
    flow = _flow([_node("start", "start"), _node("a")], [("start", "a")])
    outcome = _run(flow)
    assert [(log.nodeId, log.type) for log in outcome.logs] == [
        ("start", "info"), ("start", "success"), ("a", "info"), ("a", "success"),
    ]


def test_failed_condition_with_continue_policy_takes_false_branch():
    flow = _flow(
        [
            _node("start", "start"),
            _node("check", "condition", {"condition": "this is not CEL ((("}, failurePolicy="continue"),
            _node("A"),
            _node("B"),
        ],
        [("start", "check"), ("check", "A", "true"), ("check", "B", "false")],
    )
    outcome = _run(flow)
    assert outcome.context["check"]["_failedNode"] is True
    assert "Condition evaluation failed" in outcome.context["check"]["error"]
    assert "B" in outcome.context and "A" not in outcome.context


def test_body_edge_back_to_loop_node_ends_iteration():
    flow = _flow(
        [
            _node("start", "start"),
            _node("gen", "set-variable", {"variableName": "items", "value": ["a", "b"]}),
            _node("loop1", "loop", {
                "loopVariables": [
                    {"id": "v1", "variableName": "item", "sourceNodeId": "gen", "sourceField": "items"},
                ],
            }),
            _node("body", config={"item": "{{item}}"}),
            _node("done", config={"tag": "done"}),
        ],
        [
            ("start", "gen"), ("gen", "loop1"), ("loop1", "body", "each"),
            ("body", "loop1"), ("loop1", "done", "after"),
        ],
    )
    calls = []
    outcome = _run(flow, calls)

    assert calls == [("capture", {"item": "a"}), ("capture", {"item": "b"}), ("capture", {"tag": "done"})]
    assert outcome.status == RunStatus.SUCCEEDED
    assert outcome.context["loop1"]["iterationCount"] == 2


def test_nested_loop_back_edge_to_outer_loop_ends_inner_iteration():
    flow = _flow(
        [
            _node("start", "start"),
            _node("outer", "loop", {"maxIterations": 2}),
            _node("inner", "loop", {"maxIterations": 2}),
            _node("body", config={"o": "{{outer._loop.index}}", "i": "{{inner._loop.index}}"}),
        ],
        [("start", "outer"), ("outer", "inner", "each"), ("inner", "body", "each"), ("body", "outer")],
    )
    calls = []
    outcome = _run(flow, calls)

    assert [c for _, c in calls] == [
        {"o": 0, "i": 0}, {"o": 0, "i": 1}, {"o": 1, "i": 0}, {"o": 1, "i": 1},
    ]
    assert outcome.status == RunStatus.SUCCEEDED


def test_process_environment_is_hidden_from_bindings(monkeypatch):
    monkeypatch.setenv("FLOW_TEST_SERVER_SECRET", "s3cr3t-service-key")
    monkeypatch.setattr(config, "EXPOSE_PROCESS_ENV", False)
    flow = _flow(
        [_node("start", "start"), _node("a", config={"leak": "{{env.FLOW_TEST_SERVER_SECRET}}"})],
        [("start", "a")],
    )
    calls = []
    _run(flow, calls)
    assert calls == [("capture", {"leak": None})]


def test_process_environment_is_visible_when_exposed(monkeypatch):
    monkeypatch.setenv("FLOW_TEST_REGION", "eu-west-1")
    monkeypatch.setattr(config, "EXPOSE_PROCESS_ENV", True)
    flow = _flow(
        [_node("start", "start"), _node("a", config={"region": "{{env.FLOW_TEST_REGION}}"})],
        [("start", "a")],
    )
    calls = []
    _run(flow, calls)
    assert calls == [("capture", {"region": "eu-west-1"})]


def test_ordinary_node_ignores_tagged_edges():
    flow = _flow(
        [_node("start", "start"), _node("a", config={"tag": "a"}), _node("b", config={"tag": "b"}), _node("c", config={"tag": "c"})],
        [("start", "a"), ("a", "b"), ("a", "c", "true")],
    )
    calls = []
    outcome = _run(flow, calls)
    assert calls == [("capture", {"tag": "a"}), ("capture", {"tag": "b"})]
    assert outcome.nodeStates["c"] == NodeState.UNVISITED


def test_async_loop_runs_batches_and_keeps_index_order():
    flow = _flow(
        [
            _node("start", "start"),
            _node("gen", "set-variable", {"variableName": "items", "value": [1, 2, 3, 4, 5]}),
            _node("loop1", "loop", {
                "loopType": "async",
                "batchSize": 2,
                "loopVariables": [
                    {"id": "v1", "variableName": "item", "sourceNodeId": "gen", "sourceField": "items"},
                ],
            }),
            _node("body", "yield-then-capture", {"item": "{{item}}"}),
        ],
        [("start", "gen"), ("gen", "loop1"), ("loop1", "body", "each")],
    )
    calls = []
    outcome = _run(flow, calls)

    assert sorted(c["item"] for _, c in calls) == [1, 2, 3, 4, 5]
    results = outcome.context["loop1"]["results"]
    assert [r["index"] for r in results] == [0, 1, 2, 3, 4]
    assert [r["output"]["body"]["item"] for r in results] == [1, 2, 3, 4, 5]
    assert outcome.status == RunStatus.SUCCEEDED
