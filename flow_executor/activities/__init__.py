"""Node behaviors (the action invoker) for the flow executor."""

from .registry import ActionRegistry, FunctionAction, NodeBehavior
from .condition import ConditionAction
from .data_filter import DataFilterAction
from .delay import DelayAction
from .http_request import HttpRequestAction
from .logger import LoggerAction
from .publish_event import PublishEventAction
from .response import ResponseAction
from .set_variable import SetVariableAction
from .trigger import StartAction


def default_registry() -> ActionRegistry:
    """A registry holding every built-in node behavior."""
    registry = ActionRegistry()
    registry.register(StartAction(), "trigger")
    registry.register(ConditionAction())
    registry.register(HttpRequestAction())
    registry.register(SetVariableAction())
    registry.register(DelayAction())
    registry.register(LoggerAction())
    registry.register(ResponseAction())
    registry.register(DataFilterAction())
    registry.register(PublishEventAction())
    return registry


__all__ = [
    "ActionRegistry",
    "FunctionAction",
    "NodeBehavior",
    "ConditionAction",
    "DataFilterAction",
    "DelayAction",
    "HttpRequestAction",
    "LoggerAction",
    "PublishEventAction",
    "ResponseAction",
    "SetVariableAction",
    "StartAction",
    "default_registry",
]
