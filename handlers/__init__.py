"""
Dialogue Step Controller — one RuleHandler per rule type.

Quick start:
    from handlers import default_registry
    handler = default_registry().get("DTMFInput")
"""
from __future__ import annotations

import random
from typing import Optional

from handlers.base import EngineServices, RuleHandler, SessionContext, escalate, merge_prompts
from handlers.dtmf import DTMFInputHandler, DTMFMenuHandler
from handlers.integration import IntegrationHandler
from handlers.nlu import NLUInputHandler, NLUMenuHandler, TextInferenceHandler
from handlers.registry import HandlerRegistry
from handlers.routing import DistributionHandler, RuleSetHandler, WaitHandler
from handlers.terminal import (
    ExternalNumberHandler, MessageHandler, MetricHandler, QueueHandler, SMSMessageHandler, TerminateHandler,
)
from handlers.updates import SetAttributesHandler, UpdateStatesHandler


def default_registry(rng: Optional[random.Random] = None) -> HandlerRegistry:
    """Registry with every built-in rule type."""
    registry = HandlerRegistry()
    for handler in (
        DTMFInputHandler(),
        DTMFMenuHandler(),
        NLUInputHandler(),
        NLUMenuHandler(),
        TextInferenceHandler(),
        DistributionHandler(rng),
        RuleSetHandler(),
        WaitHandler(),
        IntegrationHandler(),
        SetAttributesHandler(),
        UpdateStatesHandler(),
        MessageHandler(),
        MetricHandler(),
        QueueHandler(),
        ExternalNumberHandler(),
        TerminateHandler(),
        SMSMessageHandler(),
    ):
        registry.register(handler)
    return registry


__all__ = [
    "EngineServices", "RuleHandler", "SessionContext", "HandlerRegistry", "default_registry",
    "escalate", "merge_prompts",
]
