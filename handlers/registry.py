"""
Handler Registry — maps a rule-type tag to its RuleHandler.

Usage:
    registry = default_registry()
    handler = registry.get(rule.type)
    response = await handler.execute(ctx)
"""
from __future__ import annotations

import structlog

from engine.errors import RuleConfigurationError
from handlers.base import RuleHandler

logger = structlog.get_logger()


class HandlerRegistry:

    def __init__(self):
        self._handlers: dict[str, RuleHandler] = {}

    def register(self, handler: RuleHandler) -> None:
        if not handler.rule_type:
            logger.error("handler_missing_rule_type", handler=type(handler).__name__)
            raise ValueError(f"{type(handler).__name__} does not declare a rule_type")
        if handler.rule_type in self._handlers:
            logger.warning("handler_replaced", rule_type=handler.rule_type)
        self._handlers[handler.rule_type] = handler

    def get(self, rule_type: str, contact_id: str = "") -> RuleHandler:
        handler = self._handlers.get(rule_type)
        if handler is None:
            logger.error("unknown_rule_type", rule_type=rule_type, contact_id=contact_id)
            raise RuleConfigurationError(f"Unhandled rule type: {rule_type}", contact_id)
        return handler

    def __contains__(self, rule_type: str) -> bool:
        return rule_type in self._handlers

    @property
    def rule_types(self) -> list[str]:
        return sorted(self._handlers)
