"""
Bulk state writes.

Both rule types take a list of ``{key, value}`` items whose values were
templated at activation. Items with an empty key or value are skipped.
"""
from __future__ import annotations

import structlog
from typing import Any

from engine.errors import RuleConfigurationError
from handlers.base import RuleHandler, SessionContext
from models.schemas import RuleType, TurnResponse
from state.values import format_number, is_empty_string, is_null_or_undefined, is_number, to_number

logger = structlog.get_logger()

INCREMENT = "increment"


def _items(ctx: SessionContext, param: str, rule_type: str) -> list[dict[str, Any]]:
    items = ctx.param(param)
    if not isinstance(items, list):
        raise RuleConfigurationError(f"{rule_type} missing required config: {param}", ctx.contact_id)
    usable = []
    for item in items:
        if not isinstance(item, dict) or is_empty_string(item.get("key")) or is_empty_string(item.get("value")):
            logger.warning("update_item_skipped", contact_id=ctx.contact_id, rule_type=rule_type, item=item)
            continue
        usable.append(item)
    return usable


class SetAttributesHandler(RuleHandler):
    """Writes ``ContactAttributes.<key>``; 'null' / 'undefined' store None."""
    rule_type = RuleType.SET_ATTRIBUTES.value

    async def execute(self, ctx: SessionContext) -> TurnResponse:
        items = _items(ctx, "setAttributes", self.rule_type)
        attributes = ctx.state.get("ContactAttributes")
        attributes = dict(attributes) if isinstance(attributes, dict) else {}
        for item in items:
            value = item["value"]
            attributes[str(item["key"])] = None if is_null_or_undefined(value) else value
        ctx.set("ContactAttributes", attributes)
        return await ctx.respond()


class UpdateStatesHandler(RuleHandler):
    """
    Writes each key as a dotted state path. ``increment`` adds one to the
    existing numeric value (a missing or non-numeric value counts as 0);
    'null' deletes the key.
    """
    rule_type = RuleType.UPDATE_STATES.value

    async def execute(self, ctx: SessionContext) -> TurnResponse:
        raw = ctx.param("updateStates")
        if not isinstance(raw, list) or not raw:
            raise RuleConfigurationError("UpdateStates missing required config: updateStates", ctx.contact_id)

        for item in _items(ctx, "updateStates", self.rule_type):
            key = str(item["key"])
            value = item["value"]
            if value == "null":
                ctx.set(key)
                continue
            if value == INCREMENT:
                existing = ctx.state.get_path(key)
                value = format_number(to_number(existing) + 1) if is_number(existing) else "1"
            if not ctx.set(key, value):
                logger.warning("update_state_rejected", contact_id=ctx.contact_id, key=key)
        return await ctx.respond()
