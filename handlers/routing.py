"""
Rule types that pick the next rule set.

Distribution  weighted random choice over ``ruleSetName<i>`` /
              ``percentage<i>`` (i from 0), with ``defaultRuleSetName``
              absorbing whatever the options leave below 100%.
RuleSet       transfer to ``ruleSetName``; ``returnHere: 'true'`` pushes
              the current position onto the return stack first.
Wait          parks the session until the customer speaks or the channel
              reports NOINPUT.
"""
from __future__ import annotations

import random
import structlog
from typing import Optional

from engine.errors import RuleConfigurationError
from handlers.base import RuleHandler, SessionContext
from models.schemas import NO_INPUT, Phase, RuleType, TurnResponse
from state.values import is_empty_string, is_number, to_int, to_number

logger = structlog.get_logger()


def solve_distribution(ctx: SessionContext, rng: random.Random) -> str:
    """Pick a destination rule set from the exported distribution options."""
    option_count = ctx.param("optionCount")
    if not is_number(option_count):
        raise RuleConfigurationError("Invalid Distribution configuration: missing optionCount", ctx.contact_id)

    names: list[str] = []
    percentages: list[float] = []
    for i in range(to_int(option_count)):
        name = ctx.param(f"ruleSetName{i}")
        percentage = ctx.param(f"percentage{i}")
        if is_empty_string(name) or not is_number(percentage):
            raise RuleConfigurationError(f"Invalid Distribution configuration for option: {i}", ctx.contact_id)
        names.append(str(name))
        percentages.append(to_number(percentage))

    total = sum(percentages)
    if total > 100:
        raise RuleConfigurationError(
            f"Invalid Distribution configuration: total percentage {total} exceeds 100", ctx.contact_id,
        )
    if total < 100:
        default = ctx.param("defaultRuleSetName")
        if is_empty_string(default):
            raise RuleConfigurationError(
                "Invalid Distribution configuration: no default rule set name provided", ctx.contact_id,
            )
        names.append(str(default))
        percentages.append(100 - total)

    chosen = rng.choices(names, weights=percentages, k=1)[0]
    logger.info("distribution_selected", contact_id=ctx.contact_id, options=names,
                percentages=percentages, next_rule_set=chosen)
    return chosen


class DistributionHandler(RuleHandler):
    rule_type = RuleType.DISTRIBUTION.value

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.Random()

    async def execute(self, ctx: SessionContext) -> TurnResponse:
        ctx.route_to(solve_distribution(ctx, self.rng))
        return await ctx.respond()


class RuleSetHandler(RuleHandler):
    rule_type = RuleType.RULE_SET.value
    required_params = ("ruleSetName",)

    async def execute(self, ctx: SessionContext) -> TurnResponse:
        self.validate(ctx)
        next_rule_set = ctx.param("ruleSetName")
        ctx.route_to(next_rule_set)

        if ctx.param("returnHere") == "true":
            entry = ctx.services.navigator.push(ctx.state, ctx.state.get("CurrentRuleSet"), ctx.state.get("CurrentRule"))
            logger.info("rule_set_transfer_with_return", contact_id=ctx.contact_id, rule_set=entry.rule_set_name,
                        rule=entry.rule_name, next_rule_set=next_rule_set)

        message = ctx.param("message")
        return await ctx.respond(message if not is_empty_string(message) else None)


class WaitHandler(RuleHandler):
    """
    A timeout (NOINPUT) falls through to the next rule; any customer input
    routes to ``ruleSetName``.
    """
    rule_type = RuleType.WAIT.value
    required_params = ("ruleSetName", "waitTimeSeconds")

    async def execute(self, ctx: SessionContext) -> TurnResponse:
        self.validate(ctx)
        ctx.set_phase(Phase.INPUT)
        return await ctx.respond("Wait: Waiting for customer input or NOINPUT", input_required=True)

    async def input(self, ctx: SessionContext) -> TurnResponse:
        self.validate(ctx)
        text = self.require_input(ctx, "input")
        if text == NO_INPUT:
            logger.info("wait_timed_out", contact_id=ctx.contact_id, rule=ctx.rule.name)
            return await ctx.respond()
        logger.info("wait_interrupted", contact_id=ctx.contact_id, rule=ctx.rule.name,
                    next_rule_set=ctx.param("ruleSetName"))
        ctx.route_to(ctx.param("ruleSetName"))
        return await ctx.respond()
