"""
Session Stepper — drives the automatic portion of a turn.

Each step:
  1. switch to ``NextRuleSet`` if a rule requested one
  2. ask the navigator for the next activated rule
  3. none left: pop the return stack and retry, or fail when it is empty
  4. export the rule's parameters into ``CurrentRule_*`` and checkpoint
  5. execute the rule

Stepping continues while the executed rule neither asks for input nor
ends the session, and is not a hand-off type (Queue, ExternalNumber,
Terminate). Messages produced by rules that fall through are carried into
the response of the rule that stops the loop.
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Optional

from engine.cache import RuleSetCache
from engine.errors import RuleConfigurationError
from engine.navigator import POP_AND_RESUME
from engine.templating import parse_datetime
from handlers.base import PARAM_PREFIX, EngineServices, SessionContext, merge_prompts
from handlers.registry import HandlerRegistry
from models.schemas import TERMINAL_RULE_TYPES, LookupTables, ReturnStackEntry, Rule, TurnResponse
from state.values import is_empty_string

logger = structlog.get_logger()

NEXT_FLOW_PREFIX = "RulesEngine"


def timestamp(dt: datetime) -> str:
    return dt.isoformat(timespec="milliseconds")


def _elapsed_ms(start: Optional[str], now: datetime) -> int:
    started = parse_datetime(start) if start else None
    if started is None:
        return 0
    return max(int((now - started).total_seconds() * 1000), 0)


class SessionStepper:

    def __init__(self, services: EngineServices, cache: RuleSetCache, registry: HandlerRegistry):
        self.services = services
        self.cache = cache
        self.registry = registry

    # ── Analytics ─────────────────────────────────────────────

    def log_rule_set_start(self, ctx: SessionContext, previous: Optional[str] = None) -> None:
        logger.info("ruleset_start", contact_id=ctx.contact_id, rule_set=ctx.state.get("CurrentRuleSet"),
                    previous=previous, when=ctx.state.get("RuleSetStart"))

    def log_rule_set_end(self, ctx: SessionContext, next_rule_set: Optional[str] = None) -> None:
        current = ctx.state.get("CurrentRuleSet")
        if current is None:
            return
        now = self.services.clock()
        logger.info("ruleset_end", contact_id=ctx.contact_id, rule_set=current, next=next_rule_set,
                    when=timestamp(now), time_cost_ms=_elapsed_ms(ctx.state.get("RuleSetStart"), now))

    def log_rule_start(self, ctx: SessionContext) -> None:
        logger.info("rule_start", contact_id=ctx.contact_id, rule_set=ctx.state.get("CurrentRuleSet"),
                    rule=ctx.state.get("CurrentRule"), rule_type=ctx.state.get("CurrentRuleType"),
                    when=ctx.state.get("RuleStart"))

    def log_rule_end(self, ctx: SessionContext) -> None:
        rule = ctx.state.get("CurrentRule")
        if rule is None:
            return
        now = self.services.clock()
        logger.info("rule_end", contact_id=ctx.contact_id, rule_set=ctx.state.get("CurrentRuleSet"),
                    rule=rule, rule_type=ctx.state.get("CurrentRuleType"), when=timestamp(now),
                    time_cost_ms=_elapsed_ms(ctx.state.get("RuleStart"), now))

    # ── Navigation bookkeeping ────────────────────────────────

    def enter_rule_set(self, ctx: SessionContext, rule_set_name: str) -> None:
        """Start walking ``rule_set_name`` from its first rule."""
        previous = ctx.state.get("CurrentRuleSet")
        ctx.set("CurrentRuleSet", rule_set_name)
        ctx.set("RuleSetStart", timestamp(self.services.clock()))
        ctx.set("NextRuleSet")
        ctx.set("CurrentRule")
        self.log_rule_set_start(ctx, previous)

    def apply_next_rule_set(self, ctx: SessionContext) -> bool:
        """Switch to ``NextRuleSet`` when a rule asked for it."""
        next_rule_set = ctx.state.get("NextRuleSet")
        if is_empty_string(next_rule_set):
            return False
        self.log_rule_end(ctx)
        self.log_rule_set_end(ctx, next_rule_set)
        self.enter_rule_set(ctx, next_rule_set)
        return True

    def resume(self, ctx: SessionContext, entry: ReturnStackEntry) -> None:
        """Continue the calling rule set after the rule that transferred out."""
        logger.info("return_stack_resume", contact_id=ctx.contact_id, from_rule_set=ctx.state.get("CurrentRuleSet"),
                    rule_set=entry.rule_set_name, rule=entry.rule_name)
        self.log_rule_set_end(ctx, entry.rule_set_name)
        ctx.set("CurrentRuleSet", entry.rule_set_name)
        ctx.set("CurrentRule", entry.rule_name)

    @staticmethod
    def prune_rule_state(ctx: SessionContext) -> list[str]:
        """Remove the previous rule's exported parameters and markers."""
        removed = ctx.state.prune_prefix(PARAM_PREFIX)
        for key in ("CurrentRule", "CurrentRuleType", "RuleStart"):
            ctx.set(key)
        return removed

    def export_rule(self, ctx: SessionContext, rule: Rule, lookups: LookupTables) -> None:
        """Publish the rule's resolved parameters as ``CurrentRule_<param>``."""
        self.prune_rule_state(ctx)
        flow = LookupTables.find(lookups.contact_flows, f"{NEXT_FLOW_PREFIX}{rule.type}")
        if flow is not None:
            ctx.set_param("nextFlowArn", flow.arn)
        ctx.set("CurrentRuleType", rule.type)
        ctx.set("CurrentRule", rule.name)
        ctx.set("RuleStart", timestamp(self.services.clock()))
        for key, value in rule.params.items():
            ctx.set_param(key, value)

    # ── Stepping ──────────────────────────────────────────────

    async def next_rule(self, ctx: SessionContext) -> Optional[Rule]:
        """
        Find the next rule to run, popping the return stack as rule sets
        run out. Returns None only when nothing is left anywhere.
        """
        navigator = self.services.navigator
        while True:
            rule_set = await self.cache.get_rule_set(ctx.state.get("CurrentRuleSet"), ctx.contact_id)
            ctx.rule_set = rule_set
            start_index = navigator.next_index(rule_set, ctx.state, ctx.contact_id)
            rule = None
            if start_index != POP_AND_RESUME:
                rule = navigator.find_next_activated(rule_set, start_index, ctx.state, ctx.lookups, ctx.contact_id)
            if rule is not None:
                return rule
            entry = navigator.pop(ctx.state)
            if entry is None:
                return None
            self.resume(ctx, entry)

    async def run_rule(self, ctx: SessionContext, rule: Rule) -> TurnResponse:
        handler = self.registry.get(rule.type, ctx.contact_id)
        ctx.rule = rule
        self.log_rule_end(ctx)
        self.export_rule(ctx, rule, ctx.lookups)
        self.log_rule_start(ctx)
        # Rules that block (Integration) reload state from the store
        await ctx.checkpoint()
        return await handler.execute(ctx)

    async def step(
        self,
        ctx: SessionContext,
        carried: Optional[list[Optional[str]]] = None,
    ) -> TurnResponse:
        """
        Run rules until one needs input, ends the session or hands off.
        ``carried`` holds messages from rules already run this turn.
        """
        messages = list(carried or [])
        ctx.lookups = await self.cache.get_lookups()
        max_steps = self.services.config.max_steps_per_turn

        for _ in range(max_steps):
            self.apply_next_rule_set(ctx)
            rule = await self.next_rule(ctx)
            if rule is None:
                logger.error("no_more_rules", contact_id=ctx.contact_id, rule_set=ctx.state.get("CurrentRuleSet"))
                raise RuleConfigurationError(
                    f"Failed to find next rule and had no return stack in rule set: "
                    f"{ctx.state.get('CurrentRuleSet')}",
                    ctx.contact_id,
                )

            response = await self.run_rule(ctx, rule)
            if not response.continues or rule.type in TERMINAL_RULE_TYPES:
                return await self.finish(ctx, response, messages)
            messages.append(response.message)

        logger.error("max_steps_exceeded", contact_id=ctx.contact_id, max_steps=max_steps,
                     rule_set=ctx.state.get("CurrentRuleSet"))
        raise RuleConfigurationError(
            f"Exceeded {max_steps} automatic rule steps in one turn, check for a rule set loop",
            ctx.contact_id,
        )

    async def finish(self, ctx: SessionContext, response: TurnResponse, messages: list[Optional[str]]) -> TurnResponse:
        """Prefix the stopping rule's message with anything carried over."""
        if not any(not is_empty_string(m) for m in messages):
            return response
        merged = merge_prompts(messages + [response.message])
        return response.model_copy(update={"message": merged, "audio": await ctx.audio(merged)})
