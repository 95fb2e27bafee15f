"""
Rule Navigator — finds the next activated rule and manages the return stack.

Navigation state lives in the session's state document:
  CurrentRuleSet   name of the rule set being walked
  CurrentRule      name of the last rule executed (unset at rule-set start)
  ReturnStack      LIFO list of {ruleSetName, ruleName} to resume callers

Reaching the end of a rule set (or finding no activated rule) with a
non-empty return stack is not an error: the caller pops the stack and
resumes the calling rule set after the rule that transferred out.
"""
from __future__ import annotations

import structlog
from typing import Optional

from engine.errors import RuleConfigurationError
from engine.lookup import lookup_params
from engine.templating import TemplateRenderer, template_rule
from engine.weights import DEFAULT_MOBILE_PREFIX, test_rule
from models.schemas import LookupTables, ReturnStackEntry, Rule, RuleSet
from state.document import StateDocument

logger = structlog.get_logger()

# Returned by next_index() when the rule set is exhausted and the stack can resume
POP_AND_RESUME = -1

RETURN_STACK_KEY = "ReturnStack"


class RuleNavigator:
    """Walks a rule set in order, scoring weights to find the next rule."""

    def __init__(
        self,
        renderer: TemplateRenderer,
        resource_prefix: str = "",
        mobile_prefix: str = DEFAULT_MOBILE_PREFIX,
    ):
        self.renderer = renderer
        self.resource_prefix = resource_prefix
        self.mobile_prefix = mobile_prefix

    # ── Index computation ─────────────────────────────────────

    def next_index(self, rule_set: RuleSet, state: StateDocument, contact_id: str = "") -> int:
        """
        Index to resume scanning from: 0 at rule-set start, else the index
        after CurrentRule. Returns POP_AND_RESUME when the rule set is
        exhausted and the return stack is not empty.
        """
        current_rule = state.get("CurrentRule")
        start_index = 0
        if current_rule is not None:
            index = rule_set.rule_index(current_rule)
            if index < 0:
                logger.error("rule_not_found", contact_id=contact_id, rule_set=rule_set.name, rule=current_rule)
                raise RuleConfigurationError(
                    f"Failed to locate rule by name: {current_rule} on rule set: {rule_set.name}",
                    contact_id,
                )
            start_index = index + 1

        if start_index >= len(rule_set.rules):
            if self.peek(state) is not None:
                return POP_AND_RESUME
            logger.error("rule_set_dead_end", contact_id=contact_id, rule_set=rule_set.name)
            raise RuleConfigurationError(
                f"Reached the end of rule set: {rule_set.name} with no return stack",
                contact_id,
            )
        return start_index

    def find_next_activated(
        self,
        rule_set: RuleSet,
        start_index: int,
        state: StateDocument,
        lookups: LookupTables,
        contact_id: str = "",
    ) -> Optional[Rule]:
        """
        Scan forward from ``start_index`` and return a templated, looked-up
        copy of the first activated rule, or None when the scan runs off
        the end of the rule set.
        """
        for rule in rule_set.rules[start_index:]:
            result = test_rule(rule, state, self.renderer, self.mobile_prefix)
            if not result.activated:
                continue
            logger.debug(
                "rule_activated",
                contact_id=contact_id,
                rule_set=rule_set.name,
                rule=rule.name,
                score=result.score,
                activation=rule.activation,
            )
            activated = template_rule(rule, state, self.renderer)
            lookup_params(activated.params, lookups, self.resource_prefix)
            return activated

        logger.info("no_activated_rule", contact_id=contact_id, rule_set=rule_set.name, start_index=start_index)
        return None

    # ── Return stack ──────────────────────────────────────────

    @staticmethod
    def _stack(state: StateDocument) -> list:
        stack = state.get(RETURN_STACK_KEY)
        return list(stack) if isinstance(stack, list) else []

    def peek(self, state: StateDocument) -> Optional[ReturnStackEntry]:
        stack = self._stack(state)
        if not stack:
            return None
        return ReturnStackEntry.model_validate(stack[-1])

    def push(self, state: StateDocument, rule_set_name: str, rule_name: str) -> ReturnStackEntry:
        entry = ReturnStackEntry(rule_set_name=rule_set_name, rule_name=rule_name)
        stack = self._stack(state)
        stack.append(entry.to_state())
        state.update(RETURN_STACK_KEY, stack)
        logger.info("return_stack_pushed", rule_set=rule_set_name, rule=rule_name, depth=len(stack))
        return entry

    def pop(self, state: StateDocument) -> Optional[ReturnStackEntry]:
        stack = self._stack(state)
        if not stack:
            return None
        entry = ReturnStackEntry.model_validate(stack.pop())
        state.update(RETURN_STACK_KEY, stack)
        logger.info("return_stack_popped", rule_set=entry.rule_set_name, rule=entry.rule_name, depth=len(stack))
        return entry
