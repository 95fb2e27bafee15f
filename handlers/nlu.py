"""
Natural-language rule types.

NLUInput       captures a single slot value (date, number, phone, time...)
               through an NLU bot, validates it, then confirms it with the
               yes/no bot unless auto-confirm applies.
NLUMenu        classifies free text into one of several intents, each
               mapped to a destination rule set.
TextInference  unattended: classifies ``input`` and routes when the
               matched intent reaches its confidence threshold, otherwise
               falls through.
"""
from __future__ import annotations

import re
import structlog
from datetime import date, datetime, time
from typing import Any, Callable, Optional

from backend.nlu import FALLBACK_INTENT
from engine.errors import RuleConfigurationError
from handlers.base import (
    RuleHandler, SessionContext, error_count, error_message, escalate, merge_prompts, record_error,
)
from models.schemas import NO_INPUT, NO_MATCH, IntentResult, Phase, RuleType, TurnResponse
from state.values import is_empty_string, is_number, to_int, to_number

logger = structlog.get_logger()

NO_DATA_INTENT = "nodata"
DATA_INTENT = "intentdata"
YES_INTENT = "Yes"


async def classify_utterance(ctx: SessionContext, bot_name: str, text: Optional[str]) -> IntentResult:
    """
    Classify ``text`` with the named bot. Channel sentinels never reach the
    classifier: no input becomes ``nodata``, no match becomes the fallback.
    """
    if text is None or text == "" or text == NO_INPUT:
        return IntentResult(intent=NO_DATA_INTENT, confidence=1.0)
    if text == NO_MATCH:
        return IntentResult(intent=FALLBACK_INTENT, confidence=0.0)
    return await ctx.classify(bot_name, text)


def _threshold(value: Any) -> float:
    return to_number(value) if is_number(value) else 0.0


# ──────────────────────────────────────────────────────────────
#  Slot validation
# ──────────────────────────────────────────────────────────────

_PHONE_DIGITS = re.compile(r"^\+?[0-9]+$")


def _parse_date(value: str) -> date:
    return date.fromisoformat(value.strip())


def _parse_time(value: str) -> time:
    return datetime.strptime(value.strip(), "%H:%M").time()


def _parse_number(value: str) -> float:
    if not is_number(value):
        raise ValueError(f"not a number: {value}")
    return to_number(value)


def _parse_phone(value: str) -> int:
    digits = re.sub(r"[\s-]", "", value)
    if not _PHONE_DIGITS.match(digits):
        raise ValueError(f"not a phone number: {value}")
    return len(digits.lstrip("+"))


# data type → (value parser, bound parser); phone bounds are digit counts
_SLOT_PARSERS: dict[str, tuple[Callable[[str], Any], Callable[[str], Any]]] = {
    "date": (_parse_date, _parse_date),
    "number": (_parse_number, _parse_number),
    "phone": (_parse_phone, _parse_number),
    "time": (_parse_time, _parse_time),
}


def validate_slot(data_type: Any, value: str, min_value: Any = None, max_value: Any = None) -> bool:
    """
    Second validation pass over a classified slot value, with optional
    inclusive bounds. Data types without a parser always pass.
    """
    parsers = _SLOT_PARSERS.get(str(data_type or "").lower())
    if parsers is None:
        return True
    parse_value, parse_bound = parsers
    try:
        parsed = parse_value(value)
        if not is_empty_string(min_value) and parsed < parse_bound(str(min_value)):
            return False
        if not is_empty_string(max_value) and parsed > parse_bound(str(max_value)):
            return False
    except ValueError:
        return False
    return True


# ──────────────────────────────────────────────────────────────
#  NLUInput
# ──────────────────────────────────────────────────────────────

class NLUInputHandler(RuleHandler):
    rule_type = RuleType.NLU_INPUT.value
    required_params = ("inputCount", "dataType", "lexBotName", "outputStateKey", "offerMessage", "errorMessage1")

    def validate(self, ctx: SessionContext, extra: tuple[str, ...] = ()) -> None:
        super().validate(ctx, extra)

        if ctx.param("autoConfirm") == "true" and is_empty_string(ctx.param("autoConfirmMessage")):
            raise RuleConfigurationError(
                "NLUInput auto confirm is enabled but no autoConfirmMessage was provided", ctx.contact_id,
            )

        confidence = ctx.param("autoConfirmConfidence")
        if not is_empty_string(confidence) and not 0 <= self.require_number(ctx, "autoConfirmConfidence") <= 1:
            raise RuleConfigurationError(
                "NLUInput autoConfirmConfidence must be between 0.0 and 1.0", ctx.contact_id,
            )

        input_count = self.require_number(ctx, "inputCount")
        if not 1 <= input_count <= 3:
            raise RuleConfigurationError("NLUInput inputCount must be between 1 and 3", ctx.contact_id)
        for count in range(2, int(input_count) + 1):
            if is_empty_string(ctx.param(f"errorMessage{count}")):
                raise RuleConfigurationError(
                    f"NLUInput inputCount {int(input_count)} requires errorMessage{count}", ctx.contact_id,
                )

    def _log(self, ctx: SessionContext, result: str, intent: IntentResult, slot_value: Optional[str] = None):
        logger.info(
            "nlu_input",
            contact_id=ctx.contact_id,
            rule_set=ctx.rule_set.name if ctx.rule_set else None,
            rule=ctx.rule.name if ctx.rule else None,
            data_type=ctx.param("dataType"),
            intent=intent.intent,
            confidence=intent.confidence,
            slot_value=slot_value,
            result=result,
        )

    async def execute(self, ctx: SessionContext) -> TurnResponse:
        self.validate(ctx)
        ctx.set_phase(Phase.INPUT)
        return await ctx.respond(ctx.param("offerMessage"), input_required=True)

    async def input(self, ctx: SessionContext) -> TurnResponse:
        self.validate(ctx)
        text = self.require_input(ctx, "input")
        output_key = ctx.param("outputStateKey")
        ctx.update_system("LastNLUInputSlot")

        result = await classify_utterance(ctx, ctx.param("lexBotName"), text)
        slot_value = None

        if result.intent == NO_DATA_INTENT:
            no_input_rule_set = ctx.param("noInputRuleSetName")
            if not is_empty_string(no_input_rule_set):
                ctx.route_to(no_input_rule_set)
                ctx.set(output_key)
                self._log(ctx, "NOINPUT", result)
                return await ctx.respond(intent=result.intent, confidence=result.confidence)
            logger.info("nlu_nodata_without_rule_set", contact_id=ctx.contact_id, rule=ctx.rule.name)

        elif result.intent == DATA_INTENT:
            slot_value = result.slot_value()
            if slot_value is not None and not validate_slot(
                ctx.param("dataType"), slot_value, ctx.param("minValue"), ctx.param("maxValue"),
            ):
                logger.info("nlu_slot_rejected", contact_id=ctx.contact_id, rule=ctx.rule.name,
                            data_type=ctx.param("dataType"), slot_value=slot_value)
                slot_value = None

        if slot_value is not None:
            ctx.set_phase(Phase.CONFIRM)
            ctx.set_param("validInput", "true")
            ctx.set_param("slotValue", slot_value)

            auto_confirm = ctx.param("autoConfirm") == "true"
            if auto_confirm and result.confidence >= _threshold(ctx.param("autoConfirmConfidence")):
                ctx.set(output_key, slot_value)
                ctx.update_system("LastNLUInputSlot", slot_value)
                message = ctx.render(ctx.param("autoConfirmMessage"))
                self._log(ctx, "AUTO_CONFIRM", result, slot_value)
                return await ctx.respond(
                    message, intent=result.intent, confidence=result.confidence,
                    slots=result.slots, slot_value=slot_value,
                )

            preview = ctx.state.clone()
            preview.update(output_key, slot_value)
            confirmation = ctx.render(ctx.param("confirmationMessage"), preview)
            self._log(ctx, "MANUAL_CONFIRM", result, slot_value)
            return await ctx.respond(
                confirmation, input_required=True, intent=result.intent,
                confidence=result.confidence, slots=result.slots, slot_value=slot_value,
            )

        count = record_error(ctx)
        ctx.set_param("validInput", "false")
        ctx.set(output_key)
        message = error_message(ctx, count)
        self._log(ctx, "INVALID_INPUT", result)

        if count >= to_int(ctx.param("inputCount")):
            return await escalate(ctx, message, ctx.param("errorRuleSetName"))
        return await ctx.respond(
            merge_prompts([message, ctx.param("offerMessage")]), input_required=True,
            intent=result.intent, confidence=result.confidence,
        )

    async def confirm(self, ctx: SessionContext) -> TurnResponse:
        self.validate(ctx)
        text = self.require_input(ctx, "confirm")
        slot_value = ctx.param("slotValue")
        if slot_value is None:
            raise RuleConfigurationError("NLUInput.confirm() has no captured slot value", ctx.contact_id)

        result = await classify_utterance(ctx, ctx.config.yes_no_bot_name, text)

        if result.intent == YES_INTENT:
            ctx.set(ctx.param("outputStateKey"), slot_value)
            ctx.update_system("LastNLUInputSlot", slot_value)
            return await ctx.respond(intent=result.intent, confidence=result.confidence)

        logger.info("nlu_confirm_rejected", contact_id=ctx.contact_id, rule=ctx.rule.name, intent=result.intent)
        count = record_error(ctx)
        message = error_message(ctx, count)
        if count >= to_int(ctx.param("inputCount")):
            return await escalate(ctx, message, ctx.param("errorRuleSetName"))

        ctx.set_phase(Phase.INPUT)
        ctx.set_param("validInput", "false")
        ctx.set_param("slotValue")
        return await ctx.respond(ctx.param("offerMessage"), input_required=True)


# ──────────────────────────────────────────────────────────────
#  NLUMenu
# ──────────────────────────────────────────────────────────────

class NLUMenuHandler(RuleHandler):
    """
    Intent parameters:
        intentRuleSet_<intent>               destination rule set (required)
        intentConfirmationMessage_<intent>   asked before routing (optional)
    ``alwaysConfirm: 'false'`` skips the yes/no turn for every intent.
    """
    rule_type = RuleType.NLU_MENU.value
    required_params = ("offerMessage",)

    async def execute(self, ctx: SessionContext) -> TurnResponse:
        self.validate(ctx)
        ctx.set_phase(Phase.INPUT)
        return await ctx.respond(ctx.param("offerMessage"), input_required=True)

    def _commit(self, ctx: SessionContext) -> None:
        intent_output_key = ctx.param("intentOutputKey")
        if not is_empty_string(intent_output_key):
            ctx.set(intent_output_key, ctx.param("intent"))
        ctx.route_to(ctx.param("intentRuleSet"))

    async def _exhausted(self, ctx: SessionContext, message: Optional[str], result: IntentResult) -> TurnResponse:
        """
        Error budget spent: flag ``errorOutputKey`` for downstream rules, then
        route to the error rule set, fall through when only the flag is
        configured, or terminate when neither is.
        """
        error_output_key = ctx.param("errorOutputKey")
        if not is_empty_string(error_output_key):
            ctx.set(error_output_key, "true")
        error_rule_set = ctx.param("errorRuleSetName")
        if is_empty_string(error_rule_set) and not is_empty_string(error_output_key):
            logger.info("nlu_menu_exhausted", contact_id=ctx.contact_id, rule=ctx.rule.name,
                        error_output_key=error_output_key)
            return await ctx.respond(message, intent=result.intent, confidence=result.confidence)
        return await escalate(ctx, message, error_rule_set)

    async def input(self, ctx: SessionContext) -> TurnResponse:
        self.validate(ctx, ("lexBotName",))
        text = self.require_input(ctx, "input")

        result = await classify_utterance(ctx, ctx.param("lexBotName"), text)
        next_rule_set = ctx.param(f"intentRuleSet_{result.intent}")

        if not is_empty_string(next_rule_set):
            logger.info("nlu_menu_matched", contact_id=ctx.contact_id, rule=ctx.rule.name,
                        intent=result.intent, next_rule_set=next_rule_set)
            ctx.set_phase(Phase.CONFIRM)
            ctx.set_param("intent", result.intent)
            ctx.set_param("intentRuleSet", next_rule_set)

            confirmation = ctx.render(ctx.param(f"intentConfirmationMessage_{result.intent}"))
            if ctx.param("alwaysConfirm") == "false" or is_empty_string(confirmation):
                self._commit(ctx)
                return await ctx.respond(
                    ctx.render(ctx.param("autoConfirmMessage")) or None,
                    intent=result.intent, confidence=result.confidence, slots=result.slots,
                )
            return await ctx.respond(
                confirmation, input_required=True,
                intent=result.intent, confidence=result.confidence, slots=result.slots,
            )

        logger.info("nlu_menu_unmatched", contact_id=ctx.contact_id, rule=ctx.rule.name, intent=result.intent)
        count = record_error(ctx)
        message = error_message(ctx, count)
        if count >= ctx.config.nlu_menu_max_error_count:
            return await self._exhausted(ctx, message, result)
        return await ctx.respond(message, input_required=True, intent=result.intent, confidence=result.confidence)

    async def confirm(self, ctx: SessionContext) -> TurnResponse:
        self.validate(ctx)
        text = self.require_input(ctx, "confirm")
        if is_empty_string(ctx.param("intent")) or is_empty_string(ctx.param("intentRuleSet")):
            raise RuleConfigurationError("NLUMenu.confirm() has no captured intent", ctx.contact_id)

        result = await classify_utterance(ctx, ctx.config.yes_no_bot_name, text)

        if result.intent == YES_INTENT:
            self._commit(ctx)
            return await ctx.respond(intent=result.intent, confidence=result.confidence)

        logger.info("nlu_menu_confirm_rejected", contact_id=ctx.contact_id, rule=ctx.rule.name,
                    intent=result.intent, errors=error_count(ctx) + 1)
        count = record_error(ctx)
        message = error_message(ctx, count)
        if count >= ctx.config.nlu_menu_max_error_count:
            return await self._exhausted(ctx, message, result)

        ctx.set_phase(Phase.INPUT)
        ctx.set_param("intent")
        ctx.set_param("intentRuleSet")
        return await ctx.respond(
            ctx.param("offerMessage"), input_required=True, intent=result.intent, confidence=result.confidence,
        )


# ──────────────────────────────────────────────────────────────
#  TextInference
# ──────────────────────────────────────────────────────────────

class TextInferenceHandler(RuleHandler):
    """
    Routes on ``intentRuleSet_<intent>`` once confidence reaches
    ``intentConfidence_<intent>`` (default 0). The classification is kept
    in state under ``LexResponses.<bot name>`` for later rules to inspect.
    """
    rule_type = RuleType.TEXT_INFERENCE.value
    required_params = ("lexBotName",)

    async def execute(self, ctx: SessionContext) -> TurnResponse:
        self.validate(ctx)
        bot_name = ctx.param("lexBotName")
        text = ctx.param("input")

        if is_empty_string(text):
            result = IntentResult(intent=FALLBACK_INTENT, confidence=0.0)
        else:
            result = await ctx.classify(bot_name, str(text))

        ctx.set(f"LexResponses.{bot_name}", result.model_dump(exclude={"raw"}))

        next_rule_set = ctx.param(f"intentRuleSet_{result.intent}")
        if is_empty_string(next_rule_set):
            logger.info("text_inference_unmapped", contact_id=ctx.contact_id, rule=ctx.rule.name,
                        intent=result.intent)
        elif result.confidence >= _threshold(ctx.param(f"intentConfidence_{result.intent}")):
            logger.info("text_inference_routed", contact_id=ctx.contact_id, rule=ctx.rule.name,
                        intent=result.intent, confidence=result.confidence, next_rule_set=next_rule_set)
            ctx.route_to(next_rule_set)
        else:
            logger.info("text_inference_below_threshold", contact_id=ctx.contact_id, rule=ctx.rule.name,
                        intent=result.intent, confidence=result.confidence)

        return await ctx.respond(intent=result.intent, confidence=result.confidence)
