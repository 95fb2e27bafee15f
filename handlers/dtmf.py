"""
Keypad rule types.

DTMFInput  collects a fixed-format token (number, phone, date, card
           expiry), optionally confirms it with "press 1", and writes it
           to ``outputStateKey`` (nested keys allowed).
DTMFMenu   maps a single keypress to a destination rule set via the
           ``dtmf<key>`` parameters.
"""
from __future__ import annotations

import re
import structlog
from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo

from engine.errors import RuleConfigurationError
from handlers.base import (
    RuleHandler, SessionContext, error_message, escalate, merge_prompts, record_error,
)
from models.schemas import NO_INPUT, Phase, RuleType, TurnResponse
from state.values import is_empty_string, to_int

logger = structlog.get_logger()

_DIGITS = re.compile(r"^[0-9]*$")
_PHONE = re.compile(r"^0[0-9]{9}$")
_DATE = re.compile(r"^[0-3][0-9][0-1][0-9][1-2][0-9]{3}$")

CONFIRM_KEY = "1"


# ──────────────────────────────────────────────────────────────
#  Token validation per data type
# ──────────────────────────────────────────────────────────────

def _valid_card_expiry(token: str, now: datetime) -> bool:
    if len(token) != 4 or not _DIGITS.match(token):
        return False
    month = int(token[:2])
    year = int(token[2:])
    if month < 1 or month > 12:
        return False
    year_now = now.year % 100
    if year < year_now:
        return False
    if year == year_now and month < now.month:
        return False
    return True


def _valid_date(token: str) -> bool:
    if not _DATE.match(token):
        return False
    try:
        datetime.strptime(token, "%d%m%Y")
    except ValueError:
        return False
    return True


def validate_dtmf(token: str, data_type: str, min_length: int, max_length: int,
                  now: datetime, contact_id: str = "") -> bool:
    """
    True when ``token`` is acceptable for ``data_type``. An unknown data
    type is a configuration error, not a failed input.
    """
    if len(token) < min_length or len(token) > max_length:
        logger.info("dtmf_input_length_invalid", contact_id=contact_id, length=len(token),
                    min_length=min_length, max_length=max_length)
        return False
    if data_type == "CreditCardExpiry":
        return _valid_card_expiry(token, now)
    if data_type == "Number":
        return bool(_DIGITS.match(token))
    if data_type == "Phone":
        return bool(_PHONE.match(token))
    if data_type == "Date":
        return _valid_date(token)
    logger.error("dtmf_data_type_unknown", contact_id=contact_id, data_type=data_type)
    raise RuleConfigurationError(f"Unhandled DTMFInput data type: {data_type}", contact_id)


# ──────────────────────────────────────────────────────────────
#  DTMFInput
# ──────────────────────────────────────────────────────────────

class DTMFInputHandler(RuleHandler):
    rule_type = RuleType.DTMF_INPUT.value
    required_params = ("offerMessage", "outputStateKey", "dataType", "minLength", "maxLength")

    async def execute(self, ctx: SessionContext) -> TurnResponse:
        self.validate(ctx)
        offer = ctx.param("offerMessage")
        ctx.set_phase(Phase.INPUT)
        return await ctx.respond(offer, input_required=True)

    async def input(self, ctx: SessionContext) -> TurnResponse:
        self.validate(ctx)
        token = ctx.input
        if is_empty_string(token):
            raise RuleConfigurationError("DTMFInput.input() input is required", ctx.contact_id)

        now = ctx.services.clock().astimezone(ZoneInfo(ctx.config.timezone))
        valid = validate_dtmf(
            token,
            str(ctx.param("dataType")),
            to_int(ctx.param("minLength")),
            to_int(ctx.param("maxLength")),
            now,
            ctx.contact_id,
        )
        output_key = ctx.param("outputStateKey")

        if not valid:
            logger.info("dtmf_input_invalid", contact_id=ctx.contact_id, rule=ctx.rule.name)
            count = record_error(ctx)
            ctx.set_param("validInput", "false")
            message = error_message(ctx, count)
            if count >= ctx.config.dtmf_max_error_count:
                return await escalate(ctx, message, ctx.param("errorRuleSetName"))
            return await ctx.respond(
                merge_prompts([message, ctx.param("offerMessage")]), input_required=True,
            )

        ctx.set_param("validInput", "true")
        ctx.set_param("input", token)

        # Render the confirmation as if the value were already committed
        preview = ctx.state.clone()
        preview.update(output_key, token)
        confirmation = ctx.render(ctx.param("confirmationMessage"), preview)

        if is_empty_string(confirmation):
            ctx.set(output_key, token)
            return await ctx.respond()

        ctx.set_phase(Phase.CONFIRM)
        return await ctx.respond(confirmation, input_required=True)

    async def confirm(self, ctx: SessionContext) -> TurnResponse:
        self.validate(ctx)
        answer = ctx.input
        if is_empty_string(answer):
            raise RuleConfigurationError("DTMFInput.confirm() input is required", ctx.contact_id)

        if answer == CONFIRM_KEY:
            ctx.set(ctx.param("outputStateKey"), ctx.param("input"))
            return await ctx.respond()

        logger.info("dtmf_confirm_rejected", contact_id=ctx.contact_id, rule=ctx.rule.name, input=answer)
        count = record_error(ctx)
        message = error_message(ctx, count)
        if count >= ctx.config.dtmf_max_error_count:
            return await escalate(ctx, message, ctx.param("errorRuleSetName"))

        ctx.set_phase(Phase.INPUT)
        ctx.set_param("input")
        ctx.set_param("validInput")
        return await ctx.respond(ctx.param("offerMessage"), input_required=True)


# ──────────────────────────────────────────────────────────────
#  DTMFMenu
# ──────────────────────────────────────────────────────────────

class DTMFMenuHandler(RuleHandler):
    rule_type = RuleType.DTMF_MENU.value
    required_params = ("inputCount", "offerMessage", "errorMessage1")

    def validate(self, ctx: SessionContext, extra: tuple[str, ...] = ()) -> None:
        super().validate(ctx, extra)
        input_count = to_int(ctx.param("inputCount"))
        if input_count < 1:
            raise RuleConfigurationError("DTMFMenu inputCount must be at least 1", ctx.contact_id)

    async def execute(self, ctx: SessionContext) -> TurnResponse:
        self.validate(ctx)
        ctx.set_phase(Phase.INPUT)
        return await ctx.respond(ctx.param("offerMessage"), input_required=True)

    async def input(self, ctx: SessionContext) -> TurnResponse:
        self.validate(ctx)
        key = self.require_input(ctx, "input")
        destination: Optional[str] = ctx.param(f"dtmf{key}") if key else None

        if not is_empty_string(destination):
            logger.info("dtmf_menu_selected", contact_id=ctx.contact_id, rule=ctx.rule.name,
                        key=key, next_rule_set=destination)
            ctx.route_to(destination)
            ctx.update_system("LastSelectedDTMF", key)
            ctx.set_param("validInput", "true")
            return await ctx.respond()

        count = record_error(ctx)
        ctx.set_param("validInput", "false")
        ctx.set_param("failureReason", "NOINPUT" if key == NO_INPUT else "NOMATCH")
        message = error_message(ctx, count)

        if count >= to_int(ctx.param("inputCount")):
            target = ctx.param("errorRuleSetName")
            if key == NO_INPUT and not is_empty_string(ctx.param("noInputRuleSetName")):
                target = ctx.param("noInputRuleSetName")
            return await escalate(ctx, message, target)

        return await ctx.respond(merge_prompts([message, ctx.param("offerMessage")]), input_required=True)
