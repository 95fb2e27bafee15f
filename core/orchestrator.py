"""
Turn Processor — the entry point for every channel event.

Events:
  NEW_INTERACTION  create the session, seed System.* and enter the rule set
                   bound to the request's end point, then step
  NEXT_RULE        resume a session without customer input and step
  INPUT            hand the customer's input to the current rule's
                   input()/confirm() according to CurrentRule_phase; keep
                   stepping in the same turn when the rule continues
  HANGUP           end the session, echoing where it stopped

Every turn starts with a rule-set cache freshness check and ends by
persisting the dirty keys, then reloading state from the store into the
response.
"""
from __future__ import annotations

import uuid
import structlog
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from backend.config_provider import create_config_provider
from backend.invoker import create_async_invoker
from backend.nlu import create_nlu_classifier
from backend.speech import create_speech_renderer
from config.settings import Settings, get_settings
from core.stepper import SessionStepper, timestamp
from database.store_factory import create_store
from engine.cache import RuleSetCache
from engine.errors import RuleConfigurationError, UnknownEventTypeError, UnsupportedPhaseError
from engine.navigator import RuleNavigator
from engine.templating import TemplateRenderer, format_moment
from handlers import default_registry
from handlers.base import EngineServices, SessionContext
from handlers.registry import HandlerRegistry
from models.schemas import TERMINAL_RULE_TYPES, EventType, Phase, TurnRequest, TurnResponse
from state.values import is_empty_string

logger = structlog.get_logger()

CONTACT_ID_PREFIX = "interactive-"


def time_of_day(local: datetime) -> str:
    if local.hour < 12:
        return "morning"
    if local.hour < 18:
        return "afternoon"
    return "evening"


class TurnProcessor:
    """
    Dispatches one TurnRequest to the session stepper or the current
    rule's handler. Holds no per-session state between turns.
    """

    def __init__(
        self,
        services: EngineServices,
        cache: RuleSetCache,
        registry: Optional[HandlerRegistry] = None,
    ):
        self.services = services
        self.cache = cache
        self.registry = registry or default_registry()
        self.stepper = SessionStepper(services, cache, self.registry)

    async def process(self, request: TurnRequest) -> TurnResponse:
        await self.cache.check_last_changed()

        event_type = request.event_type
        if event_type == EventType.NEW_INTERACTION.value:
            ctx = await self._new_session(request)
            response = await self._new_interaction(ctx)
        elif event_type == EventType.NEXT_RULE.value:
            ctx = await self._load_session(request)
            response = await self.stepper.step(ctx)
        elif event_type == EventType.INPUT.value:
            ctx = await self._load_session(request)
            response = await self._input(ctx)
        elif event_type == EventType.HANGUP.value:
            ctx = await self._load_session(request)
            response = await self._hangup(ctx)
        else:
            logger.error("unknown_event_type", event_type=event_type, contact_id=request.contact_id)
            raise UnknownEventTypeError(str(event_type), request.contact_id or "")

        return await self._finish(ctx, response)

    # ── Session setup ─────────────────────────────────────────

    async def _new_session(self, request: TurnRequest) -> SessionContext:
        contact_id = request.contact_id or f"{CONTACT_ID_PREFIX}{uuid.uuid4()}"
        state = await self.services.store.get(contact_id)
        ctx = SessionContext(contact_id=contact_id, request=request, state=state, services=self.services)
        ctx.lookups = await self.cache.get_lookups()
        return ctx

    async def _load_session(self, request: TurnRequest) -> SessionContext:
        if is_empty_string(request.contact_id):
            raise RuleConfigurationError(f"{request.event_type} request is missing contactId")
        state = await self.services.store.get(request.contact_id)
        ctx = SessionContext(contact_id=request.contact_id, request=request, state=state, services=self.services)
        ctx.lookups = await self.cache.get_lookups()
        return ctx

    async def init_system(self, ctx: SessionContext) -> None:
        """Seed System.* with the call's context, once per session."""
        if isinstance(ctx.state.get("System"), dict):
            return
        when = ctx.request.interaction_date_time or self.services.clock()
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        utc = when.astimezone(timezone.utc)
        local = utc.astimezone(ZoneInfo(self.services.config.timezone))
        holiday = await self.cache.provider.is_holiday(local)

        ctx.set("System", {
            "ContactId": ctx.contact_id,
            "EndPoint": ctx.request.end_point,
            "Holiday": "true" if holiday else "false",
            "DateTimeUTC": timestamp(utc),
            "DateTimeLocal": local.isoformat(timespec="milliseconds"),
            "TimeLocal": format_moment(local, "hh:mm A"),
            "TimeOfDay": time_of_day(local),
        })

    async def _new_interaction(self, ctx: SessionContext) -> TurnResponse:
        request = ctx.request
        if is_empty_string(request.end_point):
            raise RuleConfigurationError("NEW_INTERACTION request is missing endPoint", ctx.contact_id)

        await self.init_system(ctx)
        ctx.set("ContactId", ctx.contact_id)
        if ctx.state.get("ContactAttributes") is None:
            ctx.set("ContactAttributes", dict(request.contact_attributes or {}))
        if not is_empty_string(request.customer_phone_number):
            if ctx.state.get("CustomerPhoneNumber") is None:
                ctx.set("CustomerPhoneNumber", request.customer_phone_number)
            if ctx.state.get("OriginalCustomerNumber") is None:
                ctx.set("OriginalCustomerNumber", request.customer_phone_number)

        rule_set = await self.cache.get_rule_set_by_end_point(request.end_point, ctx.contact_id)
        logger.info("session_started", contact_id=ctx.contact_id, end_point=request.end_point,
                    rule_set=rule_set.name)
        self.stepper.enter_rule_set(ctx, rule_set.name)
        return await self.stepper.step(ctx)

    # ── Customer input ────────────────────────────────────────

    async def _input(self, ctx: SessionContext) -> TurnResponse:
        rule_set_name = ctx.state.get("CurrentRuleSet")
        rule_name = ctx.state.get("CurrentRule")
        if is_empty_string(rule_set_name) or is_empty_string(rule_name):
            raise RuleConfigurationError("INPUT received with no current rule", ctx.contact_id)

        ctx.rule_set = await self.cache.get_rule_set(rule_set_name, ctx.contact_id)
        ctx.rule = ctx.rule_set.get_rule(rule_name)
        if ctx.rule is None:
            raise RuleConfigurationError(
                f"Could not find current rule: {rule_name} in rule set: {rule_set_name}", ctx.contact_id,
            )

        handler = self.registry.get(ctx.rule.type, ctx.contact_id)
        phase = ctx.param("phase")
        logger.info("rule_input", contact_id=ctx.contact_id, rule_set=rule_set_name, rule=rule_name,
                    rule_type=ctx.rule.type, phase=phase)
        if phase == Phase.INPUT.value:
            response = await handler.input(ctx)
        elif phase == Phase.CONFIRM.value:
            response = await handler.confirm(ctx)
        else:
            logger.error("unknown_phase", contact_id=ctx.contact_id, rule_type=ctx.rule.type, phase=phase)
            raise UnsupportedPhaseError(ctx.rule.type, str(phase), ctx.contact_id)

        if response.continues and ctx.rule.type not in TERMINAL_RULE_TYPES:
            return await self.stepper.step(ctx, carried=[response.message])
        return response

    async def _hangup(self, ctx: SessionContext) -> TurnResponse:
        logger.info("session_hangup", contact_id=ctx.contact_id, rule_set=ctx.state.get("CurrentRuleSet"),
                    rule=ctx.state.get("CurrentRule"))
        return TurnResponse(
            contact_id=ctx.contact_id,
            terminate=True,
            rule_set=ctx.state.get("CurrentRuleSet"),
            rule=ctx.state.get("CurrentRule"),
            rule_type=ctx.state.get("CurrentRuleType"),
        )

    # ── Turn end ──────────────────────────────────────────────

    async def _finish(self, ctx: SessionContext, response: TurnResponse) -> TurnResponse:
        await ctx.checkpoint()
        await ctx.reload()
        response = response.model_copy(update={"state": ctx.state.to_dict()})
        logger.info("turn_response", **response.to_log())
        return response


def create_turn_processor(settings: Optional[Settings] = None) -> TurnProcessor:
    """Wire every collaborator from settings."""
    settings = settings or get_settings()
    engine_config = settings.engine
    store = create_store(settings.database)
    renderer = TemplateRenderer()
    services = EngineServices(
        store=store,
        renderer=renderer,
        navigator=RuleNavigator(renderer, engine_config.resource_prefix, engine_config.mobile_prefix),
        nlu=create_nlu_classifier(settings.nlu),
        speech=create_speech_renderer(settings.speech),
        invoker=create_async_invoker(settings.invoker, store),
        config=engine_config,
    )
    cache = RuleSetCache(create_config_provider(settings.config_provider))
    return TurnProcessor(services, cache)
