"""
Execute-only rule types. None of these ever enters an input phase, so the
inherited ``input`` / ``confirm`` raise UnsupportedPhaseError.

Queue, ExternalNumber and Terminate also end the automatic stepping loop.
"""
from __future__ import annotations

import structlog

from engine.errors import RuleConfigurationError
from handlers.base import RuleHandler, SessionContext
from models.schemas import RuleType, TurnResponse
from state.values import is_empty_string

logger = structlog.get_logger()


class MessageHandler(RuleHandler):
    rule_type = RuleType.MESSAGE.value
    required_params = ("message",)

    async def execute(self, ctx: SessionContext) -> TurnResponse:
        self.validate(ctx)
        return await ctx.respond(ctx.param("message"))


class MetricHandler(RuleHandler):
    rule_type = RuleType.METRIC.value
    required_params = ("metricName", "metricValue")

    async def execute(self, ctx: SessionContext) -> TurnResponse:
        self.validate(ctx)
        name = ctx.param("metricName")
        value = ctx.param("metricValue")
        logger.info("metric", contact_id=ctx.contact_id, metric_name=name, metric_value=value,
                    rule_set=ctx.rule_set.name if ctx.rule_set else None)
        return await ctx.respond(f"Metric: {name} Value: {value}")


class QueueHandler(RuleHandler):
    rule_type = RuleType.QUEUE.value
    required_params = ("queueName",)

    async def execute(self, ctx: SessionContext) -> TurnResponse:
        self.validate(ctx)
        message = ctx.param("message")
        return await ctx.respond(
            message if not is_empty_string(message) else None,
            queue=str(ctx.param("queueName")),
        )


class ExternalNumberHandler(RuleHandler):
    rule_type = RuleType.EXTERNAL_NUMBER.value
    required_params = ("externalNumber",)

    async def execute(self, ctx: SessionContext) -> TurnResponse:
        self.validate(ctx)
        return await ctx.respond(external_number=str(ctx.param("externalNumber")))


class TerminateHandler(RuleHandler):
    rule_type = RuleType.TERMINATE.value

    async def execute(self, ctx: SessionContext) -> TurnResponse:
        return await ctx.respond(terminate=True)


class SMSMessageHandler(RuleHandler):
    """Sends ``message`` to the phone number held at state ``phoneNumberKey``."""
    rule_type = RuleType.SMS_MESSAGE.value
    required_params = ("message", "phoneNumberKey")

    async def execute(self, ctx: SessionContext) -> TurnResponse:
        self.validate(ctx)
        key = ctx.param("phoneNumberKey")
        phone_number = ctx.state.get_path(str(key))
        if is_empty_string(phone_number):
            raise RuleConfigurationError(f"SMSMessage could not locate phone number with state key: {key}",
                                         ctx.contact_id)
        message = ctx.param("message")
        logger.info("sms_requested", contact_id=ctx.contact_id, phone_key=key)
        return await ctx.respond(f"SMS: {phone_number} Message: {message}")
