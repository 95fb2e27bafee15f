"""
Integration rule type — bounded wait on an out-of-process worker.

Protocol:
  1. write IntegrationStatus=START / IntegrationStart, clear IntegrationEnd
  2. checkpoint state (the worker reads it from the store)
  3. fire-and-forget invoke of ``functionArn``
  4. reload state every poll interval while the status is START or RUN
  5. still START/RUN at the deadline: force TIMEOUT and persist

The poll loop is also bounded by a poll count so it ends even when the
clock does not advance.
"""
from __future__ import annotations

import asyncio
import math
import structlog

from engine.errors import RuleConfigurationError
from handlers.base import RuleHandler, SessionContext
from models.schemas import IntegrationStatus, RuleType, TurnResponse
from state.values import is_number, to_number

logger = structlog.get_logger()

_PENDING = (IntegrationStatus.START.value, IntegrationStatus.RUN.value)


class IntegrationHandler(RuleHandler):
    rule_type = RuleType.INTEGRATION.value
    required_params = ("functionArn", "functionName", "functionOutputKey", "functionTimeout")

    async def execute(self, ctx: SessionContext) -> TurnResponse:
        self.validate(ctx)
        if ctx.param("functionPayload") is None:
            raise RuleConfigurationError("Integration missing required config: functionPayload", ctx.contact_id)

        function_arn = ctx.param("functionArn")
        function_name = ctx.param("functionName")
        timeout_value = ctx.param("functionTimeout")
        timeout_s = max(to_number(timeout_value), 0.0) if is_number(timeout_value) else 0.0
        interval_s = ctx.config.integration_poll_interval_s

        started = ctx.services.clock()
        ctx.set("IntegrationStatus", IntegrationStatus.START.value)
        ctx.set("IntegrationStart", started.isoformat(timespec="milliseconds"))
        ctx.set("IntegrationEnd")
        await ctx.checkpoint()

        logger.info("integration_start", contact_id=ctx.contact_id, function=function_name,
                    rule_set=ctx.rule_set.name if ctx.rule_set else None, rule=ctx.rule.name,
                    timeout_s=timeout_s)

        await ctx.services.invoker.invoke_async(function_arn, {
            "ContactId": ctx.contact_id,
            "OriginalRequest": "",
            "Payload": ctx.param("functionPayload"),
        })

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_s
        max_polls = math.ceil(timeout_s / interval_s) if interval_s > 0 else 1

        await ctx.reload()
        polls = 0
        while ctx.state.get("IntegrationStatus") in _PENDING and loop.time() < deadline and polls < max_polls:
            await ctx.services.sleep(interval_s)
            polls += 1
            await ctx.reload()

        if ctx.state.get("IntegrationStatus") in _PENDING:
            logger.warning("integration_timeout", contact_id=ctx.contact_id, function=function_name,
                           timeout_s=timeout_s, polls=polls)
            ctx.set("IntegrationStatus", IntegrationStatus.TIMEOUT.value)
            await ctx.checkpoint()

        status = ctx.state.get("IntegrationStatus")
        cause = ctx.state.get("IntegrationErrorCause")
        elapsed_ms = int((ctx.services.clock() - started).total_seconds() * 1000)
        logger.info("integration_end", contact_id=ctx.contact_id, function=function_name,
                    status=status, cause=cause, time_cost_ms=elapsed_ms)

        message = f"Function: {function_name} IntegrationStatus: {status}"
        if cause is not None:
            message += f"\nCause: {cause}"
        return await ctx.respond(
            message,
            integration_status=status,
            integration_error_cause=str(cause) if cause is not None else None,
        )
