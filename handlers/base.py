"""
Dialogue Step Controller — the lifecycle every rule type implements.

  execute()  first invocation of the rule: validate config, then either
             produce a final outcome or ask for input (phase = input)
  input()    customer input while phase == input
  confirm()  yes/no answer while phase == confirm

Handlers read their configuration from state (``CurrentRule_<param>``),
where the stepper exported the rule's templated parameters, and write
navigation decisions back to state (``NextRuleSet``). They return a
TurnResponse: ``input_required`` stops the stepper and waits for the
customer, ``terminate`` ends the session, anything else continues.
"""
from __future__ import annotations

import abc
import asyncio
import base64
import structlog
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from backend.invoker import BaseAsyncInvoker
from backend.nlu import BaseNLUClassifier
from backend.speech import BaseSpeechRenderer
from config.settings import EngineConfig
from database.store_base import BaseStateStore
from engine.errors import RuleConfigurationError, UnsupportedPhaseError
from engine.navigator import RuleNavigator
from engine.templating import TemplateRenderer
from models.schemas import (
    IntentResult, LookupTables, NamedResource, Phase, Rule, RuleSet, TurnRequest, TurnResponse,
)
from state.document import UNSET, StateDocument
from state.values import format_number, is_empty_string, is_number, to_int, to_number

logger = structlog.get_logger()

PARAM_PREFIX = "CurrentRule_"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class EngineServices:
    """Collaborators shared by every turn in the process."""
    store: BaseStateStore
    renderer: TemplateRenderer
    navigator: RuleNavigator
    nlu: BaseNLUClassifier
    speech: BaseSpeechRenderer
    invoker: BaseAsyncInvoker
    config: EngineConfig = field(default_factory=EngineConfig)
    clock: Callable[[], datetime] = utcnow
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep


@dataclass
class SessionContext:
    """Per-turn view of one session. Never persisted."""
    contact_id: str
    request: TurnRequest
    state: StateDocument
    services: EngineServices
    lookups: LookupTables = field(default_factory=LookupTables)
    rule_set: Optional[RuleSet] = None
    rule: Optional[Rule] = None

    # ── State access ──────────────────────────────────────────

    def param(self, name: str, default: Any = None) -> Any:
        value = self.state.get(f"{PARAM_PREFIX}{name}")
        return default if value is None else value

    def set(self, path: str, value: Any = UNSET) -> bool:
        return self.state.update(path, value)

    def set_param(self, name: str, value: Any = UNSET) -> bool:
        return self.state.update(f"{PARAM_PREFIX}{name}", value)

    def set_phase(self, phase: Phase) -> None:
        self.set_param("phase", phase.value)

    def route_to(self, rule_set_name: str) -> None:
        self.set("NextRuleSet", rule_set_name)

    def update_system(self, key: str, value: Any = UNSET) -> None:
        system = self.state.get("System")
        if not isinstance(system, dict):
            self.set("System", {})
        self.set(f"System.{key}", value)

    @property
    def input(self) -> Optional[str]:
        return self.request.input

    @property
    def config(self) -> EngineConfig:
        return self.services.config

    # ── Rendering ─────────────────────────────────────────────

    def render(self, template: Any, document: Optional[StateDocument] = None) -> str:
        """Render a message against state (or ``document``); None renders as ''."""
        if template is None:
            return ""
        return str(self.services.renderer.render_if_template(template, document or self.state))

    async def audio(self, message: Optional[str]) -> Optional[str]:
        """Base64 speech for ``message`` when the request asked for voice."""
        if not self.request.generate_voice or is_empty_string(message):
            return None
        audio = await self.services.speech.render(message)
        if not audio:
            return None
        return base64.b64encode(audio).decode("ascii")

    async def respond(
        self,
        message: Optional[str] = None,
        input_required: bool = False,
        terminate: bool = False,
        **fields: Any,
    ) -> TurnResponse:
        rule_set = self.rule_set
        rule = self.rule
        data_type = self.param("dataType")
        return TurnResponse(
            contact_id=self.contact_id,
            input_required=input_required,
            terminate=terminate,
            message=message,
            audio=await self.audio(message),
            rule_set=rule_set.name if rule_set else None,
            rule_set_id=rule_set.rule_set_id or None if rule_set else None,
            folder=rule_set.folder or None if rule_set else None,
            rule=rule.name if rule else None,
            rule_id=rule.rule_id or None if rule else None,
            rule_type=rule.type if rule else None,
            data_type=str(data_type) if data_type is not None else None,
            **fields,
        )

    # ── Collaborators ─────────────────────────────────────────

    def find_bot(self, bot_name: str) -> NamedResource:
        """Locate a deployed NLU bot by simple name or deployment name."""
        full_name = f"{self.config.resource_prefix}{bot_name}"
        for bot in self.lookups.lex_bots:
            if bot.simple_name == bot_name or bot.name in (bot_name, full_name):
                return bot
        logger.error("nlu_bot_not_found", contact_id=self.contact_id, bot=bot_name)
        raise RuleConfigurationError(f"Could not find NLU bot: {bot_name}", self.contact_id)

    async def classify(self, bot_name: str, text: str) -> IntentResult:
        bot = self.find_bot(bot_name)
        return await self.services.nlu.classify(bot.id or bot.name, text, self.contact_id)

    async def checkpoint(self) -> None:
        """Persist dirty keys now, ahead of a blocking wait."""
        await self.services.store.persist_dirty(self.contact_id, self.state)

    async def reload(self) -> None:
        """Replace the in-memory state with what the store holds."""
        self.state = await self.services.store.get(self.contact_id)


# ──────────────────────────────────────────────────────────────
#  Helpers shared by the input-taking rule types
# ──────────────────────────────────────────────────────────────

def merge_prompts(messages: list[Optional[str]]) -> str:
    """
    Join prompts into one message. If any prompt is SSML the result is a
    single <speak> document containing every prompt's body.
    """
    parts = [m.strip() for m in messages if not is_empty_string(m) and m.strip()]
    if not any(p.startswith("<speak>") and p.endswith("</speak>") for p in parts):
        return "\n".join(parts)
    bodies = []
    for part in parts:
        if part.startswith("<speak>") and part.endswith("</speak>"):
            part = part[len("<speak>"):-len("</speak>")].strip()
        bodies.append(part)
    return "<speak>" + " ".join(bodies) + "</speak>"


def error_count(ctx: SessionContext) -> int:
    return to_int(ctx.param("errorCount"), 0)


def record_error(ctx: SessionContext) -> int:
    """Increment the rule's error counter and return the new count."""
    count = error_count(ctx) + 1
    ctx.set_param("errorCount", format_number(count))
    return count


def error_message(ctx: SessionContext, count: int) -> Optional[str]:
    return ctx.param(f"errorMessage{count}")


async def escalate(ctx: SessionContext, message: Optional[str], rule_set_name: Optional[str]) -> TurnResponse:
    """
    Error budget exhausted: route to ``rule_set_name`` when configured,
    otherwise end the session.
    """
    if not is_empty_string(rule_set_name):
        logger.info("input_escalated", contact_id=ctx.contact_id, rule=ctx.rule.name if ctx.rule else None,
                    next_rule_set=rule_set_name)
        ctx.route_to(rule_set_name)
        return await ctx.respond(message)
    logger.info("input_escalated_terminate", contact_id=ctx.contact_id, rule=ctx.rule.name if ctx.rule else None)
    return await ctx.respond(message, terminate=True)


# ──────────────────────────────────────────────────────────────
#  Handler interface
# ──────────────────────────────────────────────────────────────

class RuleHandler(abc.ABC):
    """A rule type's execute / input / confirm implementation."""

    rule_type: str = ""
    required_params: tuple[str, ...] = ()

    def validate(self, ctx: SessionContext, extra: tuple[str, ...] = ()) -> None:
        missing = [p for p in self.required_params + extra if is_empty_string(ctx.param(p))]
        if missing:
            logger.error("rule_config_missing", contact_id=ctx.contact_id, rule_type=self.rule_type, params=missing)
            raise RuleConfigurationError(
                f"{self.rule_type} missing required config: {', '.join(missing)}", ctx.contact_id,
            )

    def require_number(self, ctx: SessionContext, name: str) -> float:
        value = ctx.param(name)
        if not is_number(value):
            raise RuleConfigurationError(f"{self.rule_type} {name} must be a number", ctx.contact_id)
        return to_number(value)

    def require_input(self, ctx: SessionContext, operation: str) -> str:
        if ctx.input is None:
            raise RuleConfigurationError(f"{self.rule_type}.{operation}() missing input", ctx.contact_id)
        return ctx.input

    @abc.abstractmethod
    async def execute(self, ctx: SessionContext) -> TurnResponse:
        ...

    async def input(self, ctx: SessionContext) -> TurnResponse:
        logger.error("unsupported_phase", contact_id=ctx.contact_id, rule_type=self.rule_type, operation="input")
        raise UnsupportedPhaseError(self.rule_type, "input", ctx.contact_id)

    async def confirm(self, ctx: SessionContext) -> TurnResponse:
        logger.error("unsupported_phase", contact_id=ctx.contact_id, rule_type=self.rule_type, operation="confirm")
        raise UnsupportedPhaseError(self.rule_type, "confirm", ctx.contact_id)
