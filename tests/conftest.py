"""Shared test fixtures for the rules engine."""
import asyncio
from datetime import datetime, timezone
from typing import Any

import pytest

from backend.config_provider import StaticConfigProvider
from backend.invoker import MockAsyncInvoker
from backend.nlu import MockNLUClassifier
from backend.speech import BaseSpeechRenderer, NullSpeechRenderer
from config.settings import EngineConfig
from core.orchestrator import TurnProcessor
from database.store_memory import InMemoryStateStore
from engine.cache import RuleSetCache
from engine.navigator import RuleNavigator
from engine.templating import TemplateRenderer
from handlers import default_registry
from handlers.base import PARAM_PREFIX, EngineServices, SessionContext
from models.schemas import LookupTables, NamedResource, Rule, RuleSet, TurnRequest
from state.document import StateDocument


# 10am in Melbourne (AEDT, UTC+11)
FIXED_NOW = datetime(2026, 3, 10, 23, 0, 0, tzinfo=timezone.utc)

RESOURCE_PREFIX = "dev-rules-engine-"


class FakeSleep:
    """Records requested sleeps and yields to the event loop instead of waiting."""

    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        await asyncio.sleep(0)


class FakeSpeech(BaseSpeechRenderer):
    def __init__(self):
        self.rendered: list[str] = []

    async def render(self, text: str) -> bytes:
        self.rendered.append(text)
        return b"audio:" + text.encode("utf-8")


@pytest.fixture
def lookups() -> LookupTables:
    return LookupTables(
        contact_flows=[
            NamedResource(name="RulesEngineDTMFMenu", id="flow-menu", arn="arn:flow/menu"),
        ],
        prompts=[
            NamedResource(name="Welcome", id="prompt-welcome", arn="arn:prompt/welcome"),
        ],
        queues=[
            NamedResource(name="General", id="queue-general", arn="arn:queue/general"),
        ],
        lex_bots=[
            NamedResource(name=f"{RESOURCE_PREFIX}yesno", simple_name="yesno", id="bot-yesno", arn="arn:bot/yesno"),
            NamedResource(name=f"{RESOURCE_PREFIX}intent", simple_name="intent", id="bot-intent", arn="arn:bot/intent"),
            NamedResource(name=f"{RESOURCE_PREFIX}date", simple_name="date", id="bot-date", arn="arn:bot/date"),
        ],
        lambda_functions=[
            NamedResource(name=f"{RESOURCE_PREFIX}balance", arn="arn:function/balance"),
        ],
    )


@pytest.fixture
def store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def renderer() -> TemplateRenderer:
    return TemplateRenderer()


@pytest.fixture
def nlu() -> MockNLUClassifier:
    return MockNLUClassifier()


@pytest.fixture
def invoker(store) -> MockAsyncInvoker:
    return MockAsyncInvoker(store)


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()


@pytest.fixture
def engine_config() -> EngineConfig:
    return EngineConfig(integration_poll_interval_s=0.1)


@pytest.fixture
def services(store, renderer, nlu, invoker, fake_sleep, engine_config) -> EngineServices:
    return EngineServices(
        store=store,
        renderer=renderer,
        navigator=RuleNavigator(renderer, engine_config.resource_prefix, engine_config.mobile_prefix),
        nlu=nlu,
        speech=NullSpeechRenderer(),
        invoker=invoker,
        config=engine_config,
        clock=lambda: FIXED_NOW,
        sleep=fake_sleep,
    )


@pytest.fixture
def make_context(services, lookups):
    """
    Build a SessionContext as the stepper leaves it just before a handler
    runs: params exported under CurrentRule_*, rule and rule set attached.
    """
    def _make(
        rule_type: str,
        params: dict[str, Any] = None,
        input: str = None,
        state: dict[str, Any] = None,
        generate_voice: bool = False,
    ) -> SessionContext:
        rule = Rule(name="TheRule", type=rule_type, ruleId="rule-1", params=params or {})
        rule_set = RuleSet(name="TheRuleSet", ruleSetId="rs-1", folder="Tests", rules=[rule])
        document = StateDocument(dict(state or {}))
        document.update("CurrentRuleSet", rule_set.name)
        document.update("CurrentRule", rule.name)
        document.update("CurrentRuleType", rule.type)
        for key, value in (params or {}).items():
            document.update(f"{PARAM_PREFIX}{key}", value)
        request = TurnRequest(event_type="INPUT", contact_id="contact-1", input=input, generate_voice=generate_voice)
        return SessionContext(
            contact_id="contact-1",
            request=request,
            state=document,
            services=services,
            lookups=lookups,
            rule_set=rule_set,
            rule=rule,
        )
    return _make


@pytest.fixture
def make_processor(services, lookups):
    """TurnProcessor over a static provider holding ``rule_sets``."""
    def _make(rule_sets: list[dict[str, Any]], holidays=None, rng=None) -> TurnProcessor:
        provider = StaticConfigProvider(rule_sets, lookups, holidays)
        return TurnProcessor(services, RuleSetCache(provider), default_registry(rng))
    return _make


@pytest.fixture
def fixed_now() -> datetime:
    return FIXED_NOW


@pytest.fixture
def fake_speech() -> FakeSpeech:
    return FakeSpeech()
