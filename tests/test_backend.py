"""
Tests for the external collaborators and settings.

Covers:
  - FileConfigProvider (YAML rule sets, lookups, holidays, change detection)
  - RESTConfigProvider / RESTNLUClassifier / RESTSpeechRenderer /
    RESTAsyncInvoker against an in-process HTTP transport
  - classification payload parsing and the scripted classifier
  - MockAsyncInvoker writing results back to state
  - settings loading with ${ENV} substitution and factory selection
"""
import json
import os
import textwrap
from datetime import date, datetime, timezone

import httpx
import pytest

from backend.config_provider import (
    FileConfigProvider, RESTConfigProvider, StaticConfigProvider, create_config_provider, parse_rule_sets,
)
from backend.invoker import MockAsyncInvoker, RESTAsyncInvoker, create_async_invoker
from backend.nlu import (
    FALLBACK_INTENT, MockNLUClassifier, RESTNLUClassifier, create_nlu_classifier, parse_classification,
)
from backend.speech import NullSpeechRenderer, RESTSpeechRenderer, create_speech_renderer, text_type
from config.settings import (
    ConfigProviderConfig, InvokerConfig, NLUConfig, SpeechConfig, load_settings, reset_settings,
)
from database.store_memory import InMemoryStateStore
from engine.errors import CollaboratorError

RULE_SETS_YAML = textwrap.dedent("""
    ruleSets:
      - name: Main
        ruleSetId: rs-main
        endPoints: ["+61390000000"]
        rules:
          - name: Greeting
            type: Message
            params:
              message: Hello
          - name: Closed
            type: Message
            enabled: false
            weights:
              - field: System.Holiday
                operation: equals
                value: true
                weight: 1
            activation: 1
      - name: Retired
        enabled: false
        rules: []
""")

LOOKUPS_YAML = textwrap.dedent("""
    queues:
      - Name: General
        Id: queue-general
        Arn: arn:queue/general
    lexBots:
      - Name: dev-rules-engine-yesno
        SimpleName: yesno
        Id: bot-yesno
    holidays:
      - 2026-12-25
      - "2027-01-01"
""")


def mock_client(handler, base_url="http://collaborator.test") -> httpx.AsyncClient:
    return httpx.AsyncClient(base_url=base_url, transport=httpx.MockTransport(handler))


# ──────────────────────────────────────────────────────────────
#  Config providers
# ──────────────────────────────────────────────────────────────

class TestFileConfigProvider:
    @pytest.fixture
    def provider(self, tmp_path):
        rule_sets = tmp_path / "rulesets.yaml"
        lookups = tmp_path / "lookups.yaml"
        rule_sets.write_text(RULE_SETS_YAML)
        lookups.write_text(LOOKUPS_YAML)
        return FileConfigProvider(str(rule_sets), str(lookups))

    @pytest.mark.asyncio
    async def test_rule_sets_parsed(self, provider):
        rule_sets = await provider.get_rule_sets()
        main = rule_sets[0]
        assert [r.name for r in rule_sets] == ["Main", "Retired"]
        assert main.rule_set_id == "rs-main"
        assert main.end_points == ["+61390000000"]
        # YAML booleans become the strings rules compare against
        assert main.rules[1].weights[0].value == "true"

    @pytest.mark.asyncio
    async def test_lookups(self, provider):
        lookups = await provider.get_lookups()
        assert lookups.queues[0].arn == "arn:queue/general"
        assert lookups.lex_bots[0].simple_name == "yesno"
        assert lookups.prompts == []

    @pytest.mark.asyncio
    async def test_holidays(self, provider):
        assert await provider.is_holiday(date(2026, 12, 25))
        assert await provider.is_holiday(datetime(2027, 1, 1, 9, 30, tzinfo=timezone.utc))
        assert not await provider.is_holiday(date(2026, 12, 24))

    @pytest.mark.asyncio
    async def test_last_changed_moves_with_edits(self, provider, tmp_path):
        before = await provider.last_changed_at()
        path = tmp_path / "rulesets.yaml"
        stat = path.stat()
        os.utime(path, (stat.st_atime, stat.st_mtime + 60))
        assert await provider.last_changed_at() != before

    @pytest.mark.asyncio
    async def test_missing_rule_sets_file(self, tmp_path):
        provider = FileConfigProvider(str(tmp_path / "absent.yaml"))
        assert await provider.get_rule_sets() == []
        assert await provider.last_changed_at() is None

    @pytest.mark.asyncio
    async def test_invalid_yaml_raises(self, tmp_path):
        path = tmp_path / "rulesets.yaml"
        path.write_text("ruleSets: [unclosed")
        with pytest.raises(CollaboratorError):
            await FileConfigProvider(str(path)).get_rule_sets()


class TestRuleSetParsing:
    def test_bare_list(self):
        rule_sets = parse_rule_sets([{"name": "A", "rules": [{"name": "R", "type": "Terminate"}]}])
        assert rule_sets[0].rules[0].type == "Terminate"

    def test_empty(self):
        assert parse_rule_sets(None) == []


class TestStaticConfigProvider:
    @pytest.mark.asyncio
    async def test_replace_changes_version(self):
        provider = StaticConfigProvider([{"name": "A"}])
        before = await provider.last_changed_at()
        provider.replace_rule_sets([{"name": "B"}])
        assert await provider.last_changed_at() != before
        assert [r.name for r in await provider.get_rule_sets()] == ["B"]


class TestRESTConfigProvider:
    @pytest.mark.asyncio
    async def test_fetches_config(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/lastchange":
                return httpx.Response(200, json={"lastChangeTimestamp": "2026-03-01T00:00:00Z"})
            if request.url.path == "/rulesets":
                return httpx.Response(200, json=[{"name": "Main", "endPoints": ["chat"]}])
            if request.url.path == "/holidays/2026-12-25":
                return httpx.Response(200, json={"holiday": True})
            return httpx.Response(200, json=[])

        provider = RESTConfigProvider(ConfigProviderConfig(
            type="rest", base_url="http://collaborator.test",
        ))
        provider.client = mock_client(handler)

        assert await provider.last_changed_at() == "2026-03-01T00:00:00Z"
        assert (await provider.get_rule_sets())[0].end_points == ["chat"]
        assert await provider.is_holiday(date(2026, 12, 25))
        await provider.close()

    @pytest.mark.asyncio
    async def test_http_error_becomes_collaborator_error(self):
        provider = RESTConfigProvider(ConfigProviderConfig(type="rest", base_url="http://collaborator.test"))
        provider.client = mock_client(lambda request: httpx.Response(503))
        with pytest.raises(CollaboratorError):
            await provider.get_rule_sets()
        await provider.close()


class TestConfigProviderFactory:
    def test_file_by_default(self):
        provider = create_config_provider(ConfigProviderConfig())
        assert isinstance(provider, FileConfigProvider)

    def test_rest_without_url_falls_back(self):
        provider = create_config_provider(ConfigProviderConfig(type="rest"))
        assert isinstance(provider, FileConfigProvider)

    def test_rest(self):
        provider = create_config_provider(ConfigProviderConfig(type="rest", base_url="http://x"))
        assert isinstance(provider, RESTConfigProvider)


# ──────────────────────────────────────────────────────────────
#  NLU
# ──────────────────────────────────────────────────────────────

class TestParseClassification:
    def test_flat_payload(self):
        result = parse_classification({"intent": "Billing", "confidence": "0.82", "slots": {}})
        assert result.intent == "Billing"
        assert result.confidence == pytest.approx(0.82)

    def test_interpretations_with_score(self):
        result = parse_classification({
            "interpretations": [{
                "intent": {"name": "Date", "slots": {"dataslot": {"value": {"interpretedValue": "2026-03-11"}}}},
                "nluConfidence": {"score": 0.91},
            }],
        })
        assert result.intent == "Date"
        assert result.confidence == pytest.approx(0.91)
        assert result.slot_value() == "2026-03-11"

    def test_empty_interpretations_fall_back(self):
        result = parse_classification({"interpretations": []})
        assert result.intent == FALLBACK_INTENT
        assert result.confidence == 0.0

    def test_missing_confidence(self):
        assert parse_classification({"intent": "Yes"}).confidence == 0.0


class TestMockNLUClassifier:
    @pytest.mark.asyncio
    async def test_scripted_per_bot_before_any_bot(self):
        nlu = MockNLUClassifier()
        nlu.add("billing", "Billing", confidence=0.9)
        nlu.add("billing", "Accounts", confidence=0.7, bot_id="bot-intent")

        assert (await nlu.classify("bot-intent", "Billing ", "c-1")).intent == "Accounts"
        assert (await nlu.classify("bot-other", "billing", "c-1")).intent == "Billing"
        assert nlu.calls[0] == {"bot_id": "bot-intent", "text": "Billing ", "session_id": "c-1"}

    @pytest.mark.asyncio
    async def test_yes_no_and_fallback(self):
        nlu = MockNLUClassifier()
        assert (await nlu.classify("bot", "Yeah", "c-1")).intent == "Yes"
        assert (await nlu.classify("bot", "nope", "c-1")).intent == "No"
        fallback = await nlu.classify("bot", "purple", "c-1")
        assert fallback.intent == FALLBACK_INTENT
        assert fallback.confidence == 0.0

    @pytest.mark.asyncio
    async def test_slot_value(self):
        nlu = MockNLUClassifier()
        nlu.add("my birthday is today", "Date", slot_value="2026-03-11")
        result = await nlu.classify("bot", "My birthday is today", "c-1")
        assert result.slot_value() == "2026-03-11"


class TestRESTNLUClassifier:
    @pytest.mark.asyncio
    async def test_classify_posts_payload(self):
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"intent": "Yes", "confidence": 0.95})

        nlu = RESTNLUClassifier(NLUConfig(type="rest", base_url="http://collaborator.test"))
        nlu.client = mock_client(handler)
        result = await nlu.classify("bot-yesno", "yes please", "c-1")

        assert result.intent == "Yes"
        assert bodies == [{"botId": "bot-yesno", "text": "yes please", "sessionId": "c-1"}]
        await nlu.close()

    @pytest.mark.asyncio
    async def test_failure_raises(self):
        nlu = RESTNLUClassifier(NLUConfig(type="rest", base_url="http://collaborator.test"))
        nlu.client = mock_client(lambda request: httpx.Response(500))
        with pytest.raises(CollaboratorError):
            await nlu.classify("bot-yesno", "yes", "c-1")

    def test_factory(self):
        assert isinstance(create_nlu_classifier(NLUConfig()), MockNLUClassifier)
        assert isinstance(create_nlu_classifier(NLUConfig(type="rest", base_url="http://x")), RESTNLUClassifier)


# ──────────────────────────────────────────────────────────────
#  Speech
# ──────────────────────────────────────────────────────────────

class TestSpeech:
    def test_text_type(self):
        assert text_type("<speak>Hi</speak>") == "ssml"
        assert text_type("Hi") == "text"

    @pytest.mark.asyncio
    async def test_null_renderer(self):
        assert await NullSpeechRenderer().render("Hi") == b""

    @pytest.mark.asyncio
    async def test_rest_renderer(self):
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(200, content=b"\x00\x01")

        speech = RESTSpeechRenderer(SpeechConfig(type="rest", base_url="http://collaborator.test"))
        speech.client = mock_client(handler)
        assert await speech.render("<speak>Hi</speak>") == b"\x00\x01"
        assert bodies[0]["textType"] == "ssml"
        assert bodies[0]["voiceId"] == "Olivia"
        await speech.close()

    def test_factory(self):
        assert isinstance(create_speech_renderer(SpeechConfig()), NullSpeechRenderer)


# ──────────────────────────────────────────────────────────────
#  Async invoker
# ──────────────────────────────────────────────────────────────

class TestMockAsyncInvoker:
    @pytest.mark.asyncio
    async def test_result_written_to_state(self):
        store = InMemoryStateStore()
        invoker = MockAsyncInvoker(store)

        async def balance(payload):
            return {"Customer": {"balance": "42.50"}}

        invoker.register("arn:function/balance", balance)
        await invoker.invoke_async("arn:function/balance", {"ContactId": "c-1"})
        await invoker.drain()

        state = await store.get("c-1")
        assert state.get("IntegrationStatus") == "DONE"
        assert state.get_path("Customer.balance") == "42.50"

    @pytest.mark.asyncio
    async def test_failure_marks_error(self):
        store = InMemoryStateStore()
        invoker = MockAsyncInvoker(store)

        async def broken(payload):
            raise RuntimeError("upstream unavailable")

        invoker.register("arn:function/broken", broken)
        await invoker.invoke_async("arn:function/broken", {"ContactId": "c-1"})
        await invoker.drain()

        state = await store.get("c-1")
        assert state.get("IntegrationStatus") == "ERROR"
        assert state.get("IntegrationErrorCause") == "upstream unavailable"

    @pytest.mark.asyncio
    async def test_unregistered_is_recorded_only(self):
        store = InMemoryStateStore()
        invoker = MockAsyncInvoker(store)
        await invoker.invoke_async("arn:function/unknown", {"ContactId": "c-1"})
        assert invoker.invocations == [("arn:function/unknown", {"ContactId": "c-1"})]
        assert (await store.get("c-1")).to_dict() == {}


class TestRESTAsyncInvoker:
    @pytest.mark.asyncio
    async def test_posts_invocation(self):
        paths = []

        def handler(request: httpx.Request) -> httpx.Response:
            paths.append(request.url.path)
            return httpx.Response(202)

        invoker = RESTAsyncInvoker(InvokerConfig(type="rest", base_url="http://collaborator.test"))
        invoker.client = mock_client(handler)
        await invoker.invoke_async("balance", {"ContactId": "c-1"})
        assert paths == ["/functions/balance/invocations"]
        await invoker.close()

    @pytest.mark.asyncio
    async def test_rejection_raises(self):
        invoker = RESTAsyncInvoker(InvokerConfig(type="rest", base_url="http://collaborator.test"))
        invoker.client = mock_client(lambda request: httpx.Response(403))
        with pytest.raises(CollaboratorError):
            await invoker.invoke_async("balance", {"ContactId": "c-1"})

    def test_factory(self):
        assert isinstance(create_async_invoker(InvokerConfig(), InMemoryStateStore()), MockAsyncInvoker)


# ──────────────────────────────────────────────────────────────
#  Settings
# ──────────────────────────────────────────────────────────────

class TestSettings:
    def teardown_method(self):
        reset_settings()

    def test_env_substitution(self, tmp_path, monkeypatch):
        monkeypatch.setenv("NLU_API_URL", "http://nlu.internal")
        path = tmp_path / "settings.yaml"
        path.write_text(textwrap.dedent("""
            engine:
              timezone: Australia/Sydney
              max_steps_per_turn: 50
              unknown_key: ignored
            nlu:
              type: rest
              base_url: ${NLU_API_URL}
              api_key: ${UNSET_VARIABLE_FOR_TEST}
        """))
        settings = load_settings(str(path))

        assert settings.engine.timezone == "Australia/Sydney"
        assert settings.engine.max_steps_per_turn == 50
        assert settings.nlu.base_url == "http://nlu.internal"
        assert settings.nlu.api_key == "${UNSET_VARIABLE_FOR_TEST}"
        assert settings.engine.resource_prefix == "dev-rules-engine-"

    def test_config_env_var(self, tmp_path, monkeypatch):
        path = tmp_path / "other.yaml"
        path.write_text("app_name: Other\n")
        monkeypatch.setenv("RULES_ENGINE_CONFIG", str(path))
        assert load_settings().app_name == "Other"

    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(str(tmp_path / "absent.yaml"))
        assert settings.database.store_backend == "memory"
        assert settings.engine.dtmf_max_error_count == 3

    def test_shipped_settings_load(self):
        settings = load_settings()
        assert settings.config_provider.type == "file"
        assert settings.engine.yes_no_bot_name == "yesno"
