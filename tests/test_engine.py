"""
Tests for rule interpretation.

Covers:
  - Weight evaluation and rule activation
  - Template rendering and helpers
  - Parameter lookup against deployment tables
  - Rule navigation and the return stack
  - Rule-set cache loading and invalidation
"""
from datetime import datetime, timezone

import pytest

from backend.config_provider import StaticConfigProvider
from engine.cache import RuleSetCache
from engine.errors import RuleConfigurationError
from engine.lookup import is_message_key, lookup_params, message_type
from engine.navigator import POP_AND_RESUME, RuleNavigator
from engine.templating import TemplateRenderer, format_moment, is_template, template_rule
from engine.weights import evaluate_weight, test_rule as score_rule
from models.schemas import Rule, RuleSet, Weight
from state.document import StateDocument


def weight(field, operation, value=None, score=1.0) -> Weight:
    return Weight(field=field, operation=operation, value=value, weight=score)


# ──────────────────────────────────────────────────────────────
#  Weights
# ──────────────────────────────────────────────────────────────

class TestWeights:
    @pytest.fixture
    def state(self):
        return StateDocument({
            "Customer": {"name": "Alexandra", "phone": "+61412345678", "tags": ["vip", "late"], "balance": "150"},
            "Empty": "",
            "Count": 5,
        })

    @pytest.mark.parametrize("w,expected", [
        (weight("Customer.name", "contains", "xand"), True),
        (weight("Customer.name", "notcontains", "xand"), False),
        (weight("Customer.tags", "contains", "vip"), True),
        (weight("Customer.name", "startswith", "Alex"), True),
        (weight("Customer.name", "notstartswith", "Alex"), False),
        (weight("Customer.name", "endswith", "dra"), True),
        (weight("Customer.name", "notendswith", "dra"), False),
        (weight("Customer.name", "equals", "Alexandra"), True),
        (weight("Customer.name", "notequals", "Alex"), True),
        (weight("Empty", "isempty"), True),
        (weight("Missing", "isempty"), True),
        (weight("Customer.name", "isnotempty"), True),
        (weight("Missing", "isnull"), True),
        (weight("Empty", "isnotnull"), True),
        (weight("Customer.balance", "greaterthan", "99"), True),
        (weight("Customer.balance", "lessthan", "99"), False),
        (weight("Customer.name", "lessthan", "Bob"), True),
        (weight("Customer.phone", "ismobile"), True),
        (weight("Customer.phone", "isnotmobile"), False),
        (weight("Missing", "isnotmobile"), True),
        (weight("Customer.tags.length", "greaterthan", "1"), True),
    ])
    def test_operations(self, state, renderer, w, expected):
        assert evaluate_weight(w, state, renderer) is expected

    def test_equals_is_strict_about_type(self, state, renderer):
        assert evaluate_weight(weight("Count", "equals", "5"), state, renderer) is False

    def test_value_is_templated(self, state, renderer):
        w = weight("Customer.name", "equals", "{{Customer.name}}")
        assert evaluate_weight(w, state, renderer) is True

    def test_unknown_operation_raises(self, state, renderer):
        with pytest.raises(RuleConfigurationError):
            evaluate_weight(weight("Customer.name", "sounds_like", "x"), state, renderer)

    def test_always_on_rule(self, state, renderer):
        rule = Rule(name="R", type="Message")
        assert score_rule(rule, state, renderer).activated

    def test_activation_threshold(self, state, renderer):
        rule = Rule(name="R", type="Message", activation=2, weights=[
            weight("Customer.name", "startswith", "Alex", 1),
            weight("Customer.tags", "contains", "vip", 1),
            weight("Missing", "isnotnull", None, 5),
        ])
        result = score_rule(rule, state, renderer)
        assert result.activated
        assert result.score == 2
        assert len(result.satisfied) == 2

    def test_below_threshold(self, state, renderer):
        rule = Rule(name="R", type="Message", activation=2, weights=[
            weight("Customer.name", "startswith", "Alex", 1),
        ])
        assert not score_rule(rule, state, renderer).activated

    def test_zero_activation_with_weights_always_fires(self, state, renderer):
        rule = Rule(name="R", type="Message", activation=0, weights=[weight("Missing", "isnotnull")])
        assert score_rule(rule, state, renderer).activated


# ──────────────────────────────────────────────────────────────
#  Templating
# ──────────────────────────────────────────────────────────────

class TestTemplating:
    def test_is_template(self):
        assert is_template("Hi {{name}}")
        assert not is_template("Hi {{name")
        assert not is_template(5)

    def test_render_path(self, renderer):
        assert renderer.render("Hi {{Customer.name}}", StateDocument({"Customer": {"name": "Sam"}})) == "Hi Sam"

    def test_missing_renders_empty(self, renderer):
        assert renderer.render("[{{Missing}}]", {}) == "[]"

    def test_none_renders_empty(self, renderer):
        assert renderer.render("[{{A}}]", {"A": None}) == "[]"

    def test_non_template_passthrough(self, renderer):
        assert renderer.render_if_template(12, {}) == 12
        assert renderer.render_if_template("plain", {}) == "plain"

    def test_ifeq_helper(self, renderer):
        template = '{{#ifeq Status "DONE"}}ok{{else}}not yet{{/ifeq}}'
        assert renderer.render(template, {"Status": "DONE"}) == "ok"
        assert renderer.render(template, {"Status": "RUN"}) == "not yet"

    def test_switch_case_helpers(self, renderer):
        template = '{{#switch Tier}}{{#case "gold"}}G{{/case}}{{#case "silver"}}S{{/case}}{{/switch}}'
        assert renderer.render(template, {"Tier": "silver"}) == "S"

    def test_currency_helpers(self, renderer):
        assert renderer.render("{{formatCentsAsDollars c}}", {"c": "1234"}) == "$12.34"
        assert renderer.render("{{formatCentsAsDollars c}}", {"c": "abc"}) == "unknown dollars"
        assert renderer.render("{{formatBalanceCentsAsDollars c}}", {"c": "-500"}) == "$5.00 in credit"

    def test_character_speech(self, renderer):
        assert renderer.render("{{characterSpeechSlow n}}", {"n": "123"}) == "1, 2, 3"
        assert renderer.render("{{characterSpeechFast n}}", {"n": "123"}) == "1 2 3"

    def test_inc_helper(self, renderer):
        assert renderer.render("{{inc n}}", {"n": "4"}) == "5"

    def test_date_of_birth_human(self, renderer):
        assert renderer.render("{{dateOfBirthHuman d}}", {"d": "01021990"}) == "1st of February 1990"

    def test_date_local_human(self, renderer):
        rendered = renderer.render(
            '{{dateLocalHuman d "Australia/Melbourne"}}', {"d": "2026-03-10T23:00:00Z"},
        )
        assert rendered == "11th of March 2026"

    def test_format_moment(self):
        dt = datetime(2026, 3, 1, 14, 5, tzinfo=timezone.utc)
        assert format_moment(dt, "dddd, Do of MMMM YYYY [at] h:mma") == "Sunday, 1st of March 2026 at 2:05pm"
        assert format_moment(dt, "hh:mm A") == "02:05 PM"

    def test_compile_failure_is_configuration_error(self, renderer):
        with pytest.raises(RuleConfigurationError):
            renderer.render("{{#if a}}x{{/unless}}", {})

    def test_template_rule_skips_excluded_params(self, renderer):
        rule = Rule(name="R", type="DTMFInput", params={
            "offerMessage": "Hi {{Customer.name}}",
            "confirmationMessage": "You said {{Customer.number}}",
        })
        templated = template_rule(rule, StateDocument({"Customer": {"name": "Sam"}}), renderer)
        assert templated.params["offerMessage"] == "Hi Sam"
        assert templated.params["confirmationMessage"] == "You said {{Customer.number}}"
        assert rule.params["offerMessage"] == "Hi {{Customer.name}}"

    def test_template_rule_nested_items(self, renderer):
        rule = Rule(name="R", type="UpdateStates", params={
            "updateStates": [
                {"key": "Customer.greeting", "value": "Hello {{Customer.name}}"},
                {"key": "", "value": "skipped"},
            ],
        })
        templated = template_rule(rule, StateDocument({"Customer": {"name": "Sam"}}), renderer)
        assert templated.params["updateStates"][0]["value"] == "Hello Sam"
        assert templated.params["updateStates"][1]["value"] == "skipped"


# ──────────────────────────────────────────────────────────────
#  Lookup
# ──────────────────────────────────────────────────────────────

class TestLookup:
    PREFIX = "dev-rules-engine-"

    def test_queue(self, lookups):
        params = lookup_params({"queueName": "General"}, lookups, self.PREFIX)
        assert params["queueId"] == "queue-general"
        assert params["queueArn"] == "arn:queue/general"

    def test_flow_missing_raises(self, lookups):
        with pytest.raises(RuleConfigurationError):
            lookup_params({"flowName": "Nope"}, lookups, self.PREFIX)

    def test_bot_and_function_use_prefix(self, lookups):
        params = lookup_params({"lexBotName": "intent", "functionName": "balance"}, lookups, self.PREFIX)
        assert params["lexBotArn"] == "arn:bot/intent"
        assert params["functionArn"] == "arn:function/balance"

    def test_error_rule_set_flag(self, lookups):
        assert lookup_params({"errorRuleSetName": "Err"}, lookups, self.PREFIX)["errorRuleSetNameSet"] == "true"
        assert lookup_params({"errorRuleSetName": ""}, lookups, self.PREFIX)["errorRuleSetNameSet"] == "false"

    def test_message_types(self, lookups):
        params = lookup_params({
            "offerMessage": "Hello",
            "errorMessage1": "<speak>Oops</speak>",
            "autoConfirmMessage": "",
            "welcomeMessage": "prompt:Welcome\nplayed at the start",
        }, lookups, self.PREFIX)
        assert params["offerMessageType"] == "text"
        assert params["errorMessage1Type"] == "ssml"
        assert params["autoConfirmMessageType"] == "none"
        assert params["welcomeMessageType"] == "prompt"
        assert params["welcomeMessagePromptArn"] == "arn:prompt/welcome"

    def test_missing_prompt_leaves_no_type(self, lookups):
        assert message_type("prompt:Missing", lookups) == (None, None)

    def test_is_message_key(self):
        assert is_message_key("offerMessage")
        assert not is_message_key("offerMessageType")
        assert not is_message_key("welcomeMessagePromptArn")
        assert not is_message_key("queueName")


# ──────────────────────────────────────────────────────────────
#  Navigator
# ──────────────────────────────────────────────────────────────

class TestNavigator:
    @pytest.fixture
    def navigator(self, renderer):
        return RuleNavigator(renderer, "dev-rules-engine-")

    @pytest.fixture
    def rule_set(self):
        return RuleSet(name="Main", rules=[
            Rule(name="A", type="Message", params={"message": "a"}),
            Rule(name="B", type="Message", activation=1, weights=[weight("Go", "equals", "yes")]),
            Rule(name="C", type="Message", params={"message": "Hi {{Customer.name}}"}),
        ])

    def test_start_of_rule_set(self, navigator, rule_set):
        assert navigator.next_index(rule_set, StateDocument()) == 0

    def test_after_current_rule(self, navigator, rule_set):
        assert navigator.next_index(rule_set, StateDocument({"CurrentRule": "A"})) == 1

    def test_unknown_current_rule_raises(self, navigator, rule_set):
        with pytest.raises(RuleConfigurationError):
            navigator.next_index(rule_set, StateDocument({"CurrentRule": "Z"}))

    def test_dead_end_without_stack_raises(self, navigator, rule_set):
        with pytest.raises(RuleConfigurationError):
            navigator.next_index(rule_set, StateDocument({"CurrentRule": "C"}))

    def test_dead_end_with_stack_pops(self, navigator, rule_set):
        state = StateDocument({"CurrentRule": "C"})
        navigator.push(state, "Caller", "Transfer")
        assert navigator.next_index(rule_set, state) == POP_AND_RESUME

    def test_skips_inactive_rules_and_templates(self, navigator, rule_set, lookups):
        state = StateDocument({"CurrentRule": "A", "Customer": {"name": "Sam"}})
        rule = navigator.find_next_activated(rule_set, 1, state, lookups)
        assert rule.name == "C"
        assert rule.params["message"] == "Hi Sam"
        assert rule.params["messageType"] == "text"
        assert rule_set.rules[2].params["message"] == "Hi {{Customer.name}}"

    def test_none_when_nothing_activates(self, navigator, lookups):
        rule_set = RuleSet(name="Quiet", rules=[
            Rule(name="Only", type="Message", activation=1, weights=[weight("Go", "equals", "yes")]),
        ])
        assert navigator.find_next_activated(rule_set, 0, StateDocument(), lookups) is None

    def test_push_pop_round_trip(self, navigator):
        state = StateDocument()
        pushed = navigator.push(state, "Main", "Transfer")
        assert navigator.peek(state) == pushed
        popped = navigator.pop(state)
        assert popped == pushed
        assert navigator.pop(state) is None
        assert state.get("ReturnStack") == []

    def test_stack_is_lifo(self, navigator):
        state = StateDocument()
        navigator.push(state, "One", "r1")
        navigator.push(state, "Two", "r2")
        assert navigator.pop(state).rule_set_name == "Two"
        assert navigator.pop(state).rule_set_name == "One"


# ──────────────────────────────────────────────────────────────
#  Cache
# ──────────────────────────────────────────────────────────────

class TestRuleSetCache:
    @pytest.fixture
    def provider(self, lookups):
        return StaticConfigProvider([
            {"name": "Main", "endPoints": ["+61390000000"], "rules": [
                {"name": "A", "type": "Message", "params": {"message": "a"}},
                {"name": "Off", "type": "Message", "enabled": False},
            ]},
            {"name": "Disabled", "enabled": False, "endPoints": ["old"], "rules": []},
        ], lookups)

    @pytest.mark.asyncio
    async def test_loads_and_filters_disabled(self, provider):
        cache = RuleSetCache(provider)
        rule_set = await cache.get_rule_set("Main")
        assert [r.name for r in rule_set.rules] == ["A"]
        with pytest.raises(RuleConfigurationError):
            await cache.get_rule_set("Disabled")

    @pytest.mark.asyncio
    async def test_by_end_point(self, provider):
        cache = RuleSetCache(provider)
        assert (await cache.get_rule_set_by_end_point("+61390000000")).name == "Main"
        with pytest.raises(RuleConfigurationError):
            await cache.get_rule_set_by_end_point("old")

    @pytest.mark.asyncio
    async def test_returns_copies(self, provider):
        cache = RuleSetCache(provider)
        first = await cache.get_rule_set("Main")
        first.rules[0].params["message"] = "mutated"
        second = await cache.get_rule_set("Main")
        assert second.rules[0].params["message"] == "a"

    @pytest.mark.asyncio
    async def test_invalidates_on_change(self, provider):
        cache = RuleSetCache(provider)
        await cache.get_or_load()
        assert await cache.check_last_changed() is False

        provider.replace_rule_sets([{"name": "Main", "rules": [{"name": "B", "type": "Terminate"}]}])
        assert await cache.check_last_changed() is True
        assert not cache.loaded
        rule_set = await cache.get_rule_set("Main")
        assert [r.name for r in rule_set.rules] == ["B"]

    @pytest.mark.asyncio
    async def test_explicit_invalidate(self, provider):
        cache = RuleSetCache(provider)
        await cache.get_or_load()
        cache.invalidate()
        assert not cache.loaded
