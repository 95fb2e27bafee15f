"""
Core data models for the rules engine.
These are the universal types shared across all modules.

Rule sets and rules are authored in camelCase (``endPoints``, ``ruleId``);
the models accept both the authored names and the Python field names.
Turn requests and responses use camelCase on the wire.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class RuleType(str, Enum):
    DTMF_INPUT = "DTMFInput"
    DTMF_MENU = "DTMFMenu"
    NLU_INPUT = "NLUInput"
    NLU_MENU = "NLUMenu"
    DISTRIBUTION = "Distribution"
    RULE_SET = "RuleSet"
    INTEGRATION = "Integration"
    SET_ATTRIBUTES = "SetAttributes"
    UPDATE_STATES = "UpdateStates"
    MESSAGE = "Message"
    METRIC = "Metric"
    QUEUE = "Queue"
    EXTERNAL_NUMBER = "ExternalNumber"
    TERMINATE = "Terminate"
    SMS_MESSAGE = "SMSMessage"
    WAIT = "Wait"
    TEXT_INFERENCE = "TextInference"


# The stepper never continues past these, even when they do not ask for input
TERMINAL_RULE_TYPES = frozenset({
    RuleType.QUEUE.value,
    RuleType.TERMINATE.value,
    RuleType.EXTERNAL_NUMBER.value,
})


class EventType(str, Enum):
    NEW_INTERACTION = "NEW_INTERACTION"
    NEXT_RULE = "NEXT_RULE"
    INPUT = "INPUT"
    HANGUP = "HANGUP"


class Phase(str, Enum):
    INPUT = "input"
    CONFIRM = "confirm"


class IntegrationStatus(str, Enum):
    START = "START"
    RUN = "RUN"
    DONE = "DONE"
    ERROR = "ERROR"
    TIMEOUT = "TIMEOUT"


# Input sentinels sent by the channel
NO_INPUT = "NOINPUT"
NO_MATCH = "NOMATCH"


# ──────────────────────────────────────────────────────────────
#  Rule sets, rules and weights
# ──────────────────────────────────────────────────────────────

class Weight(BaseModel):
    """A single activation condition: field <operation> value scores weight."""
    model_config = ConfigDict(populate_by_name=True)

    field: str = ""
    operation: str = ""
    value: Optional[str] = None
    weight: float = 0.0

    @field_validator("field", "operation", mode="before")
    @classmethod
    def _none_to_empty(cls, v):
        return "" if v is None else v

    @field_validator("value", mode="before")
    @classmethod
    def _value_to_string(cls, v):
        # Values are authored as text; YAML may hand us numbers or booleans
        if v is None or isinstance(v, str):
            return v
        if isinstance(v, bool):
            return "true" if v else "false"
        return str(v)


class Rule(BaseModel):
    """A single activatable dialogue step."""
    model_config = ConfigDict(populate_by_name=True)

    name: str
    type: str
    rule_id: str = Field(default="", alias="ruleId")
    enabled: bool = True
    description: str = ""
    params: dict[str, Any] = {}
    weights: list[Weight] = []
    activation: float = 0.0

    @property
    def always_on(self) -> bool:
        return not self.weights and self.activation == 0


class RuleSet(BaseModel):
    """Named, ordered list of rules reachable by name or by end point."""
    model_config = ConfigDict(populate_by_name=True)

    name: str
    rule_set_id: str = Field(default="", alias="ruleSetId")
    enabled: bool = True
    folder: str = ""
    description: str = ""
    end_points: list[str] = Field(default_factory=list, alias="endPoints")
    rules: list[Rule] = []

    def rule_index(self, rule_name: str) -> int:
        for i, rule in enumerate(self.rules):
            if rule.name == rule_name:
                return i
        return -1

    def get_rule(self, rule_name: str) -> Optional[Rule]:
        index = self.rule_index(rule_name)
        return self.rules[index] if index >= 0 else None


class ReturnStackEntry(BaseModel):
    """Where to resume once a called rule set runs out of rules."""
    model_config = ConfigDict(populate_by_name=True)

    rule_set_name: str = Field(alias="ruleSetName")
    rule_name: str = Field(alias="ruleName")

    def to_state(self) -> dict[str, str]:
        return self.model_dump(by_alias=True)


# ──────────────────────────────────────────────────────────────
#  Lookup tables — deployment identifiers for human-readable names
# ──────────────────────────────────────────────────────────────

class NamedResource(BaseModel):
    """A deployed resource (queue, flow, prompt, bot, function)."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    name: str = Field(alias="Name")
    id: str = Field(default="", alias="Id")
    arn: str = Field(default="", alias="Arn")
    simple_name: str = Field(default="", alias="SimpleName")


class LookupTables(BaseModel):
    contact_flows: list[NamedResource] = []
    prompts: list[NamedResource] = []
    queues: list[NamedResource] = []
    lex_bots: list[NamedResource] = []
    lambda_functions: list[NamedResource] = []

    @staticmethod
    def find(resources: list[NamedResource], name: str) -> Optional[NamedResource]:
        return next((r for r in resources if r.name == name), None)


# ──────────────────────────────────────────────────────────────
#  NLU classification
# ──────────────────────────────────────────────────────────────

class IntentResult(BaseModel):
    """Outcome of classifying one utterance."""
    intent: str
    confidence: float = 0.0
    slots: dict[str, Any] = {}
    raw: dict[str, Any] = {}

    def slot_value(self, slot_name: str = "dataslot") -> Optional[str]:
        """Interpreted value of a slot, or None when any level is missing."""
        slot = (self.slots or {}).get(slot_name)
        if not isinstance(slot, dict):
            return None
        value = slot.get("value")
        if not isinstance(value, dict):
            return None
        interpreted = value.get("interpretedValue")
        if interpreted is None or interpreted in ("null", "undefined"):
            return None
        return str(interpreted)


# ──────────────────────────────────────────────────────────────
#  Turn request / response
# ──────────────────────────────────────────────────────────────

class TurnRequest(BaseModel):
    """One inbound event from the telephony/chat channel."""
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    event_type: str
    contact_id: Optional[str] = None
    end_point: Optional[str] = None
    input: Optional[str] = None
    contact_attributes: Optional[dict[str, Any]] = None
    customer_phone_number: Optional[str] = None
    interaction_date_time: Optional[datetime] = None
    generate_voice: bool = False


class TurnResponse(BaseModel):
    """What the engine hands back to the channel after a turn or a step."""
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    contact_id: str
    input_required: bool = False
    message: Optional[str] = None
    audio: Optional[str] = None               # base64 encoded
    terminate: bool = False
    rule_set: Optional[str] = None
    rule: Optional[str] = None
    rule_type: Optional[str] = None
    rule_set_id: Optional[str] = None
    rule_id: Optional[str] = None
    folder: Optional[str] = None
    data_type: Optional[str] = None
    intent: Optional[str] = None
    confidence: Optional[float] = None
    slot_value: Optional[str] = None
    slots: Optional[dict[str, Any]] = None
    queue: Optional[str] = None
    external_number: Optional[str] = None
    integration_status: Optional[str] = None
    integration_error_cause: Optional[str] = None
    state: dict[str, Any] = {}

    @property
    def continues(self) -> bool:
        """True when the stepper may move on without customer input."""
        return not self.input_required and not self.terminate

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")

    def to_log(self) -> dict[str, Any]:
        """Wire form with audio redacted and state omitted."""
        data = self.model_dump(exclude_none=True, exclude={"state"}, mode="json")
        if self.audio is not None:
            data["audio"] = "Redacted"
        return data
