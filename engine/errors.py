"""
Rules engine errors.

Configuration errors are authoring mistakes and are never retried.
Collaborator errors wrap failures from the NLU service, the async invoker,
the speech renderer, the config provider or the state store.

Invalid customer input and integration timeouts are normal dialogue
outcomes and never raise.
"""
from __future__ import annotations


class RulesEngineError(Exception):
    """Base exception for all turn failures."""

    def __init__(self, message: str, contact_id: str = ""):
        self.contact_id = contact_id
        super().__init__(message)


class RuleConfigurationError(RulesEngineError):
    """A rule set, rule or rule parameter is misconfigured."""


class UnsupportedPhaseError(RuleConfigurationError):
    """input()/confirm() invoked on a rule type that never awaits input."""

    def __init__(self, rule_type: str, operation: str, contact_id: str = ""):
        self.rule_type = rule_type
        self.operation = operation
        super().__init__(f"{rule_type}.{operation}() is not implemented", contact_id)


class CollaboratorError(RulesEngineError):
    """An external collaborator failed."""

    def __init__(self, message: str, collaborator: str = "", contact_id: str = ""):
        self.collaborator = collaborator
        super().__init__(message, contact_id)


class UnknownEventTypeError(RulesEngineError):
    def __init__(self, event_type: str, contact_id: str = ""):
        self.event_type = event_type
        super().__init__(f"Unhandled event type: {event_type}", contact_id)
