"""Rule interpretation: templating, weights, lookup, navigation and caching."""
from engine.cache import RuleSetCache
from engine.errors import (
    CollaboratorError,
    RuleConfigurationError,
    RulesEngineError,
    UnknownEventTypeError,
    UnsupportedPhaseError,
)
from engine.navigator import POP_AND_RESUME, RuleNavigator
from engine.templating import TemplateRenderer, template_rule

__all__ = [
    "RuleSetCache",
    "RuleNavigator",
    "POP_AND_RESUME",
    "TemplateRenderer",
    "template_rule",
    "RulesEngineError",
    "RuleConfigurationError",
    "UnsupportedPhaseError",
    "CollaboratorError",
    "UnknownEventTypeError",
]
