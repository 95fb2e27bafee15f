"""
Parameter lookup — resolves human-readable names in an activated rule's
params to deployment identifiers, and classifies message parameters.

Runs after templating, so names may themselves come from state.
"""
from __future__ import annotations

import structlog
from typing import Any

from engine.errors import RuleConfigurationError
from models.schemas import LookupTables, NamedResource

logger = structlog.get_logger()

PROMPT_PREFIX = "prompt:"


def _require(resources: list[NamedResource], name: str, kind: str) -> NamedResource:
    resource = LookupTables.find(resources, name)
    if resource is None:
        logger.error("lookup_failed", kind=kind, name=name)
        raise RuleConfigurationError(f"Could not find {kind}: {name}")
    return resource


def message_type(value: Any, lookups: LookupTables) -> tuple[str | None, str | None]:
    """
    Classify a message parameter as none / ssml / prompt / text.
    Returns ``(type, prompt_arn)``; type is None when a prompt is missing.
    """
    text = value.strip() if isinstance(value, str) else value
    if text is None or (isinstance(text, str) and text == ""):
        return "none", None
    text = str(text)
    if text.startswith("<speak>") and text.endswith("</speak>"):
        return "ssml", None
    if text.startswith(PROMPT_PREFIX):
        # Only the first line names the prompt, the rest is documentation
        prompt_name = text.split("\n")[0].strip()[len(PROMPT_PREFIX):]
        prompt = LookupTables.find(lookups.prompts, prompt_name)
        if prompt is None:
            logger.error("prompt_lookup_failed", prompt=prompt_name)
            return None, None
        return "prompt", prompt.arn
    return "text", None


def is_message_key(key: str) -> bool:
    return "message" in key.lower() and not key.endswith("Type") and not key.endswith("Arn")


def lookup_params(params: dict[str, Any], lookups: LookupTables, resource_prefix: str) -> dict[str, Any]:
    """
    Add resolved identifiers to ``params`` in place and return it.

    ``resource_prefix`` is the deployment prefix (``{stage}-{service}-``)
    that bots and functions are deployed under.
    """
    if params.get("queueName") is not None:
        queue = _require(lookups.queues, params["queueName"], "queue")
        params["queueId"] = queue.id
        params["queueArn"] = queue.arn

    if params.get("unstaffedQueueName") is not None:
        queue = _require(lookups.queues, params["unstaffedQueueName"], "unstaffed queue")
        params["unstaffedQueueId"] = queue.id
        params["unstaffedQueueArn"] = queue.arn

    if params.get("flowName") is not None:
        flow = _require(lookups.contact_flows, params["flowName"], "contact flow")
        params["flowId"] = flow.id
        params["flowArn"] = flow.arn

    if params.get("lexBotName") is not None:
        bot = _require(lookups.lex_bots, f"{resource_prefix}{params['lexBotName']}", "NLU bot")
        params["lexBotArn"] = bot.arn

    if params.get("functionName") is not None:
        function = _require(lookups.lambda_functions, f"{resource_prefix}{params['functionName']}", "function")
        params["functionArn"] = function.arn

    for key in list(params.keys()):
        if key == "errorRuleSetName":
            params["errorRuleSetNameSet"] = "false" if params[key] in ("", None) else "true"

        if is_message_key(key):
            kind, prompt_arn = message_type(params[key], lookups)
            if kind is not None:
                params[f"{key}Type"] = kind
            if prompt_arn is not None:
                params[f"{key}PromptArn"] = prompt_arn

    return params
