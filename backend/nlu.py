"""
NLU Classifier — turns an utterance into an intent, a confidence and slots.

Backends:
  - rest: posts to an intent-classification service
  - mock: scripted utterance → intent table for development and tests

The classifier is addressed by bot id; handlers resolve bot names to ids
through the lookup tables before classifying.
"""
from __future__ import annotations

import abc
import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import NLUConfig, get_settings
from engine.errors import CollaboratorError
from models.schemas import IntentResult
from state.values import is_number, to_number

logger = structlog.get_logger()

FALLBACK_INTENT = "FallbackIntent"


def parse_classification(raw: dict[str, Any]) -> IntentResult:
    """
    Accept either a flat ``{intent, confidence, slots}`` payload or an
    interpretation list, where the confidence may be a bare number or
    ``{"score": n}``.
    """
    if "interpretations" in raw:
        interpretations = raw.get("interpretations") or []
        if not interpretations:
            return IntentResult(intent=FALLBACK_INTENT, raw=raw)
        interpretation = interpretations[0]
        intent = interpretation.get("intent") or {}
        confidence = interpretation.get("nluConfidence")
        if isinstance(confidence, dict):
            confidence = confidence.get("score")
        return IntentResult(
            intent=intent.get("name", FALLBACK_INTENT),
            confidence=to_number(confidence) if is_number(confidence) else 0.0,
            slots=intent.get("slots") or {},
            raw=raw,
        )

    confidence = raw.get("confidence")
    return IntentResult(
        intent=raw.get("intent") or FALLBACK_INTENT,
        confidence=to_number(confidence) if is_number(confidence) else 0.0,
        slots=raw.get("slots") or {},
        raw=raw,
    )


def data_slot(value: str) -> dict[str, Any]:
    """Slots payload carrying ``value`` in the conventional data slot."""
    return {"dataslot": {"value": {"interpretedValue": value}}}


class BaseNLUClassifier(abc.ABC):

    @abc.abstractmethod
    async def classify(self, bot_id: str, text: str, session_id: str) -> IntentResult:
        ...

    async def close(self):
        pass


class RESTNLUClassifier(BaseNLUClassifier):
    """
    Calls an HTTP classification endpoint:
      POST /classify {"botId", "text", "sessionId"}
    """

    def __init__(self, config: NLUConfig = None):
        self.config = config or get_settings().nlu
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {}
            if self.config.api_key:
                headers["Authorization"] = f"Bearer {self.config.api_key}"
            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers=headers,
                timeout=self.config.timeout_s,
            )
        return self.client

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        client = await self._get_client()
        response = await client.post("/classify", json=payload)
        response.raise_for_status()
        return response.json()

    async def classify(self, bot_id: str, text: str, session_id: str) -> IntentResult:
        try:
            raw = await self._post({"botId": bot_id, "text": text, "sessionId": session_id})
        except httpx.HTTPError as e:
            logger.error("nlu_classify_failed", bot_id=bot_id, contact_id=session_id, error=str(e))
            raise CollaboratorError(f"NLU classification failed for bot {bot_id}: {e}", "nlu", session_id) from e
        result = parse_classification(raw)
        logger.info(
            "nlu_classified",
            bot_id=bot_id,
            contact_id=session_id,
            intent=result.intent,
            confidence=result.confidence,
        )
        return result


class MockNLUClassifier(BaseNLUClassifier):
    """
    Scripted classifier for development and testing.

    Utterances are matched case-insensitively, first against entries
    registered for the specific bot, then against entries for any bot.
    Unscripted yes/no words classify as ``Yes`` / ``No``; anything else
    falls back to ``FallbackIntent`` with zero confidence.
    """

    YES_WORDS = {"yes", "yeah", "yep", "correct", "that's right"}
    NO_WORDS = {"no", "nope", "wrong", "that's wrong"}

    def __init__(self):
        self._script: dict[tuple[Optional[str], str], IntentResult] = {}
        self.calls: list[dict[str, str]] = []

    def add(
        self,
        text: str,
        intent: str,
        confidence: float = 1.0,
        slot_value: Optional[str] = None,
        bot_id: Optional[str] = None,
    ) -> None:
        slots = data_slot(slot_value) if slot_value is not None else {}
        self._script[(bot_id, text.strip().lower())] = IntentResult(
            intent=intent, confidence=confidence, slots=slots,
        )

    async def classify(self, bot_id: str, text: str, session_id: str) -> IntentResult:
        self.calls.append({"bot_id": bot_id, "text": text, "session_id": session_id})
        key = (text or "").strip().lower()
        result = self._script.get((bot_id, key)) or self._script.get((None, key))
        if result is None:
            if key in self.YES_WORDS:
                result = IntentResult(intent="Yes", confidence=1.0)
            elif key in self.NO_WORDS:
                result = IntentResult(intent="No", confidence=1.0)
            else:
                result = IntentResult(intent=FALLBACK_INTENT, confidence=0.0)
        logger.info("mock_nlu_classified", bot_id=bot_id, contact_id=session_id, intent=result.intent)
        return result.model_copy(deep=True)


def create_nlu_classifier(config: NLUConfig = None) -> BaseNLUClassifier:
    """Factory function to create the configured NLU classifier."""
    config = config or get_settings().nlu
    if config.type == "rest" and config.base_url:
        return RESTNLUClassifier(config)
    logger.warning("using_mock_nlu", reason="no classifier configured or base_url empty")
    return MockNLUClassifier()
