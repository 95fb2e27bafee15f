"""
Config Provider — where rule sets, lookup tables and holidays come from.

Supports YAML files on disk (development, small deployments), a REST admin
service, and a static in-process provider for tests and embedding.
The provider is configured via settings.yaml:

    config_provider:
      type: file
      rule_sets_path: config/rulesets.yaml
      lookups_path: config/lookups.yaml

Lookup tables map human-readable names (queues, contact flows, prompts,
NLU bots, functions) to deployment identifiers.
"""
from __future__ import annotations

import abc
import structlog
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Optional

import httpx
import yaml
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import ConfigProviderConfig, get_settings
from engine.errors import CollaboratorError
from models.schemas import LookupTables, NamedResource, RuleSet

logger = structlog.get_logger()

# Lookup table names as authored in YAML / returned by the admin service
LOOKUP_KEYS = {
    "contactFlows": "contact_flows",
    "prompts": "prompts",
    "queues": "queues",
    "lexBots": "lex_bots",
    "lambdaFunctions": "lambda_functions",
}


def _as_date(when: date | datetime) -> date:
    return when.date() if isinstance(when, datetime) else when


class BaseConfigProvider(abc.ABC):
    """Abstract base for all config providers."""

    @abc.abstractmethod
    async def last_changed_at(self) -> Optional[str]:
        """Opaque timestamp that changes whenever any rule set or lookup changes."""
        ...

    @abc.abstractmethod
    async def get_rule_sets(self) -> list[RuleSet]:
        ...

    @abc.abstractmethod
    async def get_contact_flows(self) -> list[NamedResource]:
        ...

    @abc.abstractmethod
    async def get_prompts(self) -> list[NamedResource]:
        ...

    @abc.abstractmethod
    async def get_queues(self) -> list[NamedResource]:
        ...

    @abc.abstractmethod
    async def get_lex_bots(self) -> list[NamedResource]:
        ...

    @abc.abstractmethod
    async def get_lambda_functions(self) -> list[NamedResource]:
        ...

    @abc.abstractmethod
    async def is_holiday(self, when: date | datetime) -> bool:
        ...

    async def get_lookups(self) -> LookupTables:
        return LookupTables(
            contact_flows=await self.get_contact_flows(),
            prompts=await self.get_prompts(),
            queues=await self.get_queues(),
            lex_bots=await self.get_lex_bots(),
            lambda_functions=await self.get_lambda_functions(),
        )

    async def close(self):
        pass


def parse_rule_sets(raw: Any) -> list[RuleSet]:
    """Accept either a bare list or a mapping with a ``ruleSets`` list."""
    if isinstance(raw, dict):
        raw = raw.get("ruleSets", [])
    return [RuleSet.model_validate(item) for item in raw or []]


def parse_resources(raw: Any) -> list[NamedResource]:
    return [NamedResource.model_validate(item) for item in raw or []]


class StaticConfigProvider(BaseConfigProvider):
    """
    In-process provider holding rule sets and lookups in memory.
    Used by tests and when embedding the engine with code-defined rules.
    """

    def __init__(
        self,
        rule_sets: list[RuleSet | dict[str, Any]] = None,
        lookups: LookupTables = None,
        holidays: list[date] = None,
    ):
        self._rule_sets = [r if isinstance(r, RuleSet) else RuleSet.model_validate(r) for r in rule_sets or []]
        self._lookups = lookups or LookupTables()
        self._holidays = set(holidays or [])
        self._version = 1

    def replace_rule_sets(self, rule_sets: list[RuleSet | dict[str, Any]]) -> None:
        self._rule_sets = [r if isinstance(r, RuleSet) else RuleSet.model_validate(r) for r in rule_sets]
        self._version += 1

    async def last_changed_at(self) -> Optional[str]:
        return str(self._version)

    async def get_rule_sets(self) -> list[RuleSet]:
        return list(self._rule_sets)

    async def get_contact_flows(self) -> list[NamedResource]:
        return list(self._lookups.contact_flows)

    async def get_prompts(self) -> list[NamedResource]:
        return list(self._lookups.prompts)

    async def get_queues(self) -> list[NamedResource]:
        return list(self._lookups.queues)

    async def get_lex_bots(self) -> list[NamedResource]:
        return list(self._lookups.lex_bots)

    async def get_lambda_functions(self) -> list[NamedResource]:
        return list(self._lookups.lambda_functions)

    async def is_holiday(self, when: date | datetime) -> bool:
        return _as_date(when) in self._holidays


class FileConfigProvider(BaseConfigProvider):
    """
    Reads rule sets and lookup tables from YAML files.
    The last-changed timestamp is the newest modification time of the files,
    so editing either file invalidates the engine's cache.
    """

    def __init__(self, rule_sets_path: str, lookups_path: str = ""):
        self.rule_sets_path = Path(rule_sets_path)
        self.lookups_path = Path(lookups_path) if lookups_path else None

    def _load_yaml(self, path: Optional[Path]) -> Any:
        if path is None or not path.exists():
            return None
        try:
            with open(path) as f:
                return yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            logger.error("config_file_load_failed", path=str(path), error=str(e))
            raise CollaboratorError(f"Failed to load config file {path}: {e}", "config_provider") from e

    def _lookup_section(self, key: str) -> list[NamedResource]:
        raw = self._load_yaml(self.lookups_path) or {}
        return parse_resources(raw.get(key))

    async def last_changed_at(self) -> Optional[str]:
        mtimes = [p.stat().st_mtime for p in (self.rule_sets_path, self.lookups_path) if p is not None and p.exists()]
        if not mtimes:
            return None
        return datetime.fromtimestamp(max(mtimes), tz=timezone.utc).isoformat()

    async def get_rule_sets(self) -> list[RuleSet]:
        if not self.rule_sets_path.exists():
            logger.warning("rule_sets_file_missing", path=str(self.rule_sets_path))
            return []
        return parse_rule_sets(self._load_yaml(self.rule_sets_path))

    async def get_contact_flows(self) -> list[NamedResource]:
        return self._lookup_section("contactFlows")

    async def get_prompts(self) -> list[NamedResource]:
        return self._lookup_section("prompts")

    async def get_queues(self) -> list[NamedResource]:
        return self._lookup_section("queues")

    async def get_lex_bots(self) -> list[NamedResource]:
        return self._lookup_section("lexBots")

    async def get_lambda_functions(self) -> list[NamedResource]:
        return self._lookup_section("lambdaFunctions")

    async def get_lookups(self) -> LookupTables:
        raw = self._load_yaml(self.lookups_path) or {}
        return LookupTables(**{field: parse_resources(raw.get(key)) for key, field in LOOKUP_KEYS.items()})

    async def is_holiday(self, when: date | datetime) -> bool:
        raw = self._load_yaml(self.lookups_path) or {}
        target = _as_date(when).isoformat()
        return any(str(h) == target for h in raw.get("holidays") or [])


class RESTConfigProvider(BaseConfigProvider):
    """
    Fetches configuration from an admin REST service.

    Endpoints:
      GET /lastchange            → {"lastChangeTimestamp": "..."}
      GET /rulesets              → [RuleSet, ...]
      GET /lookups/{name}        → [{"Name", "Id", "Arn"}, ...]
      GET /holidays/{yyyy-mm-dd} → {"holiday": true|false}
    """

    def __init__(self, config: ConfigProviderConfig = None):
        self.config = config or get_settings().config_provider
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {}
            if self.config.auth_type == "bearer":
                token = self.config.auth_credentials.get("token", "")
                headers["Authorization"] = f"Bearer {token}"
            elif self.config.auth_type == "api_key":
                key_name = self.config.auth_credentials.get("header_name", "X-API-Key")
                headers[key_name] = self.config.auth_credentials.get("api_key", "")

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
    async def _raw_get(self, path: str) -> Any:
        client = await self._get_client()
        response = await client.get(path)
        response.raise_for_status()
        return response.json()

    async def _get(self, path: str) -> Any:
        try:
            return await self._raw_get(path)
        except httpx.HTTPError as e:
            logger.error("config_provider_request_failed", path=path, error=str(e))
            raise CollaboratorError(f"Config provider request failed: {path}: {e}", "config_provider") from e

    async def last_changed_at(self) -> Optional[str]:
        result = await self._get("/lastchange")
        return result.get("lastChangeTimestamp") if isinstance(result, dict) else result

    async def get_rule_sets(self) -> list[RuleSet]:
        return parse_rule_sets(await self._get("/rulesets"))

    async def get_contact_flows(self) -> list[NamedResource]:
        return parse_resources(await self._get("/lookups/contactFlows"))

    async def get_prompts(self) -> list[NamedResource]:
        return parse_resources(await self._get("/lookups/prompts"))

    async def get_queues(self) -> list[NamedResource]:
        return parse_resources(await self._get("/lookups/queues"))

    async def get_lex_bots(self) -> list[NamedResource]:
        return parse_resources(await self._get("/lookups/lexBots"))

    async def get_lambda_functions(self) -> list[NamedResource]:
        return parse_resources(await self._get("/lookups/lambdaFunctions"))

    async def is_holiday(self, when: date | datetime) -> bool:
        result = await self._get(f"/holidays/{_as_date(when).isoformat()}")
        return bool(result.get("holiday")) if isinstance(result, dict) else bool(result)

    async def close(self):
        if self.client:
            await self.client.aclose()


def create_config_provider(config: ConfigProviderConfig = None) -> BaseConfigProvider:
    """Factory function to create the configured config provider."""
    config = config or get_settings().config_provider
    if config.type == "rest" and config.base_url:
        return RESTConfigProvider(config)
    if config.type == "rest":
        logger.warning("using_file_config_provider", reason="rest configured but base_url empty")
    return FileConfigProvider(config.rule_sets_path, config.lookups_path)
