"""
Rule-set cache — process-wide snapshot of rule sets and lookup tables.

The snapshot is loaded from the config provider on first use and checked
against the provider's last-changed timestamp at the start of every turn.
A changed timestamp drops the snapshot; stale data is never served after
invalidation.

Disabled rule sets and disabled rules are filtered out at load time.
Rule sets are handed out as deep copies so per-turn templating can never
mutate the cached definitions.
"""
from __future__ import annotations

import asyncio
import structlog
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

from engine.errors import RuleConfigurationError
from models.schemas import LookupTables, RuleSet

if TYPE_CHECKING:
    from backend.config_provider import BaseConfigProvider

logger = structlog.get_logger()


@dataclass
class ConfigSnapshot:
    last_changed: Optional[str]
    by_name: dict[str, RuleSet] = field(default_factory=dict)
    by_end_point: dict[str, RuleSet] = field(default_factory=dict)
    lookups: LookupTables = field(default_factory=LookupTables)


class RuleSetCache:
    """Explicit cache with invalidate()/get_or_load(), injected into the stepper."""

    def __init__(self, provider: "BaseConfigProvider"):
        self.provider = provider
        self._snapshot: Optional[ConfigSnapshot] = None
        self._lock = asyncio.Lock()

    @property
    def loaded(self) -> bool:
        return self._snapshot is not None

    def invalidate(self) -> None:
        if self._snapshot is not None:
            logger.info("rule_set_cache_invalidated", last_changed=self._snapshot.last_changed)
        self._snapshot = None

    async def check_last_changed(self) -> bool:
        """Invalidate when the provider reports a change. Returns True if invalidated."""
        if self._snapshot is None:
            return False
        last_changed = await self.provider.last_changed_at()
        if last_changed != self._snapshot.last_changed:
            logger.info(
                "rule_set_config_changed",
                cached=self._snapshot.last_changed,
                current=last_changed,
            )
            self.invalidate()
            return True
        return False

    async def get_or_load(self) -> ConfigSnapshot:
        if self._snapshot is not None:
            return self._snapshot
        async with self._lock:
            if self._snapshot is None:
                self._snapshot = await self._load()
        return self._snapshot

    async def _load(self) -> ConfigSnapshot:
        last_changed = await self.provider.last_changed_at()
        rule_sets = await self.provider.get_rule_sets()
        lookups = await self.provider.get_lookups()

        snapshot = ConfigSnapshot(last_changed=last_changed, lookups=lookups)
        for rule_set in rule_sets:
            if not rule_set.enabled:
                continue
            enabled = rule_set.model_copy(update={"rules": [r for r in rule_set.rules if r.enabled]})
            snapshot.by_name[enabled.name] = enabled
            for end_point in enabled.end_points:
                snapshot.by_end_point[end_point] = enabled

        logger.info(
            "rule_set_cache_loaded",
            rule_sets=len(snapshot.by_name),
            end_points=len(snapshot.by_end_point),
            last_changed=last_changed,
        )
        return snapshot

    # ── Lookups ───────────────────────────────────────────────

    async def get_rule_set(self, name: str, contact_id: str = "") -> RuleSet:
        snapshot = await self.get_or_load()
        rule_set = snapshot.by_name.get(name)
        if rule_set is None:
            logger.error("rule_set_not_found", contact_id=contact_id, rule_set=name)
            raise RuleConfigurationError(f"Failed to find rule set by name: {name}", contact_id)
        return rule_set.model_copy(deep=True)

    async def get_rule_set_by_end_point(self, end_point: str, contact_id: str = "") -> RuleSet:
        snapshot = await self.get_or_load()
        rule_set = snapshot.by_end_point.get(end_point)
        if rule_set is None:
            logger.error("end_point_not_found", contact_id=contact_id, end_point=end_point)
            raise RuleConfigurationError(f"Failed to find rule set for end point: {end_point}", contact_id)
        return rule_set.model_copy(deep=True)

    async def get_lookups(self) -> LookupTables:
        snapshot = await self.get_or_load()
        return snapshot.lookups
