"""
Flag Resolver: computes the effective flag a context observes.

Given a feature and a starting context, the resolver reads every override
of the feature along the context chain in one snapshot and picks a winner:

- the highest (least specific) ``off``/``on`` override wins outright and is
  locked for every context below the one that holds it;
- otherwise the most specific ``allowed``/``allowed_on`` override wins,
  unlocked;
- otherwise the definition default applies (``off`` at a root account when
  the feature is root-opt-in and allowed by default).

Hidden features without any override resolve to nothing unless the caller
asks to see them, and ``hide_inherited_enabled`` hides flags forced on from
above.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from src.core.flags.cache import ResolutionCache
from src.core.flags.context import Context
from src.core.flags.definitions import FeatureDefinition, FeatureRegistry
from src.core.flags.models import FlagRecord, FlagState, ResolvedFlag
from src.core.flags.repository import FlagRepository

logger = logging.getLogger(__name__)


class FlagResolver:
    """Resolves (feature, context) to a ResolvedFlag."""

    def __init__(
        self,
        registry: FeatureRegistry,
        repository: FlagRepository,
        cache: Optional[ResolutionCache] = None,
    ):
        self._registry = registry
        self._repository = repository
        self._cache = cache

    @property
    def registry(self) -> FeatureRegistry:
        return self._registry

    @property
    def cache(self) -> Optional[ResolutionCache]:
        return self._cache

    def resolve(
        self,
        feature: str,
        context: Context,
        skip_cache: bool = False,
        override_hidden: bool = False,
        hide_inherited_enabled: bool = False,
    ) -> Optional[ResolvedFlag]:
        """Return the effective flag, or None when nothing is visible.

        Raises:
            UnknownFeatureError: If ``feature`` is not registered.
        """
        definition = self._registry.get(feature)
        if not definition.applies_to_context(context):
            return None

        chain_keys = tuple(c.key for c in context.chain())
        key = (feature, chain_keys, override_hidden, hide_inherited_enabled)
        generation = 0
        if self._cache is not None:
            if not skip_cache:
                hit, cached = self._cache.lookup(key)
                if hit:
                    return cached
            generation = self._cache.generation(feature)

        resolved = self._resolve(definition, context, override_hidden, hide_inherited_enabled)

        if self._cache is not None:
            # A skip_cache read is fresh, so it refreshes the cache as well.
            self._cache.store(key, resolved, generation)
        return resolved

    def enabled(self, feature: str, context: Context) -> bool:
        """Convenience check: is ``feature`` on or allowed_on for ``context``?"""
        flag = self.resolve(feature, context)
        return flag is not None and flag.enabled

    # -----------------------------------------------------------------------
    # Internal helpers
    # -----------------------------------------------------------------------

    def _resolve(
        self,
        definition: FeatureDefinition,
        context: Context,
        override_hidden: bool,
        hide_inherited_enabled: bool,
    ) -> Optional[ResolvedFlag]:
        chain = [c for c in context.chain() if definition.applies_to_context(c)]
        records = self._repository.fetch_chain(definition.name, chain)

        winner, locked = self._pick(chain, records, context)

        if winner is None:
            if definition.hidden and not override_hidden:
                logger.debug("Hidden feature %s has no override above %s", definition.name, context)
                return None
            winner = definition.default_flag(self._default_state(definition, context))
            locked = False

        if (
            hide_inherited_enabled
            and winner.state == FlagState.ON
            and not context.same_as(winner.context_type, winner.context_id)
        ):
            return None

        return ResolvedFlag.from_record(
            winner,
            locked=locked,
            hidden=definition.hidden and winner.is_default,
        )

    @staticmethod
    def _pick(
        chain: List[Context],
        records: Dict[str, FlagRecord],
        context: Context,
    ) -> tuple[Optional[FlagRecord], bool]:
        """Choose the winning record; returns (record, locked)."""
        winner: Optional[FlagRecord] = None
        # Least specific first: the first terminal state seen pins everything below.
        for node in reversed(chain):
            record = records.get(node.key)
            if record is None:
                continue
            if record.state.is_terminal:
                return record, node.key != context.key
            winner = record
        return winner, False

    @staticmethod
    def _default_state(definition: FeatureDefinition, context: Context) -> FlagState:
        if (
            definition.root_opt_in
            and context.is_root_account
            and definition.state == FlagState.ALLOWED
        ):
            return FlagState.OFF
        return definition.state
