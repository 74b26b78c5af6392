"""
Feature Flag Service: the entry point hosts talk to.

Wires the registry, repository, audit log, cache, resolver and validator
together and implements the mutations:

    set(feature, context, actor, state)  -> MutationResult
    unset(feature, context, actor)       -> MutationResult

A mutation writes the override and its audit row in one transaction,
invalidates the resolution cache before returning, and only then runs the
feature's on_transition callback.  Concurrent creators of the same
override race on the unique index; the loser retries once.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Callable, Dict, List, Optional, Tuple, TypeVar, Union

from src.core.flags.access import AccessPolicy, RoleAccessPolicy
from src.core.flags.audit import AuditLog
from src.core.flags.cache import DEFAULT_MAX_ENTRIES, ResolutionCache
from src.core.flags.config import FlagsConfig, load_flags_config
from src.core.flags.context import Context
from src.core.flags.database import FlagDatabase
from src.core.flags.definitions import FeatureDefinition, FeatureRegistry, load_registry
from src.core.flags.exceptions import InvalidContextForFeatureError, PersistenceConflictError
from src.core.flags.models import (
    Actor,
    AuditAction,
    AuditLogEntry,
    ContextKind,
    DenialReason,
    FlagRecord,
    FlagState,
    MutationResult,
    ResolvedFlag,
)
from src.core.flags.repository import FlagRepository
from src.core.flags.resolver import FlagResolver
from src.core.flags.transitions import TransitionTable, TransitionValidator, coerce_state

logger = logging.getLogger(__name__)

T = TypeVar("T")


def unique_constraint_retry(operation: Callable[[], T], feature: str, context: Context) -> T:
    """Run ``operation``; on a unique-index violation re-run it exactly once.

    The second attempt re-reads, so it finds the row the other writer
    created and updates it instead of inserting.

    Raises:
        PersistenceConflictError: If the second attempt also collides.
    """
    try:
        return operation()
    except sqlite3.IntegrityError as exc:
        logger.warning("Unique constraint race on %s at %s, retrying once: %s", feature, context, exc)
    try:
        return operation()
    except sqlite3.IntegrityError as exc:
        raise PersistenceConflictError(feature, context.key) from exc


class FeatureFlagService:
    """Feature flag reads and mutations over one FlagDatabase."""

    def __init__(
        self,
        db: FlagDatabase,
        registry: FeatureRegistry,
        access_policy: Optional[AccessPolicy] = None,
        transition_table: Optional[TransitionTable] = None,
        cache_enabled: bool = True,
        cache_max_entries: int = DEFAULT_MAX_ENTRIES,
    ):
        self._db = db
        self._registry = registry
        self._repository = FlagRepository(db)
        self._audit = AuditLog(db)
        self._cache = ResolutionCache(cache_max_entries) if cache_enabled else None
        self._access = access_policy or RoleAccessPolicy()
        self._resolver = FlagResolver(registry, self._repository, self._cache)
        self._validator = TransitionValidator(self._resolver, self._access, transition_table)

    @classmethod
    def from_config(
        cls,
        config: FlagsConfig,
        registry: FeatureRegistry,
        access_policy: Optional[AccessPolicy] = None,
        transition_table: Optional[TransitionTable] = None,
    ) -> "FeatureFlagService":
        return cls(
            FlagDatabase(data_dir=config.data_dir),
            registry,
            access_policy=access_policy,
            transition_table=transition_table,
            cache_enabled=config.cache_enabled,
            cache_max_entries=config.cache_max_entries,
        )

    # -----------------------------------------------------------------------
    # Collaborators
    # -----------------------------------------------------------------------

    @property
    def registry(self) -> FeatureRegistry:
        return self._registry

    @property
    def resolver(self) -> FlagResolver:
        return self._resolver

    @property
    def validator(self) -> TransitionValidator:
        return self._validator

    @property
    def repository(self) -> FlagRepository:
        return self._repository

    @property
    def audit_log(self) -> AuditLog:
        return self._audit

    @property
    def access_policy(self) -> AccessPolicy:
        return self._access

    @property
    def cache(self) -> Optional[ResolutionCache]:
        return self._cache

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    def resolve(self, feature: str, context: Context, **options) -> Optional[ResolvedFlag]:
        return self._resolver.resolve(feature, context, **options)

    def lookup(self, feature: str, context: Context, actor: Optional[Actor]) -> Optional[ResolvedFlag]:
        """Resolve on behalf of ``actor``: managers read fresh, site admins see hidden flags."""
        return self._resolver.resolve(
            feature,
            context,
            skip_cache=self._access.can_manage(actor, context),
            override_hidden=self._access.has_elevated_privilege(actor),
        )

    def list_flags(
        self,
        context: Context,
        actor: Optional[Actor],
        kind: Optional[ContextKind] = None,
        hide_inherited_enabled: bool = False,
    ) -> List[Tuple[FeatureDefinition, ResolvedFlag]]:
        """Every applicable feature with its resolved flag; invisible ones dropped."""
        skip_cache = self._access.can_manage(actor, context)
        override_hidden = self._access.has_elevated_privilege(actor)
        result = []
        for definition in self._registry.applicable(context, kind):
            flag = self._resolver.resolve(
                definition.name,
                context,
                skip_cache=skip_cache,
                override_hidden=override_hidden,
                hide_inherited_enabled=hide_inherited_enabled,
            )
            if flag is not None:
                result.append((definition, flag))
        return result

    def enabled_features(self, context: Context) -> List[str]:
        """Names of applicable features that are on or allowed_on at ``context``."""
        names = []
        for definition in self._registry.applicable(context):
            flag = self._resolver.resolve(definition.name, context)
            if flag is not None and flag.enabled:
                names.append(definition.name)
        return names

    def environment_features(self, context: Context) -> Dict[str, bool]:
        """Feature name -> enabled, for the root account above ``context``."""
        root = context.root() or context
        env = {}
        for definition in self._registry.applicable(root):
            flag = self._resolver.resolve(definition.name, root)
            if flag is not None:
                env[definition.name] = flag.enabled
        return env

    # -----------------------------------------------------------------------
    # Mutations
    # -----------------------------------------------------------------------

    def set(
        self,
        feature: str,
        context: Context,
        actor: Optional[Actor],
        new_state: Union[str, FlagState],
    ) -> MutationResult:
        """Create or update the override of ``feature`` at exactly ``context``.

        Returns:
            MutationResult with the stored record, or with a denial reason
            when the transition validator refuses.  ``changed`` is False for
            a no-op (the override already holds ``new_state``).

        Raises:
            UnknownFeatureError, InvalidContextForFeatureError,
            InvalidStateError: Caller errors, from validation.
            PersistenceConflictError: If the unique-index race is lost twice.
        """
        decision = self._validator.validate(feature, context, actor, new_state)
        if not decision.allowed:
            logger.info("Flag change denied: %s on %s -> %s (%s)",
                        feature, context, new_state, decision.reason.value)
            return MutationResult(prior_state=decision.prior_state, denial=decision.reason)

        target = coerce_state(new_state)
        definition = self._registry.get(feature)
        actor_id = actor.id if actor else None

        record, changed = unique_constraint_retry(
            lambda: self._create_or_update(feature, context, actor_id, target, decision.prior_state),
            feature,
            context,
        )

        if changed:
            logger.info("Flag set: %s on %s: %s -> %s by %s",
                        feature, context, decision.prior_state, target.value, actor_id or "system")
            if decision.prior_state != target.value:
                self._notify(definition, actor, context, decision.prior_state, target.value)

        return MutationResult(record=record, prior_state=decision.prior_state, changed=changed)

    def unset(self, feature: str, context: Context, actor: Optional[Actor]) -> MutationResult:
        """Delete the override at exactly ``context`` so inheritance resumes.

        Returns:
            MutationResult with the deleted record, or a NOT_FOUND /
            LOCKED_BY_ANCESTOR denial.

        Raises:
            UnknownFeatureError, InvalidContextForFeatureError: Caller errors.
        """
        definition = self._registry.get(feature)
        if not definition.applies_to_context(context):
            raise InvalidContextForFeatureError(feature, context.key, definition.applies_to.value)

        existing = self._repository.find_at(feature, context)
        if existing is None:
            return MutationResult(denial=DenialReason.NOT_FOUND)

        prior_state = existing.state.value
        if self._validator.is_locked(feature, context):
            return MutationResult(record=existing, prior_state=prior_state,
                                  denial=DenialReason.LOCKED_BY_ANCESTOR)

        actor_id = actor.id if actor else None
        with self._db.transaction() as conn:
            deleted = self._repository.delete(existing, conn)
            if deleted:
                self._audit.append(
                    AuditLogEntry(
                        feature=feature,
                        context_type=context.context_type,
                        context_id=context.id,
                        actor_id=actor_id,
                        action=AuditAction.DELETED,
                        prior_state=prior_state,
                        new_state=definition.state.value,
                    ),
                    conn,
                )
        self._invalidate(feature)

        if not deleted:
            # Someone else removed it between our read and our delete.
            return MutationResult(denial=DenialReason.NOT_FOUND)

        logger.info("Flag unset: %s on %s (was %s) by %s",
                    feature, context, prior_state, actor_id or "system")
        self._notify(definition, actor, context, prior_state, definition.state.value)
        return MutationResult(record=existing, prior_state=prior_state, changed=True)

    # -----------------------------------------------------------------------
    # Internal helpers
    # -----------------------------------------------------------------------

    def _create_or_update(
        self,
        feature: str,
        context: Context,
        actor_id: Optional[str],
        target: FlagState,
        prior_state: Optional[str],
    ) -> Tuple[FlagRecord, bool]:
        with self._db.transaction() as conn:
            existing = self._repository.find_at(feature, context, conn)
            if existing is not None and existing.state == target:
                return existing, False

            if existing is not None:
                record = self._repository.update_state(existing, target, actor_id, conn)
                action = AuditAction.UPDATED
            else:
                record = self._repository.insert(
                    FlagRecord(
                        feature=feature,
                        context_type=context.context_type,
                        context_id=context.id,
                        state=target,
                        updated_by=actor_id,
                    ),
                    conn,
                )
                action = AuditAction.CREATED

            self._audit.append(
                AuditLogEntry(
                    feature=feature,
                    context_type=context.context_type,
                    context_id=context.id,
                    actor_id=actor_id,
                    action=action,
                    prior_state=prior_state,
                    new_state=target.value,
                ),
                conn,
            )
        self._invalidate(feature)
        return record, True

    def _invalidate(self, feature: str) -> None:
        if self._cache is not None:
            self._cache.invalidate(feature)

    @staticmethod
    def _notify(
        definition: FeatureDefinition,
        actor: Optional[Actor],
        context: Context,
        prior_state: Optional[str],
        new_state: str,
    ) -> None:
        if definition.on_transition is None:
            return
        try:
            definition.on_transition(actor, context, prior_state, new_state)
        except Exception as exc:
            logger.warning("on_transition for %s failed on %s: %s", definition.name, context, exc)


def create_flag_service(
    config: Optional[FlagsConfig] = None,
    access_policy: Optional[AccessPolicy] = None,
    transition_table: Optional[TransitionTable] = None,
) -> FeatureFlagService:
    """Build a service from environment settings and the YAML catalogue."""
    config = config or load_flags_config()
    registry = load_registry(config.definitions_path or None)
    return FeatureFlagService.from_config(
        config, registry, access_policy=access_policy, transition_table=transition_table
    )
