"""
Flag Transitions: transition tables and the TransitionValidator.

Before any override is written the validator checks, in order and stopping
at the first denial:

    1. the current effective flag is not locked by an ancestor;
    2. a hidden feature nobody has surfaced yet is only surfaced by an
       actor with elevated privilege;
    3. the transition table does not mark the requested state locked.

Transition tables are keyed by the prior effective state and list, for
each possible target state, whether regular actors may move there.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional, Protocol, Union

from src.core.flags.access import AccessPolicy
from src.core.flags.context import Context
from src.core.flags.definitions import FeatureDefinition
from src.core.flags.exceptions import InvalidContextForFeatureError, InvalidStateError
from src.core.flags.models import (
    HIDDEN_STATE,
    Actor,
    Decision,
    DenialReason,
    FlagState,
    Transition,
)
from src.core.flags.resolver import FlagResolver

logger = logging.getLogger(__name__)

# States that only make sense on accounts
_ACCOUNT_ONLY_STATES = (FlagState.ALLOWED, FlagState.ALLOWED_ON)


class TransitionTable(Protocol):

    def transitions(
        self,
        definition: FeatureDefinition,
        actor: Optional[Actor],
        context: Context,
        prior_state: Optional[str],
    ) -> Dict[FlagState, Transition]: ...


class DefaultTransitionTable:
    """Every state reachable, except allowed-type states off accounts.

    The definition's custom_transition hook runs last and may lock more.
    """

    def transitions(
        self,
        definition: FeatureDefinition,
        actor: Optional[Actor],
        context: Context,
        prior_state: Optional[str],
    ) -> Dict[FlagState, Transition]:
        table = {state: Transition(target=state) for state in FlagState}
        if not context.is_account:
            for state in _ACCOUNT_ONLY_STATES:
                table[state] = Transition(
                    target=state,
                    locked=True,
                    message=f"'{state.value}' is only valid on accounts",
                )
        if definition.custom_transition is not None:
            definition.custom_transition(actor, context, prior_state, table)
        return table


def coerce_state(state: Union[str, FlagState]) -> FlagState:
    """Parse a requested state.

    Raises:
        InvalidStateError: If ``state`` is not one of the four flag states.
    """
    if isinstance(state, FlagState):
        return state
    try:
        return FlagState(str(state).strip().lower())
    except ValueError:
        raise InvalidStateError(str(state))


class TransitionValidator:
    """Decides whether an actor may move a flag to a requested state."""

    def __init__(
        self,
        resolver: FlagResolver,
        access_policy: AccessPolicy,
        transition_table: Optional[TransitionTable] = None,
    ):
        self._resolver = resolver
        self._access = access_policy
        self._table = transition_table or DefaultTransitionTable()

    def validate(
        self,
        feature: str,
        context: Context,
        actor: Optional[Actor],
        requested_state: Union[str, FlagState],
    ) -> Decision:
        """Check a requested transition.

        Returns:
            Decision.allowed, or a Decision carrying the first DenialReason.
            The decision also carries the fresh effective flag and the prior
            state to report for auditing ("hidden" for unsurfaced features).

        Raises:
            UnknownFeatureError: If ``feature`` is not registered.
            InvalidContextForFeatureError: If the feature cannot be set here.
            InvalidStateError: If ``requested_state`` is not a flag state.
        """
        definition = self._resolver.registry.get(feature)
        if not definition.applies_to_context(context):
            raise InvalidContextForFeatureError(feature, context.key, definition.applies_to.value)
        target = coerce_state(requested_state)

        current = self._resolver.resolve(feature, context, skip_cache=True, override_hidden=True)
        prior_state = current.state.value

        if current.locked:
            logger.debug("Denied %s on %s: locked by %s:%s",
                         feature, context, current.context_type, current.context_id)
            return Decision.deny(DenialReason.LOCKED_BY_ANCESTOR, current, prior_state)

        if current.is_default and definition.hidden:
            if not self._access.has_elevated_privilege(actor):
                return Decision.deny(DenialReason.REQUIRES_ELEVATED_PRIVILEGE, current, HIDDEN_STATE)
            prior_state = HIDDEN_STATE

        table = self._table.transitions(definition, actor, context, prior_state)
        transition = table.get(target)
        if transition is not None and transition.locked:
            logger.debug("Denied %s on %s: %s -> %s is locked (%s)",
                         feature, context, prior_state, target.value, transition.message)
            return Decision.deny(DenialReason.STATE_CHANGE_NOT_ALLOWED, current, prior_state)

        return Decision.allow(current, prior_state)

    def is_locked(self, feature: str, context: Context) -> bool:
        """Lock check alone, against fresh state."""
        current = self._resolver.resolve(feature, context, skip_cache=True, override_hidden=True)
        return current is not None and current.locked
