"""
Feature Flag Models: enums, persisted records and result shapes.

Defines the flag states, context kinds, the persisted FlagRecord, the
ResolvedFlag returned by the resolver, audit entries, and the value
objects used to report validation decisions and mutation outcomes.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import FrozenSet, Optional

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class FlagState(str, Enum):
    OFF = "off"
    ALLOWED = "allowed"
    ALLOWED_ON = "allowed_on"
    ON = "on"

    @property
    def is_terminal(self) -> bool:
        """off and on stop inheritance; descendants cannot contradict them."""
        return self in (FlagState.OFF, FlagState.ON)

    @property
    def is_enabled(self) -> bool:
        return self in (FlagState.ON, FlagState.ALLOWED_ON)


# Prior state reported for a hidden feature nobody has surfaced yet.
HIDDEN_STATE = "hidden"


class ContextKind(str, Enum):
    ROOT_ACCOUNT = "RootAccount"
    ACCOUNT = "Account"
    COURSE = "Course"
    USER = "User"


class DenialReason(str, Enum):
    LOCKED_BY_ANCESTOR = "locked_by_ancestor"
    REQUIRES_ELEVATED_PRIVILEGE = "requires_elevated_privilege"
    STATE_CHANGE_NOT_ALLOWED = "state_change_not_allowed"
    NOT_FOUND = "not_found"


class AuditAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


# ---------------------------------------------------------------------------
# Persisted records
# ---------------------------------------------------------------------------

class FlagRecord(BaseModel):
    """A single persisted override of a feature at one context.

    context_type/context_id are both None only for the synthetic global
    default built from a FeatureDefinition; such records are never stored.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    feature: str
    context_type: Optional[str] = None
    context_id: Optional[str] = None
    state: FlagState
    # Kept for API compatibility; never set and never consulted.
    locking_account_id: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_default(self) -> bool:
        return self.context_type is None and self.context_id is None

    @property
    def context_key(self) -> Optional[str]:
        if self.is_default:
            return None
        return f"{self.context_type}:{self.context_id}"


class ResolvedFlag(BaseModel):
    """The effective flag a context observes after inheritance."""

    feature: str
    state: FlagState
    context_type: Optional[str] = None
    context_id: Optional[str] = None
    locked: bool = False
    hidden: bool = False
    locking_account_id: Optional[str] = None

    @property
    def is_default(self) -> bool:
        return self.context_type is None and self.context_id is None

    @property
    def enabled(self) -> bool:
        return self.state.is_enabled

    @classmethod
    def from_record(cls, record: FlagRecord, locked: bool, hidden: bool) -> "ResolvedFlag":
        return cls(
            feature=record.feature,
            state=record.state,
            context_type=record.context_type,
            context_id=record.context_id,
            locked=locked,
            hidden=hidden,
        )


class AuditLogEntry(BaseModel):
    """Immutable row of the flag audit log."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    feature: str
    context_type: str
    context_id: str
    actor_id: Optional[str] = None
    action: AuditAction
    prior_state: Optional[str] = None
    new_state: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Actors
# ---------------------------------------------------------------------------

class Actor(BaseModel):
    """Whoever is asking to read or change flags.

    admin_of holds context keys ("Account:1", "Course:7") the actor
    administers; rights flow down to descendants of those contexts.
    """

    id: str
    name: str = ""
    site_admin: bool = False
    admin_of: FrozenSet[str] = frozenset()
    member_of: FrozenSet[str] = frozenset()


# ---------------------------------------------------------------------------
# Decisions and results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Transition:
    """One entry of a transition table: may the flag move to ``target``?"""
    target: FlagState
    locked: bool = False
    message: str = ""


@dataclass(frozen=True)
class Decision:
    """Outcome of TransitionValidator.validate."""
    allowed: bool
    reason: Optional[DenialReason] = None
    current: Optional[ResolvedFlag] = None
    prior_state: Optional[str] = None

    @classmethod
    def allow(cls, current: Optional[ResolvedFlag], prior_state: Optional[str]) -> "Decision":
        return cls(allowed=True, current=current, prior_state=prior_state)

    @classmethod
    def deny(cls, reason: DenialReason, current: Optional[ResolvedFlag] = None,
             prior_state: Optional[str] = None) -> "Decision":
        return cls(allowed=False, reason=reason, current=current, prior_state=prior_state)


@dataclass
class MutationResult:
    """Outcome of FeatureFlagService.set / unset."""
    record: Optional[FlagRecord] = None
    prior_state: Optional[str] = None
    denial: Optional[DenialReason] = None
    changed: bool = False

    @property
    def ok(self) -> bool:
        return self.denial is None


# ---------------------------------------------------------------------------
# API Input Models
# ---------------------------------------------------------------------------

class FlagUpdate(BaseModel):
    state: str
