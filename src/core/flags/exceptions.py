"""
Feature Flag Exceptions: hard failures raised by the flag engine.

Denials (locked, privilege, transition table) are not exceptions; they
come back as Decision / MutationResult values.  These classes cover caller
bugs and persistence failures only.
"""

from __future__ import annotations


class FeatureFlagError(Exception):
    """Base class for feature flag engine errors."""


class UnknownFeatureError(FeatureFlagError):
    """Raised when a feature name is not present in the registry."""

    def __init__(self, feature: str):
        self.feature = feature
        super().__init__(f"Unknown feature: {feature}")


class DuplicateFeatureError(FeatureFlagError):
    """Raised when two definitions share a name during registry construction."""

    def __init__(self, feature: str):
        self.feature = feature
        super().__init__(f"Feature already registered: {feature}")


class InvalidContextForFeatureError(FeatureFlagError):
    """Raised when a feature's applies_to does not admit the given context."""

    def __init__(self, feature: str, context_key: str, applies_to: str):
        self.feature = feature
        self.context_key = context_key
        self.applies_to = applies_to
        super().__init__(
            f"Feature {feature} applies to {applies_to} and cannot be set on {context_key}"
        )


class InvalidStateError(FeatureFlagError):
    """Raised when a requested state is not one of the flag states."""

    def __init__(self, state: str):
        self.state = state
        super().__init__(
            f"Invalid state: {state}. Must be one of: off, allowed, allowed_on, on"
        )


class PersistenceConflictError(FeatureFlagError):
    """Raised when the create-or-update race is lost twice in a row."""

    def __init__(self, feature: str, context_key: str):
        self.feature = feature
        self.context_key = context_key
        super().__init__(
            f"Could not persist flag {feature} on {context_key}: unique constraint retry exhausted"
        )
