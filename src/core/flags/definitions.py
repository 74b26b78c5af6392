"""
Feature Definitions: the static catalogue of features and their registry.

A FeatureDefinition describes one feature: where it may be overridden,
its default state, visibility, and optional callbacks.  The
FeatureRegistry is built once at process start, from code or from
feature_definitions.yaml, and is read-only afterwards.  Pass it to the
resolver and service explicitly; there is no module-level registry.
"""

from __future__ import annotations

import importlib
import logging
from dataclasses import dataclass
from datetime import datetime
from types import MappingProxyType
from typing import Callable, Dict, Iterable, Iterator, List, Optional

from src.core.flags.config import (
    FeatureDefinitionConfig,
    FeatureDefinitionsConfig,
    load_feature_definitions_config,
)
from src.core.flags.context import Context
from src.core.flags.exceptions import DuplicateFeatureError, UnknownFeatureError
from src.core.flags.models import Actor, ContextKind, FlagRecord, FlagState, Transition

logger = logging.getLogger(__name__)

# (actor, context, prior_state, new_state), states as their string values
OnTransition = Callable[[Optional[Actor], Context, Optional[str], str], None]

# (actor, context, prior_state, transitions) -> None; may lock entries
CustomTransition = Callable[
    [Optional[Actor], Context, Optional[str], Dict[FlagState, Transition]], None
]

# Kinds of context that may hold an override, per applies_to
_OVERRIDE_KINDS = {
    ContextKind.ROOT_ACCOUNT: frozenset({ContextKind.ROOT_ACCOUNT}),
    ContextKind.ACCOUNT: frozenset({ContextKind.ROOT_ACCOUNT, ContextKind.ACCOUNT}),
    ContextKind.COURSE: frozenset(
        {ContextKind.ROOT_ACCOUNT, ContextKind.ACCOUNT, ContextKind.COURSE}
    ),
    ContextKind.USER: frozenset({ContextKind.USER}),
}

# Features listed for a context of each kind
_LISTED_APPLIES_TO = {
    ContextKind.ROOT_ACCOUNT: (ContextKind.ROOT_ACCOUNT, ContextKind.ACCOUNT, ContextKind.COURSE),
    ContextKind.ACCOUNT: (ContextKind.ACCOUNT, ContextKind.COURSE),
    ContextKind.COURSE: (ContextKind.COURSE,),
    ContextKind.USER: (ContextKind.USER,),
}


@dataclass(frozen=True)
class FeatureDefinition:
    name: str
    applies_to: ContextKind
    state: FlagState = FlagState.OFF
    display_name: str = ""
    description: str = ""
    hidden: bool = False
    beta: bool = False
    pending_enforcement: bool = False
    autoexpand: bool = False
    root_opt_in: bool = False
    release_notes_url: Optional[str] = None
    enable_at: Optional[datetime] = None
    on_transition: Optional[OnTransition] = None
    custom_transition: Optional[CustomTransition] = None

    def __post_init__(self) -> None:
        if not self.display_name:
            object.__setattr__(self, "display_name", self.name.replace("_", " ").title())

    def applies_to_context(self, context: Context) -> bool:
        """Whether ``context`` may hold an override of this feature."""
        return context.kind in _OVERRIDE_KINDS[self.applies_to]

    def default_flag(self, state: Optional[FlagState] = None) -> FlagRecord:
        """Synthetic flag for the global default; attached to no context."""
        return FlagRecord(feature=self.name, state=state or self.state)


class FeatureRegistry:
    """Immutable name -> FeatureDefinition map."""

    def __init__(self, definitions: Iterable[FeatureDefinition] = ()):
        table: Dict[str, FeatureDefinition] = {}
        for definition in definitions:
            if definition.name in table:
                raise DuplicateFeatureError(definition.name)
            table[definition.name] = definition
        self._definitions = MappingProxyType(table)
        logger.info("Feature registry built with %d definitions", len(table))

    def get(self, name: str) -> FeatureDefinition:
        definition = self._definitions.get(name)
        if definition is None:
            raise UnknownFeatureError(name)
        return definition

    def find(self, name: str) -> Optional[FeatureDefinition]:
        return self._definitions.get(name)

    def applicable(
        self, context: Context, kind: Optional[ContextKind] = None
    ) -> List[FeatureDefinition]:
        """Definitions that should be listed for ``context``, sorted by name."""
        listed = _LISTED_APPLIES_TO[context.kind]
        result = [
            d for d in self._definitions.values()
            if d.applies_to in listed and (kind is None or d.applies_to == kind)
        ]
        return sorted(result, key=lambda d: d.name)

    @property
    def names(self) -> List[str]:
        return sorted(self._definitions)

    def __contains__(self, name: object) -> bool:
        return name in self._definitions

    def __iter__(self) -> Iterator[FeatureDefinition]:
        return iter(self._definitions.values())

    def __len__(self) -> int:
        return len(self._definitions)


# ---------------------------------------------------------------------------
# Building from configuration
# ---------------------------------------------------------------------------

def _import_callable(path: str) -> Callable:
    module_name, _, attr = path.partition(":")
    module = importlib.import_module(module_name)
    target = module
    for part in attr.split("."):
        target = getattr(target, part)
    if not callable(target):
        raise TypeError(f"{path} is not callable")
    return target


def definition_from_config(cfg: FeatureDefinitionConfig) -> FeatureDefinition:
    return FeatureDefinition(
        name=cfg.name,
        applies_to=cfg.applies_to,
        state=cfg.state,
        display_name=cfg.display_name,
        description=cfg.description,
        hidden=cfg.hidden,
        beta=cfg.beta,
        pending_enforcement=cfg.pending_enforcement,
        autoexpand=cfg.autoexpand,
        root_opt_in=cfg.root_opt_in,
        release_notes_url=cfg.release_notes_url,
        enable_at=cfg.enable_at,
        on_transition=_import_callable(cfg.on_transition) if cfg.on_transition else None,
        custom_transition=(
            _import_callable(cfg.custom_transition) if cfg.custom_transition else None
        ),
    )


def build_registry(
    config: FeatureDefinitionsConfig,
    extra: Iterable[FeatureDefinition] = (),
) -> FeatureRegistry:
    """Build a registry from parsed YAML plus definitions declared in code."""
    definitions = [definition_from_config(c) for c in config.features]
    definitions.extend(extra)
    return FeatureRegistry(definitions)


def load_registry(
    config_path: Optional[str] = None,
    extra: Iterable[FeatureDefinition] = (),
) -> FeatureRegistry:
    return build_registry(load_feature_definitions_config(config_path), extra)
