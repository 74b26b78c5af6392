"""
Flag Hooks: stock callbacks that feature definitions can reference.

Referenced from feature_definitions.yaml as "src.core.flags.hooks:<name>".
"""

from __future__ import annotations

import logging
from typing import Dict, Optional

from src.core.flags.context import Context
from src.core.flags.models import Actor, FlagState, Transition

logger = logging.getLogger(__name__)


def log_transition(
    actor: Optional[Actor],
    context: Context,
    prior_state: Optional[str],
    new_state: str,
) -> None:
    """on_transition: note the change in the application log."""
    logger.info(
        "Feature state changed on %s: %s -> %s (actor=%s)",
        context, prior_state, new_state, actor.id if actor else "system",
    )


def no_turning_back(
    actor: Optional[Actor],
    context: Context,
    prior_state: Optional[str],
    transitions: Dict[FlagState, Transition],
) -> None:
    """custom_transition: once on, regular actors cannot switch it off again."""
    if prior_state == FlagState.ON.value and not (actor and actor.site_admin):
        transitions[FlagState.OFF] = Transition(
            target=FlagState.OFF,
            locked=True,
            message="this feature cannot be turned off once enabled",
        )
