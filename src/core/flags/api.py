"""
Feature Flags REST API: list, read, set and remove feature flags.

Router prefix: /api/v1
Context segments: accounts/{id}, courses/{id}, users/{id}
The caller is identified by the X-Actor-Id header.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from fastapi import APIRouter, Header, HTTPException, Query, Response

from src.core.flags.config import FlagsConfig, load_flags_config
from src.core.flags.context import Context
from src.core.flags.definitions import FeatureDefinition
from src.core.flags.exceptions import (
    InvalidContextForFeatureError,
    InvalidStateError,
    PersistenceConflictError,
    UnknownFeatureError,
)
from src.core.flags.models import Actor, ContextKind, DenialReason, FlagUpdate, ResolvedFlag

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["feature-flags"])

# Module-level references, set during init
_service = None
_context_lookup: Optional[Callable[[str, str], Optional[Context]]] = None
_actor_lookup: Optional[Callable[[str], Optional[Actor]]] = None
_default_page_size = 50
_max_page_size = 100

_CONTEXT_SEGMENTS = ("accounts", "courses", "users")


def init_flags_api(
    service,
    context_lookup: Callable[[str, str], Optional[Context]],
    actor_lookup: Callable[[str], Optional[Actor]],
    default_page_size: Optional[int] = None,
    max_page_size: Optional[int] = None,
    config: Optional[FlagsConfig] = None,
) -> None:
    """Initialize the flags API.

    Args:
        service: FeatureFlagService instance.
        context_lookup: (segment, id) -> Context, segment being one of
            "accounts", "courses", "users".  Returns None if absent.
        actor_lookup: actor id -> Actor, or None if unknown.
        default_page_size, max_page_size: Paging limits for the listing
            endpoint.  Unset values come from ``config``, which defaults to
            the FLAGS_* environment settings.
    """
    global _service, _context_lookup, _actor_lookup, _default_page_size, _max_page_size
    _service = service
    _context_lookup = context_lookup
    _actor_lookup = actor_lookup
    config = config or load_flags_config()
    _default_page_size = default_page_size or config.default_page_size
    _max_page_size = max_page_size or config.max_page_size


def _get_service():
    """Get service, raising 503 if not initialized."""
    if _service is None:
        raise HTTPException(status_code=503, detail="Feature flag service not initialized")
    return _service


def _get_context(context_type: str, context_id: str) -> Context:
    if context_type not in _CONTEXT_SEGMENTS or _context_lookup is None:
        raise HTTPException(status_code=404, detail="Context not found")
    context = _context_lookup(context_type, context_id)
    if context is None:
        raise HTTPException(status_code=404, detail="Context not found")
    return context


def _get_actor(actor_id: Optional[str]) -> Actor:
    actor = _actor_lookup(actor_id) if actor_id and _actor_lookup else None
    if actor is None:
        raise HTTPException(status_code=401, detail="unauthorized")
    return actor


def _authorize(allowed: bool) -> None:
    if not allowed:
        raise HTTPException(status_code=401, detail="unauthorized")


# ---------------------------------------------------------------------------
# JSON shapes
# ---------------------------------------------------------------------------

def _flag_json(flag: ResolvedFlag) -> Dict[str, Any]:
    """FeatureFlag object.  context_* are omitted for the global default."""
    data: Dict[str, Any] = {
        "feature": flag.feature,
        "state": flag.state.value,
        "locked": flag.locked,
        "locking_account_id": None,
    }
    if not flag.is_default:
        data["context_type"] = flag.context_type
        data["context_id"] = flag.context_id
    if flag.hidden:
        data["hidden"] = True
    return data


def _feature_json(definition: FeatureDefinition, flag: ResolvedFlag) -> Dict[str, Any]:
    return {
        "feature": definition.name,
        "display_name": definition.display_name,
        "description": definition.description,
        "applies_to": definition.applies_to.value,
        "enable_at": definition.enable_at.isoformat() if definition.enable_at else None,
        "root_opt_in": definition.root_opt_in,
        "beta": definition.beta,
        "pending_enforcement": definition.pending_enforcement,
        "autoexpand": definition.autoexpand,
        "release_notes_url": definition.release_notes_url,
        "feature_flag": _flag_json(flag),
    }


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get("/features/environment")
def environment_features(root_account_id: str = Query(...)) -> Dict[str, bool]:
    """Feature name -> enabled for a root account's user interface."""
    service = _get_service()
    context = _get_context("accounts", root_account_id)
    return service.environment_features(context)


@router.get("/{context_type}/{context_id}/features")
def list_features(
    context_type: str,
    context_id: str,
    response: Response,
    type: Optional[str] = Query(None),
    hide_inherited_enabled: bool = Query(False),
    page: int = Query(1, ge=1),
    per_page: Optional[int] = Query(None, ge=1),
    x_actor_id: Optional[str] = Header(None),
) -> List[Dict[str, Any]]:
    """Paginated list of every feature that applies to the context."""
    service = _get_service()
    context = _get_context(context_type, context_id)
    actor = _get_actor(x_actor_id)
    _authorize(service.access_policy.can_read(actor, context))

    kind = None
    if type:
        try:
            kind = ContextKind(type)
        except ValueError:
            raise HTTPException(
                status_code=400,
                detail=f"Invalid type: {type}. Must be one of: {[k.value for k in ContextKind]}",
            )

    flags = service.list_flags(context, actor, kind=kind, hide_inherited_enabled=hide_inherited_enabled)

    size = min(per_page or _default_page_size, _max_page_size)
    start = (page - 1) * size
    response.headers["X-Total-Count"] = str(len(flags))
    return [_feature_json(d, f) for d, f in flags[start:start + size]]


@router.get("/{context_type}/{context_id}/features/enabled")
def list_enabled_features(
    context_type: str,
    context_id: str,
    x_actor_id: Optional[str] = Header(None),
) -> List[str]:
    """Names of the features enabled for the context."""
    service = _get_service()
    context = _get_context(context_type, context_id)
    actor = _get_actor(x_actor_id)
    _authorize(service.access_policy.can_read(actor, context))
    return service.enabled_features(context)


@router.get("/{context_type}/{context_id}/features/flags/{feature}")
def get_feature_flag(
    context_type: str,
    context_id: str,
    feature: str,
    x_actor_id: Optional[str] = Header(None),
) -> Dict[str, Any]:
    """The flag that applies to the context, wherever it is defined."""
    service = _get_service()
    context = _get_context(context_type, context_id)
    actor = _get_actor(x_actor_id)
    _authorize(service.access_policy.can_read(actor, context))

    if feature not in service.registry:
        raise HTTPException(status_code=404, detail="Feature not found")
    flag = service.lookup(feature, context, actor)
    if flag is None:
        raise HTTPException(status_code=404, detail="Feature flag not found")
    return _flag_json(flag)


@router.put("/{context_type}/{context_id}/features/flags/{feature}")
def set_feature_flag(
    context_type: str,
    context_id: str,
    feature: str,
    body: FlagUpdate,
    x_actor_id: Optional[str] = Header(None),
) -> Dict[str, Any]:
    """Set the flag at exactly this context."""
    service = _get_service()
    context = _get_context(context_type, context_id)
    actor = _get_actor(x_actor_id)
    _authorize(service.access_policy.can_manage(actor, context))

    try:
        result = service.set(feature, context, actor, body.state)
    except (UnknownFeatureError, InvalidContextForFeatureError):
        raise HTTPException(status_code=400, detail="invalid feature")
    except InvalidStateError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except PersistenceConflictError as exc:
        logger.error("Flag update failed: %s", exc)
        raise HTTPException(status_code=500, detail="could not save feature flag")

    if result.denial == DenialReason.LOCKED_BY_ANCESTOR:
        raise HTTPException(status_code=403, detail="higher account disallows setting feature flag")
    if result.denial == DenialReason.REQUIRES_ELEVATED_PRIVILEGE:
        raise HTTPException(status_code=400, detail="invalid feature")
    if result.denial == DenialReason.STATE_CHANGE_NOT_ALLOWED:
        raise HTTPException(status_code=403, detail="state change not allowed")

    flag = service.resolve(feature, context, skip_cache=True, override_hidden=True)
    return _flag_json(flag)


@router.delete("/{context_type}/{context_id}/features/flags/{feature}")
def delete_feature_flag(
    context_type: str,
    context_id: str,
    feature: str,
    x_actor_id: Optional[str] = Header(None),
) -> Dict[str, Any]:
    """Remove the flag at exactly this context; inheritance resumes."""
    service = _get_service()
    context = _get_context(context_type, context_id)
    actor = _get_actor(x_actor_id)
    _authorize(service.access_policy.can_manage(actor, context))

    try:
        result = service.unset(feature, context, actor)
    except (UnknownFeatureError, InvalidContextForFeatureError):
        raise HTTPException(status_code=404, detail="Feature flag not found")

    if result.denial == DenialReason.NOT_FOUND:
        raise HTTPException(status_code=404, detail="Feature flag not found")
    if result.denial == DenialReason.LOCKED_BY_ANCESTOR:
        raise HTTPException(status_code=403, detail="flag is locked")

    return _flag_json(ResolvedFlag.from_record(result.record, locked=False, hidden=False))
