"""
Flag Access Policy: who may read, manage, and unhide feature flags.

The engine only asks three questions of its authorization collaborator.
RoleAccessPolicy answers them from the Actor's own fields; hosts with a
real permission system supply their own AccessPolicy.
"""

from __future__ import annotations

from typing import Optional, Protocol

from src.core.flags.context import Context
from src.core.flags.models import Actor, ContextKind


class AccessPolicy(Protocol):

    def has_elevated_privilege(self, actor: Optional[Actor]) -> bool: ...

    def can_read(self, actor: Optional[Actor], context: Context) -> bool: ...

    def can_manage(self, actor: Optional[Actor], context: Context) -> bool: ...


class RoleAccessPolicy:
    """Site admins do everything; admin/member rights flow down the chain."""

    def has_elevated_privilege(self, actor: Optional[Actor]) -> bool:
        return actor is not None and actor.site_admin

    def can_manage(self, actor: Optional[Actor], context: Context) -> bool:
        if actor is None:
            return False
        if actor.site_admin:
            return True
        if context.kind == ContextKind.USER and context.id == actor.id:
            return True
        return any(node.key in actor.admin_of for node in context.chain())

    def can_read(self, actor: Optional[Actor], context: Context) -> bool:
        if actor is None:
            return False
        if self.can_manage(actor, context):
            return True
        return any(node.key in actor.member_of for node in context.chain())
