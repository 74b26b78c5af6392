"""
Context Hierarchy: the objects that can hold feature flag overrides.

A Context is a tagged value: an explicit kind (RootAccount, Account,
Course, User), an id, and an optional parent.  Accounts chain up to their
root account; courses and users chain through their owning account (if
any).  Beyond the root sits the implicit global default, which is not a
Context at all.

Resolution order is most specific first:

    Course:7 -> Account:3 -> Account:1 (root) -> <global default>
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from src.core.flags.models import ContextKind

# Persisted context_type for each kind.  Root accounts are stored as
# plain accounts; the kind only matters for applicability rules.
_STORED_TYPES = {
    ContextKind.ROOT_ACCOUNT: "Account",
    ContextKind.ACCOUNT: "Account",
    ContextKind.COURSE: "Course",
    ContextKind.USER: "User",
}


@dataclass(frozen=True)
class Context:
    kind: ContextKind
    id: str
    parent: Optional["Context"] = None
    name: str = ""

    def __post_init__(self) -> None:
        if self.kind == ContextKind.ROOT_ACCOUNT and self.parent is not None:
            raise ValueError(f"Root account {self.id} cannot have a parent")
        if self.kind == ContextKind.ACCOUNT and self.parent is None:
            raise ValueError(f"Sub-account {self.id} needs a parent account")
        if self.kind == ContextKind.COURSE and self.parent is None:
            raise ValueError(f"Course {self.id} needs an owning account")
        if self.parent is not None and self.parent.kind not in (
            ContextKind.ROOT_ACCOUNT, ContextKind.ACCOUNT
        ):
            raise ValueError(
                f"{self.kind.value} {self.id} can only belong to an account, "
                f"got {self.parent.kind.value}"
            )

    # -- constructors -------------------------------------------------------

    @classmethod
    def root_account(cls, id: str, name: str = "") -> "Context":
        return cls(ContextKind.ROOT_ACCOUNT, str(id), None, name)

    @classmethod
    def account(cls, id: str, parent: "Context", name: str = "") -> "Context":
        return cls(ContextKind.ACCOUNT, str(id), parent, name)

    @classmethod
    def course(cls, id: str, account: "Context", name: str = "") -> "Context":
        return cls(ContextKind.COURSE, str(id), account, name)

    @classmethod
    def user(cls, id: str, account: Optional["Context"] = None, name: str = "") -> "Context":
        return cls(ContextKind.USER, str(id), account, name)

    # -- identity -----------------------------------------------------------

    @property
    def context_type(self) -> str:
        return _STORED_TYPES[self.kind]

    @property
    def key(self) -> str:
        return f"{self.context_type}:{self.id}"

    @property
    def is_account(self) -> bool:
        return self.kind in (ContextKind.ROOT_ACCOUNT, ContextKind.ACCOUNT)

    @property
    def is_root_account(self) -> bool:
        return self.kind == ContextKind.ROOT_ACCOUNT

    def same_as(self, context_type: Optional[str], context_id: Optional[str]) -> bool:
        return self.context_type == context_type and self.id == context_id

    # -- hierarchy ----------------------------------------------------------

    def chain(self) -> List["Context"]:
        """Self followed by every ancestor, most specific first."""
        chain = []
        node: Optional[Context] = self
        while node is not None:
            chain.append(node)
            node = node.parent
        return chain

    def root(self) -> Optional["Context"]:
        """The root account this context lives under, if any."""
        for node in self.chain():
            if node.is_root_account:
                return node
        return None

    def is_descendant_of(self, other: "Context") -> bool:
        return any(node.key == other.key for node in self.chain()[1:])

    def __str__(self) -> str:
        return self.key
