# services/access.py
"""
Adapter over the authorization collaborator.

Two questions only: may this actor open a section at all (yes/no gate), and
which records may they see there ("all" vs "only records I own").
"""
from __future__ import annotations
from dataclasses import dataclass

from services.errors import Forbidden

# section -> roles allowed to open it
ROLE_SECTIONS: dict[str, set[str]] = {
    "payments": {"admin", "manager", "accountant"},
    "periods": {"admin", "manager"},
    "agents": {"admin", "accountant"},
    "reports": {"admin", "manager", "accountant"},
}

# section -> roles that see every record; everyone else sees their own
VIEW_ALL_ROLES: dict[str, set[str]] = {
    "payments": {"admin", "accountant"},
    "periods": {"admin"},
    "agents": {"admin", "accountant"},
    "reports": {"admin", "accountant"},
}


@dataclass(frozen=True)
class Scope:
    owner: str | None = None  # None means every record

    @classmethod
    def everything(cls) -> "Scope":
        return cls(None)

    @classmethod
    def owned_by(cls, username: str) -> "Scope":
        return cls(username)

    @property
    def is_all(self) -> bool:
        return self.owner is None

    def permits(self, account_manager: str | None) -> bool:
        return self.is_all or account_manager == self.owner


def _role(actor) -> str | None:
    return getattr(actor, "role", None)


def can_view(actor, section: str) -> bool:
    if actor is None or not getattr(actor, "is_authenticated", True):
        return False
    return _role(actor) in ROLE_SECTIONS.get(section, set())


def resolve_scope(actor, section: str) -> Scope:
    if not can_view(actor, section):
        raise Forbidden(f"no access to {section}", section=section)
    if _role(actor) in VIEW_ALL_ROLES.get(section, set()):
        return Scope.everything()
    return Scope.owned_by(getattr(actor, "username", None) or "")


def require_owner(scope: Scope, account_manager: str | None, what: str) -> None:
    if not scope.permits(account_manager):
        raise Forbidden(f"{what} is outside your scope")
