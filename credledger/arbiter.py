"""
Role/access arbitration.

Combines the DB-resident role of a principal with the document-local ACL.
Pure: never touches the chain or the session.
"""

from dataclasses import dataclass
from typing import Optional

from .errors import AuthorizationError
from .models import ROLE_PERMISSIONS, ROLES

VIEW_ACTIONS = ("view", "download")
MANAGE_ACTIONS = ("transfer", "grant", "deactivate", "audit")


@dataclass(frozen=True)
class Principal:
    address: str
    role: str = "student"
    can_issue: bool = False
    can_verify: bool = True
    can_transfer: bool = False

    @classmethod
    def from_user(cls, user):
        return cls(
            address=user.address,
            role=user.role,
            can_issue=user.can_issue,
            can_verify=user.can_verify,
            can_transfer=user.can_transfer,
        )

    @classmethod
    def with_role(cls, address, role):
        if role not in ROLES:
            raise ValueError(f"Unknown role: {role}")
        return cls(address=address.lower(), role=role, **ROLE_PERMISSIONS[role])

    @property
    def is_admin(self):
        return self.role == "admin"


def has_permission(principal: Optional[Principal], permission: str) -> bool:
    if principal is None:
        return permission == "can_verify"
    if principal.is_admin:
        return True
    return bool(getattr(principal, permission, False))


def can_access(principal: Optional[Principal], document, action: str, target: Optional[str] = None) -> bool:
    """May ``principal`` perform ``action`` on ``document``?

    ``target`` is the address affected by a revoke.
    """
    if action == "verify":
        return has_permission(principal, "can_verify")
    if principal is None:
        return False
    if action == "issue":
        return has_permission(principal, "can_issue")
    if principal.is_admin:
        return True
    if document is None:
        return False

    address = principal.address.lower()
    is_party = address in (document.owner_address, document.issuer_address)
    if action in VIEW_ACTIONS:
        return is_party or address in document.viewer_addresses
    if action == "revoke":
        if not is_party or target is None:
            return False
        return target.lower() not in (document.owner_address, document.issuer_address)
    if action in MANAGE_ACTIONS:
        return is_party
    return False


def require(principal: Optional[Principal], document, action: str, target: Optional[str] = None) -> None:
    if not can_access(principal, document, action, target):
        who = principal.address if principal else "anonymous"
        raise AuthorizationError(f"{who} may not {action} this document")
