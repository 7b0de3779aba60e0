"""
Access manager: grant, revoke, transfer, deactivate and role changes.

The database change is committed first, then mirrored on chain. A failed
mirror does not roll back the database; the result reports both outcomes
so the divergence is never silent.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from .arbiter import require
from .errors import AuthorizationError, ConflictError, CredLedgerError, ValidationError
from .models import ROLES, normalize_address

logger = logging.getLogger(__name__)

REASON_MIN = 10
REASON_MAX = 500


@dataclass
class AccessChangeResult:
    action: str
    subject: dict = field(default_factory=dict)
    chain_synced: Optional[bool] = None  # None: nothing to mirror
    chain_error: Optional[str] = None
    receipt: Optional[object] = None
    document: Optional[object] = None

    @property
    def partial(self):
        return self.chain_synced is False

    def to_dict(self):
        body = {
            "success": True,
            "partial": self.partial,
            "action": self.action,
            "database": {"committed": True},
            "chain": {
                "synced": self.chain_synced,
                "error": self.chain_error,
                "transaction": self.receipt.to_dict() if self.receipt else None,
            },
        }
        body.update(self.subject)
        if self.document is not None:
            body["document"] = self.document.to_dict()
        return body


class AccessManager:
    def __init__(self, documents, principals, chain, audit, chain_txs):
        self.documents = documents
        self.principals = principals
        self.chain = chain
        self.audit = audit
        self.chain_txs = chain_txs

    def _active_document(self, document_hash):
        document = self.documents.get_by_hash(document_hash)
        if not document.is_active:
            raise ConflictError("Document is deactivated", documentHash=document.document_hash)
        return document

    async def _mirror(self, method, call, document_hash=None, result=None):
        try:
            receipt = await call()
        except CredLedgerError as e:
            logger.warning("Chain mirror %s failed for %s: %s", method, document_hash, e.message)
            self.chain_txs.record(method, document_hash, error=e.message, attempts=e.details.get("attempts", 1))
            result.chain_synced = False
            result.chain_error = e.message
            return result
        self.chain_txs.record(method, document_hash, receipt=receipt)
        result.chain_synced = True
        result.receipt = receipt
        return result

    async def grant(self, document_hash, target, principal, ip_address=None) -> AccessChangeResult:
        document = self._active_document(document_hash)
        require(principal, document, "grant")
        target = normalize_address(target)
        if document.has_access(target):
            raise ValidationError("User already has access", address=target)

        self.documents.append_viewer(document, target, granted_by=principal.address)
        result = AccessChangeResult(action="grant", subject={"address": target}, document=document)
        if document.on_chain:
            await self._mirror("grantAccess", lambda: self.chain.grant_access(document.document_hash, target),
                               document.document_hash, result)
        self.audit.record("document_access_grant", actor=principal, resource_id=document.document_hash,
                          ip_address=ip_address, address=target, chainSynced=result.chain_synced)
        return result

    async def revoke(self, document_hash, target, principal, ip_address=None) -> AccessChangeResult:
        document = self._active_document(document_hash)
        target = normalize_address(target)
        require(principal, document, "revoke", target)
        if not self.documents.remove_viewer(document, target):
            raise ValidationError("User does not have explicit access", address=target)

        result = AccessChangeResult(action="revoke", subject={"address": target}, document=document)
        if document.on_chain:
            await self._mirror("revokeAccess", lambda: self.chain.revoke_access(document.document_hash, target),
                               document.document_hash, result)
        self.audit.record("document_access_revoke", actor=principal, resource_id=document.document_hash,
                          ip_address=ip_address, address=target, chainSynced=result.chain_synced)
        return result

    async def transfer(self, document_hash, new_owner, principal, ip_address=None) -> AccessChangeResult:
        document = self._active_document(document_hash)
        require(principal, document, "transfer")
        new_owner = normalize_address(new_owner)
        if new_owner == document.owner_address:
            raise ValidationError("Address already owns this document")

        previous = self.documents.transfer_owner(document, new_owner)
        result = AccessChangeResult(action="transfer", subject={"previousOwner": previous, "newOwner": new_owner},
                                    document=document)
        if document.on_chain:
            await self._mirror("transferOwnership",
                               lambda: self.chain.transfer_ownership(document.document_hash, new_owner),
                               document.document_hash, result)
        self.audit.record("document_transfer", actor=principal, resource_id=document.document_hash,
                          ip_address=ip_address, previousOwner=previous, newOwner=new_owner,
                          chainSynced=result.chain_synced)
        return result

    async def deactivate(self, document_hash, reason, principal, ip_address=None) -> AccessChangeResult:
        reason = (reason or "").strip()
        if not REASON_MIN <= len(reason) <= REASON_MAX:
            raise ValidationError(f"Reason must be between {REASON_MIN} and {REASON_MAX} characters")
        document = self.documents.get_by_hash(document_hash)
        require(principal, document, "deactivate")
        if not document.is_active:
            raise ConflictError("Document is already deactivated")

        self.documents.deactivate(document, reason, principal.address)
        result = AccessChangeResult(action="deactivate", subject={"reason": reason}, document=document)
        if document.on_chain:
            await self._mirror("deactivateDocument",
                               lambda: self.chain.deactivate_document(document.document_hash, reason),
                               document.document_hash, result)
        self.audit.record("document_deactivate", actor=principal, resource_id=document.document_hash,
                          ip_address=ip_address, reason=reason, chainSynced=result.chain_synced)
        return result

    async def assign_role(self, address, role, principal, ip_address=None) -> AccessChangeResult:
        if principal is None or not principal.is_admin:
            raise AuthorizationError("Admin role required")
        if role not in ROLES:
            raise ValidationError(f"Invalid role: {role}", allowed=list(ROLES))
        address = normalize_address(address)
        user = self.principals.get_by_address(address)
        previous = user.role if user else None
        if user is None:
            user = self.principals.create_with_role(address, role)
        else:
            user = self.principals.assign_role(address, role)

        result = AccessChangeResult(action="assign_role",
                                    subject={"user": user.to_dict(), "previousRole": previous})
        await self._mirror("assignRole", lambda: self.chain.assign_role(address, role), None, result)
        self.audit.record("user_role_change", actor=principal, resource_type="user", resource_id=address,
                          ip_address=ip_address, previousRole=previous, newRole=role,
                          chainSynced=result.chain_synced)
        return result
