"""
Verification engine.

The repository is the authority; the chain is consulted only as
confirmation. An unreachable chain degrades the response
(``chainConfirmed = None``) and never lowers the local result.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from .arbiter import can_access, require
from .content_store import is_valid_cid
from .crypto import content_hash_hex, normalize_hash
from .errors import AuthorizationError, CredLedgerError, NotFoundError, ValidationError
from .models import ANONYMOUS, FAILED_RESULTS, Document
from .qr import parse_verification_url

logger = logging.getLogger(__name__)


@dataclass
class VerificationResult:
    document_hash: str
    result: str
    method: str
    chain_confirmed: Optional[bool] = None
    document: Optional[Document] = None
    warnings: List[str] = field(default_factory=list)
    suspicious: bool = False
    log_id: Optional[int] = None

    @property
    def is_authentic(self):
        return self.result == "authentic"

    def to_dict(self):
        body = {
            "success": True,
            "documentHash": self.document_hash,
            "result": self.result,
            "isAuthentic": self.is_authentic,
            "method": self.method,
            "chainConfirmed": self.chain_confirmed,
            "warnings": list(self.warnings),
            "suspicious": self.suspicious,
        }
        if self.document is not None:
            body["document"] = {
                "metadata": self.document.metadata_dict(),
                "issuer": self.document.issuer_address,
                "owner": self.document.owner_address,
                "cid": self.document.cid,
                "status": self.document.status,
                "isActive": self.document.is_active,
                "transactionHash": self.document.tx_hash,
                "blockNumber": self.document.block_number,
                "verificationCount": self.document.verification_count,
            }
        return body


class VerificationEngine:
    def __init__(self, documents, logs, chain, audit, window_minutes=10, threshold=5):
        self.documents = documents
        self.logs = logs
        self.chain = chain
        self.audit = audit
        self.window_minutes = window_minutes
        self.threshold = threshold

    async def _chain_status(self, document):
        """True/False when the chain answered, None when it could not."""
        try:
            chain_doc = await self.chain.verify_document(document.document_hash)
        except NotFoundError:
            if not document.on_chain:
                return None, ["chain_pending"]
            logger.warning("Document %s has a tx hash but is missing on chain", document.document_hash)
            return False, ["not_on_chain"]
        except CredLedgerError as e:
            logger.warning("Chain unreachable while verifying %s: %s", document.document_hash, e.message)
            return None, ["chain_unavailable"]

        warnings = []
        if chain_doc.cid != document.cid:
            warnings.append("chain_cid_mismatch")
            return False, warnings
        if not chain_doc.is_active:
            warnings.append("chain_inactive")
        return True, warnings

    async def verify(self, document_hash=None, data=None, cid=None, tx_hash=None, principal=None,
                     ip_address=None, user_agent=None, method=None) -> VerificationResult:
        require(principal, None, "verify")

        computed = content_hash_hex(bytes(data)) if data is not None else None
        if document_hash is None and computed is None:
            raise ValidationError("Provide a document hash or a file")
        lookup_hash = normalize_hash(document_hash) if document_hash else computed
        if tx_hash is not None:
            tx_hash = normalize_hash(tx_hash)
        if cid is not None and not is_valid_cid(cid):
            raise ValidationError("Invalid CID format")
        if method is None:
            if data is not None:
                method = "upload"
            elif cid or tx_hash:
                method = "qr"
            else:
                method = "hash"

        document = self.documents.find_by_hash(lookup_hash)
        chain_confirmed = None
        warnings = []
        if document is None:
            result = "not_found"
        else:
            tampered = (
                (computed is not None and computed != document.document_hash)
                or (cid is not None and cid != document.cid)
                or (tx_hash is not None and (document.tx_hash or "").lower() != tx_hash.lower())
            )
            chain_confirmed, warnings = await self._chain_status(document)
            if tampered:
                result = "tampered"
            elif not document.is_active:
                result = "revoked"
            else:
                result = "authentic"
            self.documents.record_verification(lookup_hash)

        entry = self.logs.append(
            lookup_hash,
            result,
            verifier=principal.address.lower() if principal else ANONYMOUS,
            verifier_ip=ip_address,
            method=method,
            blockchain_confirmed=chain_confirmed,
            file_integrity_checked=data is not None,
            transaction_hash=document.tx_hash if document is not None else None,
            user_agent=user_agent,
        )
        logger.info("Verification %s method=%s result=%s chain=%s", lookup_hash, method, result, chain_confirmed)

        suspicious = False
        if result in FAILED_RESULTS:
            suspicious, failed = self.logs.detect_suspicious(lookup_hash, self.window_minutes, self.threshold)
            if suspicious:
                logger.warning("Suspicious verification activity on %s: %d failures in %d minutes",
                               lookup_hash, failed, self.window_minutes)
                self.audit.record("suspicious_activity", actor=principal, resource_id=lookup_hash,
                                  result="flagged", ip_address=ip_address, failedAttempts=failed,
                                  windowMinutes=self.window_minutes)

        return VerificationResult(
            document_hash=lookup_hash,
            result=result,
            method=method,
            chain_confirmed=chain_confirmed,
            document=document,
            warnings=warnings,
            suspicious=suspicious,
            log_id=entry.id,
        )

    async def verify_qr(self, url, principal=None, ip_address=None, user_agent=None) -> VerificationResult:
        document_hash, tx_hash = parse_verification_url(url)
        return await self.verify(document_hash=document_hash, tx_hash=tx_hash, principal=principal,
                                 ip_address=ip_address, user_agent=user_agent, method="qr")

    # ----------------------------
    # History and reports
    # ----------------------------
    def _document_for_audit(self, document_hash, principal):
        document = self.documents.get_by_hash(document_hash)
        require(principal, document, "audit")
        return document

    def history(self, document_hash, principal, result=None, start=None, end=None, page=1, per_page=50):
        self._document_for_audit(document_hash, principal)
        return self.logs.history(document_hash, result=result, start=start, end=end, page=page, per_page=per_page)

    def statistics(self, document_hash, principal):
        document = self._document_for_audit(document_hash, principal)
        stats = self.logs.statistics(document_hash)
        stats["verificationCount"] = document.verification_count
        return stats

    def search(self, principal, **filters):
        if principal is None or not principal.is_admin:
            raise AuthorizationError("Admin role required")
        return self.logs.query(**filters)

    def suspicious_report(self, principal):
        if not can_access(principal, None, "audit"):
            raise AuthorizationError("Admin role required")
        return self.logs.suspicious_documents(self.window_minutes, self.threshold)
