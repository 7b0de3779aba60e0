"""
Persistence for documents, principals, verification logs and chain
transaction metrics. All writes go through the Flask-SQLAlchemy session
of the current app context and commit per document.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError as SQLIntegrityError

from .crypto import normalize_hash
from .errors import DuplicateError, NotFoundError, ValidationError
from .models import (
    ANONYMOUS,
    FAILED_RESULTS,
    VERIFICATION_METHODS,
    VERIFICATION_RESULTS,
    ChainTransaction,
    Document,
    DocumentViewer,
    User,
    VerificationLog,
    db,
    normalize_address,
)

logger = logging.getLogger(__name__)


def paginate(query, page, per_page):
    page = max(1, int(page or 1))
    per_page = max(1, min(int(per_page or 20), 100))
    return db.paginate(query, page=page, per_page=per_page, error_out=False)


def page_dict(pagination, serialize=None):
    serialize = serialize or (lambda item: item.to_dict())
    return {
        "items": [serialize(item) for item in pagination.items],
        "page": pagination.page,
        "perPage": pagination.per_page,
        "total": pagination.total,
        "pages": pagination.pages,
    }


# ----------------------------
# Documents
# ----------------------------
class DocumentRepository:
    def create(self, document: Document) -> Document:
        """Insert a new record; a hash collision surfaces the existing one."""
        db.session.add(document)
        try:
            db.session.commit()
        except SQLIntegrityError:
            db.session.rollback()
            existing = self.find_by_hash(document.document_hash)
            if existing is None:
                raise
            raise DuplicateError(document=existing)
        logger.info("Document %s stored (cid=%s)", document.document_hash, document.cid)
        return document

    def find_by_hash(self, document_hash) -> Optional[Document]:
        return db.session.execute(
            db.select(Document).filter_by(document_hash=normalize_hash(document_hash))
        ).scalar_one_or_none()

    def get_by_hash(self, document_hash) -> Document:
        document = self.find_by_hash(document_hash)
        if document is None:
            raise NotFoundError("Document not found")
        return document

    def find_by_owner(self, owner, page=1, per_page=20, include_inactive=False):
        query = db.select(Document).filter_by(owner_address=normalize_address(owner))
        if not include_inactive:
            query = query.filter_by(is_active=True)
        return paginate(query.order_by(Document.created_at.desc(), Document.id.desc()), page, per_page)

    def search(self, issuer=None, party=None, status=None, document_type=None, text=None, page=1, per_page=20):
        """Active documents matching every given filter.

        ``issuer`` restricts to documents issued by that address, ``party`` to
        documents it owns or was granted. ``text`` matches student name,
        student id or institution case-insensitively.
        """
        query = db.select(Document).filter_by(is_active=True)
        if issuer is not None:
            query = query.filter_by(issuer_address=normalize_address(issuer))
        if party is not None:
            party = normalize_address(party)
            query = query.where(or_(
                Document.owner_address == party,
                Document.viewers.any(DocumentViewer.address == party),
            ))
        if status is not None:
            query = query.filter_by(status=status)
        if document_type is not None:
            query = query.filter_by(document_type=document_type)
        if text:
            query = query.where(or_(
                Document.student_name.icontains(text, autoescape=True),
                Document.student_id.icontains(text, autoescape=True),
                Document.institution_name.icontains(text, autoescape=True),
            ))
        return paginate(query.order_by(Document.created_at.desc(), Document.id.desc()), page, per_page)

    def update_blockchain_fields(self, document: Document, tx_hash, block_number, gas_used) -> Document:
        """Set all chain fields and the status in one commit."""
        document.tx_hash = tx_hash
        document.block_number = block_number
        document.gas_used = gas_used
        document.chain_error = None
        if document.status == "stored":
            document.advance("blockchain_stored")
        db.session.commit()
        return document

    def record_chain_error(self, document: Document, message: str) -> None:
        document.chain_error = (message or "")[:255]
        db.session.commit()

    def append_viewer(self, document: Document, address, granted_by=None) -> bool:
        address = normalize_address(address)
        if address in document.viewer_addresses:
            return False
        document.viewers.append(DocumentViewer(address=address, granted_by=granted_by))
        db.session.commit()
        return True

    def remove_viewer(self, document: Document, address) -> bool:
        address = normalize_address(address)
        for viewer in list(document.viewers):
            if viewer.address == address:
                document.viewers.remove(viewer)
                db.session.commit()
                return True
        return False

    def transfer_owner(self, document: Document, new_owner) -> str:
        previous = document.owner_address
        document.owner_address = normalize_address(new_owner)
        db.session.commit()
        return previous

    def deactivate(self, document: Document, reason, by) -> Document:
        document.advance("revoked")
        document.is_active = False
        document.deactivation_reason = reason
        document.deactivated_at = datetime.utcnow()
        document.deactivated_by = by
        db.session.commit()
        return document

    def find_pending_chain(self, older_than: datetime, limit=50):
        return db.session.execute(
            db.select(Document)
            .filter(Document.status == "stored", Document.tx_hash.is_(None), Document.created_at < older_than)
            .order_by(Document.created_at.asc())
            .limit(limit)
        ).scalars().all()

    def record_verification(self, document_hash) -> None:
        """Atomic counter bump; committed together with the log entry."""
        db.session.execute(
            update(Document)
            .where(Document.document_hash == normalize_hash(document_hash))
            .values(
                verification_count=Document.verification_count + 1,
                last_verified_at=datetime.utcnow(),
            )
        )


# ----------------------------
# Principals
# ----------------------------
class PrincipalRepository:
    def get_by_address(self, address) -> Optional[User]:
        address = normalize_address(address)
        return db.session.execute(
            db.select(User).filter(func.lower(User.address) == address)
        ).scalar_one_or_none()

    def create_with_role(self, address, role="student", **profile) -> User:
        user = User(address=normalize_address(address))
        user.apply_role(role)
        for field in ("name", "email", "organization"):
            if profile.get(field) is not None:
                setattr(user, field, profile[field])
        db.session.add(user)
        db.session.commit()
        logger.info("Principal %s created with role %s", user.address, role)
        return user

    def assign_role(self, address, role) -> User:
        user = self.get_by_address(address)
        if user is None:
            raise NotFoundError("User not found")
        user.apply_role(role)
        db.session.commit()
        return user

    def rotate_nonce(self, user: User) -> str:
        nonce = user.rotate_nonce()
        db.session.commit()
        return nonce

    def record_login(self, user: User) -> None:
        user.last_login = datetime.utcnow()
        user.session_active = True
        user.rotate_nonce()
        db.session.commit()


# ----------------------------
# Verification log
# ----------------------------
class VerificationLogRepository:
    def append(self, document_hash, result, verifier=None, verifier_ip=None, method="hash",
               blockchain_confirmed=None, file_integrity_checked=False, transaction_hash=None,
               user_agent=None) -> VerificationLog:
        if result not in VERIFICATION_RESULTS:
            raise ValidationError(f"Invalid verification result: {result}")
        if method not in VERIFICATION_METHODS:
            raise ValidationError(f"Invalid verification method: {method}")
        entry = VerificationLog(
            document_hash=document_hash,
            verifier=verifier or ANONYMOUS,
            verifier_ip=verifier_ip or "unknown",
            method=method,
            result=result,
            blockchain_confirmed=blockchain_confirmed,
            file_integrity_checked=file_integrity_checked,
            transaction_hash=transaction_hash,
            user_agent=user_agent,
        )
        db.session.add(entry)
        db.session.commit()
        return entry

    def _filtered(self, document_hash=None, result=None, verifier=None, start=None, end=None):
        query = db.select(VerificationLog)
        if document_hash:
            query = query.filter(VerificationLog.document_hash == normalize_hash(document_hash))
        if result:
            query = query.filter(VerificationLog.result == result)
        if verifier:
            query = query.filter(VerificationLog.verifier == verifier.lower())
        if start:
            query = query.filter(VerificationLog.timestamp >= start)
        if end:
            query = query.filter(VerificationLog.timestamp <= end)
        return query

    def history(self, document_hash, result=None, start=None, end=None, page=1, per_page=50):
        """A document's log entries in insertion order."""
        query = self._filtered(document_hash=document_hash, result=result, start=start, end=end)
        return paginate(query.order_by(VerificationLog.id.asc()), page, per_page)

    def query(self, document_hash=None, result=None, verifier=None, start=None, end=None,
              page=1, per_page=50):
        query = self._filtered(document_hash, result, verifier, start, end)
        return paginate(query.order_by(VerificationLog.id.desc()), page, per_page)

    def statistics(self, document_hash) -> dict:
        document_hash = normalize_hash(document_hash)
        rows = db.session.execute(
            db.select(VerificationLog.result, func.count(VerificationLog.id))
            .filter(VerificationLog.document_hash == document_hash)
            .group_by(VerificationLog.result)
        ).all()
        by_result = {result: 0 for result in VERIFICATION_RESULTS}
        by_result.update({result: count for result, count in rows})
        last = db.session.execute(
            db.select(VerificationLog)
            .filter(VerificationLog.document_hash == document_hash)
            .order_by(VerificationLog.id.desc())
            .limit(1)
        ).scalar_one_or_none()
        return {
            "total": sum(by_result.values()),
            "byResult": by_result,
            "lastVerification": last.to_dict() if last else None,
        }

    def count_failed_since(self, document_hash, since: datetime) -> int:
        return db.session.execute(
            db.select(func.count(VerificationLog.id)).filter(
                VerificationLog.document_hash == normalize_hash(document_hash),
                VerificationLog.result.in_(FAILED_RESULTS),
                VerificationLog.timestamp >= since,
            )
        ).scalar_one()

    def detect_suspicious(self, document_hash, window_minutes=10, threshold=5):
        """Returns ``(suspicious, failed_count)`` for the sliding window."""
        since = datetime.utcnow() - timedelta(minutes=window_minutes)
        count = self.count_failed_since(document_hash, since)
        return count >= threshold, count

    def suspicious_documents(self, window_minutes=10, threshold=5):
        since = datetime.utcnow() - timedelta(minutes=window_minutes)
        rows = db.session.execute(
            db.select(VerificationLog.document_hash, func.count(VerificationLog.id).label("failed"))
            .filter(VerificationLog.result.in_(FAILED_RESULTS), VerificationLog.timestamp >= since)
            .group_by(VerificationLog.document_hash)
            .having(func.count(VerificationLog.id) >= threshold)
            .order_by(func.count(VerificationLog.id).desc())
        ).all()
        return [{"documentHash": row[0], "failedAttempts": row[1]} for row in rows]

    def prune(self, retention_days) -> int:
        cutoff = datetime.utcnow() - timedelta(days=retention_days)
        deleted = db.session.execute(
            db.delete(VerificationLog).where(VerificationLog.timestamp < cutoff)
        ).rowcount
        db.session.commit()
        return deleted or 0


# ----------------------------
# Chain transaction metrics
# ----------------------------
class ChainTransactionRepository:
    def record(self, method, document_hash=None, receipt=None, error=None, attempts=1) -> ChainTransaction:
        entry = ChainTransaction(
            method=method,
            document_hash=document_hash,
            tx_hash=receipt.tx_hash if receipt else None,
            block_number=receipt.block_number if receipt else None,
            gas_used=receipt.gas_used if receipt else None,
            gas_price=receipt.gas_price if receipt else None,
            attempts=receipt.attempts if receipt else attempts,
            status="confirmed" if receipt else "failed",
            error=(error or "")[:255] or None,
        )
        db.session.add(entry)
        db.session.commit()
        return entry

    def summary(self) -> dict:
        rows = db.session.execute(
            db.select(ChainTransaction.status, func.count(ChainTransaction.id),
                      func.coalesce(func.sum(ChainTransaction.gas_used), 0))
            .group_by(ChainTransaction.status)
        ).all()
        return {status: {"count": count, "gasUsed": int(gas)} for status, count, gas in rows}

    def prune(self, retention_days) -> int:
        cutoff = datetime.utcnow() - timedelta(days=retention_days)
        deleted = db.session.execute(
            db.delete(ChainTransaction).where(ChainTransaction.created_at < cutoff)
        ).rowcount
        db.session.commit()
        return deleted or 0
