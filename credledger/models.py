import secrets
from datetime import datetime

from flask_login import UserMixin
from flask_sqlalchemy import SQLAlchemy
from web3 import Web3

from .errors import FatalError, ValidationError

db = SQLAlchemy()

ROLES = ("admin", "issuer", "verifier", "student")
ROLE_PERMISSIONS = {
    "admin": {"can_issue": True, "can_verify": True, "can_transfer": True},
    "issuer": {"can_issue": True, "can_verify": True, "can_transfer": False},
    "verifier": {"can_issue": False, "can_verify": True, "can_transfer": False},
    "student": {"can_issue": False, "can_verify": True, "can_transfer": False},
}

DOCUMENT_TYPES = ("degree", "certificate", "transcript", "diploma", "other")

# draft -> encrypted -> stored -> blockchain_stored, any -> revoked
DOCUMENT_STATUSES = ("draft", "encrypted", "stored", "blockchain_stored", "revoked")
STATUS_TRANSITIONS = {
    "draft": {"encrypted", "revoked"},
    "encrypted": {"stored", "revoked"},
    "stored": {"blockchain_stored", "revoked"},
    "blockchain_stored": {"revoked"},
    "revoked": set(),
}

VERIFICATION_METHODS = ("upload", "qr", "hash")
VERIFICATION_RESULTS = ("authentic", "tampered", "not_found", "revoked")
FAILED_RESULTS = ("tampered", "not_found")
ANONYMOUS = "anonymous"


def is_address(value) -> bool:
    # mixed case must carry a valid EIP-55 checksum
    return isinstance(value, str) and value.startswith("0x") and Web3.is_address(value)


def normalize_address(value) -> str:
    if not is_address(value):
        raise ValidationError("Invalid wallet address format", value=str(value)[:80])
    return value.lower()


def _iso(value):
    return value.isoformat() if value else None


# ----------------------------
# Database Models
# ----------------------------
class User(UserMixin, db.Model):
    __tablename__ = "users"
    id = db.Column(db.Integer, primary_key=True)
    address = db.Column(db.String(42), unique=True, nullable=False, index=True)  # lowercase 0x-hex
    role = db.Column(db.String(16), nullable=False, default="student", index=True)
    can_issue = db.Column(db.Boolean, nullable=False, default=False)
    can_verify = db.Column(db.Boolean, nullable=False, default=True)
    can_transfer = db.Column(db.Boolean, nullable=False, default=False)
    name = db.Column(db.String(100))
    email = db.Column(db.String(255))
    organization = db.Column(db.String(200))
    nonce = db.Column(db.String(64), nullable=False, default=lambda: secrets.token_hex(16))
    session_active = db.Column(db.Boolean, nullable=False, default=True)
    last_login = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def get_id(self):
        return self.address

    @property
    def is_active(self):
        return bool(self.session_active)

    def apply_role(self, role):
        if role not in ROLES:
            raise ValidationError(f"Unknown role: {role}")
        self.role = role
        for permission, allowed in ROLE_PERMISSIONS[role].items():
            setattr(self, permission, allowed)

    def has_permission(self, permission):
        if self.role == "admin":
            return True
        return bool(getattr(self, permission, False))

    def rotate_nonce(self):
        self.nonce = secrets.token_hex(16)
        return self.nonce

    def to_dict(self):
        return {
            "address": self.address,
            "role": self.role,
            "permissions": {
                "canIssue": self.can_issue,
                "canVerify": self.can_verify,
                "canTransfer": self.can_transfer,
            },
            "name": self.name,
            "organization": self.organization,
            "lastLogin": _iso(self.last_login),
            "createdAt": _iso(self.created_at),
        }


class Document(db.Model):
    __tablename__ = "documents"
    id = db.Column(db.Integer, primary_key=True)
    document_hash = db.Column(db.String(66), unique=True, nullable=False, index=True)
    cid = db.Column(db.String(128), nullable=True, index=True)
    wrapped_key = db.Column(db.Text, nullable=True)  # never serialized
    storage_provider = db.Column(db.String(32), nullable=True)

    # metadata
    student_name = db.Column(db.String(100), nullable=False)
    student_id = db.Column(db.String(50), nullable=False, index=True)
    institution_name = db.Column(db.String(200), nullable=False, index=True)
    document_type = db.Column(db.String(16), nullable=False, index=True)
    issue_date = db.Column(db.Date, nullable=False)
    description = db.Column(db.Text, nullable=True)

    # file info
    original_name = db.Column(db.String(255), nullable=False)
    mime_type = db.Column(db.String(128), nullable=False)
    file_size = db.Column(db.Integer, nullable=False)

    # access
    owner_address = db.Column(db.String(42), nullable=False, index=True)
    issuer_address = db.Column(db.String(42), nullable=False, index=True)

    # audit
    uploaded_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    verification_count = db.Column(db.Integer, nullable=False, default=0)
    last_verified_at = db.Column(db.DateTime, nullable=True)

    # blockchain, all null until the receipt arrives
    tx_hash = db.Column(db.String(66), nullable=True)
    block_number = db.Column(db.Integer, nullable=True)
    gas_used = db.Column(db.BigInteger, nullable=True)
    chain_error = db.Column(db.String(255), nullable=True)

    status = db.Column(db.String(24), nullable=False, default="draft", index=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    deactivation_reason = db.Column(db.String(500), nullable=True)
    deactivated_at = db.Column(db.DateTime, nullable=True)
    deactivated_by = db.Column(db.String(42), nullable=True)

    uploaded_by = db.relationship("User")
    viewers = db.relationship(
        "DocumentViewer",
        order_by="DocumentViewer.id",
        cascade="all, delete-orphan",
        backref="document",
    )

    @property
    def viewer_addresses(self):
        return [v.address for v in self.viewers]

    @property
    def authorized_viewers(self):
        """Owner and issuer first, then explicit grants in grant order."""
        ordered = [self.owner_address, self.issuer_address]
        for address in self.viewer_addresses:
            if address not in ordered:
                ordered.append(address)
        return ordered

    def has_access(self, address):
        return address is not None and address.lower() in self.authorized_viewers

    @property
    def on_chain(self):
        return self.tx_hash is not None

    def advance(self, status):
        if status not in STATUS_TRANSITIONS.get(self.status, set()):
            raise FatalError(f"Illegal status transition {self.status} -> {status}")
        self.status = status

    def metadata_dict(self):
        return {
            "studentName": self.student_name,
            "studentId": self.student_id,
            "institutionName": self.institution_name,
            "documentType": self.document_type,
            "issueDate": _iso(self.issue_date),
            "description": self.description,
        }

    def to_dict(self):
        return {
            "id": self.id,
            "documentHash": self.document_hash,
            "cid": self.cid,
            "metadata": self.metadata_dict(),
            "fileInfo": {
                "originalName": self.original_name,
                "mimeType": self.mime_type,
                "size": self.file_size,
            },
            "access": {
                "owner": self.owner_address,
                "issuer": self.issuer_address,
                "authorizedViewers": self.viewer_addresses,
            },
            "audit": {
                "createdAt": _iso(self.created_at),
                "verificationCount": self.verification_count,
                "lastVerifiedAt": _iso(self.last_verified_at),
            },
            "blockchain": {
                "transactionHash": self.tx_hash,
                "blockNumber": self.block_number,
                "gasUsed": self.gas_used,
            },
            "status": self.status,
            "isActive": self.is_active,
            "deactivation": {
                "reason": self.deactivation_reason,
                "at": _iso(self.deactivated_at),
                "by": self.deactivated_by,
            } if not self.is_active else None,
        }


class DocumentViewer(db.Model):
    __tablename__ = "document_viewers"
    __table_args__ = (db.UniqueConstraint("document_id", "address", name="uq_document_viewer"),)
    id = db.Column(db.Integer, primary_key=True)
    document_id = db.Column(db.Integer, db.ForeignKey("documents.id"), nullable=False, index=True)
    address = db.Column(db.String(42), nullable=False, index=True)
    granted_by = db.Column(db.String(42), nullable=True)
    granted_at = db.Column(db.DateTime, default=datetime.utcnow)


class VerificationLog(db.Model):
    __tablename__ = "verification_logs"
    id = db.Column(db.Integer, primary_key=True)
    document_hash = db.Column(db.String(66), nullable=False, index=True)
    verifier = db.Column(db.String(42), nullable=False, default=ANONYMOUS, index=True)
    verifier_ip = db.Column(db.String(45), nullable=False)
    method = db.Column(db.String(16), nullable=False, default="hash")
    result = db.Column(db.String(16), nullable=False, index=True)
    blockchain_confirmed = db.Column(db.Boolean, nullable=True)
    file_integrity_checked = db.Column(db.Boolean, nullable=False, default=False)
    transaction_hash = db.Column(db.String(66), nullable=True)
    user_agent = db.Column(db.Text, nullable=True)
    timestamp = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    def to_dict(self):
        return {
            "id": self.id,
            "documentHash": self.document_hash,
            "verifier": self.verifier,
            "verifierIp": self.verifier_ip,
            "method": self.method,
            "result": self.result,
            "blockchainConfirmed": self.blockchain_confirmed,
            "fileIntegrityChecked": self.file_integrity_checked,
            "transactionHash": self.transaction_hash,
            "userAgent": self.user_agent,
            "timestamp": _iso(self.timestamp),
        }


class AuditEvent(db.Model):
    __tablename__ = "audit_events"
    id = db.Column(db.Integer, primary_key=True)
    event_type = db.Column(db.String(48), nullable=False, index=True)
    actor = db.Column(db.String(42), nullable=True, index=True)
    actor_role = db.Column(db.String(16), nullable=True)
    resource_type = db.Column(db.String(16), nullable=False, default="document")
    resource_id = db.Column(db.String(66), nullable=True, index=True)
    result = db.Column(db.String(16), nullable=False, default="success", index=True)
    ip_address = db.Column(db.String(45), nullable=True)
    details = db.Column(db.JSON, nullable=True)
    timestamp = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    def to_dict(self):
        return {
            "id": self.id,
            "eventType": self.event_type,
            "actor": self.actor,
            "actorRole": self.actor_role,
            "resourceType": self.resource_type,
            "resourceId": self.resource_id,
            "result": self.result,
            "ipAddress": self.ip_address,
            "details": self.details or {},
            "timestamp": _iso(self.timestamp),
        }


class ChainTransaction(db.Model):
    __tablename__ = "chain_transactions"
    id = db.Column(db.Integer, primary_key=True)
    method = db.Column(db.String(32), nullable=False, index=True)
    document_hash = db.Column(db.String(66), nullable=True, index=True)
    tx_hash = db.Column(db.String(66), nullable=True)
    block_number = db.Column(db.Integer, nullable=True)
    gas_used = db.Column(db.BigInteger, nullable=True)
    gas_price = db.Column(db.BigInteger, nullable=True)
    attempts = db.Column(db.Integer, nullable=False, default=1)
    status = db.Column(db.String(16), nullable=False)  # confirmed|failed
    error = db.Column(db.String(255), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)
