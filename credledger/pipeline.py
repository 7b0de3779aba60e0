"""
Issuance pipeline.

validate -> hash -> dedup -> encrypt -> wrap key -> upload -> insert ->
chain commit -> verification URL. Content upload precedes the insert and
the insert precedes the chain commit; the chain commit can be replayed
on its own later.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional

from werkzeug.utils import secure_filename

from .arbiter import has_permission
from .crypto import content_hash_hex, encrypt
from .errors import (
    AuthorizationError,
    CredLedgerError,
    DuplicateError,
    ServiceUnavailableError,
    ValidationError,
)
from .models import DOCUMENT_TYPES, Document, normalize_address
from .qr import build_verification_url, generate_qr_data_url

logger = logging.getLogger(__name__)

CHAIN_PENDING = "chain_pending"

METADATA_LIMITS = {
    "studentName": 100,
    "studentId": 50,
    "institutionName": 200,
}
DESCRIPTION_LIMIT = 1000


@dataclass
class IssuanceResult:
    document: Document
    verification_url: str
    qr_code: Optional[str] = None
    receipt: Optional[object] = None
    warnings: List[str] = field(default_factory=list)

    def to_dict(self):
        return {
            "success": True,
            "document": self.document.to_dict(),
            "status": self.document.status,
            "warnings": list(self.warnings),
            "verificationUrl": self.verification_url,
            "qrCode": self.qr_code,
            "transaction": self.receipt.to_dict() if self.receipt else None,
        }


def validate_metadata(metadata):
    if not isinstance(metadata, dict):
        raise ValidationError("Metadata must be an object")
    clean = {}
    for key, limit in METADATA_LIMITS.items():
        raw = metadata.get(key)
        value = raw.strip() if isinstance(raw, str) else ""
        if not value:
            raise ValidationError(f"{key} is required", field=key)
        if len(value) > limit:
            raise ValidationError(f"{key} must be at most {limit} characters", field=key)
        clean[key] = value

    document_type = metadata.get("documentType")
    if document_type not in DOCUMENT_TYPES:
        raise ValidationError("Invalid document type", field="documentType", allowed=list(DOCUMENT_TYPES))
    clean["documentType"] = document_type

    issue_date = metadata.get("issueDate")
    try:
        clean["issueDate"] = issue_date if isinstance(issue_date, date) else date.fromisoformat(str(issue_date)[:10])
    except ValueError as e:
        raise ValidationError("issueDate must be an ISO date", field="issueDate") from e

    description = metadata.get("description") or None
    if description is not None and len(str(description)) > DESCRIPTION_LIMIT:
        raise ValidationError(f"description must be at most {DESCRIPTION_LIMIT} characters", field="description")
    clean["description"] = description
    return clean


class IssuancePipeline:
    def __init__(self, documents, content_store, chain, key_wrapper, audit, chain_txs, locks,
                 max_file_size=10 * 1024 * 1024, allowed_mime_types=None,
                 verification_base_url="http://localhost:3000/verify", pipeline_timeout=60.0):
        self.documents = documents
        self.content_store = content_store
        self.chain = chain
        self.key_wrapper = key_wrapper
        self.audit = audit
        self.chain_txs = chain_txs
        self.locks = locks
        self.max_file_size = max_file_size
        self.allowed_mime_types = allowed_mime_types
        self.verification_base_url = verification_base_url
        self.pipeline_timeout = pipeline_timeout

    # ----------------------------
    # Step 1: validation
    # ----------------------------
    def validate(self, data, filename, mime_type, metadata, owner_address, issuer):
        if issuer is None or not has_permission(issuer, "can_issue"):
            raise AuthorizationError("Issuer permission required")
        if not isinstance(data, (bytes, bytearray)) or not data:
            raise ValidationError("No file uploaded")
        if len(data) > self.max_file_size:
            raise ValidationError("File too large", maxSize=self.max_file_size, size=len(data))
        if self.allowed_mime_types and mime_type not in self.allowed_mime_types:
            raise ValidationError(f"Invalid file type: {mime_type}")
        safe_name = secure_filename(filename or "")
        if not safe_name:
            raise ValidationError("Invalid filename")
        owner = normalize_address(owner_address) if owner_address else issuer.address.lower()
        return safe_name, owner, validate_metadata(metadata)

    async def issue(self, data, filename, mime_type, metadata, owner_address=None, issuer=None,
                    ip_address=None) -> IssuanceResult:
        safe_name, owner, clean = self.validate(data, filename, mime_type, metadata, owner_address, issuer)
        document_hash = content_hash_hex(bytes(data))
        # past this point the pipeline runs to completion even if the caller goes away
        return await asyncio.shield(self._issue_locked(
            bytes(data), document_hash, safe_name, mime_type, clean, owner, issuer, ip_address))

    async def _issue_locked(self, data, document_hash, filename, mime_type, metadata, owner, issuer, ip_address):
        deadline = time.monotonic() + self.pipeline_timeout
        async with self.locks.hold(document_hash):
            existing = self.documents.find_by_hash(document_hash)
            if existing is not None:
                logger.info("Duplicate issuance rejected for %s", document_hash)
                raise DuplicateError(document=existing)

            document = Document(
                document_hash=document_hash,
                student_name=metadata["studentName"],
                student_id=metadata["studentId"],
                institution_name=metadata["institutionName"],
                document_type=metadata["documentType"],
                issue_date=metadata["issueDate"],
                description=metadata["description"],
                original_name=filename,
                mime_type=mime_type,
                file_size=len(data),
                owner_address=owner,
                issuer_address=issuer.address.lower(),
                status="draft",
                is_active=True,
                verification_count=0,
            )

            envelope = encrypt(data)
            document.advance("encrypted")
            wrapped = self.key_wrapper.wrap(envelope.key)
            envelope.key = None

            try:
                upload = await asyncio.wait_for(
                    self.content_store.upload(envelope.to_payload(), f"{filename}.enc", "application/octet-stream"),
                    timeout=deadline - time.monotonic(),
                )
            except asyncio.TimeoutError as e:
                raise ServiceUnavailableError("Content store upload timed out") from e

            document.cid = upload.cid
            document.wrapped_key = wrapped.serialize()
            document.storage_provider = upload.provider
            document.advance("stored")
            self.documents.create(document)
            self.audit.record("document_upload", actor=issuer, resource_id=document_hash, ip_address=ip_address,
                              cid=upload.cid, provider=upload.provider, owner=owner)

            receipt = await self.commit_to_chain(document, timeout=deadline - time.monotonic())

        warnings = [] if receipt else [CHAIN_PENDING]
        url = build_verification_url(self.verification_base_url, document_hash, document.tx_hash)
        return IssuanceResult(
            document=document,
            verification_url=url,
            qr_code=generate_qr_data_url(url),
            receipt=receipt,
            warnings=warnings,
        )

    # ----------------------------
    # Step 7: chain commit
    # ----------------------------
    async def commit_to_chain(self, document, timeout=None):
        """Register a stored document on chain; returns the receipt or None.

        With ``timeout`` the commit is abandoned once it runs out and the
        document stays at status=stored for the reconciler.
        """
        metadata_json = json.dumps(document.metadata_dict(), sort_keys=True, separators=(",", ":"))
        register = self.chain.register_document(
            document.document_hash, document.cid, document.owner_address, metadata_json)
        try:
            if timeout is None:
                receipt = await register
            else:
                receipt = await asyncio.wait_for(register, timeout=max(timeout, 0))
        except asyncio.TimeoutError:
            message = f"Chain commit exceeded the {self.pipeline_timeout}s pipeline budget"
            logger.warning("%s for %s, leaving status=stored", message, document.document_hash)
            self.documents.record_chain_error(document, message)
            self.chain_txs.record("registerDocument", document.document_hash, error=message)
            return None
        except CredLedgerError as e:
            logger.warning("Chain commit for %s failed, leaving status=stored: %s", document.document_hash, e.message)
            self.documents.record_chain_error(document, e.message)
            self.chain_txs.record("registerDocument", document.document_hash, error=e.message,
                                  attempts=e.details.get("attempts", 1))
            return None
        self.documents.update_blockchain_fields(document, receipt.tx_hash, receipt.block_number, receipt.gas_used)
        self.chain_txs.record("registerDocument", document.document_hash, receipt=receipt)
        logger.info("Document %s registered on chain tx=%s", document.document_hash, receipt.tx_hash)
        return receipt
