"""Read side of documents: lookup, listing, download and QR."""

import logging

from .arbiter import require
from .crypto import Envelope, WrappedKey, content_hash_hex, decrypt
from .errors import AuthorizationError, ConflictError, IntegrityError, ValidationError
from .models import DOCUMENT_STATUSES, DOCUMENT_TYPES, normalize_address
from .qr import build_verification_url, generate_qr_png

logger = logging.getLogger(__name__)


class DocumentService:
    def __init__(self, documents, content_store, key_wrapper, audit, verification_base_url):
        self.documents = documents
        self.content_store = content_store
        self.key_wrapper = key_wrapper
        self.audit = audit
        self.verification_base_url = verification_base_url

    def get(self, document_hash, principal):
        document = self.documents.get_by_hash(document_hash)
        require(principal, document, "view")
        return document

    def list_for_owner(self, owner, principal, page=1, per_page=20, include_inactive=False):
        owner = normalize_address(owner)
        if principal is None or (principal.address.lower() != owner and not principal.is_admin):
            raise AuthorizationError("You may only list your own documents")
        return self.documents.find_by_owner(owner, page=page, per_page=per_page, include_inactive=include_inactive)

    def search(self, principal, status=None, document_type=None, text=None, page=1, per_page=20):
        """Lists active documents visible to the principal's role.

        Admins see every document, issuers the documents they issued and
        everyone else the documents they own or were granted access to.
        """
        if principal is None:
            raise AuthorizationError("Authentication required")
        if status is not None and status not in DOCUMENT_STATUSES:
            raise ValidationError(f"Unknown document status: {status}")
        if document_type is not None and document_type not in DOCUMENT_TYPES:
            raise ValidationError(f"Unknown document type: {document_type}")
        scope = {}
        if principal.role == "issuer":
            scope["issuer"] = principal.address
        elif not principal.is_admin:
            scope["party"] = principal.address
        return self.documents.search(status=status, document_type=document_type, text=text,
                                     page=page, per_page=per_page, **scope)

    async def download(self, document_hash, principal, ip_address=None):
        """Returns ``(plaintext, document)`` after re-checking the content hash."""
        document = self.documents.get_by_hash(document_hash)
        require(principal, document, "download")
        if not document.is_active:
            raise ConflictError("Document has been deactivated")

        payload = await self.content_store.retrieve(document.cid)
        key = self.key_wrapper.unwrap(WrappedKey.deserialize(document.wrapped_key))
        data = decrypt(Envelope.from_payload(payload), key)
        if content_hash_hex(data) != document.document_hash:
            logger.error("Hash mismatch after decrypting %s (cid=%s)", document.document_hash, document.cid)
            raise IntegrityError("Decrypted content does not match the document hash")

        self.audit.record("document_download", actor=principal, resource_id=document.document_hash,
                          ip_address=ip_address, size=len(data))
        return data, document

    def verification_url(self, document):
        return build_verification_url(self.verification_base_url, document.document_hash, document.tx_hash)

    def qr_png(self, document_hash, principal):
        document = self.get(document_hash, principal)
        return generate_qr_png(self.verification_url(document))
