import asyncio
import secrets
import time

import pytest
from flask_login import FlaskLoginClient

from credledger import create_app
from credledger.arbiter import Principal
from credledger.blockchain import ChainDocument, Registration, TxReceipt
from credledger.content_store import ContentStoreClient, LocalProvider
from credledger.errors import NotFoundError, ServiceUnavailableError
from credledger.models import db
from credledger.repositories import PrincipalRepository

ADMIN = "0x" + "a" * 40
ISSUER = "0x" + "1" * 40
OWNER = "0x" + "2" * 40
VERIFIER = "0x" + "3" * 40
OUTSIDER = "0x" + "4" * 40
OPERATOR = "0x" + "9" * 40

METADATA = {
    "studentName": "Ada Lovelace",
    "studentId": "S-1815",
    "institutionName": "University of London",
    "documentType": "degree",
    "issueDate": "2024-06-30",
    "description": "BSc Mathematics",
}


class FakeChain:
    """In-memory stand-in for ChainClient with switchable failures."""

    write_enabled = True

    def __init__(self):
        self.documents = {}
        self.registrations = {}
        self.roles = {}
        self.calls = []
        self.fail_writes = False
        self.down = False
        self.hang = 0
        self.block = 100

    def writes(self, method):
        return [call for call in self.calls if call[0] == method]

    async def _write(self, method, *args):
        self.calls.append((method,) + args)
        await asyncio.sleep(self.hang)
        if self.fail_writes or self.down:
            raise ServiceUnavailableError(f"{method} failed after 3 attempts: network error", attempts=3)
        self.block += 1
        return TxReceipt(tx_hash="0x" + secrets.token_hex(32), block_number=self.block,
                         gas_used=150000, gas_price=2 * 10 ** 9)

    def _check_reachable(self):
        if self.down:
            raise ServiceUnavailableError("Chain unreachable: timeout")

    async def register_document(self, document_hash, cid, owner, metadata_json):
        receipt = await self._write("registerDocument", document_hash, cid, owner, metadata_json)
        self.documents[document_hash] = ChainDocument(
            document_hash=document_hash, cid=cid, issuer=OPERATOR, owner=owner.lower(),
            timestamp=int(time.time()), is_active=True, is_valid=True)
        self.registrations[document_hash] = Registration(receipt.tx_hash, receipt.block_number, receipt.gas_used)
        return receipt

    async def verify_document(self, document_hash):
        self._check_reachable()
        document = self.documents.get(document_hash)
        if document is None:
            raise NotFoundError("Document not found on chain")
        return document

    async def find_registration(self, document_hash):
        self._check_reachable()
        return self.registrations.get(document_hash)

    async def transfer_ownership(self, document_hash, new_owner):
        receipt = await self._write("transferOwnership", document_hash, new_owner)
        self.documents[document_hash].owner = new_owner
        return receipt

    async def grant_access(self, document_hash, address):
        return await self._write("grantAccess", document_hash, address)

    async def revoke_access(self, document_hash, address):
        return await self._write("revokeAccess", document_hash, address)

    async def deactivate_document(self, document_hash, reason):
        receipt = await self._write("deactivateDocument", document_hash, reason)
        self.documents[document_hash].is_active = False
        return receipt

    async def assign_role(self, address, role):
        receipt = await self._write("assignRole", address, role)
        self.roles[address] = role
        return receipt

    async def health_check(self):
        return {"available": not self.down, "blockNumber": None if self.down else self.block,
                "rtt": 0.0, "error": "timeout" if self.down else None, "writeEnabled": True}


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def content_store(tmp_path):
    return ContentStoreClient([LocalProvider(str(tmp_path / "ipfs"))], retry_backoff=0)


@pytest.fixture
def app(tmp_path, chain, content_store):
    app = create_app({
        "TESTING": True,
        "SECRET_KEY": "test-secret",
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'test.db'}",
        "SQLALCHEMY_ENGINE_OPTIONS": {"connect_args": {"check_same_thread": False}},
        "MASTER_KEY": "test-master-key-0123456789",
        "VERIFICATION_BASE_URL": "https://verify.example.edu/verify",
        "LOG_LEVEL": "WARNING",
    }, chain=chain, content_store=content_store)
    app.test_client_class = FlaskLoginClient
    with app.app_context():
        repo = PrincipalRepository()
        for address, role in ((ADMIN, "admin"), (ISSUER, "issuer"), (OWNER, "student"),
                              (VERIFIER, "verifier"), (OUTSIDER, "student")):
            repo.create_with_role(address, role)
    yield app
    app.extensions["credledger"].close()
    with app.app_context():
        db.engine.dispose()


@pytest.fixture
def services(app):
    return app.extensions["credledger"]


@pytest.fixture
def login(app):
    def _client(address=None):
        if address is None:
            return app.test_client()
        with app.app_context():
            user = PrincipalRepository().get_by_address(address)
            return app.test_client(user=user)
    return _client


@pytest.fixture
def principals():
    return {
        "admin": Principal.with_role(ADMIN, "admin"),
        "issuer": Principal.with_role(ISSUER, "issuer"),
        "owner": Principal.with_role(OWNER, "student"),
        "verifier": Principal.with_role(VERIFIER, "verifier"),
        "outsider": Principal.with_role(OUTSIDER, "student"),
    }


async def issue(app, services, data, issuer, owner=OWNER, **overrides):
    """Run the issuance pipeline in its own app context."""
    metadata = dict(METADATA, **overrides)
    with app.app_context():
        result = await services.pipeline.issue(data, "diploma.pdf", "application/pdf", metadata,
                                               owner_address=owner, issuer=issuer, ip_address="10.0.0.1")
        return result.to_dict()
