import pytest

from credledger.crypto import content_hash_hex
from credledger.errors import AuthorizationError, ValidationError
from credledger.models import AuditEvent, VerificationLog, db

from .conftest import issue


async def verify(app, services, **kwargs):
    with app.app_context():
        result = await services.verification.verify(**kwargs)
        return result.to_dict()


def log_entries(app, document_hash):
    with app.app_context():
        entries = db.session.execute(
            db.select(VerificationLog).filter_by(document_hash=document_hash).order_by(VerificationLog.id)
        ).scalars().all()
        return [entry.to_dict() for entry in entries]


@pytest.mark.asyncio
async def test_authentic_and_chain_confirmed(app, services, principals):
    issued = await issue(app, services, b"PDF-plaintext-1", principals["issuer"])
    document_hash = issued["document"]["documentHash"]

    body = await verify(app, services, document_hash=document_hash, principal=principals["verifier"],
                        ip_address="192.0.2.7", user_agent="pytest")
    assert body["result"] == "authentic"
    assert body["isAuthentic"] is True
    assert body["chainConfirmed"] is True
    assert body["method"] == "hash"
    assert body["document"]["verificationCount"] == 1

    (entry,) = log_entries(app, document_hash)
    assert entry["verifier"] == principals["verifier"].address
    assert entry["verifierIp"] == "192.0.2.7"
    assert entry["blockchainConfirmed"] is True
    assert entry["userAgent"] == "pytest"


@pytest.mark.asyncio
async def test_tampered_upload(app, services, principals):
    issued = await issue(app, services, b"orig", principals["issuer"])
    document_hash = issued["document"]["documentHash"]

    body = await verify(app, services, document_hash=document_hash, data=b"orig-tampered")
    assert body["result"] == "tampered"
    assert body["method"] == "upload"

    entries = log_entries(app, document_hash)
    assert [entry["result"] for entry in entries] == ["tampered"]
    assert entries[0]["fileIntegrityChecked"] is True


@pytest.mark.asyncio
async def test_upload_without_hash_verifies_content(app, services, principals):
    await issue(app, services, b"uploaded later", principals["issuer"])
    body = await verify(app, services, data=b"uploaded later")
    assert body["result"] == "authentic"
    assert body["documentHash"] == content_hash_hex(b"uploaded later")


@pytest.mark.asyncio
async def test_chain_pending_is_not_tampered(app, services, chain, principals):
    chain.fail_writes = True
    issued = await issue(app, services, b"doc", principals["issuer"])

    body = await verify(app, services, document_hash=issued["document"]["documentHash"])
    assert body["result"] == "authentic"
    assert body["chainConfirmed"] is None
    assert "chain_pending" in body["warnings"]


@pytest.mark.asyncio
async def test_chain_unreachable_degrades(app, services, chain, principals):
    issued = await issue(app, services, b"chain goes away", principals["issuer"])
    chain.down = True

    body = await verify(app, services, document_hash=issued["document"]["documentHash"])
    assert body["result"] == "authentic"
    assert body["chainConfirmed"] is None
    assert body["warnings"] == ["chain_unavailable"]
    (entry,) = log_entries(app, issued["document"]["documentHash"])
    assert entry["blockchainConfirmed"] is None


@pytest.mark.asyncio
async def test_missing_on_chain_is_reported(app, services, chain, principals):
    issued = await issue(app, services, b"forgotten by chain", principals["issuer"])
    chain.documents.clear()

    body = await verify(app, services, document_hash=issued["document"]["documentHash"])
    assert body["result"] == "authentic"
    assert body["chainConfirmed"] is False
    assert body["warnings"] == ["not_on_chain"]


@pytest.mark.asyncio
async def test_not_found(app, services):
    document_hash = content_hash_hex(b"never issued")
    body = await verify(app, services, document_hash=document_hash)
    assert body["result"] == "not_found"
    assert body["chainConfirmed"] is None
    assert [entry["result"] for entry in log_entries(app, document_hash)] == ["not_found"]


@pytest.mark.asyncio
async def test_anonymous_verification(app, services, principals):
    issued = await issue(app, services, b"public record", principals["issuer"])
    document_hash = issued["document"]["documentHash"]

    body = await verify(app, services, document_hash=document_hash, ip_address="203.0.113.9")
    assert body["result"] == "authentic"
    (entry,) = log_entries(app, document_hash)
    assert entry["verifier"] == "anonymous"
    assert entry["verifierIp"] == "203.0.113.9"


@pytest.mark.asyncio
async def test_deactivated_document_is_revoked_and_logged(app, services, principals):
    issued = await issue(app, services, b"withdrawn", principals["issuer"])
    document_hash = issued["document"]["documentHash"]
    with app.app_context():
        await services.access.deactivate(document_hash, "Degree rescinded by senate", principals["issuer"])

    body = await verify(app, services, document_hash=document_hash)
    assert body["result"] == "revoked"
    assert body["isAuthentic"] is False
    assert [entry["result"] for entry in log_entries(app, document_hash)] == ["revoked"]


@pytest.mark.asyncio
async def test_qr_url_checks_transaction(app, services, principals):
    issued = await issue(app, services, b"qr document", principals["issuer"])

    with app.app_context():
        ok = await services.verification.verify_qr(issued["verificationUrl"])
        assert ok.result == "authentic"
        assert ok.method == "qr"

        forged_url = issued["verificationUrl"].rsplit("tx=", 1)[0] + "tx=0x" + "0" * 64
        forged = await services.verification.verify_qr(forged_url)
        assert forged.result == "tampered"

        with pytest.raises(ValidationError):
            await services.verification.verify_qr("https://verify.example.edu/verify?hash=0x1234")


@pytest.mark.asyncio
async def test_mismatched_cid_is_tampered(app, services, principals):
    issued = await issue(app, services, b"cid check", principals["issuer"])
    body = await verify(app, services, document_hash=issued["document"]["documentHash"],
                        cid="bafkrei" + "z" * 52)
    assert body["result"] == "tampered"
    assert body["method"] == "qr"


@pytest.mark.asyncio
async def test_suspicious_activity_flagged_at_threshold(app, services, principals):
    issued = await issue(app, services, b"target", principals["issuer"])
    document_hash = issued["document"]["documentHash"]

    flags = []
    for _ in range(5):
        body = await verify(app, services, document_hash=document_hash, data=b"forgery")
        flags.append(body["suspicious"])
    assert flags == [False, False, False, False, True]

    with app.app_context():
        events = db.session.execute(
            db.select(AuditEvent).filter_by(event_type="suspicious_activity")).scalars().all()
        assert len(events) == 1
        assert events[0].details["failedAttempts"] == 5
        report = services.verification.suspicious_report(principals["admin"])
        assert report == [{"documentHash": document_hash, "failedAttempts": 5}]


@pytest.mark.asyncio
async def test_successful_verifications_never_count_as_failures(app, services, principals):
    issued = await issue(app, services, b"popular", principals["issuer"])
    for _ in range(6):
        body = await verify(app, services, document_hash=issued["document"]["documentHash"])
        assert body["suspicious"] is False


@pytest.mark.asyncio
async def test_history_requires_party_or_admin(app, services, principals):
    issued = await issue(app, services, b"history", principals["issuer"])
    document_hash = issued["document"]["documentHash"]
    await verify(app, services, document_hash=document_hash)
    await verify(app, services, document_hash=document_hash, data=b"bad copy")

    with app.app_context():
        history = services.verification.history(document_hash, principals["owner"])
        assert [entry.result for entry in history.items] == ["authentic", "tampered"]
        stats = services.verification.statistics(document_hash, principals["admin"])
        assert stats["total"] == 2
        assert stats["verificationCount"] == 2
        with pytest.raises(AuthorizationError):
            services.verification.history(document_hash, principals["outsider"])
        with pytest.raises(AuthorizationError):
            services.verification.search(principals["issuer"])


@pytest.mark.asyncio
async def test_requires_hash_or_file(app, services):
    with pytest.raises(ValidationError):
        await verify(app, services)
    with pytest.raises(ValidationError):
        await verify(app, services, document_hash="0xnothex")


@pytest.mark.asyncio
async def test_malformed_tx_or_cid_is_rejected_before_logging(app, services, principals):
    issued = await issue(app, services, b"strict inputs", principals["issuer"])
    document_hash = issued["document"]["documentHash"]

    with pytest.raises(ValidationError):
        await verify(app, services, document_hash=document_hash, tx_hash="not-a-hash")
    with pytest.raises(ValidationError):
        await verify(app, services, document_hash=document_hash, cid="Qm-not-a-cid")
    assert log_entries(app, document_hash) == []

    tx_hash = issued["transaction"]["transactionHash"]
    body = await verify(app, services, document_hash=document_hash, tx_hash=tx_hash.upper().replace("0X", "0x"))
    assert body["result"] == "authentic"
