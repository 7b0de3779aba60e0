from datetime import datetime, timedelta

import pytest

from credledger.blockchain import Registration
from credledger.models import Document, db

from .conftest import issue

LATER = datetime.utcnow() + timedelta(hours=1)


async def stuck_document(app, services, chain, principals, data):
    chain.fail_writes = True
    issued = await issue(app, services, data, principals["issuer"])
    chain.fail_writes = False
    assert issued["status"] == "stored"
    return issued["document"]["documentHash"]


def load(app, document_hash):
    with app.app_context():
        return db.session.execute(
            db.select(Document).filter_by(document_hash=document_hash)).scalar_one().to_dict()


@pytest.mark.asyncio
async def test_heals_from_registration_event(app, services, chain, principals):
    document_hash = await stuck_document(app, services, chain, principals, b"receipt lost")
    chain.registrations[document_hash] = Registration("0x" + "cd" * 32, 321, 90000)

    with app.app_context():
        report = await services.reconciler.run(now=LATER)
    assert report.to_dict() == {"checked": 1, "healed": [document_hash], "resubmitted": [], "failed": []}

    document = load(app, document_hash)
    assert document["status"] == "blockchain_stored"
    assert document["blockchain"] == {"transactionHash": "0x" + "cd" * 32, "blockNumber": 321, "gasUsed": 90000}
    assert len(chain.writes("registerDocument")) == 1


@pytest.mark.asyncio
async def test_resubmits_missing_registration(app, services, chain, principals):
    document_hash = await stuck_document(app, services, chain, principals, b"never reached chain")

    with app.app_context():
        report = await services.reconciler.run(now=LATER)
    assert report.resubmitted == [document_hash]
    assert len(chain.writes("registerDocument")) == 2
    assert load(app, document_hash)["status"] == "blockchain_stored"


@pytest.mark.asyncio
async def test_recent_documents_are_left_alone(app, services, chain, principals):
    await stuck_document(app, services, chain, principals, b"still in flight")

    with app.app_context():
        report = await services.reconciler.run()
    assert report.checked == 0


@pytest.mark.asyncio
async def test_unreachable_chain_marks_failed(app, services, chain, principals):
    document_hash = await stuck_document(app, services, chain, principals, b"chain down")
    chain.down = True

    with app.app_context():
        report = await services.reconciler.run(now=LATER)
    assert report.failed == [document_hash]
    assert load(app, document_hash)["status"] == "stored"
