"""
Heals documents left at status=stored.

A document whose chain commit never completed (exhausted retries, or a
process restart between the receipt and the DB update) is looked up by
its DocumentRegistered event. If the event exists the blockchain fields
are filled from it; otherwise the registration is offered again.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List

from .errors import CredLedgerError

logger = logging.getLogger(__name__)


@dataclass
class ReconcileReport:
    checked: int = 0
    healed: List[str] = field(default_factory=list)
    resubmitted: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    def to_dict(self):
        return {
            "checked": self.checked,
            "healed": list(self.healed),
            "resubmitted": list(self.resubmitted),
            "failed": list(self.failed),
        }


class Reconciler:
    def __init__(self, documents, chain, pipeline, after_seconds=600):
        self.documents = documents
        self.chain = chain
        self.pipeline = pipeline
        self.after_seconds = after_seconds

    async def run(self, limit=50, now=None) -> ReconcileReport:
        cutoff = (now or datetime.utcnow()) - timedelta(seconds=self.after_seconds)
        report = ReconcileReport()
        for document in self.documents.find_pending_chain(cutoff, limit=limit):
            report.checked += 1
            document_hash = document.document_hash
            try:
                registration = await self.chain.find_registration(document_hash)
            except CredLedgerError as e:
                logger.warning("Reconcile lookup failed for %s: %s", document_hash, e.message)
                report.failed.append(document_hash)
                continue

            if registration is not None:
                self.documents.update_blockchain_fields(
                    document, registration.tx_hash, registration.block_number, registration.gas_used)
                logger.info("Reconciled %s from on-chain event tx=%s", document_hash, registration.tx_hash)
                report.healed.append(document_hash)
                continue

            receipt = await self.pipeline.commit_to_chain(document)
            if receipt is None:
                report.failed.append(document_hash)
            else:
                report.resubmitted.append(document_hash)

        if report.checked:
            logger.info("Reconcile pass: %d checked, %d healed, %d resubmitted, %d failed", report.checked,
                        len(report.healed), len(report.resubmitted), len(report.failed))
        return report
