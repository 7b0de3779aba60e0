"""Wiring of the core components for one Flask app."""

import logging
from dataclasses import dataclass

from .access import AccessManager
from .audit import AuditTrail
from .blockchain import ChainClient
from .content_store import ContentStoreClient
from .crypto import KeyWrapper
from .documents import DocumentService
from .pipeline import IssuancePipeline
from .reconcile import Reconciler
from .repositories import (
    ChainTransactionRepository,
    DocumentRepository,
    PrincipalRepository,
    VerificationLogRepository,
)
from .runtime import HashLocks, ServiceRuntime
from .verification import VerificationEngine

logger = logging.getLogger(__name__)


@dataclass
class Services:
    runtime: ServiceRuntime
    content_store: ContentStoreClient
    chain: ChainClient
    documents: DocumentRepository
    principals: PrincipalRepository
    logs: VerificationLogRepository
    chain_txs: ChainTransactionRepository
    audit: AuditTrail
    pipeline: IssuancePipeline
    verification: VerificationEngine
    access: AccessManager
    document_service: DocumentService
    reconciler: Reconciler

    def call(self, factory, timeout=None):
        return self.runtime.call(factory, timeout)

    async def health(self):
        providers = await self.content_store.health_check()
        chain = await self.chain.health_check()
        return {
            "status": "ok" if chain["available"] and any(p.available for p in providers) else "degraded",
            "contentStore": [p.to_dict() for p in providers],
            "chain": chain,
        }

    def close(self):
        self.runtime.shutdown(cleanup=self.content_store.aclose)


def build_services(app, chain=None, content_store=None) -> Services:
    config = app.config
    key_wrapper = KeyWrapper(config["MASTER_KEY"])
    chain = chain or ChainClient.from_config(config)
    content_store = content_store or ContentStoreClient.from_config(config)

    documents = DocumentRepository()
    principals = PrincipalRepository()
    logs = VerificationLogRepository()
    chain_txs = ChainTransactionRepository()
    audit = AuditTrail()

    pipeline = IssuancePipeline(
        documents, content_store, chain, key_wrapper, audit, chain_txs, HashLocks(),
        max_file_size=config["MAX_FILE_SIZE"],
        allowed_mime_types=config["ALLOWED_MIME_TYPES"],
        verification_base_url=config["VERIFICATION_BASE_URL"],
        pipeline_timeout=config["PIPELINE_TIMEOUT"],
    )
    verification = VerificationEngine(
        documents, logs, chain, audit,
        window_minutes=config["SUSPICIOUS_WINDOW_MINUTES"],
        threshold=config["SUSPICIOUS_THRESHOLD"],
    )
    services = Services(
        runtime=ServiceRuntime(app),
        content_store=content_store,
        chain=chain,
        documents=documents,
        principals=principals,
        logs=logs,
        chain_txs=chain_txs,
        audit=audit,
        pipeline=pipeline,
        verification=verification,
        access=AccessManager(documents, principals, chain, audit, chain_txs),
        document_service=DocumentService(documents, content_store, key_wrapper, audit,
                                         config["VERIFICATION_BASE_URL"]),
        reconciler=Reconciler(documents, chain, pipeline, after_seconds=config["RECONCILE_AFTER_SECONDS"]),
    )
    logger.info("credledger services ready (chain writes %s)",
                "enabled" if getattr(chain, "write_enabled", False) else "disabled")
    return services
