"""
Async client for the on-chain DocumentRegistry and AccessControl contracts.

Mutations funnel through a single write lane so the operator nonce stays
linear; reads use their own, wider lane. Every write estimates gas (with a
buffer), prices it from a clamped and cached network gas price, and is
resubmitted with an escalated price when the failure is retryable.
"""

import asyncio
import json
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound

from .config import GasPolicy
from .crypto import bytes32_to_hash, hash_to_bytes32
from .errors import (
    CredLedgerError,
    FatalError,
    NotFoundError,
    RetryableError,
    ServiceUnavailableError,
    ValidationError,
)
from .models import ROLES

logger = logging.getLogger(__name__)

ABI_DIR = os.path.join(os.path.dirname(__file__), "abi")

# AccessControl role encoding
ROLE_CODES = {"admin": 0, "issuer": 1, "verifier": 2, "student": 3}
ROLE_NAMES = {code: name for name, code in ROLE_CODES.items()}

RETRYABLE_MESSAGES = (
    "nonce too low",
    "replacement transaction underpriced",
    "transaction underpriced",
    "gas price too low",
    "insufficient funds for gas",
    "network error",
    "timeout",
    "timed out",
    "connection",
    "disconnected",
)

ZERO_HASH = b"\x00" * 32


def load_artifact(path):
    """Load a Truffle/Hardhat artifact (or a bare ABI list).

    Returns ``(abi, address)``; address is taken from the first entry of
    ``networks`` when the artifact was produced by a migration.
    """
    with open(path, "r", encoding="utf-8") as f:
        artifact = json.load(f)
    if isinstance(artifact, list):
        return artifact, None
    address = None
    networks = artifact.get("networks") or {}
    if networks:
        network_id = list(networks.keys())[0]
        address = networks[network_id].get("address")
    return artifact["abi"], address


def classify_error(exc: BaseException) -> CredLedgerError:
    """Map web3/transport exceptions onto the error taxonomy."""
    if isinstance(exc, CredLedgerError):
        return exc
    if isinstance(exc, ContractLogicError):
        reason = str(exc)
        if "does not exist" in reason.lower():
            return NotFoundError("Document not found on chain")
        return FatalError(f"Contract reverted: {reason[:200]}")
    if isinstance(exc, (asyncio.TimeoutError, TimeExhausted, ConnectionError)):
        return RetryableError(f"Chain request timed out or disconnected: {type(exc).__name__}")
    message = str(exc).lower()
    if any(fragment in message for fragment in RETRYABLE_MESSAGES):
        return RetryableError(str(exc)[:200])
    return FatalError(f"Chain call failed: {str(exc)[:200]}")


class TTLCache:
    """Small time-bounded cache; staleness only costs fee efficiency."""

    def __init__(self, ttl_seconds: float):
        self.ttl = ttl_seconds
        self._items: Dict[Any, tuple] = {}

    def get(self, key):
        item = self._items.get(key)
        if item is None:
            return None
        value, stored_at = item
        if time.monotonic() - stored_at > self.ttl:
            self._items.pop(key, None)
            return None
        return value

    def set(self, key, value):
        self._items[key] = (value, time.monotonic())

    def clear(self):
        self._items.clear()


@dataclass
class TxReceipt:
    tx_hash: str
    block_number: int
    gas_used: int
    gas_price: int
    attempts: int = 1

    def to_dict(self):
        return {
            "transactionHash": self.tx_hash,
            "blockNumber": self.block_number,
            "gasUsed": self.gas_used,
            "gasPrice": self.gas_price,
            "attempts": self.attempts,
        }


@dataclass
class ChainDocument:
    document_hash: str
    cid: str
    issuer: str
    owner: str
    timestamp: int
    is_active: bool
    is_valid: bool


@dataclass
class Registration:
    tx_hash: str
    block_number: int
    gas_used: Optional[int]


@dataclass
class GasTracker:
    total_transactions: int = 0
    failed_transactions: int = 0
    total_gas_used: int = 0
    last_gas_price: Optional[int] = None
    by_method: Dict[str, int] = field(default_factory=dict)

    def to_dict(self):
        return {
            "totalTransactions": self.total_transactions,
            "failedTransactions": self.failed_transactions,
            "totalGasUsed": self.total_gas_used,
            "lastGasPrice": self.last_gas_price,
            "byMethod": dict(self.by_method),
        }


class ChainClient:
    def __init__(self, w3, registry=None, access_control=None, account=None, private_key=None,
                 policy: Optional[GasPolicy] = None, confirmation_blocks=1,
                 write_concurrency=1, read_concurrency=4, step_timeout=30.0,
                 log_from_block=0, confirmation_poll=1.0):
        self.w3 = w3
        self.registry = registry
        self.access_control = access_control
        self.account = account
        self._private_key = private_key
        self.policy = policy or GasPolicy()
        self.confirmation_blocks = max(1, confirmation_blocks)
        self.step_timeout = step_timeout
        self.log_from_block = log_from_block
        self.confirmation_poll = confirmation_poll
        self.tracker = GasTracker()
        self._write_lane = asyncio.Semaphore(max(1, write_concurrency))
        self._read_lane = asyncio.Semaphore(max(1, read_concurrency))
        self._price_cache = TTLCache(self.policy.price_ttl)
        self._estimate_cache = TTLCache(self.policy.estimate_ttl)

    def __repr__(self):
        return f"ChainClient(account={self.account}, registry={getattr(self.registry, 'address', None)})"

    @classmethod
    def from_config(cls, config):
        step_timeout = config["CHAIN_STEP_TIMEOUT"]
        w3 = AsyncWeb3(AsyncHTTPProvider(config["CHAIN_RPC_URL"], request_kwargs={"timeout": step_timeout}))

        def contract(artifact_key, address_key, default_artifact):
            abi, artifact_address = load_artifact(config.get(artifact_key) or os.path.join(ABI_DIR, default_artifact))
            address = config.get(address_key) or artifact_address
            if not address:
                logger.warning("%s not configured; related chain calls are disabled", address_key)
                return None
            return w3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)

        account = None
        private_key = config.get("OPERATOR_PRIVATE_KEY") or None
        if private_key:
            account = w3.eth.account.from_key(private_key).address
        else:
            logger.warning("No operator key configured. Chain write operations will be disabled.")

        return cls(
            w3,
            registry=contract("REGISTRY_ARTIFACT", "REGISTRY_ADDRESS", "DocumentRegistry.json"),
            access_control=contract("ACCESS_CONTROL_ARTIFACT", "ACCESS_CONTROL_ADDRESS", "AccessControl.json"),
            account=account,
            private_key=private_key,
            policy=GasPolicy.from_config(config),
            confirmation_blocks=config["CONFIRMATION_BLOCKS"],
            write_concurrency=config["CHAIN_WRITE_CONCURRENCY"],
            read_concurrency=config["CHAIN_READ_CONCURRENCY"],
            step_timeout=step_timeout,
            log_from_block=config.get("CHAIN_LOG_FROM_BLOCK", 0),
        )

    @property
    def write_enabled(self):
        return bool(self.account and self._private_key)

    # ----------------------------
    # Gas
    # ----------------------------
    async def _gas_price(self) -> int:
        cached = self._price_cache.get("gas_price")
        if cached is not None:
            return cached
        price = await self.w3.eth.gas_price
        low = Web3.to_wei(self.policy.min_gwei, "gwei")
        high = Web3.to_wei(self.policy.max_gwei, "gwei")
        if price > high:
            logger.warning("Gas price capped at maximum: %s -> %s wei", price, high)
            price = high
        elif price < low:
            price = low
        self._price_cache.set("gas_price", price)
        return price

    async def _gas_limit(self, contract, method, args, fn) -> int:
        key = (getattr(contract, "address", None), method, repr(args))
        cached = self._estimate_cache.get(key)
        if cached is not None:
            return cached
        estimate = await fn.estimate_gas({"from": self.account})
        limit = int(estimate * self.policy.buffer_factor)
        self._estimate_cache.set(key, limit)
        return limit

    def _escalate(self, price: int, attempt: int) -> int:
        return int(price * (self.policy.retry_price_multiplier ** (attempt - 1)))

    # ----------------------------
    # Transactions
    # ----------------------------
    async def _wait_confirmations(self, block_number: int) -> None:
        while True:
            current = await self.w3.eth.block_number
            if current - block_number + 1 >= self.confirmation_blocks:
                return
            await asyncio.sleep(self.confirmation_poll)

    async def _confirmed(self, receipt, gas_price) -> TxReceipt:
        tx_hash = Web3.to_hex(receipt["transactionHash"])
        if receipt["status"] != 1:
            raise FatalError(f"Transaction {tx_hash} reverted")
        await self._wait_confirmations(receipt["blockNumber"])
        return TxReceipt(
            tx_hash=tx_hash,
            block_number=receipt["blockNumber"],
            gas_used=receipt["gasUsed"],
            gas_price=gas_price,
        )

    async def _send(self, fn, gas_limit, gas_price, nonce, sent) -> TxReceipt:
        tx = await fn.build_transaction({
            "from": self.account,
            "nonce": nonce,
            "gas": gas_limit,
            "gasPrice": gas_price,
        })
        signed = self.w3.eth.account.sign_transaction(tx, self._private_key)
        tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        sent[tx_hash] = gas_price
        logger.info("Transaction sent %s (gas=%s, gasPrice=%s)", Web3.to_hex(tx_hash), gas_limit, gas_price)
        receipt = await self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.step_timeout)
        return await self._confirmed(receipt, gas_price)

    async def _submit(self, fn, gas_limit, gas_price, nonce, sent) -> TxReceipt:
        try:
            return await asyncio.wait_for(self._send(fn, gas_limit, gas_price, nonce, sent),
                                          timeout=self.step_timeout)
        except asyncio.TimeoutError as e:
            raise RetryableError(f"Chain step exceeded {self.step_timeout}s") from e
        except CredLedgerError:
            raise
        except Exception as e:
            raise classify_error(e) from e

    async def _landed(self, sent) -> Optional[TxReceipt]:
        """Receipt of an earlier broadcast for the current nonce, once mined."""
        for tx_hash, gas_price in sent.items():
            try:
                receipt = await self.w3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                continue
            except Exception as e:
                raise classify_error(e) from e
            if receipt is not None:
                logger.info("Earlier broadcast %s was mined", Web3.to_hex(tx_hash))
                return await self._confirmed(receipt, gas_price)
        return None

    async def _transact(self, contract, contract_name, method, *args) -> TxReceipt:
        if not self.write_enabled:
            raise ServiceUnavailableError("Chain writes are disabled (no operator key)")
        if contract is None:
            raise ServiceUnavailableError(f"{contract_name} contract is not configured")

        fn = getattr(contract.functions, method)(*args)
        nonce = None
        # tx hash -> gas price of every broadcast made with the current nonce
        sent = {}

        async def broadcast(attempt_number):
            nonlocal nonce
            try:
                gas_limit = await self._gas_limit(contract, method, args, fn)
                base_price = await self._gas_price()
                if nonce is None:
                    nonce = await self.w3.eth.get_transaction_count(self.account, "pending")
            except CredLedgerError:
                raise
            except Exception as e:
                raise classify_error(e) from e
            gas_price = self._escalate(base_price, attempt_number)
            logger.info("Executing %s.%s attempt %d (nonce=%s)", contract_name, method, attempt_number, nonce)
            try:
                return await self._submit(fn, gas_limit, gas_price, nonce, sent)
            except RetryableError as e:
                logger.warning("%s attempt %d failed: %s", method, attempt_number, e.message)
                if "nonce too low" not in e.message.lower():
                    raise
                # the nonce is spent; by one of our broadcasts if it was mined
                landed = await self._landed(sent)
                if landed is None:
                    nonce = None
                    sent.clear()
                    raise
                return landed

        attempt_number = 0
        async with self._write_lane:
            try:
                async for attempt in AsyncRetrying(
                    stop=stop_after_attempt(max(1, self.policy.retry_attempts)),
                    wait=wait_exponential(multiplier=self.policy.retry_backoff, max=30),
                    retry=retry_if_exception_type(RetryableError),
                    reraise=True,
                ):
                    with attempt:
                        attempt_number = attempt.retry_state.attempt_number
                        receipt = await self._landed(sent) if sent else None
                        if receipt is None:
                            receipt = await broadcast(attempt_number)
            except RetryableError as e:
                self.tracker.failed_transactions += 1
                raise ServiceUnavailableError(
                    f"{method} failed after {attempt_number} attempts: {e.message}",
                    attempts=attempt_number,
                ) from e
            except CredLedgerError:
                self.tracker.failed_transactions += 1
                raise

        receipt.attempts = attempt_number
        self.tracker.total_transactions += 1
        self.tracker.total_gas_used += receipt.gas_used or 0
        self.tracker.last_gas_price = receipt.gas_price
        self.tracker.by_method[method] = self.tracker.by_method.get(method, 0) + 1
        logger.info("%s confirmed in block %s tx=%s gasUsed=%s", method, receipt.block_number,
                    receipt.tx_hash, receipt.gas_used)
        return receipt

    async def _read(self, call):
        """Run a read-only call through the read lane with bounded retries."""
        async with self._read_lane:
            try:
                async for attempt in AsyncRetrying(
                    stop=stop_after_attempt(max(1, self.policy.retry_attempts)),
                    wait=wait_exponential(multiplier=self.policy.retry_backoff, max=10),
                    retry=retry_if_exception_type(RetryableError),
                    reraise=True,
                ):
                    with attempt:
                        try:
                            return await asyncio.wait_for(call(), timeout=self.step_timeout)
                        except asyncio.TimeoutError as e:
                            raise RetryableError("Chain read timed out") from e
                        except CredLedgerError:
                            raise
                        except Exception as e:
                            raise classify_error(e) from e
            except RetryableError as e:
                raise ServiceUnavailableError(f"Chain unreachable: {e.message}") from e

    def _require_registry(self):
        if self.registry is None:
            raise ServiceUnavailableError("DocumentRegistry contract is not configured")

    # ----------------------------
    # Registry
    # ----------------------------
    async def register_document(self, document_hash, cid, owner, metadata_json) -> TxReceipt:
        return await self._transact(
            self.registry, "DocumentRegistry", "registerDocument",
            hash_to_bytes32(document_hash), cid, Web3.to_checksum_address(owner), metadata_json,
        )

    async def verify_document(self, document_hash) -> ChainDocument:
        self._require_registry()
        raw = hash_to_bytes32(document_hash)
        record = await self._read(lambda: self.registry.functions.getDocument(raw).call())
        chain_hash, cid, issuer, owner, timestamp, is_active = record[:6]
        if bytes(chain_hash) == ZERO_HASH or not timestamp:
            raise NotFoundError("Document not found on chain")
        return ChainDocument(
            document_hash=bytes32_to_hash(bytes(chain_hash)),
            cid=cid,
            issuer=issuer.lower(),
            owner=owner.lower(),
            timestamp=int(timestamp),
            is_active=bool(is_active),
            is_valid=bytes(chain_hash) == raw and bool(is_active),
        )

    async def find_registration(self, document_hash) -> Optional[Registration]:
        """Locate the DocumentRegistered event for a hash, if any."""
        self._require_registry()
        raw = hash_to_bytes32(document_hash)
        event = self.registry.events.DocumentRegistered()
        logs = await self._read(lambda: event.get_logs(
            from_block=self.log_from_block, argument_filters={"documentHash": raw}))
        if not logs:
            return None
        log = logs[-1]
        receipt = await self._read(lambda: self.w3.eth.get_transaction_receipt(log["transactionHash"]))
        return Registration(
            tx_hash=Web3.to_hex(log["transactionHash"]),
            block_number=log["blockNumber"],
            gas_used=receipt["gasUsed"] if receipt else None,
        )

    async def transfer_ownership(self, document_hash, new_owner) -> TxReceipt:
        return await self._transact(
            self.registry, "DocumentRegistry", "transferOwnership",
            hash_to_bytes32(document_hash), Web3.to_checksum_address(new_owner),
        )

    async def grant_access(self, document_hash, address) -> TxReceipt:
        return await self._transact(
            self.registry, "DocumentRegistry", "grantAccess",
            hash_to_bytes32(document_hash), Web3.to_checksum_address(address),
        )

    async def revoke_access(self, document_hash, address) -> TxReceipt:
        return await self._transact(
            self.registry, "DocumentRegistry", "revokeAccess",
            hash_to_bytes32(document_hash), Web3.to_checksum_address(address),
        )

    async def deactivate_document(self, document_hash, reason) -> TxReceipt:
        return await self._transact(
            self.registry, "DocumentRegistry", "deactivateDocument",
            hash_to_bytes32(document_hash), reason,
        )

    # ----------------------------
    # AccessControl
    # ----------------------------
    async def assign_role(self, address, role) -> TxReceipt:
        if role not in ROLES:
            raise ValidationError(f"Invalid role: {role}")
        return await self._transact(
            self.access_control, "AccessControl", "assignRole",
            Web3.to_checksum_address(address), ROLE_CODES[role],
        )

    async def get_user_role(self, address) -> str:
        if self.access_control is None:
            raise ServiceUnavailableError("AccessControl contract is not configured")
        checksum = Web3.to_checksum_address(address)
        code = await self._read(lambda: self.access_control.functions.getUserRole(checksum).call())
        return ROLE_NAMES.get(int(code), "unknown")

    # ----------------------------
    # Read-only network info
    # ----------------------------
    async def get_block_number(self) -> int:
        return await self._read(lambda: self.w3.eth.block_number)

    async def get_gas_price(self) -> int:
        return await self._read(self._gas_price)

    async def get_network_info(self) -> dict:
        chain_id = await self._read(lambda: self.w3.eth.chain_id)
        block_number = await self.get_block_number()
        gas_price = await self.get_gas_price()
        return {
            "chainId": chain_id,
            "blockNumber": block_number,
            "gasPriceGwei": float(Web3.from_wei(gas_price, "gwei")),
            "registry": getattr(self.registry, "address", None),
            "accessControl": getattr(self.access_control, "address", None),
            "operator": self.account,
            "writeEnabled": self.write_enabled,
        }

    async def health_check(self) -> dict:
        started = time.perf_counter()
        try:
            info = await self.get_network_info()
        except CredLedgerError as e:
            return {"available": False, "blockNumber": None, "rtt": None, "error": e.message,
                    "writeEnabled": self.write_enabled}
        info.update({
            "available": True,
            "rtt": round(time.perf_counter() - started, 4),
            "error": None,
            "stats": self.tracker.to_dict(),
        })
        return info
