import asyncio
from types import SimpleNamespace

import pytest
from web3 import Web3
from web3.exceptions import ContractLogicError, TransactionNotFound

from credledger.blockchain import ROLE_CODES, ChainClient, TTLCache, classify_error
from credledger.config import GasPolicy
from credledger.crypto import content_hash_hex, hash_to_bytes32
from credledger.errors import (
    FatalError,
    NotFoundError,
    RetryableError,
    ServiceUnavailableError,
    ValidationError,
)

OPERATOR = "0x" + "9" * 40
OWNER = "0x" + "2" * 40
DOC_HASH = content_hash_hex(b"PDF-plaintext-1")
GWEI = 10 ** 9


class FakeFunction:
    def __init__(self, contract, name, args):
        self.contract = contract
        self.name = name
        self.args = args

    async def estimate_gas(self, tx):
        self.contract.estimates.append(self.name)
        return 100_000

    async def build_transaction(self, tx):
        return dict(tx, to=self.contract.address, data=self.name)

    async def call(self):
        result = self.contract.results[self.name]
        if isinstance(result, Exception):
            raise result
        return result


class FakeFunctions:
    def __init__(self, contract):
        self._contract = contract

    def __getattr__(self, name):
        return lambda *args: FakeFunction(self._contract, name, args)


class FakeContract:
    def __init__(self, address="0x" + "c" * 40):
        self.address = address
        self.estimates = []
        self.results = {}
        self.functions = FakeFunctions(self)


class FakeAccount:
    def __init__(self):
        self.signed = []

    def sign_transaction(self, tx, key):
        self.signed.append(tx)
        return SimpleNamespace(raw_transaction=b"signed-%d" % len(self.signed))


class FakeEth:
    def __init__(self):
        self.network_gas_price = 2 * GWEI
        self.head = 10
        self.send_errors = []
        self.receipt_status = 1
        self.receipt_delay = 0
        self.nonce_lookups = 0
        self.sent = []
        self.mined = {}
        self.account = FakeAccount()

    async def _value(self, value):
        return value

    @property
    def gas_price(self):
        return self._value(self.network_gas_price)

    @property
    def block_number(self):
        return self._value(self.head)

    @property
    def chain_id(self):
        return self._value(1337)

    async def get_transaction_count(self, address, block_identifier):
        self.nonce_lookups += 1
        return 7

    async def send_raw_transaction(self, raw):
        if self.send_errors:
            raise self.send_errors.pop(0)
        self.sent.append(raw)
        return bytes([len(self.sent)]) * 32

    async def wait_for_transaction_receipt(self, tx_hash, timeout=None):
        if self.receipt_delay:
            await asyncio.sleep(self.receipt_delay)
        return {"status": self.receipt_status, "transactionHash": tx_hash,
                "blockNumber": self.head, "gasUsed": 90_000}

    def mine(self, tx_hash):
        self.mined[tx_hash] = {"status": 1, "transactionHash": tx_hash, "blockNumber": self.head, "gasUsed": 80_000}

    async def get_transaction_receipt(self, tx_hash):
        if tx_hash not in self.mined:
            raise TransactionNotFound(f"Transaction with hash {tx_hash!r} not found")
        return self.mined[tx_hash]


@pytest.fixture
def w3():
    return SimpleNamespace(eth=FakeEth())


@pytest.fixture
def registry():
    return FakeContract()


@pytest.fixture
def access_control():
    return FakeContract("0x" + "d" * 40)


@pytest.fixture
def client(w3, registry, access_control):
    return ChainClient(w3, registry, access_control, account=OPERATOR, private_key="0x" + "5" * 64,
                       policy=GasPolicy(retry_backoff=0), step_timeout=1.0)


def sent_prices(w3):
    return [tx["gasPrice"] for tx in w3.eth.account.signed]


@pytest.mark.asyncio
async def test_register_document_builds_buffered_transaction(client, w3, registry):
    receipt = await client.register_document(DOC_HASH, "bafkreiexample", OWNER, "{}")

    tx = w3.eth.account.signed[0]
    assert tx["gas"] == 120_000
    assert tx["gasPrice"] == 2 * GWEI
    assert tx["nonce"] == 7
    assert tx["from"] == OPERATOR
    assert receipt.tx_hash == Web3.to_hex(bytes([1]) * 32)
    assert receipt.block_number == 10
    assert receipt.gas_used == 90_000
    assert receipt.attempts == 1
    assert client.tracker.total_transactions == 1


@pytest.mark.asyncio
async def test_gas_price_is_clamped(client, w3):
    w3.eth.network_gas_price = 500 * GWEI
    await client.register_document(DOC_HASH, "bafkreiexample", OWNER, "{}")
    assert sent_prices(w3) == [50 * GWEI]


@pytest.mark.asyncio
async def test_gas_price_floor(w3, registry):
    w3.eth.network_gas_price = 1
    client = ChainClient(w3, registry, account=OPERATOR, private_key="k" * 64, policy=GasPolicy(retry_backoff=0))
    await client.grant_access(DOC_HASH, OWNER)
    assert sent_prices(w3) == [GWEI]


@pytest.mark.asyncio
async def test_gas_price_and_estimate_are_cached(client, w3, registry):
    await client.grant_access(DOC_HASH, OWNER)
    w3.eth.network_gas_price = 10 * GWEI
    await client.grant_access(DOC_HASH, OWNER)
    assert sent_prices(w3) == [2 * GWEI, 2 * GWEI]
    assert registry.estimates == ["grantAccess"]


@pytest.mark.asyncio
async def test_retryable_error_escalates_gas_price(client, w3):
    w3.eth.send_errors = [ValueError("replacement transaction underpriced")]
    receipt = await client.register_document(DOC_HASH, "bafkreiexample", OWNER, "{}")

    assert receipt.attempts == 2
    assert sent_prices(w3) == [2 * GWEI, int(2 * GWEI * 1.1)]
    # same nonce is reused to displace the pending transaction
    assert w3.eth.nonce_lookups == 1


@pytest.mark.asyncio
async def test_nonce_too_low_refreshes_nonce(client, w3):
    w3.eth.send_errors = [ValueError("nonce too low")]
    await client.register_document(DOC_HASH, "bafkreiexample", OWNER, "{}")
    assert w3.eth.nonce_lookups == 2


@pytest.mark.asyncio
async def test_exhausted_retries_become_service_unavailable(client, w3):
    w3.eth.send_errors = [ValueError("network error")] * 3
    with pytest.raises(ServiceUnavailableError) as exc:
        await client.register_document(DOC_HASH, "bafkreiexample", OWNER, "{}")
    assert exc.value.details["attempts"] == 3
    assert len(w3.eth.account.signed) == 3
    assert client.tracker.failed_transactions == 1


@pytest.mark.asyncio
async def test_non_retryable_error_surfaces_immediately(client, w3):
    w3.eth.send_errors = [ValueError("execution reverted: Document already exists")]
    with pytest.raises(FatalError):
        await client.register_document(DOC_HASH, "bafkreiexample", OWNER, "{}")
    assert len(w3.eth.account.signed) == 1


@pytest.mark.asyncio
async def test_reverted_receipt_is_fatal(client, w3):
    w3.eth.receipt_status = 0
    with pytest.raises(FatalError):
        await client.transfer_ownership(DOC_HASH, OWNER)
    assert len(w3.eth.account.signed) == 1


@pytest.mark.asyncio
async def test_hung_receipt_times_out_and_retries(w3, registry):
    w3.eth.receipt_delay = 0.5
    client = ChainClient(w3, registry, account=OPERATOR, private_key="k" * 64,
                         policy=GasPolicy(retry_attempts=2, retry_backoff=0), step_timeout=0.05)
    with pytest.raises(ServiceUnavailableError):
        await client.revoke_access(DOC_HASH, OWNER)
    assert len(w3.eth.account.signed) == 2



@pytest.mark.asyncio
async def test_timed_out_broadcast_mined_before_resend_is_not_resent(w3, registry):
    w3.eth.receipt_delay = 0.5
    client = ChainClient(w3, registry, account=OPERATOR, private_key="k" * 64,
                         policy=GasPolicy(retry_backoff=0), step_timeout=0.05)
    original_wait = w3.eth.wait_for_transaction_receipt

    async def mined_while_waiting(tx_hash, timeout=None):
        w3.eth.mine(tx_hash)
        return await original_wait(tx_hash, timeout)

    w3.eth.wait_for_transaction_receipt = mined_while_waiting
    receipt = await client.register_document(DOC_HASH, "bafkreiexample", OWNER, "{}")

    assert w3.eth.sent == [b"signed-1"]
    assert receipt.tx_hash == Web3.to_hex(bytes([1]) * 32)
    assert receipt.gas_used == 80_000
    assert receipt.attempts == 2


@pytest.mark.asyncio
async def test_nonce_too_low_after_timeout_returns_earlier_broadcast(w3, registry):
    w3.eth.receipt_delay = 0.5
    client = ChainClient(w3, registry, account=OPERATOR, private_key="k" * 64,
                         policy=GasPolicy(retry_backoff=0), step_timeout=0.05)
    original_send = w3.eth.send_raw_transaction

    async def send(raw):
        if w3.eth.sent:
            # the first broadcast lands while the replacement is being sent
            w3.eth.mine(bytes([1]) * 32)
            raise ValueError("nonce too low")
        return await original_send(raw)

    w3.eth.send_raw_transaction = send
    receipt = await client.register_document(DOC_HASH, "bafkreiexample", OWNER, "{}")

    assert w3.eth.sent == [b"signed-1"]
    assert w3.eth.nonce_lookups == 1
    assert receipt.tx_hash == Web3.to_hex(bytes([1]) * 32)
    assert receipt.attempts == 2
    assert client.tracker.total_transactions == 1


@pytest.mark.asyncio
async def test_nonce_taken_by_foreign_transaction_gets_fresh_nonce(w3, registry):
    w3.eth.receipt_delay = 0.5
    client = ChainClient(w3, registry, account=OPERATOR, private_key="k" * 64,
                         policy=GasPolicy(retry_backoff=0), step_timeout=0.05)
    original_send = w3.eth.send_raw_transaction
    calls = []

    async def send(raw):
        calls.append(raw)
        if len(calls) == 2:
            w3.eth.receipt_delay = 0
            raise ValueError("nonce too low")
        return await original_send(raw)

    w3.eth.send_raw_transaction = send
    receipt = await client.register_document(DOC_HASH, "bafkreiexample", OWNER, "{}")

    assert w3.eth.nonce_lookups == 2
    assert receipt.attempts == 3
    assert len(w3.eth.sent) == 2


@pytest.mark.asyncio
async def test_writes_disabled_without_operator_key(w3, registry):
    client = ChainClient(w3, registry)
    assert client.write_enabled is False
    with pytest.raises(ServiceUnavailableError):
        await client.register_document(DOC_HASH, "bafkreiexample", OWNER, "{}")


@pytest.mark.asyncio
async def test_writes_are_serialized(client, w3):
    in_flight = []
    peak = []
    original = w3.eth.wait_for_transaction_receipt

    async def slow_receipt(tx_hash, timeout=None):
        in_flight.append(tx_hash)
        peak.append(len(in_flight))
        await asyncio.sleep(0.01)
        in_flight.remove(tx_hash)
        return await original(tx_hash, timeout)

    w3.eth.wait_for_transaction_receipt = slow_receipt
    await asyncio.gather(*(client.grant_access(DOC_HASH, OWNER) for _ in range(3)))
    assert max(peak) == 1


@pytest.mark.asyncio
async def test_verify_document_decodes_tuple(client, registry):
    raw = hash_to_bytes32(DOC_HASH)
    registry.results["getDocument"] = (raw, "bafkreiexample", OPERATOR, OWNER, 1700000000, True)
    document = await client.verify_document(DOC_HASH)
    assert document.is_valid is True
    assert document.cid == "bafkreiexample"
    assert document.owner == OWNER.lower()
    assert document.document_hash == DOC_HASH


@pytest.mark.asyncio
async def test_verify_document_missing(client, registry):
    registry.results["getDocument"] = (b"\x00" * 32, "", "0x" + "0" * 40, "0x" + "0" * 40, 0, False)
    with pytest.raises(NotFoundError):
        await client.verify_document(DOC_HASH)


@pytest.mark.asyncio
async def test_verify_document_revert_is_not_found(client, registry):
    registry.results["getDocument"] = ContractLogicError("execution reverted: Document does not exist")
    with pytest.raises(NotFoundError):
        await client.verify_document(DOC_HASH)


@pytest.mark.asyncio
async def test_unreachable_read_is_service_unavailable(client, registry):
    registry.results["getDocument"] = ConnectionError("connection refused")
    with pytest.raises(ServiceUnavailableError):
        await client.verify_document(DOC_HASH)


@pytest.mark.asyncio
async def test_roles_use_contract_encoding(client, w3, access_control):
    access_control.results["getUserRole"] = 1
    assert await client.get_user_role(OWNER) == "issuer"
    await client.assign_role(OWNER, "verifier")
    assert access_control.estimates == ["assignRole"]
    with pytest.raises(ValidationError):
        await client.assign_role(OWNER, "dean")
    assert ROLE_CODES == {"admin": 0, "issuer": 1, "verifier": 2, "student": 3}


@pytest.mark.asyncio
async def test_health_check(client, w3):
    health = await client.health_check()
    assert health["available"] is True
    assert health["blockNumber"] == 10
    assert health["chainId"] == 1337
    assert health["gasPriceGwei"] == 2.0
    info = await client.get_network_info()
    assert info["chainId"] == 1337
    assert info["gasPriceGwei"] == 2.0


@pytest.mark.parametrize("exc, expected", [
    (ValueError("nonce too low"), RetryableError),
    (ValueError("insufficient funds for gas * price + value"), RetryableError),
    (ValueError("gas price too low"), RetryableError),
    (asyncio.TimeoutError(), RetryableError),
    (ValueError("invalid opcode"), FatalError),
    (ContractLogicError("execution reverted: Cannot revoke owner access"), FatalError),
])
def test_classify_error(exc, expected):
    assert isinstance(classify_error(exc), expected)


def test_ttl_cache_expiry(monkeypatch):
    now = [100.0]
    monkeypatch.setattr("credledger.blockchain.time.monotonic", lambda: now[0])
    cache = TTLCache(30)
    cache.set("gas_price", 5)
    now[0] += 29
    assert cache.get("gas_price") == 5
    now[0] += 2
    assert cache.get("gas_price") is None
