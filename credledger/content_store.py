"""
Content-addressed store client.

Uploads go to the configured providers in order; the first provider that
returns a well-formed CID wins. Transient provider failures are retried
with exponential backoff before falling back to the next provider.
"""

import asyncio
import base64
import hashlib
import json
import logging
import os
import re
import time
from dataclasses import dataclass
from typing import List, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .config import providers_from_config
from .errors import NotFoundError, PermanentError, ServiceUnavailableError, TransientError

logger = logging.getLogger(__name__)

CIDV0_RE = re.compile(r"Qm[1-9A-HJ-NP-Za-km-z]{44}")
CIDV1_RE = re.compile(r"b[a-z2-7]{58,}")

PINATA_ENDPOINT = "https://api.pinata.cloud"
WEB3_STORAGE_ENDPOINT = "https://api.web3.storage"


def is_valid_cid(cid) -> bool:
    if not isinstance(cid, str):
        return False
    return CIDV0_RE.fullmatch(cid) is not None or CIDV1_RE.fullmatch(cid) is not None


def compute_cid(data: bytes) -> str:
    """CIDv1, raw codec, sha2-256 multihash, base32 multibase."""
    raw = bytes([0x01, 0x55, 0x12, 0x20]) + hashlib.sha256(data).digest()
    return "b" + base64.b32encode(raw).decode("ascii").lower().rstrip("=")


def _raise_for_status(provider: str, response: httpx.Response) -> None:
    status = response.status_code
    if status == 429 or status >= 500:
        raise TransientError(f"{provider} returned {status}", provider=provider, status=status)
    if status == 404:
        raise NotFoundError(f"{provider} has no such object", provider=provider)
    if status >= 400:
        raise PermanentError(f"{provider} rejected the request ({status})", provider=provider, status=status)


@dataclass
class UploadResult:
    cid: str
    provider: str
    size: int
    gateway_url: str


@dataclass
class ProviderHealth:
    provider: str
    available: bool
    rtt: Optional[float]
    error: Optional[str] = None

    def to_dict(self):
        return {"provider": self.provider, "available": self.available, "rtt": self.rtt, "error": self.error}


# ----------------------------
# Providers
# ----------------------------
class ContentStoreProvider:
    name = "base"

    async def upload(self, data: bytes, filename: str, content_type: str) -> str:
        raise NotImplementedError

    async def retrieve(self, cid: str) -> bytes:
        raise NotImplementedError

    async def ping(self) -> None:
        raise NotImplementedError


class HttpProvider(ContentStoreProvider):
    def __init__(self, http: httpx.AsyncClient, gateway_url: str):
        self.http = http
        self.gateway_url = gateway_url

    async def _request(self, method, url, **kwargs) -> httpx.Response:
        try:
            response = await self.http.request(method, url, **kwargs)
        except httpx.TransportError as e:
            raise TransientError(f"{self.name} unreachable: {type(e).__name__}", provider=self.name) from e
        _raise_for_status(self.name, response)
        return response

    async def retrieve(self, cid: str) -> bytes:
        response = await self._request("GET", f"{self.gateway_url}{cid}")
        return response.content


class PinataProvider(HttpProvider):
    name = "pinata"

    def __init__(self, http, gateway_url, api_key, api_secret, endpoint=PINATA_ENDPOINT):
        super().__init__(http, gateway_url)
        self.endpoint = endpoint
        self._headers = {"pinata_api_key": api_key, "pinata_secret_api_key": api_secret}

    async def upload(self, data, filename, content_type):
        response = await self._request(
            "POST",
            f"{self.endpoint}/pinning/pinFileToIPFS",
            headers=self._headers,
            files={"file": (filename, data, content_type)},
            data={
                "pinataMetadata": json.dumps({"name": filename}),
                "pinataOptions": json.dumps({"cidVersion": 1}),
            },
        )
        return response.json().get("IpfsHash")

    async def ping(self):
        await self._request("GET", f"{self.endpoint}/data/testAuthentication", headers=self._headers)


class Web3StorageProvider(HttpProvider):
    name = "web3.storage"

    def __init__(self, http, gateway_url, api_key, endpoint=WEB3_STORAGE_ENDPOINT):
        super().__init__(http, gateway_url)
        self.endpoint = endpoint
        self._token = api_key

    async def upload(self, data, filename, content_type):
        response = await self._request(
            "POST",
            f"{self.endpoint}/upload",
            headers={
                "Authorization": f"Bearer {self._token}",
                "X-NAME": filename,
                "Content-Type": content_type,
            },
            content=data,
        )
        return response.json().get("cid")

    async def ping(self):
        await self._request("GET", f"{self.endpoint}/user/uploads", params={"size": 1},
                            headers={"Authorization": f"Bearer {self._token}"})


class GatewayProvider(HttpProvider):
    """Read-only public gateway, consulted after every configured provider misses."""
    name = "gateway"

    async def upload(self, data, filename, content_type):
        raise PermanentError("public gateway is read-only", provider=self.name)


class LocalProvider(ContentStoreProvider):
    """Filesystem fallback that names blobs by their CIDv1."""
    name = "local"

    def __init__(self, path: str):
        self.path = path

    def _write(self, cid, data):
        os.makedirs(self.path, exist_ok=True)
        target = os.path.join(self.path, cid)
        if not os.path.exists(target):
            tmp = target + ".part"
            with open(tmp, "wb") as f:
                f.write(data)
            os.replace(tmp, target)

    def _read(self, cid):
        target = os.path.join(self.path, cid)
        if not os.path.isfile(target):
            raise NotFoundError(f"local store has no object {cid}", provider=self.name)
        with open(target, "rb") as f:
            return f.read()

    async def upload(self, data, filename, content_type):
        cid = compute_cid(data)
        try:
            await asyncio.to_thread(self._write, cid, data)
        except OSError as e:
            raise PermanentError(f"local store write failed: {e.strerror}", provider=self.name) from e
        return cid

    async def retrieve(self, cid):
        if not is_valid_cid(cid):
            raise PermanentError("Invalid CID", provider=self.name)
        return await asyncio.to_thread(self._read, cid)

    async def ping(self):
        await asyncio.to_thread(os.makedirs, self.path, exist_ok=True)
        if not os.access(self.path, os.W_OK):
            raise PermanentError("local store is not writable", provider=self.name)


# ----------------------------
# Client
# ----------------------------
class ContentStoreClient:
    def __init__(self, providers: List[ContentStoreProvider], upload_concurrency=4,
                 retry_attempts=3, retry_backoff=1.0, gateway_url="https://ipfs.io/ipfs/",
                 http: Optional[httpx.AsyncClient] = None):
        if not providers:
            raise ValueError("At least one content store provider is required")
        self.providers = providers
        self.retry_attempts = max(1, retry_attempts)
        self.retry_backoff = retry_backoff
        self.gateway_url = gateway_url
        self._http = http
        # HTTP providers already read through their own gateway
        readers = {p.gateway_url for p in providers if isinstance(p, HttpProvider)}
        self.gateway = None
        if http is not None and gateway_url and gateway_url not in readers:
            self.gateway = GatewayProvider(http, gateway_url)
        self._upload_slots = asyncio.Semaphore(upload_concurrency)

    @classmethod
    def from_config(cls, config):
        http = httpx.AsyncClient(timeout=config["CONTENT_REQUEST_TIMEOUT"])
        gateway = config["IPFS_GATEWAY_URL"]
        providers = []
        for entry in providers_from_config(config):
            if not entry.enabled:
                logger.info("Content store provider %s disabled (no credentials)", entry.name)
                continue
            if entry.name == "pinata":
                providers.append(PinataProvider(http, gateway, entry.api_key, entry.api_secret))
            elif entry.name == "web3.storage":
                providers.append(Web3StorageProvider(http, gateway, entry.api_key))
            elif entry.name == "local":
                providers.append(LocalProvider(entry.path))
        logger.info("Content store initialized with providers: %s", ", ".join(p.name for p in providers))
        return cls(
            providers,
            upload_concurrency=config["CONTENT_UPLOAD_CONCURRENCY"],
            retry_attempts=config["CONTENT_RETRY_ATTEMPTS"],
            retry_backoff=config["CONTENT_RETRY_BACKOFF"],
            gateway_url=gateway,
            http=http,
        )

    def _retrying(self):
        return AsyncRetrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=self.retry_backoff, max=10),
            retry=retry_if_exception_type(TransientError),
            reraise=True,
        )

    async def _with_retry(self, operation, *args):
        async for attempt in self._retrying():
            with attempt:
                return await operation(*args)

    async def upload(self, data: bytes, filename: str, content_type: str) -> UploadResult:
        transient_seen = False
        async with self._upload_slots:
            for provider in self.providers:
                try:
                    logger.info("Uploading %s (%d bytes) to %s", filename, len(data), provider.name)
                    cid = await self._with_retry(provider.upload, data, filename, content_type)
                except TransientError as e:
                    transient_seen = True
                    logger.warning("Upload to %s failed after retries: %s", provider.name, e)
                    continue
                except (PermanentError, NotFoundError) as e:
                    logger.warning("Upload to %s rejected: %s", provider.name, e)
                    continue
                if not is_valid_cid(cid):
                    logger.warning("Provider %s returned a malformed CID %r", provider.name, cid)
                    continue
                logger.info("Upload successful via %s: %s", provider.name, cid)
                return UploadResult(cid=cid, provider=provider.name, size=len(data),
                                    gateway_url=f"{self.gateway_url}{cid}")

        if transient_seen:
            raise ServiceUnavailableError("Content store unavailable: all providers failed")
        raise PermanentError("Content store rejected the upload on every provider")

    async def retrieve(self, cid: str) -> bytes:
        if not is_valid_cid(cid):
            raise PermanentError("Invalid CID")
        transient_seen = False
        sources = self.providers + ([self.gateway] if self.gateway is not None else [])
        for provider in sources:
            try:
                return await self._with_retry(provider.retrieve, cid)
            except TransientError as e:
                transient_seen = True
                logger.warning("Retrieve %s from %s failed: %s", cid, provider.name, e)
            except (PermanentError, NotFoundError) as e:
                logger.debug("Retrieve %s from %s: %s", cid, provider.name, e)
        if transient_seen:
            raise ServiceUnavailableError("Content store unavailable for retrieval")
        raise NotFoundError(f"Content {cid} not found in any provider")

    async def _check_provider(self, provider) -> ProviderHealth:
        started = time.perf_counter()
        try:
            await provider.ping()
        except (TransientError, PermanentError, NotFoundError) as e:
            return ProviderHealth(provider=provider.name, available=False, rtt=None, error=e.message)
        return ProviderHealth(provider=provider.name, available=True,
                              rtt=round(time.perf_counter() - started, 4))

    async def health_check(self) -> List[ProviderHealth]:
        return list(await asyncio.gather(*(self._check_provider(p) for p in self.providers)))

    async def aclose(self):
        if self._http is not None:
            await self._http.aclose()
