import os
from dataclasses import dataclass, field
from typing import List, Optional


def _env_bool(name, default=False):
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name, default):
    value = os.getenv(name)
    if not value:
        return list(default)
    return [item.strip() for item in value.split(",") if item.strip()]


BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# ----------------------------
# Flask Config
# ----------------------------
class Config:
    SECRET_KEY = os.getenv("SECRET_KEY", "change-me")
    SQLALCHEMY_DATABASE_URI = os.getenv(
        "DATABASE_URL", f"sqlite:///{os.path.join(BASE_DIR, 'credledger.db')}"
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # key wrapping
    MASTER_KEY = os.getenv("MASTER_KEY", "")

    # chain
    CHAIN_RPC_URL = os.getenv("CHAIN_RPC_URL", "http://127.0.0.1:8545")
    OPERATOR_PRIVATE_KEY = os.getenv("OPERATOR_PRIVATE_KEY", "")
    REGISTRY_ADDRESS = os.getenv("REGISTRY_ADDRESS", "")
    ACCESS_CONTROL_ADDRESS = os.getenv("ACCESS_CONTROL_ADDRESS", "")
    REGISTRY_ARTIFACT = os.getenv("REGISTRY_ARTIFACT", "")
    ACCESS_CONTROL_ARTIFACT = os.getenv("ACCESS_CONTROL_ARTIFACT", "")
    CONFIRMATION_BLOCKS = int(os.getenv("CONFIRMATION_BLOCKS", "1"))
    CHAIN_STEP_TIMEOUT = float(os.getenv("CHAIN_STEP_TIMEOUT", "30"))
    CHAIN_WRITE_CONCURRENCY = int(os.getenv("CHAIN_WRITE_CONCURRENCY", "1"))
    CHAIN_READ_CONCURRENCY = int(os.getenv("CHAIN_READ_CONCURRENCY", "4"))
    CHAIN_LOG_FROM_BLOCK = int(os.getenv("CHAIN_LOG_FROM_BLOCK", "0"))

    # gas policy
    GAS_BUFFER_FACTOR = float(os.getenv("GAS_BUFFER_FACTOR", "1.2"))
    GAS_MIN_GWEI = float(os.getenv("GAS_MIN_GWEI", "1"))
    GAS_MAX_GWEI = float(os.getenv("GAS_MAX_GWEI", "50"))
    GAS_RETRY_ATTEMPTS = int(os.getenv("GAS_RETRY_ATTEMPTS", "3"))
    GAS_RETRY_PRICE_MULTIPLIER = float(os.getenv("GAS_RETRY_PRICE_MULTIPLIER", "1.1"))
    GAS_RETRY_BACKOFF = float(os.getenv("GAS_RETRY_BACKOFF", "1.0"))
    GAS_PRICE_TTL = float(os.getenv("GAS_PRICE_TTL", "30"))
    GAS_ESTIMATE_TTL = float(os.getenv("GAS_ESTIMATE_TTL", "300"))

    # content store
    CONTENT_STORE_PROVIDERS = _env_list("CONTENT_STORE_PROVIDERS", ["pinata", "web3.storage", "local"])
    PINATA_API_KEY = os.getenv("PINATA_API_KEY", "")
    PINATA_SECRET_API_KEY = os.getenv("PINATA_SECRET_API_KEY", "")
    WEB3_STORAGE_API_KEY = os.getenv("WEB3_STORAGE_API_KEY", "")
    LOCAL_IPFS_PATH = os.getenv("LOCAL_IPFS_PATH", os.path.join(BASE_DIR, "uploads", "ipfs"))
    IPFS_GATEWAY_URL = os.getenv("IPFS_GATEWAY_URL", "https://ipfs.io/ipfs/")
    CONTENT_UPLOAD_CONCURRENCY = int(os.getenv("CONTENT_UPLOAD_CONCURRENCY", "4"))
    CONTENT_RETRY_ATTEMPTS = int(os.getenv("CONTENT_RETRY_ATTEMPTS", "3"))
    CONTENT_RETRY_BACKOFF = float(os.getenv("CONTENT_RETRY_BACKOFF", "1.0"))
    CONTENT_REQUEST_TIMEOUT = float(os.getenv("CONTENT_REQUEST_TIMEOUT", "60"))

    # pipeline
    PIPELINE_TIMEOUT = float(os.getenv("PIPELINE_TIMEOUT", "60"))
    MAX_FILE_SIZE = int(os.getenv("MAX_FILE_SIZE", str(10 * 1024 * 1024)))
    ALLOWED_MIME_TYPES = _env_list("ALLOWED_MIME_TYPES", [
        "application/pdf",
        "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "image/jpeg",
        "image/png",
        "image/jpg",
    ])
    VERIFICATION_BASE_URL = os.getenv("VERIFICATION_BASE_URL", "http://localhost:3000/verify")

    # verification / audit
    SUSPICIOUS_WINDOW_MINUTES = int(os.getenv("SUSPICIOUS_WINDOW_MINUTES", "10"))
    SUSPICIOUS_THRESHOLD = int(os.getenv("SUSPICIOUS_THRESHOLD", "5"))
    VERIFICATION_LOG_RETENTION_DAYS = int(os.getenv("VERIFICATION_LOG_RETENTION_DAYS", "2555"))
    AUDIT_RETENTION_DAYS = int(os.getenv("AUDIT_RETENTION_DAYS", "2555"))
    METRICS_RETENTION_DAYS = int(os.getenv("METRICS_RETENTION_DAYS", "30"))
    RECONCILE_AFTER_SECONDS = int(os.getenv("RECONCILE_AFTER_SECONDS", "600"))

    # logging
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    LOG_JSON = _env_bool("LOG_JSON", False)


@dataclass
class GasPolicy:
    buffer_factor: float = 1.2
    min_gwei: float = 1
    max_gwei: float = 50
    retry_attempts: int = 3
    retry_price_multiplier: float = 1.1
    retry_backoff: float = 1.0
    price_ttl: float = 30
    estimate_ttl: float = 300

    @classmethod
    def from_config(cls, config):
        return cls(
            buffer_factor=config["GAS_BUFFER_FACTOR"],
            min_gwei=config["GAS_MIN_GWEI"],
            max_gwei=config["GAS_MAX_GWEI"],
            retry_attempts=config["GAS_RETRY_ATTEMPTS"],
            retry_price_multiplier=config["GAS_RETRY_PRICE_MULTIPLIER"],
            retry_backoff=config["GAS_RETRY_BACKOFF"],
            price_ttl=config["GAS_PRICE_TTL"],
            estimate_ttl=config["GAS_ESTIMATE_TTL"],
        )


@dataclass
class ProviderConfig:
    name: str
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    path: Optional[str] = None
    enabled: bool = True
    options: dict = field(default_factory=dict)


def providers_from_config(config) -> List[ProviderConfig]:
    """Ordered provider list; providers without credentials are disabled."""
    providers = []
    for name in config["CONTENT_STORE_PROVIDERS"]:
        if name == "pinata":
            providers.append(ProviderConfig(
                name=name,
                api_key=config.get("PINATA_API_KEY"),
                api_secret=config.get("PINATA_SECRET_API_KEY"),
                enabled=bool(config.get("PINATA_API_KEY") and config.get("PINATA_SECRET_API_KEY")),
            ))
        elif name == "web3.storage":
            providers.append(ProviderConfig(
                name=name,
                api_key=config.get("WEB3_STORAGE_API_KEY"),
                enabled=bool(config.get("WEB3_STORAGE_API_KEY")),
            ))
        elif name == "local":
            providers.append(ProviderConfig(name=name, path=config["LOCAL_IPFS_PATH"]))
        else:
            raise ValueError(f"Unknown content store provider: {name}")
    return providers
