"""
Certificate pipeline configuration

Typed settings for the content store, the ledger and issuance. Built once
from config.config by get_config() and handed to the services.
"""
from dataclasses import dataclass, field
from typing import Optional

from config import config as settings


@dataclass
class ContentStoreConfig:
    """Pinata / IPFS settings."""
    api_key: str = ""
    secret_key: str = ""
    api_url: str = "https://api.pinata.cloud"
    gateway: str = "https://ipfs.io/ipfs/"
    timeout_sec: int = 30

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key and self.secret_key)


@dataclass
class LedgerConfig:
    """Certificate NFT contract settings."""
    rpc_url: str = ""
    contract_address: str = ""
    private_key: str = ""
    chain_id: Optional[int] = None     # None = ask the node
    system_wallet: str = ""            # custody wallet for admin batch mint
    receipt_timeout_sec: int = 120
    gas_multiplier: float = 1.2        # headroom over estimate_gas
    fallback_gas: int = 500_000        # used when estimation fails for non-revert reasons

    @property
    def is_configured(self) -> bool:
        return bool(self.rpc_url and self.contract_address and self.private_key)


@dataclass
class IssuanceConfig:
    """Issuance settings."""
    organization: str = "Club Certificate Management System"
    number_prefix: str = "CERT"
    outbox_drain_limit: int = 100


@dataclass
class CertificateConfig:
    """Full pipeline configuration."""
    content_store: ContentStoreConfig = field(default_factory=ContentStoreConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    issuance: IssuanceConfig = field(default_factory=IssuanceConfig)


def get_config() -> CertificateConfig:
    """Build configuration from environment-backed settings."""
    return CertificateConfig(
        content_store=ContentStoreConfig(
            api_key=settings.PINATA_API_KEY,
            secret_key=settings.PINATA_SECRET_KEY,
            api_url=settings.PINATA_API_URL,
            gateway=settings.IPFS_GATEWAY,
            timeout_sec=settings.IPFS_TIMEOUT,
        ),
        ledger=LedgerConfig(
            rpc_url=settings.BLOCKCHAIN_RPC_URL,
            contract_address=settings.CONTRACT_ADDRESS,
            private_key=settings.ADMIN_PRIVATE_KEY,
            chain_id=settings.CHAIN_ID,
            system_wallet=settings.ADMIN_WALLET_ADDRESS,
            receipt_timeout_sec=settings.TX_RECEIPT_TIMEOUT,
        ),
        issuance=IssuanceConfig(
            organization=settings.CERTIFICATE_ORGANIZATION,
            outbox_drain_limit=settings.OUTBOX_DRAIN_LIMIT,
        ),
    )
