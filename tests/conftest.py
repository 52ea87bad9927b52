"""
Pytest configuration and fixtures for certificate service tests
"""

import itertools
from typing import AsyncGenerator, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from src.database.models import Base, CertificateRule, RuleMode, User, UserWallet
from src.services.certificates.config import CertificateConfig, IssuanceConfig, LedgerConfig
from src.services.certificates.container import build_certificate_services
from src.services.ipfs_service import PinResult
from src.services.ledger_service import MintReceipt


# Test database URL (in-memory SQLite for testing)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

SIGNER_WALLET = "0x00000000000000000000000000000000000000AA"
SYSTEM_WALLET = "0x5555555555555555555555555555555555555555"
HOLDER_WALLET = "0x1111111111111111111111111111111111111111"


@pytest.fixture(scope="function")
async def test_db_engine():
    """
    Create test database engine
    """
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
def session_maker(test_db_engine) -> async_sessionmaker:
    return async_sessionmaker(test_db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture(scope="function")
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """
    Create test database session
    """
    async with session_maker() as session:
        yield session
        await session.rollback()


# ===========================
# EXTERNAL SERVICE MOCKS
# ===========================


def make_mint_receipt(recipient: Optional[str], counter=itertools.count(1)) -> MintReceipt:
    token = next(counter)
    return MintReceipt(
        tx_hash=f"0x{token:064x}",
        block_number=1000 + token,
        token_id=str(token),
        owner_address=recipient or SIGNER_WALLET,
    )


@pytest.fixture
def mock_ipfs():
    """Pinata client that always succeeds"""
    ipfs = MagicMock()
    ipfs.is_configured = True
    ipfs.pin_json = AsyncMock(
        side_effect=lambda document, filename: PinResult(ipfs_hash=f"Qm{document['certificateNumber']}")
    )
    ipfs.gateway_url = lambda ipfs_hash: f"https://ipfs.io/ipfs/{ipfs_hash}"
    return ipfs


@pytest.fixture
def mock_ledger():
    """Ledger client that mints to the requested recipient"""
    ledger = MagicMock()
    ledger.is_configured = True
    ledger.mint_certificate = AsyncMock(
        side_effect=lambda number, uri, recipient=None: make_mint_receipt(recipient)
    )
    ledger.recover_certificate = AsyncMock(return_value=None)
    return ledger


@pytest.fixture
def certificate_config() -> CertificateConfig:
    return CertificateConfig(
        ledger=LedgerConfig(system_wallet=SYSTEM_WALLET),
        issuance=IssuanceConfig(organization="Test Club"),
    )


@pytest.fixture
def services(certificate_config, session_maker, mock_ipfs, mock_ledger):
    """Certificate pipeline wired to the test database and mocked clients"""
    return build_certificate_services(
        config=certificate_config,
        session_maker=lambda: session_maker,
        ipfs=mock_ipfs,
        ledger=mock_ledger,
    )


# ===========================
# DATA HELPERS
# ===========================


async def add_user(session: AsyncSession, username: str = "alice", points: int = 0, wallet: Optional[str] = None) -> User:
    user = User(username=username, student_id=f"S-{username}", points=points)
    session.add(user)
    await session.flush()
    if wallet:
        session.add(UserWallet(user_id=user.id, wallet_address=wallet))
    await session.commit()
    return user


async def add_rule(session: AsyncSession, name: str = "Rule", mode: RuleMode = RuleMode.AUTO_POINTS, **fields) -> CertificateRule:
    rule = CertificateRule(name=name, mode=mode.value, **fields)
    session.add(rule)
    await session.commit()
    return rule
