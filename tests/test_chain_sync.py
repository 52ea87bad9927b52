"""
Unit tests for chain-sync backfill (holder and system custody)
"""

import pytest
from unittest.mock import AsyncMock
from sqlalchemy import func, select

from conftest import HOLDER_WALLET, SIGNER_WALLET, SYSTEM_WALLET, add_rule, add_user, make_mint_receipt
from src.database import crud
from src.database.models import (
    CertificateInstance,
    CustodyModel,
    LedgerRecord,
    RuleMode,
    SideEffectStatus,
    SideEffectTask,
    SideEffectType,
)
from src.services.certificates.errors import (
    CertificateNotFoundError,
    LedgerUnavailableError,
    MintFailedError,
    NoWalletError,
    NotCertificateHolderError,
)
from src.services.ipfs_service import ContentStoreError
from src.services.ledger_service import DuplicateCertificateError, MintReceipt


async def issue_for(db_session, services, username="holder", wallet=None):
    user = await add_user(db_session, username, points=100, wallet=wallet)
    rule = await add_rule(db_session, f"Century {username}", RuleMode.AUTO_POINTS, threshold_points=100)
    result = await services.issuer.issue(db_session, user.id, rule, dispatch=False)
    return user, result


async def ledger_records(db_session):
    return await db_session.scalar(select(func.count()).select_from(LedgerRecord))


@pytest.mark.asyncio
async def test_backfill_is_idempotent(db_session, services, mock_ledger):
    _, result = await issue_for(db_session, services, wallet=HOLDER_WALLET)

    first = await services.chain_sync.backfill(db_session, result.instance_id)
    second = await services.chain_sync.backfill(db_session, result.instance_id)

    assert first.already_on_chain is False
    assert second.already_on_chain is True
    assert second.tx_hash == first.tx_hash
    assert second.token_id == first.token_id
    assert mock_ledger.mint_certificate.await_count == 1
    assert await ledger_records(db_session) == 1


@pytest.mark.asyncio
async def test_backfill_requires_wallet_then_succeeds(db_session, services):
    user, result = await issue_for(db_session, services)

    with pytest.raises(NoWalletError) as exc_info:
        await services.chain_sync.backfill(db_session, result.instance_id)
    assert exc_info.value.message == "Wallet address is not bound"
    assert await ledger_records(db_session) == 0

    await crud.bind_wallet(db_session, user.id, HOLDER_WALLET)
    backfilled = await services.chain_sync.backfill(db_session, result.instance_id, user.id)

    assert backfilled.already_on_chain is False
    assert await ledger_records(db_session) == 1

    record = await crud.get_ledger_record(db_session, result.instance_id)
    assert record.owner_address == HOLDER_WALLET
    assert record.custody == CustodyModel.HOLDER.value


@pytest.mark.asyncio
async def test_backfill_rejects_other_user(db_session, services):
    _, result = await issue_for(db_session, services, wallet=HOLDER_WALLET)
    other = await add_user(db_session, "intruder")

    with pytest.raises(NotCertificateHolderError):
        await services.chain_sync.backfill(db_session, result.instance_id, other.id)

    with pytest.raises(CertificateNotFoundError):
        await services.chain_sync.backfill(db_session, 9999)


@pytest.mark.asyncio
async def test_backfill_uses_placeholder_when_pin_fails(db_session, services, mock_ipfs, mock_ledger):
    mock_ipfs.pin_json = AsyncMock(side_effect=ContentStoreError("Pinata unreachable"))
    _, result = await issue_for(db_session, services, wallet=HOLDER_WALLET)

    await services.chain_sync.backfill(db_session, result.instance_id)

    instance = await db_session.get(CertificateInstance, result.instance_id, populate_existing=True)
    assert instance.content_hash.startswith("QmLocal")
    assert len(instance.content_hash) == len("QmLocal") + 40
    assert instance.content_hash_is_placeholder is True

    assert mock_ledger.mint_certificate.await_args.args[1] == f"ipfs://{instance.content_hash}"

    pin_task = (
        await db_session.execute(
            select(SideEffectTask).where(
                SideEffectTask.instance_id == result.instance_id,
                SideEffectTask.task_type == SideEffectType.PIN.value,
            )
        )
    ).scalar_one()
    await db_session.refresh(pin_task)
    assert pin_task.status == SideEffectStatus.DONE.value
    assert pin_task.last_error.startswith("placeholder hash")


@pytest.mark.asyncio
async def test_backfill_ledger_not_configured(db_session, services, mock_ledger):
    mock_ledger.is_configured = False
    _, result = await issue_for(db_session, services, wallet=HOLDER_WALLET)

    with pytest.raises(LedgerUnavailableError):
        await services.chain_sync.backfill(db_session, result.instance_id)

    # Content hash is kept for the next attempt
    instance = await db_session.get(CertificateInstance, result.instance_id, populate_existing=True)
    assert instance.content_hash is not None


@pytest.mark.asyncio
async def test_backfill_translates_ledger_errors(db_session, services, mock_ledger):
    mock_ledger.mint_certificate = AsyncMock(
        side_effect=DuplicateCertificateError("Certificate number already exists on the ledger")
    )
    _, result = await issue_for(db_session, services, wallet=HOLDER_WALLET)

    with pytest.raises(MintFailedError) as exc_info:
        await services.chain_sync.backfill(db_session, result.instance_id)

    assert exc_info.value.terminal is True
    assert exc_info.value.status_code == 502
    assert "already exists" in exc_info.value.message
    assert await ledger_records(db_session) == 0


@pytest.mark.asyncio
async def test_backfill_records_token_already_on_chain(db_session, services, mock_ledger):
    """Duplicate number with the token found on chain: the existing mint is recorded"""
    mock_ledger.mint_certificate = AsyncMock(
        side_effect=DuplicateCertificateError("Certificate number already exists on the ledger")
    )
    mock_ledger.recover_certificate = AsyncMock(
        return_value=MintReceipt(tx_hash="0xcd", block_number=88, token_id="9", owner_address=HOLDER_WALLET)
    )
    _, result = await issue_for(db_session, services, wallet=HOLDER_WALLET)

    backfill = await services.chain_sync.backfill(db_session, result.instance_id)

    assert backfill.tx_hash == "0xcd"
    assert backfill.token_id == "9"
    assert backfill.already_on_chain is False
    assert await ledger_records(db_session) == 1

    record = await crud.get_ledger_record(db_session, result.instance_id)
    assert record.custody == CustodyModel.HOLDER.value


@pytest.mark.asyncio
async def test_transfer_failure_records_system_custody(db_session, services, mock_ledger):
    """Token stayed with the signer: the record says so"""
    mock_ledger.mint_certificate = AsyncMock(
        side_effect=lambda number, uri, recipient=None: make_mint_receipt(None)
    )
    _, result = await issue_for(db_session, services, wallet=HOLDER_WALLET)

    await services.chain_sync.backfill(db_session, result.instance_id)

    record = await crud.get_ledger_record(db_session, result.instance_id)
    assert record.owner_address == SIGNER_WALLET
    assert record.custody == CustodyModel.SYSTEM.value


@pytest.mark.asyncio
async def test_batch_mint_reports_partial_results(db_session, services, mock_ledger):
    _, minted = await issue_for(db_session, services, "first")
    _, fresh = await issue_for(db_session, services, "second")
    await services.chain_sync.backfill_batch(db_session, [minted.instance_id])

    report = await services.chain_sync.backfill_batch(
        db_session, [minted.instance_id, fresh.instance_id, 4242]
    )

    statuses = {item["id"]: item["status"] for item in report.results}
    assert statuses == {minted.instance_id: "already_minted", fresh.instance_id: "success"}
    assert report.errors == [{"id": 4242, "error": "Certificate 4242 not found"}]

    record = await crud.get_ledger_record(db_session, fresh.instance_id)
    assert record.owner_address == SYSTEM_WALLET
    assert record.custody == CustodyModel.SYSTEM.value
    assert mock_ledger.mint_certificate.await_args.kwargs == {"recipient": SYSTEM_WALLET}


@pytest.mark.asyncio
async def test_batch_mint_continues_after_failure(db_session, services, mock_ledger):
    _, first = await issue_for(db_session, services, "first")
    _, second = await issue_for(db_session, services, "second")
    receipts = mock_ledger.mint_certificate.side_effect

    calls = {"n": 0}

    def flaky(number, uri, recipient=None):
        calls["n"] += 1
        if calls["n"] == 1:
            raise DuplicateCertificateError("Certificate number already exists on the ledger")
        return receipts(number, uri, recipient=recipient)

    mock_ledger.mint_certificate = AsyncMock(side_effect=flaky)

    report = await services.chain_sync.backfill_batch(db_session, [first.instance_id, second.instance_id])

    assert [item["id"] for item in report.errors] == [first.instance_id]
    assert [item["id"] for item in report.results] == [second.instance_id]
