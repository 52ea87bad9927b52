"""
Unit tests for the pin / mint outbox
"""

import pytest
from unittest.mock import AsyncMock
from sqlalchemy import select

from conftest import HOLDER_WALLET, add_rule, add_user
from src.database import crud
from src.database.models import (
    CertificateInstance,
    ChainSyncState,
    CustodyModel,
    RuleMode,
    SideEffectStatus,
    SideEffectTask,
    SideEffectType,
)
from src.services.ipfs_service import ContentStoreError, PinResult
from src.services.ledger_service import DuplicateCertificateError, LedgerError, MintReceipt


async def issue_one(db_session, services, wallet=None, dispatch=False, username="holder"):
    user = await add_user(db_session, username, points=100, wallet=wallet)
    rule = await add_rule(db_session, f"Century {username}", RuleMode.AUTO_POINTS, threshold_points=100)
    return await services.issuer.issue(db_session, user.id, rule, dispatch=dispatch)


async def get_task(db_session, instance_id, task_type):
    result = await db_session.execute(
        select(SideEffectTask).where(
            SideEffectTask.instance_id == instance_id,
            SideEffectTask.task_type == task_type.value,
        )
    )
    task = result.scalar_one()
    await db_session.refresh(task)
    return task


@pytest.mark.asyncio
async def test_background_dispatch_pins_and_mints(db_session, services, mock_ledger):
    result = await issue_one(db_session, services, wallet=HOLDER_WALLET, dispatch=True)
    await services.dispatcher.wait_idle()

    instance = await db_session.get(CertificateInstance, result.instance_id, populate_existing=True)
    assert instance.content_hash == f"Qm{result.certificate_number}"
    assert instance.content_hash_is_placeholder is False

    record = await crud.get_ledger_record(db_session, result.instance_id)
    assert record is not None
    assert record.owner_address == HOLDER_WALLET
    assert record.custody == CustodyModel.HOLDER.value
    assert record.content_hash == instance.content_hash

    grant = await crud.get_grant_by_instance(db_session, result.instance_id)
    await db_session.refresh(grant)
    assert grant.chain_status == ChainSyncState.MINTED.value

    args = mock_ledger.mint_certificate.await_args
    assert args.args == (result.certificate_number, f"ipfs://Qm{result.certificate_number}")
    assert args.kwargs == {"recipient": HOLDER_WALLET}
    assert services.dispatcher.in_flight == set()


@pytest.mark.asyncio
async def test_pin_failure_keeps_task_pending(db_session, services, mock_ipfs):
    mock_ipfs.pin_json = AsyncMock(side_effect=ContentStoreError("Pinata unreachable"))
    result = await issue_one(db_session, services)

    report = await services.outbox.process_instance(db_session, result.instance_id)

    assert report.pinned is False
    assert report.errors == ["Pinata unreachable"]

    task = await get_task(db_session, result.instance_id, SideEffectType.PIN)
    assert task.status == SideEffectStatus.PENDING.value
    assert task.attempts == 1
    assert task.last_error == "Pinata unreachable"

    # The grant is untouched by the failure
    assert await crud.get_grant_by_instance(db_session, result.instance_id) is not None


@pytest.mark.asyncio
async def test_terminal_mint_error_parks_task(db_session, services, mock_ledger):
    mock_ledger.mint_certificate = AsyncMock(
        side_effect=DuplicateCertificateError("Certificate number already exists on the ledger")
    )
    result = await issue_one(db_session, services, wallet=HOLDER_WALLET)

    report = await services.outbox.process_instance(db_session, result.instance_id)

    assert report.pinned is True
    assert report.minted is False

    task = await get_task(db_session, result.instance_id, SideEffectType.MINT)
    assert task.status == SideEffectStatus.FAILED.value
    assert await crud.get_ledger_record(db_session, result.instance_id) is None

    # Failed tasks are not picked up again
    drained = await services.outbox.drain(db_session)
    assert drained.instances == 0


@pytest.mark.asyncio
async def test_transient_mint_error_retried_by_drain(db_session, services, mock_ledger):
    receipt_side_effect = mock_ledger.mint_certificate.side_effect
    mock_ledger.mint_certificate = AsyncMock(side_effect=LedgerError("Ledger call failed: timeout"))
    result = await issue_one(db_session, services, wallet=HOLDER_WALLET)

    await services.outbox.process_instance(db_session, result.instance_id)
    task = await get_task(db_session, result.instance_id, SideEffectType.MINT)
    assert task.status == SideEffectStatus.PENDING.value
    assert task.attempts == 1

    mock_ledger.mint_certificate = AsyncMock(side_effect=receipt_side_effect)
    drained = await services.outbox.drain(db_session)

    assert drained.minted == 1
    assert await crud.get_ledger_record(db_session, result.instance_id) is not None


@pytest.mark.asyncio
async def test_mint_waits_for_content_and_ledger(db_session, services, mock_ipfs, mock_ledger):
    mock_ipfs.pin_json = AsyncMock(side_effect=ContentStoreError("down"))
    result = await issue_one(db_session, services, wallet=HOLDER_WALLET)

    await services.outbox.process_instance(db_session, result.instance_id)
    mock_ledger.mint_certificate.assert_not_awaited()

    task = await get_task(db_session, result.instance_id, SideEffectType.MINT)
    assert task.status == SideEffectStatus.PENDING.value
    assert task.attempts == 0

    # Pinned now, but the ledger is switched off
    mock_ipfs.pin_json = AsyncMock(return_value=PinResult(ipfs_hash="QmLater"))
    mock_ledger.is_configured = False
    await services.outbox.process_instance(db_session, result.instance_id)
    mock_ledger.mint_certificate.assert_not_awaited()

    task = await get_task(db_session, result.instance_id, SideEffectType.MINT)
    assert task.status == SideEffectStatus.PENDING.value


@pytest.mark.asyncio
async def test_mint_task_done_when_already_on_chain(db_session, services, mock_ledger):
    result = await issue_one(db_session, services, wallet=HOLDER_WALLET)
    await services.chain_sync.backfill(db_session, result.instance_id)
    assert mock_ledger.mint_certificate.await_count == 1

    # A stale pending mint task, e.g. written before the backfill committed
    task = await get_task(db_session, result.instance_id, SideEffectType.MINT)
    task.status = SideEffectStatus.PENDING.value
    await db_session.commit()

    report = await services.outbox.process_instance(db_session, result.instance_id)

    assert report.minted is False
    assert mock_ledger.mint_certificate.await_count == 1
    task = await get_task(db_session, result.instance_id, SideEffectType.MINT)
    assert task.status == SideEffectStatus.DONE.value


@pytest.mark.asyncio
async def test_drain_skips_mints_while_ledger_is_off(db_session, services, mock_ledger):
    """Waiting mint tasks never fill the batch ahead of pins that can run"""
    mock_ledger.is_configured = False
    first = await issue_one(db_session, services, wallet=HOLDER_WALLET, username="first")
    second = await issue_one(db_session, services, wallet="0x" + "22" * 20, username="second")

    drained = await services.outbox.drain(db_session, limit=2)
    assert drained.pinned == 2

    third = await issue_one(db_session, services, username="third")
    for _ in range(2):
        drained = await services.outbox.drain(db_session, limit=2)

    instance = await db_session.get(CertificateInstance, third.instance_id, populate_existing=True)
    assert instance.content_hash == f"Qm{third.certificate_number}"

    for result in (first, second):
        task = await get_task(db_session, result.instance_id, SideEffectType.MINT)
        assert task.status == SideEffectStatus.PENDING.value
    mock_ledger.mint_certificate.assert_not_awaited()


@pytest.mark.asyncio
async def test_drain_rotates_past_failing_instances(db_session, services, mock_ledger):
    mock_ledger.mint_certificate = AsyncMock(side_effect=LedgerError("Ledger call failed: timeout"))
    failing = await issue_one(db_session, services, wallet=HOLDER_WALLET, username="failing")
    await services.outbox.process_instance(db_session, failing.instance_id)

    fresh = await issue_one(db_session, services, username="fresh")

    # The instance that already failed goes behind untried work
    drained = await services.outbox.drain(db_session, limit=1)
    assert drained.pinned == 1

    instance = await db_session.get(CertificateInstance, fresh.instance_id, populate_existing=True)
    assert instance.content_hash is not None

    task = await get_task(db_session, failing.instance_id, SideEffectType.MINT)
    assert task.attempts == 1


@pytest.mark.asyncio
async def test_timed_out_mint_recovered_from_chain(db_session, services, mock_ledger):
    """First mint is mined after its receipt wait timed out; the retry adopts the token"""
    mock_ledger.mint_certificate = AsyncMock(side_effect=[
        LedgerError("Transaction 0xab not confirmed in time"),
        DuplicateCertificateError("Certificate number already exists on the ledger"),
    ])
    mock_ledger.recover_certificate = AsyncMock(
        return_value=MintReceipt(tx_hash="0xab", block_number=77, token_id="42", owner_address=HOLDER_WALLET)
    )
    result = await issue_one(db_session, services, wallet=HOLDER_WALLET)

    await services.outbox.process_instance(db_session, result.instance_id)
    task = await get_task(db_session, result.instance_id, SideEffectType.MINT)
    assert task.status == SideEffectStatus.PENDING.value

    drained = await services.outbox.drain(db_session)

    assert drained.minted == 1
    mock_ledger.recover_certificate.assert_awaited_once_with(result.certificate_number, recipient=HOLDER_WALLET)

    record = await crud.get_ledger_record(db_session, result.instance_id)
    assert record.tx_hash == "0xab"
    assert record.token_id == "42"
    assert record.custody == CustodyModel.HOLDER.value

    task = await get_task(db_session, result.instance_id, SideEffectType.MINT)
    assert task.status == SideEffectStatus.DONE.value
