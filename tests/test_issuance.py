"""
Unit tests for certificate issuance
"""

import pytest
from unittest.mock import AsyncMock, patch
from sqlalchemy import func, select

from conftest import HOLDER_WALLET, add_rule, add_user
from src.database import crud
from src.database.models import (
    CertificateInstance,
    ChainSyncState,
    PointsEvent,
    PointsEventType,
    RuleMode,
    SideEffectTask,
    SideEffectType,
    User,
    UserCertificate,
)
from src.services.certificates.eligibility import Trigger
from src.services.certificates.errors import (
    AlreadyGrantedError,
    CertificateNotFoundError,
    ChainSyncRequestError,
    ConditionNotMetError,
    InsufficientPointsError,
    RuleNotFoundError,
    UserNotFoundError,
)


async def count(session, model):
    return await session.scalar(select(func.count()).select_from(model))


@pytest.mark.asyncio
async def test_issue_twice_yields_one_grant(db_session, services):
    user = await add_user(db_session, "alice", points=200)
    rule = await add_rule(db_session, "Century", RuleMode.AUTO_POINTS, threshold_points=100)

    result = await services.issuer.issue(db_session, user.id, rule, dispatch=False)

    with pytest.raises(AlreadyGrantedError) as exc_info:
        await services.issuer.issue(db_session, user.id, rule, dispatch=False)

    assert exc_info.value.message == "Certificate already received"
    assert await count(db_session, UserCertificate) == 1
    assert await count(db_session, CertificateInstance) == 1

    instance = await db_session.get(CertificateInstance, result.instance_id)
    assert instance.certificate_number == result.certificate_number
    assert instance.certificate_number.startswith("CERT-")
    assert instance.holder_name == "alice"
    assert instance.organization == "Test Club"


@pytest.mark.asyncio
async def test_concurrent_grant_caught_by_unique_constraint(db_session, services):
    """A grant that slips past the pre-check is stopped by UNIQUE(user_id, rule_id)"""
    user = await add_user(db_session, "racer", points=200)
    rule = await add_rule(db_session, "Century", RuleMode.AUTO_POINTS, threshold_points=100)

    await services.issuer.issue(db_session, user.id, rule, dispatch=False)

    with patch("src.database.crud.get_grant", AsyncMock(return_value=None)):
        with pytest.raises(AlreadyGrantedError):
            await services.issuer.issue(db_session, user.id, rule, dispatch=False)

    # The losing transaction left nothing behind
    assert await count(db_session, UserCertificate) == 1
    assert await count(db_session, CertificateInstance) == 1
    assert await count(db_session, SideEffectTask) == 1


@pytest.mark.asyncio
async def test_exchange_debits_exact_points(db_session, services):
    user = await add_user(db_session, "buyer", points=120)
    rule = await add_rule(db_session, "Shop item", RuleMode.EXCHANGE, need_points=50, auto_issue_enabled=False)

    await services.issuer.redeem(db_session, user.id, rule.id)

    user = await db_session.get(User, user.id, populate_existing=True)
    assert user.points == 70

    events = (await db_session.execute(select(PointsEvent))).scalars().all()
    assert len(events) == 1
    assert events[0].event_type == PointsEventType.CERTIFICATE_EXCHANGE.value
    assert events[0].points == -50
    assert events[0].balance_after == 70


@pytest.mark.asyncio
async def test_exchange_insufficient_points_changes_nothing(db_session, services):
    user = await add_user(db_session, "u2", points=40)
    rule = await add_rule(db_session, "R2", RuleMode.EXCHANGE, need_points=50, auto_issue_enabled=False)
    user_id, rule_id = user.id, rule.id

    with pytest.raises(InsufficientPointsError) as exc_info:
        await services.issuer.redeem(db_session, user_id, rule_id)

    assert exc_info.value.details == {"required": 50, "available": 40}

    user = await db_session.get(User, user_id, populate_existing=True)
    assert user.points == 40
    assert await count(db_session, UserCertificate) == 0
    assert await count(db_session, CertificateInstance) == 0
    assert await count(db_session, PointsEvent) == 0


@pytest.mark.asyncio
async def test_redeem_auto_rule_rechecks_condition(db_session, services):
    user = await add_user(db_session, "short", points=99)
    rule = await add_rule(db_session, "Century", RuleMode.AUTO_POINTS, threshold_points=100)

    with pytest.raises(ConditionNotMetError) as exc_info:
        await services.issuer.redeem(db_session, user.id, rule.id)
    assert exc_info.value.status_code == 403

    user.points = 100
    await db_session.commit()

    result = await services.issuer.redeem(db_session, user.id, rule.id)
    assert result.rule_id == rule.id

    # Automatic rules are never charged
    user = await db_session.get(User, user.id, populate_existing=True)
    assert user.points == 100


@pytest.mark.asyncio
async def test_redeem_unknown_rule_and_user(db_session, services):
    user = await add_user(db_session)
    rule = await add_rule(db_session, "Shop", RuleMode.EXCHANGE, need_points=1, auto_issue_enabled=False)

    with pytest.raises(RuleNotFoundError):
        await services.issuer.redeem(db_session, user.id, 999)
    with pytest.raises(UserNotFoundError):
        await services.issuer.redeem(db_session, 999, rule.id)


@pytest.mark.asyncio
async def test_grant_without_chain_is_valid(db_session, services):
    """No content hash and no ledger record: the certificate still exists and verifies"""
    user = await add_user(db_session, "offline", points=200)
    rule = await add_rule(db_session, "Century", RuleMode.AUTO_POINTS, threshold_points=100)

    result = await services.issuer.issue(db_session, user.id, rule, dispatch=False)

    found = await crud.get_certificate_by_number(db_session, result.certificate_number)
    assert found is not None
    instance, ledger = found
    assert instance.is_valid is True
    assert instance.content_hash is None
    assert ledger is None

    grant = await crud.get_grant(db_session, user.id, rule.id)
    assert grant.chain_status == ChainSyncState.NONE.value


@pytest.mark.asyncio
async def test_outbox_tasks_follow_wallet_binding(db_session, services):
    """Pin is always queued; mint only when the holder has a wallet"""
    rule = await add_rule(db_session, "Century", RuleMode.AUTO_POINTS, threshold_points=0)
    no_wallet = await add_user(db_session, "nowallet")
    with_wallet = await add_user(db_session, "wallet", wallet=HOLDER_WALLET)

    first = await services.issuer.issue(db_session, no_wallet.id, rule, dispatch=False)
    second = await services.issuer.issue(db_session, with_wallet.id, rule, dispatch=False)

    async def task_types(instance_id):
        result = await db_session.execute(
            select(SideEffectTask.task_type).where(SideEffectTask.instance_id == instance_id)
        )
        return sorted(result.scalars().all())

    assert await task_types(first.instance_id) == [SideEffectType.PIN.value]
    assert await task_types(second.instance_id) == [SideEffectType.MINT.value, SideEffectType.PIN.value]


@pytest.mark.asyncio
async def test_check_user_issues_newly_satisfied(db_session, services):
    user = await add_user(db_session, "climber", points=150)
    low = await add_rule(db_session, "Fifty", RuleMode.AUTO_POINTS, threshold_points=50)
    await add_rule(db_session, "Thousand", RuleMode.AUTO_POINTS, threshold_points=1000)

    report = await services.issuer.check_user(db_session, user.id, Trigger.points_changed())
    await services.dispatcher.wait_idle()

    assert report.to_dict() == {"checked": 1, "issued": 1}
    assert await crud.get_grant(db_session, user.id, low.id) is not None

    report = await services.issuer.check_user(db_session, user.id, Trigger.points_changed())
    assert report.to_dict() == {"checked": 0, "issued": 0}


@pytest.mark.asyncio
async def test_request_chain_sync(db_session, services):
    user = await add_user(db_session, "applicant", points=200)
    rule = await add_rule(db_session, "Century", RuleMode.AUTO_POINTS, threshold_points=100)
    user_id, rule_id = user.id, rule.id

    await services.issuer.issue(db_session, user_id, rule, dispatch=False)
    await services.issuer.request_chain_sync(db_session, user_id, rule_id)

    grant = await crud.get_grant(db_session, user_id, rule_id)
    await db_session.refresh(grant)
    assert grant.chain_status == ChainSyncState.PENDING.value

    # Only none -> pending is allowed
    with pytest.raises(ChainSyncRequestError):
        await services.issuer.request_chain_sync(db_session, user_id, rule_id)

    # Not received
    with pytest.raises(ChainSyncRequestError):
        await services.issuer.request_chain_sync(db_session, user_id, rule_id + 1)


@pytest.mark.asyncio
async def test_revoke_removes_grant_and_instance(db_session, services):
    user = await add_user(db_session, "revoked", points=200)
    rule = await add_rule(db_session, "Century", RuleMode.AUTO_POINTS, threshold_points=100)
    result = await services.issuer.issue(db_session, user.id, rule, dispatch=False)

    await services.issuer.revoke(db_session, result.grant_id)

    assert await count(db_session, UserCertificate) == 0
    assert await count(db_session, CertificateInstance) == 0
    assert await count(db_session, SideEffectTask) == 0

    with pytest.raises(CertificateNotFoundError):
        await services.issuer.revoke(db_session, result.grant_id)

    # The rule can be granted again after revocation
    await services.issuer.issue(db_session, user.id, rule, dispatch=False)
    assert await count(db_session, UserCertificate) == 1
