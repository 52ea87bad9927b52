"""
Unit tests for the reconciliation sweep
"""

import pytest
from sqlalchemy import select

from conftest import HOLDER_WALLET, add_rule, add_user
from src.database import crud
from src.database.models import (
    Activity,
    ActivityParticipation,
    ParticipationStatus,
    RuleMode,
    SideEffectStatus,
    SideEffectTask,
)


@pytest.mark.asyncio
async def test_sweep_is_idempotent(db_session, services):
    rule = await add_rule(db_session, "Century", RuleMode.AUTO_POINTS, threshold_points=100)
    eligible = await add_user(db_session, "eligible", points=100)
    await add_user(db_session, "poor", points=10)

    first = await services.sweeper.sweep_all(db_session)
    second = await services.sweeper.sweep_all(db_session)

    assert first.issued == 1
    assert first.failed == 0
    assert second.issued == 0
    assert second.checked == 0
    assert await crud.get_grant(db_session, eligible.id, rule.id) is not None


@pytest.mark.asyncio
async def test_sweep_covers_activity_rules(db_session, services):
    user = await add_user(db_session, "attendee")
    activity = Activity(title="Workshop")
    db_session.add(activity)
    await db_session.flush()
    db_session.add(
        ActivityParticipation(
            activity_id=activity.id, user_id=user.id, status=ParticipationStatus.COMPLETED.value
        )
    )
    await db_session.commit()
    rule = await add_rule(db_session, "Workshop", RuleMode.AUTO_ACTIVITY, activity_id=activity.id)

    report = await services.sweeper.sweep_all(db_session)

    assert report.issued == 1
    assert await crud.get_grant(db_session, user.id, rule.id) is not None


@pytest.mark.asyncio
async def test_sweep_drains_side_effects(db_session, services, mock_ledger):
    """Issued in the sweep: pin and mint run in the drain, not in the background"""
    await add_rule(db_session, "Century", RuleMode.AUTO_POINTS, threshold_points=100)
    await add_user(db_session, "holder", points=100, wallet=HOLDER_WALLET)

    report = await services.sweeper.sweep_all(db_session)

    assert report.issued == 1
    assert report.side_effects.to_dict() == {"instances": 1, "pinned": 1, "minted": 1, "errors": 0}
    assert services.dispatcher.in_flight == set()
    mock_ledger.mint_certificate.assert_awaited_once()

    result = await db_session.execute(select(SideEffectTask.status))
    assert set(result.scalars().all()) == {SideEffectStatus.DONE.value}


@pytest.mark.asyncio
async def test_sweep_skips_in_flight_instances(db_session, services, mock_ipfs):
    await add_rule(db_session, "Century", RuleMode.AUTO_POINTS, threshold_points=100)
    await add_user(db_session, "holder", points=100)

    result = await services.sweeper.sweep_all(db_session)
    assert result.side_effects.pinned == 1

    # Make the pin pending again and pretend a background worker owns it
    task = (await db_session.execute(select(SideEffectTask))).scalar_one()
    task.status = SideEffectStatus.PENDING.value
    await db_session.commit()
    services.dispatcher.in_flight.add(task.instance_id)

    report = await services.sweeper.sweep_all(db_session)
    assert report.side_effects.instances == 0
    assert mock_ipfs.pin_json.await_count == 1
