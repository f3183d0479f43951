from __future__ import annotations

import asyncio
import uuid
from datetime import timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from travel_rewards.core.errors import (
    AccountInactiveError, DuplicateCheckInError, InvalidCodeError, NotFoundError, OutOfRangeError, TransactionFailure,
    ValidationError,
)
from travel_rewards.models import (
    CheckIn, Destination, DestinationStatus, Promotion, TransactionType, UserAccount, UserStatus,
)
from travel_rewards.services import checkins
from travel_rewards.services.checkins import checkin_stats, settle_checkin

from factories import (
    MANILA, MANILA_500M, T0, account, assert_ledger_consistent, ledger_rows, reload, seed_badge,
    seed_destination,
)


async def _count_checkins(maker) -> int:
    async with maker() as db:
        return (await db.execute(select(func.count(CheckIn.id)))).scalar_one()


def test_checkin_at_destination_awards_points(run_db):
    uid = uuid.uuid4()

    async def scenario(maker):
        async with maker() as db:
            dest = await seed_destination(db)
        async with maker() as db:
            out = await settle_checkin(db, user_id=uid, scanned_code=dest.qr_code, user_lat=MANILA[0], user_lon=MANILA[1], now=T0)
        assert out.points_earned == 50
        assert out.total_points == 50
        assert out.new_badges == []
        assert out.checkin.distance_from_destination == 0
        assert out.checkin.is_verified

        rows = await ledger_rows(maker, uid)
        assert len(rows) == 1 and rows[0].transaction_type == TransactionType.EARNED
        assert rows[0].reference_id == out.checkin.id
        assert (await reload(maker, Destination, dest.id)).total_visits == 1
        await assert_ledger_consistent(maker, uid)

    run_db(scenario)


def test_scanned_code_is_case_insensitive(run_db):
    uid = uuid.uuid4()

    async def scenario(maker):
        async with maker() as db:
            dest = await seed_destination(db, qr_code="TRV-ABC123")
        async with maker() as db:
            out = await settle_checkin(db, user_id=uid, scanned_code=" trv-abc123 ", user_lat=MANILA[0], user_lon=MANILA[1])
        assert out.checkin.destination_id == dest.id

    run_db(scenario)


def test_out_of_range_reports_distance_and_writes_nothing(run_db):
    uid = uuid.uuid4()

    async def scenario(maker):
        async with maker() as db:
            dest = await seed_destination(db)
        async with maker() as db:
            with pytest.raises(OutOfRangeError) as ei:
                await settle_checkin(db, user_id=uid, scanned_code=dest.qr_code, user_lat=MANILA_500M[0], user_lon=MANILA_500M[1])
        assert ei.value.distance_m == pytest.approx(500, abs=1)
        assert ei.value.radius_m == 100
        assert await _count_checkins(maker) == 0
        assert await ledger_rows(maker, uid) == []
        await assert_ledger_consistent(maker, uid)

    run_db(scenario)


def test_default_radius_applies_when_destination_has_none(run_db):
    uid = uuid.uuid4()

    async def scenario(maker):
        async with maker() as db:
            dest = await seed_destination(db, visit_radius=None)
        # ~90 m north, inside the 100 m default
        async with maker() as db:
            out = await settle_checkin(db, user_id=uid, scanned_code=dest.qr_code, user_lat=MANILA[0] + 90 / 111_195, user_lon=MANILA[1])
        assert 89 < out.checkin.distance_from_destination < 91

    run_db(scenario)


def test_duplicate_within_cooldown(run_db):
    uid = uuid.uuid4()

    async def scenario(maker):
        async with maker() as db:
            dest = await seed_destination(db)
        async with maker() as db:
            await settle_checkin(db, user_id=uid, scanned_code=dest.qr_code, user_lat=MANILA[0], user_lon=MANILA[1], now=T0)
        async with maker() as db:
            with pytest.raises(DuplicateCheckInError):
                await settle_checkin(db, user_id=uid, scanned_code=dest.qr_code, user_lat=MANILA[0], user_lon=MANILA[1], now=T0 + timedelta(hours=23))
        async with maker() as db:
            out = await settle_checkin(db, user_id=uid, scanned_code=dest.qr_code, user_lat=MANILA[0], user_lon=MANILA[1], now=T0 + timedelta(hours=25))
        assert out.total_points == 100
        assert await _count_checkins(maker) == 2
        await assert_ledger_consistent(maker, uid)

    run_db(scenario)


def test_inactive_account_is_blocked(run_db):
    uid = uuid.uuid4()

    async def scenario(maker):
        async with maker() as db:
            dest = await seed_destination(db)
            db.add(UserAccount(id=uid, total_points=0, level=1, status=UserStatus.SUSPENDED))
            await db.commit()
        async with maker() as db:
            with pytest.raises(AccountInactiveError):
                await settle_checkin(db, user_id=uid, scanned_code=dest.qr_code, user_lat=MANILA[0], user_lon=MANILA[1])
        assert await _count_checkins(maker) == 0

    run_db(scenario)


def test_unknown_and_mismatched_codes(run_db):
    uid = uuid.uuid4()

    async def scenario(maker):
        async with maker() as db:
            dest = await seed_destination(db)
            other = await seed_destination(db, name="Fort Santiago")
        async with maker() as db:
            with pytest.raises(NotFoundError):
                await settle_checkin(db, user_id=uid, scanned_code="TRV-NOPE", user_lat=MANILA[0], user_lon=MANILA[1])
        async with maker() as db:
            with pytest.raises(InvalidCodeError):
                await settle_checkin(
                    db, user_id=uid, scanned_code=other.qr_code, destination_id=dest.id,
                    user_lat=MANILA[0], user_lon=MANILA[1],
                )
        assert await _count_checkins(maker) == 0

    run_db(scenario)


def test_inactive_destination_is_not_found(run_db):
    uid = uuid.uuid4()

    async def scenario(maker):
        async with maker() as db:
            dest = await seed_destination(db, status=DestinationStatus.INACTIVE)
        async with maker() as db:
            with pytest.raises(NotFoundError):
                await settle_checkin(db, user_id=uid, scanned_code=dest.qr_code, user_lat=MANILA[0], user_lon=MANILA[1])

    run_db(scenario)


def test_invalid_input_rejected_before_lookup(run_db):
    uid = uuid.uuid4()

    async def scenario(maker):
        async with maker() as db:
            with pytest.raises(ValidationError):
                await settle_checkin(db, user_id=uid, scanned_code="TRV-X", user_lat=120.0, user_lon=0)
            with pytest.raises(ValidationError):
                await settle_checkin(db, user_id=uid, scanned_code="   ", user_lat=0, user_lon=0)
        assert await account(maker, uid) is None

    run_db(scenario)


def test_largest_promotion_adds_bonus(run_db):
    uid = uuid.uuid4()

    async def scenario(maker):
        async with maker() as db:
            dest = await seed_destination(db)
            db.add_all([
                Promotion(name="Heritage month", bonus_points=20, category="heritage"),
                Promotion(name="Grand opening", bonus_points=35, destination_id=dest.id),
                Promotion(name="Beach week", bonus_points=80, category="beach"),
                Promotion(name="Expired", bonus_points=90, ends_at=T0 - timedelta(days=1)),
                Promotion(name="Paused", bonus_points=70, active=False),
            ])
            await db.commit()
        async with maker() as db:
            out = await settle_checkin(db, user_id=uid, scanned_code=dest.qr_code, user_lat=MANILA[0], user_lon=MANILA[1], now=T0)
        assert out.checkin.points_earned == 50
        assert out.checkin.bonus_points == 35
        assert out.points_earned == 85
        await assert_ledger_consistent(maker, uid)

    run_db(scenario)


def test_first_checkin_unlocks_badge_in_same_transaction(run_db):
    uid = uuid.uuid4()

    async def scenario(maker):
        async with maker() as db:
            dest = await seed_destination(db)
            badge = await seed_badge(db, points_reward=25)
        async with maker() as db:
            out = await settle_checkin(db, user_id=uid, scanned_code=dest.qr_code, user_lat=MANILA[0], user_lon=MANILA[1])
        assert [b.id for b in out.new_badges] == [badge.id]
        assert out.total_points == 75

        kinds = sorted(r.transaction_type.value for r in await ledger_rows(maker, uid))
        assert kinds == ["bonus", "earned"]
        await assert_ledger_consistent(maker, uid)

    run_db(scenario)


def test_level_follows_lifetime_points(run_db):
    uid = uuid.uuid4()

    async def scenario(maker):
        async with maker() as db:
            dest = await seed_destination(db, points_reward=600)
        async with maker() as db:
            await settle_checkin(db, user_id=uid, scanned_code=dest.qr_code, user_lat=MANILA[0], user_lon=MANILA[1])
        assert (await account(maker, uid)).level == 2

    run_db(scenario)


def test_concurrent_checkins_for_different_users(run_db):
    alice, bob = uuid.uuid4(), uuid.uuid4()

    async def scenario(maker):
        async with maker() as db:
            dest = await seed_destination(db)

        async def visit(uid):
            async with maker() as db:
                return await settle_checkin(db, user_id=uid, scanned_code=dest.qr_code, user_lat=MANILA[0], user_lon=MANILA[1])

        a, b = await asyncio.gather(visit(alice), visit(bob))
        assert a.total_points == b.total_points == 50
        assert (await account(maker, alice)).total_points == 50
        assert (await account(maker, bob)).total_points == 50
        assert (await reload(maker, Destination, dest.id)).total_visits == 2
        await assert_ledger_consistent(maker, alice)
        await assert_ledger_consistent(maker, bob)

    run_db(scenario)


def test_concurrent_first_checkins_for_same_user(run_db):
    uid = uuid.uuid4()

    async def scenario(maker):
        async with maker() as db:
            first = await seed_destination(db)
            second = await seed_destination(db, name="Fort Santiago")

        async def visit(dest):
            async with maker() as db:
                return await settle_checkin(db, user_id=uid, scanned_code=dest.qr_code, user_lat=MANILA[0], user_lon=MANILA[1])

        a, b = await asyncio.gather(visit(first), visit(second))
        assert sorted([a.total_points, b.total_points]) == [50, 100]
        assert (await account(maker, uid)).total_points == 100
        assert await _count_checkins(maker) == 2
        await assert_ledger_consistent(maker, uid)

    run_db(scenario)


def test_badge_failure_rolls_back_checkin_and_points(run_db, monkeypatch):
    uid = uuid.uuid4()

    async def broken(db, user_id, *, now=None):
        raise RuntimeError("badge rules unavailable")

    monkeypatch.setattr(checkins, "evaluate_and_award", broken)

    async def scenario(maker):
        async with maker() as db:
            dest = await seed_destination(db)
        async with maker() as db:
            with pytest.raises(RuntimeError):
                await settle_checkin(db, user_id=uid, scanned_code=dest.qr_code, user_lat=MANILA[0], user_lon=MANILA[1])
        assert await _count_checkins(maker) == 0
        assert await ledger_rows(maker, uid) == []
        assert (await reload(maker, Destination, dest.id)).total_visits == 0
        await assert_ledger_consistent(maker, uid)

    run_db(scenario)


def test_storage_error_surfaces_as_transaction_failure(run_db, monkeypatch):
    uid = uuid.uuid4()

    async def failing_flush(self, objects=None):
        raise OperationalError("INSERT INTO check_ins", {}, Exception("disk I/O error"))

    async def scenario(maker):
        async with maker() as db:
            dest = await seed_destination(db)
        monkeypatch.setattr(AsyncSession, "flush", failing_flush)
        async with maker() as db:
            with pytest.raises(TransactionFailure):
                await settle_checkin(db, user_id=uid, scanned_code=dest.qr_code, user_lat=MANILA[0], user_lon=MANILA[1])
        monkeypatch.undo()
        assert await _count_checkins(maker) == 0
        assert await ledger_rows(maker, uid) == []

    run_db(scenario)


def test_stats_by_day_week_and_month(run_db):
    uid = uuid.uuid4()
    # T0 is Sunday 2026-03-01; the ISO week started on Monday 2026-02-23
    visits = [T0 - timedelta(days=9), T0 - timedelta(days=2), T0 - timedelta(days=1), T0]

    async def scenario(maker):
        async with maker() as db:
            dests = [await seed_destination(db, name=f"Stop {i}") for i in range(len(visits))]
        for dest, when in zip(dests, visits):
            async with maker() as db:
                await settle_checkin(db, user_id=uid, scanned_code=dest.qr_code, user_lat=MANILA[0], user_lon=MANILA[1], now=when)
        async with maker() as db:
            stats = await checkin_stats(db, uid, now=T0 + timedelta(hours=2))
        assert stats.model_dump() == {
            "today": 1, "this_week": 3, "this_month": 1, "all_time": 4,
            "total_points": 200, "badges_earned": 0, "current_streak": 3,
        }

    run_db(scenario)
