from __future__ import annotations

import uuid
from datetime import timedelta

import pytest

from travel_rewards.models import Redemption, RedemptionStatus, Reward
from travel_rewards.services import expiry
from travel_rewards.services.expiry import SWEEP_LOCK, expire_redemptions, run_expiry_sweep
from travel_rewards.services.redemptions import redeem_reward

from factories import FakeRedis, T0, account, assert_ledger_consistent, grant_points, reload, seed_reward


async def _two_redemptions(maker, uid):
    async with maker() as db:
        short = await seed_reward(db, title="Short", redemption_period_days=1, stock_quantity=2)
        long = await seed_reward(db, title="Long", redemption_period_days=30, stock_unlimited=True, stock_quantity=0)
        await grant_points(db, uid, 500)
    async with maker() as db:
        r1 = await redeem_reward(db, user_id=uid, reward_id=short.id, now=T0)
    async with maker() as db:
        r2 = await redeem_reward(db, user_id=uid, reward_id=long.id, now=T0)
    return short, long, r1, r2


def test_only_lapsed_redemptions_expire(run_db):
    uid = uuid.uuid4()

    async def scenario(maker):
        short, long, r1, r2 = await _two_redemptions(maker, uid)
        summary = await expire_redemptions(maker, now=T0 + timedelta(days=2))
        assert summary.as_dict() == {"succeeded": 1, "failed": 0, "skipped": 0}
        assert (await reload(maker, Redemption, r1.id)).status is RedemptionStatus.EXPIRED
        assert (await reload(maker, Redemption, r2.id)).status is RedemptionStatus.ACTIVE
        assert (await reload(maker, Reward, short.id)).stock_quantity == 2
        assert (await account(maker, uid)).total_points == 500 - 100
        await assert_ledger_consistent(maker, uid)

        again = await expire_redemptions(maker, now=T0 + timedelta(days=2))
        assert again.succeeded == 0
        assert (await account(maker, uid)).total_points == 400

    run_db(scenario)


def test_unlimited_reward_keeps_stock_on_expiry(run_db):
    uid = uuid.uuid4()

    async def scenario(maker):
        short, long, r1, r2 = await _two_redemptions(maker, uid)
        await expire_redemptions(maker, now=T0 + timedelta(days=31))
        r = await reload(maker, Reward, long.id)
        assert (r.stock_quantity, r.total_redeemed) == (0, 0)
        assert (await account(maker, uid)).total_points == 500
        await assert_ledger_consistent(maker, uid)

    run_db(scenario)


def test_one_failure_does_not_abort_the_batch(run_db, monkeypatch):
    uid = uuid.uuid4()
    real_expire_one = expiry.expire_one
    state = {}

    async def flaky(db, redemption_id, *, now):
        if redemption_id == state["bad"]:
            raise RuntimeError("disk on fire")
        return await real_expire_one(db, redemption_id, now=now)

    monkeypatch.setattr(expiry, "expire_one", flaky)

    async def scenario(maker):
        short, long, r1, r2 = await _two_redemptions(maker, uid)
        state["bad"] = r1.id
        summary = await expire_redemptions(maker, now=T0 + timedelta(days=60))
        assert (summary.succeeded, summary.failed) == (1, 1)
        assert summary.failures[0][0] == r1.id
        assert (await reload(maker, Redemption, r1.id)).status is RedemptionStatus.ACTIVE
        assert (await reload(maker, Redemption, r2.id)).status is RedemptionStatus.EXPIRED
        await assert_ledger_consistent(maker, uid)

    run_db(scenario)


def test_sweep_skips_when_lock_is_held(run_db):
    uid = uuid.uuid4()
    r = FakeRedis()
    r.store[SWEEP_LOCK] = "someone-else"

    async def scenario(maker):
        short, long, r1, r2 = await _two_redemptions(maker, uid)
        assert await run_expiry_sweep(maker, r, now=T0 + timedelta(days=60)) is None
        assert (await reload(maker, Redemption, r1.id)).status is RedemptionStatus.ACTIVE

    run_db(scenario)
    assert r.store[SWEEP_LOCK] == "someone-else"


def test_sweep_releases_its_lock(run_db):
    uid = uuid.uuid4()
    r = FakeRedis()

    async def scenario(maker):
        await _two_redemptions(maker, uid)
        summary = await run_expiry_sweep(maker, r, now=T0 + timedelta(days=60))
        assert summary.succeeded == 2

    run_db(scenario)
    assert SWEEP_LOCK not in r.store
    assert r.calls == ["set", "release"]


def test_sweep_runs_without_redis(run_db):
    uid = uuid.uuid4()

    async def scenario(maker):
        await _two_redemptions(maker, uid)
        summary = await run_expiry_sweep(maker, FakeRedis(fail=True), now=T0 + timedelta(days=60))
        assert summary.succeeded == 2
        await assert_ledger_consistent(maker, uid)

    run_db(scenario)


def test_sweep_finishes_when_its_lock_expired(run_db, monkeypatch):
    uid = uuid.uuid4()
    r = FakeRedis()
    real_expire = expiry.expire_redemptions

    async def slow_sweep(maker, *, now=None):
        summary = await real_expire(maker, now=now)
        # the lock ttl ran out and another replica took over
        r.store[SWEEP_LOCK] = "another-replica"
        return summary

    monkeypatch.setattr(expiry, "expire_redemptions", slow_sweep)

    async def scenario(maker):
        await _two_redemptions(maker, uid)
        summary = await run_expiry_sweep(maker, r, now=T0 + timedelta(days=60))
        assert summary.succeeded == 2

    run_db(scenario)
    assert r.store[SWEEP_LOCK] == "another-replica"
