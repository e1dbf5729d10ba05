import datetime
import time

import pytest

from blacklist import BlacklistStore, now_ms
from executor import (
    FAIL,
    SKIP_HEALTHY,
    ExecutionSafetyLayer,
    classify_error,
    plan_age_seconds,
    priority_fee_wei,
)
from planner import Planner
from sentry import SchedulerState, SentryScheduler
from state_store import EXEC_RESULT_KEY
from tests.conftest import ALICE, BOB, CAROL
from tests.test_planner import with_assets
from tests.test_sentry import ScriptedEngine

TX_HASH = "0x" + "ab" * 32


class FakeSettlement:
    """Settlement contract double; reverts are keyed by borrower."""

    def __init__(self, gas_price=10 ** 8, sim_errors=None, broadcast_errors=None):
        self.gas = gas_price
        self.sim_errors = sim_errors or {}
        self.broadcast_errors = broadcast_errors or {}
        self.gas_checks = 0
        self.simulated = []
        self.broadcasts = []

    async def gas_price(self):
        self.gas_checks += 1
        return self.gas

    async def simulate(self, order):
        self.simulated.append(order)
        if order.borrower in self.sim_errors:
            raise ValueError(self.sim_errors[order.borrower])
        return 600_000

    async def broadcast(self, order, gas_limit, priority_fee):
        self.broadcasts.append((order, gas_limit, priority_fee))
        if order.borrower in self.broadcast_errors:
            raise ValueError(self.broadcast_errors[order.borrower])
        return TX_HASH


@pytest.fixture
def blacklist(store, settings):
    return BlacklistStore(store, settings.blacklist_cooldown_sec)


async def publish_plan(settings, store, candidates, generated_at=None):
    planner = Planner(settings)
    plan = await planner.plan_cycle(candidates)
    if generated_at is not None:
        plan.generated_at = generated_at
    planner.publish(store, plan)
    return plan


def iso_ago(seconds):
    return (datetime.datetime.now(datetime.timezone.utc) - datetime.timedelta(seconds=seconds)).isoformat()


def test_classify_error():
    assert classify_error(ValueError("execution reverted: position is healthy")) == SKIP_HEALTHY
    assert classify_error("Health factor not below threshold") == SKIP_HEALTHY
    assert classify_error("NO COLLATERAL available") == SKIP_HEALTHY
    assert classify_error("execution reverted: STF") == FAIL
    assert classify_error("") == FAIL


@pytest.mark.parametrize("profit,expected_wei", [
    (0.0, 100_000_000),
    (1.0, 100_000_000),
    (5.0, 300_000_000),
    (20.0, 1_200_000_000),
    (10_000.0, 1_200_000_000),
])
def test_priority_fee_heuristic(settings, profit, expected_wei):
    assert priority_fee_wei(profit, settings) == expected_wei


def test_plan_age_of_garbage_is_infinite():
    assert plan_age_seconds("not-a-date") == float("inf")
    assert plan_age_seconds(None) == float("inf")
    assert plan_age_seconds(iso_ago(30)) == pytest.approx(30, abs=2)


class TestExecuteCycle:

    @pytest.mark.asyncio
    async def test_stale_plan_aborts_before_simulating(self, settings, store, blacklist):
        await publish_plan(settings, store, [with_assets()], generated_at=iso_ago(120))
        settlement = FakeSettlement()
        layer = ExecutionSafetyLayer(settings, store, settlement, blacklist)

        assert await layer.execute_cycle() is None
        assert settlement.simulated == []
        assert settlement.gas_checks == 0
        assert store.get(EXEC_RESULT_KEY) is None

    @pytest.mark.asyncio
    async def test_unparsable_timestamp_counts_as_stale(self, settings, store, blacklist):
        await publish_plan(settings, store, [with_assets()], generated_at="yesterday-ish")
        settlement = FakeSettlement()
        assert await ExecutionSafetyLayer(settings, store, settlement, blacklist).execute_cycle() is None
        assert settlement.simulated == []

    @pytest.mark.asyncio
    async def test_no_plan_is_a_no_op(self, settings, store, blacklist):
        assert await ExecutionSafetyLayer(settings, store, FakeSettlement(), blacklist).execute_cycle() is None

    @pytest.mark.asyncio
    async def test_highest_profit_first_and_single_broadcast(self, settings, store, blacklist):
        await publish_plan(settings, store, [
            with_assets(account=ALICE, debt_usd=500.0),
            with_assets(account=BOB, debt_usd=2_000.0),
            with_assets(account=CAROL, debt_usd=1_000.0),
        ])
        settlement = FakeSettlement()

        result = await ExecutionSafetyLayer(settings, store, settlement, blacklist).execute_cycle()

        assert result.borrower == BOB
        assert [order.borrower for order, _, _ in settlement.broadcasts] == [BOB]
        written = store.get(EXEC_RESULT_KEY)
        assert written["borrower"] == BOB
        assert written["transactionReference"] == TX_HASH
        assert written["expectedProfitUsd"] == pytest.approx(2_000.0 * 0.5 * 0.05)
        assert int(written["priorityFeeWei"]) == priority_fee_wei(50.0, settings)

    @pytest.mark.asyncio
    async def test_deadline_and_nonce_refreshed_before_simulation(self, settings, store, blacklist):
        plan = await publish_plan(settings, store, [with_assets()])
        planned = plan.items[0].order
        settlement = FakeSettlement()
        time.sleep(0.002)

        await ExecutionSafetyLayer(settings, store, settlement, blacklist).execute_cycle()

        simulated = settlement.simulated[0]
        assert simulated.nonce > planned.nonce
        assert simulated.deadline >= int(time.time()) + settings.order_deadline_sec - 1
        assert settlement.broadcasts[0][0] is simulated

    @pytest.mark.asyncio
    async def test_healthy_revert_blacklists_and_moves_on(self, settings, store, blacklist):
        await publish_plan(settings, store, [
            with_assets(account=ALICE, debt_usd=5_000.0),
            with_assets(account=BOB, debt_usd=500.0),
        ])
        settlement = FakeSettlement(sim_errors={ALICE: "execution reverted: position is healthy"})
        before = now_ms()

        result = await ExecutionSafetyLayer(settings, store, settlement, blacklist).execute_cycle()

        assert result.borrower == BOB
        expiry = blacklist.active()[ALICE.lower()]
        assert before + settings.blacklist_cooldown_sec * 1000 <= expiry <= now_ms() + settings.blacklist_cooldown_sec * 1000

    @pytest.mark.asyncio
    async def test_healthy_revert_excludes_account_from_next_sentry_cycle(self, settings, store, blacklist):
        await publish_plan(settings, store, [with_assets(account=ALICE)])
        settlement = FakeSettlement(sim_errors={ALICE: "position is healthy"})
        await ExecutionSafetyLayer(settings, store, settlement, blacklist).execute_cycle()

        engine = ScriptedEngine()
        scheduler = SentryScheduler(settings, store, engine, blacklist)
        await scheduler.step(SchedulerState(universe=[ALICE, BOB], priority={ALICE: 0.95}))

        assert engine.calls == [[BOB]]

    @pytest.mark.asyncio
    async def test_generic_failures_blacklist_too(self, settings, store, blacklist):
        await publish_plan(settings, store, [with_assets(account=ALICE), with_assets(account=BOB, debt_usd=100.0)])
        settlement = FakeSettlement(
            sim_errors={ALICE: "execution reverted: STF"},
            broadcast_errors={BOB: "nonce too low"},
        )

        assert await ExecutionSafetyLayer(settings, store, settlement, blacklist).execute_cycle() is None
        assert set(blacklist.active()) == {ALICE.lower(), BOB.lower()}
        assert store.get(EXEC_RESULT_KEY) is None

    @pytest.mark.asyncio
    async def test_gas_guard_skips_without_blacklisting(self, settings, store, blacklist):
        settings.max_gas_price_wei = 10 ** 9
        await publish_plan(settings, store, [with_assets()])
        settlement = FakeSettlement(gas_price=2 * 10 ** 9)

        assert await ExecutionSafetyLayer(settings, store, settlement, blacklist).execute_cycle() is None
        assert settlement.simulated == []
        assert blacklist.active() == {}

    @pytest.mark.asyncio
    async def test_global_gas_cap_applies_when_order_has_none(self, settings, store, blacklist):
        await publish_plan(settings, store, [with_assets()])
        settings.max_gas_price_wei = 10 ** 9
        settlement = FakeSettlement(gas_price=2 * 10 ** 9)

        assert await ExecutionSafetyLayer(settings, store, settlement, blacklist).execute_cycle() is None
        assert settlement.simulated == []

    @pytest.mark.asyncio
    async def test_zero_cap_disables_gas_guard(self, settings, store, blacklist):
        await publish_plan(settings, store, [with_assets()])
        settlement = FakeSettlement(gas_price=10 ** 12)

        assert await ExecutionSafetyLayer(settings, store, settlement, blacklist).execute_cycle() is not None
        assert settlement.gas_checks == 0

    @pytest.mark.asyncio
    async def test_blacklisted_borrowers_are_skipped(self, settings, store, blacklist):
        await publish_plan(settings, store, [with_assets(account=ALICE)])
        blacklist.add(ALICE)
        settlement = FakeSettlement()

        assert await ExecutionSafetyLayer(settings, store, settlement, blacklist).execute_cycle() is None
        assert settlement.simulated == []
