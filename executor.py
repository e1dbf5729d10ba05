import asyncio
import datetime
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from web3 import AsyncWeb3, Web3

import db_manager
from blacklist import BlacklistStore
from exceptions import GasPriceTooHigh, SimulationReverted, StalePlanError
from notifier import TelegramNotifier
from orders import NONCES, NonceSource, Order
from planner import ACTION_EXEC, OrderPlan, PlanItem
from state_store import EXEC_RESULT_KEY, PLAN_KEY, JsonFileStore, utc_now_iso

logger = logging.getLogger("Executor")

SKIP_HEALTHY = "SKIP_HEALTHY"
FAIL = "FAIL"
HEALTHY_MARKERS = ("health factor", "healthy", "no collateral")

GAS_LIMIT_BUFFER = 1.2

EXECUTOR_ABI = [
    {
        "type": "function",
        "name": "execute",
        "stateMutability": "nonpayable",
        "inputs": [
            {
                "name": "order",
                "type": "tuple",
                "components": [
                    {"name": "debtAsset", "type": "address"},
                    {"name": "collateralAsset", "type": "address"},
                    {"name": "borrower", "type": "address"},
                    {"name": "repayAmount", "type": "uint256"},
                    {"name": "uniPath", "type": "bytes"},
                    {"name": "amountOutMin", "type": "uint256"},
                    {"name": "minProfit", "type": "uint256"},
                    {"name": "deadline", "type": "uint256"},
                    {"name": "maxTxGasPrice", "type": "uint256"},
                    {"name": "referralCode", "type": "uint16"},
                    {"name": "nonce", "type": "uint256"},
                ],
            }
        ],
        "outputs": [],
    }
]


def classify_error(error) -> str:
    """SKIP_HEALTHY when the position is not (or no longer) liquidatable, FAIL for anything else."""
    message = str(error).lower()
    if any(marker in message for marker in HEALTHY_MARKERS):
        return SKIP_HEALTHY
    return FAIL


def priority_fee_wei(profit_usd: float, settings) -> int:
    """
    Profit-share tip heuristic, not a market-clearing bid.

    Offer `bid_profit_share` of the expected profit, capped at `bid_cap_usd`,
    converted to gwei at the configured `gwei_per_usd` rate and floored at
    `bid_floor_gwei`.
    """
    fee_usd = min(max(profit_usd, 0.0) * settings.bid_profit_share, settings.bid_cap_usd)
    gwei = max(fee_usd * settings.gwei_per_usd, settings.bid_floor_gwei)
    return int(Web3.to_wei(Decimal(str(gwei)), "gwei"))


def plan_age_seconds(generated_at: str, now: Optional[datetime.datetime] = None) -> float:
    try:
        generated = datetime.datetime.fromisoformat(generated_at.replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        return float("inf")
    if generated.tzinfo is None:
        generated = generated.replace(tzinfo=datetime.timezone.utc)
    now = now or datetime.datetime.now(datetime.timezone.utc)
    return (now - generated).total_seconds()


@dataclass
class ExecutionResult:
    generated_at: str
    borrower: str
    candidate_id: str
    transaction_reference: str
    expected_profit_usd: float
    priority_fee_wei: int

    def to_dict(self) -> dict:
        return {
            "generatedAt": self.generated_at,
            "borrower": self.borrower,
            "candidateId": self.candidate_id,
            "transactionReference": self.transaction_reference,
            "expectedProfitUsd": self.expected_profit_usd,
            "priorityFeeWei": str(self.priority_fee_wei),
        }


class SettlementContract:
    """Thin adapter over the on-chain executor's single `execute(order)` entry point."""

    def __init__(self, w3: AsyncWeb3, address: str, private_key: str, chain_id: int):
        self.w3 = w3
        self.chain_id = chain_id
        self.contract = w3.eth.contract(address=Web3.to_checksum_address(address), abi=EXECUTOR_ABI)
        self.account = w3.eth.account.from_key(private_key)
        self.nonce_lock = asyncio.Lock()

    async def gas_price(self) -> int:
        return await self.w3.eth.gas_price

    async def simulate(self, order: Order) -> int:
        """eth_call dry run; raises on revert. Returns a buffered gas limit."""
        tx_func = self.contract.functions.execute(order.to_tuple())
        await tx_func.call({"from": self.account.address})
        gas_est = await tx_func.estimate_gas({"from": self.account.address})
        return int(gas_est * GAS_LIMIT_BUFFER)

    async def broadcast(self, order: Order, gas_limit: int, priority_fee: int) -> str:
        tx_func = self.contract.functions.execute(order.to_tuple())
        async with self.nonce_lock:
            nonce = await self.w3.eth.get_transaction_count(self.account.address, "pending")
            block = await self.w3.eth.get_block("latest")
            max_fee = block["baseFeePerGas"] * 2 + priority_fee
            if order.max_tx_gas_price:
                max_fee = min(max_fee, order.max_tx_gas_price)
            tx = await tx_func.build_transaction({
                "from": self.account.address,
                "nonce": nonce,
                "maxFeePerGas": max_fee,
                "maxPriorityFeePerGas": min(priority_fee, max_fee),
                "gas": gas_limit,
                "chainId": self.chain_id,
            })
            signed = self.account.sign_transaction(tx)
            tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        return Web3.to_hex(tx_hash)


class ExecutionSafetyLayer:
    """
    One execution attempt per cycle over the latest published plan.

    Orders are tried best-profit first; anything that fails simulation or
    broadcast blacklists its borrower and the next order is tried. The cycle
    stops at the first successful broadcast.
    """

    def __init__(
        self,
        settings,
        store: JsonFileStore,
        settlement,
        blacklist: BlacklistStore,
        notifier: Optional[TelegramNotifier] = None,
        health_engine=None,
        nonces: NonceSource = NONCES,
    ):
        self.settings = settings
        self.store = store
        self.settlement = settlement
        self.blacklist = blacklist
        self.notifier = notifier or TelegramNotifier()
        self.health_engine = health_engine
        self.nonces = nonces

    def check_staleness(self, plan: OrderPlan, now: Optional[datetime.datetime] = None):
        age = plan_age_seconds(plan.generated_at, now)
        if age > self.settings.plan_max_age_sec:
            raise StalePlanError(age, self.settings.plan_max_age_sec)

    def gas_cap(self, order: Order) -> int:
        return order.max_tx_gas_price or self.settings.max_gas_price_wei

    async def gas_guard(self, order: Order):
        cap = self.gas_cap(order)
        if not cap:
            return
        gas_price = await self.settlement.gas_price()
        if gas_price > cap:
            raise GasPriceTooHigh(gas_price, cap)

    async def _forensics(self, borrower: str):
        if self.health_engine is None:
            return
        try:
            snapshot = (await self.health_engine.evaluate([borrower])).get(borrower)
        except Exception as e:
            logger.error(f"FORENSIC: failed to read {borrower}: {e}")
            return
        if snapshot is None:
            logger.warning(f"FORENSIC: could not fetch account data for {borrower}")
            return
        logger.info(
            f"FORENSIC: {borrower} HF {snapshot.health_factor:.4f} | "
            f"collateral ${snapshot.collateral_usd:,.2f} | debt ${snapshot.debt_usd:,.2f}"
        )

    async def _reject(self, item: PlanItem, error: SimulationReverted, stage: str):
        if error.kind == SKIP_HEALTHY:
            logger.warning(f"⏭️ {stage}: {item.borrower} healthy or no collateral, checking on-chain data...")
            await self._forensics(item.borrower)
        else:
            logger.warning(f"❌ {stage} failed for {item.candidate_id}: {error.reason[:500]}")
        self.blacklist.add(item.borrower, reason=f"{stage} {error.kind}")

    async def execute_cycle(self, now: Optional[datetime.datetime] = None) -> Optional[ExecutionResult]:
        raw = await self.store.aget(PLAN_KEY)
        if not raw:
            logger.info("💤 exec: no plan published yet")
            return None
        plan = OrderPlan.from_dict(raw)

        try:
            self.check_staleness(plan, now)
        except StalePlanError as e:
            logger.error(f"🛑 exec: plan is STALE, aborting cycle ({e})")
            return None

        execs = sorted(
            (item for item in plan.items if item.action == ACTION_EXEC and item.passed and item.order is not None),
            key=lambda item: item.expected_profit_usd,
            reverse=True,
        )
        if not execs:
            logger.info("💤 exec: nothing to execute (no EXEC+pass items with order)")
            return None

        tried = skipped_healthy = failed = gas_skipped = 0
        for item in execs:
            if self.blacklist.is_blacklisted(item.borrower):
                logger.info(f"🚫 exec: {item.borrower} is blacklisted, skipping")
                continue
            tried += 1

            try:
                await self.gas_guard(item.order)
            except GasPriceTooHigh as e:
                gas_skipped += 1
                logger.warning(f"⛽ exec: gas price too high for {item.borrower} ({e}), skipping")
                continue
            except Exception as e:
                logger.error(f"💥 exec: gas price unavailable, aborting cycle: {e}")
                return None

            order = item.order.refreshed(self.settings.order_deadline_sec, self.nonces)

            try:
                gas_limit = await self.settlement.simulate(order)
            except Exception as e:
                error = SimulationReverted(classify_error(e), str(e))
                if error.kind == SKIP_HEALTHY:
                    skipped_healthy += 1
                else:
                    failed += 1
                await self._reject(item, error, "simulate")
                continue

            priority_fee = priority_fee_wei(item.expected_profit_usd, self.settings)
            logger.info(
                f"⚔️ exec: bidding {priority_fee / 1e9:.4f} gwei priority on "
                f"~${item.expected_profit_usd:.2f} expected profit"
            )

            try:
                tx_ref = await self.settlement.broadcast(order, gas_limit, priority_fee)
            except Exception as e:
                failed += 1
                await self._reject(item, SimulationReverted(classify_error(e), str(e)), "broadcast")
                continue

            result = ExecutionResult(
                generated_at=utc_now_iso(),
                borrower=item.borrower,
                candidate_id=item.candidate_id,
                transaction_reference=tx_ref,
                expected_profit_usd=item.expected_profit_usd,
                priority_fee_wei=priority_fee,
            )
            self.store.put(EXEC_RESULT_KEY, result.to_dict())
            db_manager.record_execution(
                tx_ref, item.borrower, order.debt_asset, order.collateral_asset,
                item.expected_profit_usd, priority_fee,
            )
            logger.info(f"🔥 TX SENT: {tx_ref} | borrower {item.borrower}")
            await self.notifier.send_async(
                f"🚀 <b>Aave Liquidation Sent</b>\n"
                f"🎯 Target: <code>{item.borrower}</code>\n"
                f"💰 Expected: ~${item.expected_profit_usd:.2f}\n"
                f"🔗 <code>{tx_ref}</code>"
            )
            return result

        logger.info(
            f"exec: no executable order this cycle | tried={tried} healthy={skipped_healthy} "
            f"failed={failed} gas_skipped={gas_skipped}"
        )
        return None


async def main():
    from config import configure_logging, load_settings
    from health_engine import HealthEngine
    from rpc_manager import AsyncRPCManager

    settings = load_settings()
    configure_logging(settings.log_file)
    settings.validate_for_execution()
    db_manager.init_db(settings.db_file)

    rpc = AsyncRPCManager.from_settings(settings)
    w3 = await rpc.connect()
    store = JsonFileStore(settings.data_dir)
    layer = ExecutionSafetyLayer(
        settings,
        store,
        SettlementContract(w3, settings.executor_address, settings.private_key, settings.chain_id),
        BlacklistStore(store, settings.blacklist_cooldown_sec),
        notifier=TelegramNotifier.from_settings(settings),
        health_engine=HealthEngine(settings, rpc),
    )
    try:
        await layer.execute_cycle()
    finally:
        await rpc.close()


if __name__ == "__main__":
    asyncio.run(main())
