import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Union

from classifier import STATUS_EXEC_READY, Candidate
from health_engine import BestAssets
from orders import NONCES, NonceSource, Order, encode_path, fresh_deadline
from state_store import CANDIDATES_KEY, PLAN_KEY, JsonFileStore, utc_now_iso

logger = logging.getLogger("Planner")

ACTION_EXEC = "EXEC"
ACTION_WATCH = "WATCH"

NOTE_ORDER_BUILT = "EXEC_READY_ORDER_BUILT"
NOTE_MISSING_BEST_ASSETS = "MISSING_BEST_ASSETS"
NOTE_MISSING_DEBT_AMOUNT = "MISSING_DEBT_AMOUNT"

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

AssetResolver = Callable[[str], Awaitable[Optional[BestAssets]]]


@dataclass
class WatchNote:
    """Non-actionable outcome, kept for observability."""
    candidate_id: str
    borrower: str
    health_factor: float
    proximity: float
    note: str


@dataclass
class PlanItem:
    candidate_id: str
    borrower: str
    action: str
    passed: bool
    note: str
    health_factor: float
    proximity: float
    expected_profit_usd: float = 0.0
    order: Optional[Order] = None

    def to_dict(self) -> dict:
        data = {
            "candidateId": self.candidate_id,
            "borrower": self.borrower,
            "action": self.action,
            "pass": self.passed,
            "note": self.note,
            "healthFactor": self.health_factor,
            "proximity": self.proximity,
            "expectedProfitUsd": self.expected_profit_usd,
        }
        if self.order is not None:
            data["order"] = self.order.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "PlanItem":
        order = data.get("order")
        return cls(
            candidate_id=data.get("candidateId", ""),
            borrower=data["borrower"],
            action=data.get("action", ACTION_WATCH),
            passed=bool(data.get("pass", False)),
            note=data.get("note", ""),
            health_factor=float(data.get("healthFactor", 0.0)),
            proximity=float(data.get("proximity", 0.0)),
            expected_profit_usd=float(data.get("expectedProfitUsd", 0.0)),
            order=Order.from_dict(order) if order else None,
        )


@dataclass
class OrderPlan:
    generated_at: str
    items: List[PlanItem] = field(default_factory=list)

    @property
    def exec_built(self) -> int:
        return sum(1 for item in self.items if item.action == ACTION_EXEC)

    def to_dict(self) -> dict:
        return {
            "generatedAt": self.generated_at,
            "execBuilt": self.exec_built,
            "items": [item.to_dict() for item in self.items],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "OrderPlan":
        return cls(
            generated_at=data.get("generatedAt", ""),
            items=[PlanItem.from_dict(item) for item in data.get("items", [])],
        )


def _missing(address: Optional[str]) -> bool:
    return not address or address.lower() == ZERO_ADDRESS


class Planner:
    """Turns exec-ready candidates into fully specified liquidation orders."""

    def __init__(self, settings, asset_resolver: Optional[AssetResolver] = None, nonces: NonceSource = NONCES):
        self.settings = settings
        self.asset_resolver = asset_resolver
        self.nonces = nonces

    def expected_profit_usd(self, candidate: Candidate) -> float:
        return candidate.debt_usd * self.settings.close_factor * self.settings.liquidation_bonus

    def _note(self, candidate: Candidate, note: str) -> WatchNote:
        return WatchNote(candidate.id, candidate.borrower, candidate.health_factor, candidate.proximity, note)

    async def _resolve(self, candidate: Candidate):
        debt, collateral, amount = candidate.best_debt_asset, candidate.best_collateral_asset, candidate.best_debt_amount
        if (_missing(debt) or _missing(collateral)) and self.asset_resolver is not None:
            try:
                best = await self.asset_resolver(candidate.borrower)
            except Exception as e:
                logger.warning(f"⚠️ JIT asset lookup failed for {candidate.borrower}: {e}")
                best = None
            if best is not None:
                debt, collateral, amount = best.debt_asset, best.collateral_asset, best.debt_amount
        return debt, collateral, amount

    async def plan(self, candidate: Candidate) -> Union[Order, WatchNote]:
        if candidate.status != STATUS_EXEC_READY:
            return self._note(candidate, f"HF={candidate.health_factor:.4f}")

        debt, collateral, amount = await self._resolve(candidate)
        if _missing(debt) or _missing(collateral):
            return self._note(candidate, NOTE_MISSING_BEST_ASSETS)
        if not amount or amount // 2 == 0:
            return self._note(candidate, NOTE_MISSING_DEBT_AMOUNT)

        return Order(
            debt_asset=debt,
            collateral_asset=collateral,
            borrower=candidate.borrower,
            repay_amount=amount // 2,
            uni_path=encode_path([collateral, debt], [self.settings.swap_fee_tier]),
            # No quoting: the settlement contract enforces profitability on-chain.
            amount_out_min=0,
            min_profit=0,
            deadline=fresh_deadline(self.settings.order_deadline_sec),
            max_tx_gas_price=self.settings.max_gas_price_wei,
            referral_code=self.settings.referral_code,
            nonce=self.nonces.next(),
        )

    async def plan_cycle(self, candidates: List[Candidate]) -> OrderPlan:
        plan = OrderPlan(generated_at=utc_now_iso())
        for candidate in candidates:
            outcome = await self.plan(candidate)
            if isinstance(outcome, Order):
                plan.items.append(PlanItem(
                    candidate_id=candidate.id,
                    borrower=candidate.borrower,
                    action=ACTION_EXEC,
                    passed=True,
                    note=NOTE_ORDER_BUILT,
                    health_factor=candidate.health_factor,
                    proximity=candidate.proximity,
                    expected_profit_usd=self.expected_profit_usd(candidate),
                    order=outcome,
                ))
            else:
                plan.items.append(PlanItem(
                    candidate_id=outcome.candidate_id,
                    borrower=outcome.borrower,
                    action=ACTION_WATCH,
                    passed=False,
                    note=outcome.note,
                    health_factor=outcome.health_factor,
                    proximity=outcome.proximity,
                    expected_profit_usd=self.expected_profit_usd(candidate),
                ))
        logger.info(f"📝 Plan generated | candidates={len(candidates)} | execBuilt={plan.exec_built}")
        return plan

    def publish(self, store: JsonFileStore, plan: OrderPlan):
        store.put(PLAN_KEY, plan.to_dict())


async def load_candidates(store: JsonFileStore) -> List[Candidate]:
    candidates = []
    for record in await store.aget(CANDIDATES_KEY, []):
        try:
            candidates.append(Candidate.from_dict(record))
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"⚠️ Skipping malformed candidate record: {e}")
    return candidates


async def main():
    from config import configure_logging, load_settings
    from health_engine import HealthEngine
    from rpc_manager import AsyncRPCManager

    settings = load_settings()
    configure_logging(settings.log_file)
    store = JsonFileStore(settings.data_dir)
    rpc = AsyncRPCManager.from_settings(settings)
    engine = HealthEngine(settings, rpc)
    planner = Planner(settings, asset_resolver=engine.resolve_best_assets)
    try:
        plan = await planner.plan_cycle(await load_candidates(store))
        planner.publish(store, plan)
    finally:
        await rpc.close()


if __name__ == "__main__":
    asyncio.run(main())
