from dataclasses import dataclass
from typing import Dict, Iterable, Optional

from health_engine import HealthSnapshot
from state_store import utc_now_iso

STATUS_WATCH = "watch"
STATUS_EXEC_READY = "exec_ready"

TIER_SAFE = "safe"
TIER_WATCH = "watch"
TIER_RISK = "risk"
TIER_LIQUIDATABLE = "liquidatable"

PROTOCOL_TAG = "aave"
ZERO_HF_PROXIMITY = 100.0


@dataclass
class Candidate:
    id: str
    borrower: str
    health_factor: float
    proximity: float
    collateral_usd: float
    debt_usd: float
    status: str
    timestamp: str
    best_debt_asset: Optional[str] = None
    best_collateral_asset: Optional[str] = None
    best_debt_amount: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "borrower": self.borrower,
            "healthFactor": self.health_factor,
            "proximity": self.proximity,
            "collateralUSD": self.collateral_usd,
            "debtUSD": self.debt_usd,
            "bestDebtAsset": self.best_debt_asset,
            "bestCollateralAsset": self.best_collateral_asset,
            "bestDebtAmount": str(self.best_debt_amount) if self.best_debt_amount is not None else None,
            "status": self.status,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Candidate":
        amount = data.get("bestDebtAmount")
        return cls(
            id=data["id"],
            borrower=data["borrower"],
            health_factor=float(data["healthFactor"]),
            proximity=float(data.get("proximity", 0.0)),
            collateral_usd=float(data.get("collateralUSD", 0.0)),
            debt_usd=float(data.get("debtUSD", 0.0)),
            status=data["status"],
            timestamp=data.get("timestamp", ""),
            best_debt_asset=data.get("bestDebtAsset"),
            best_collateral_asset=data.get("bestCollateralAsset"),
            best_debt_amount=int(amount) if amount not in (None, "") else None,
        )


def candidate_id(chain_id: int, account: str) -> str:
    return f"{chain_id}|{account}|{PROTOCOL_TAG}"


def proximity(health_factor: float) -> float:
    """Ranking score only; larger means closer to (or deeper into) liquidation."""
    if health_factor <= 0:
        return ZERO_HF_PROXIMITY
    return 1.0 / health_factor


def health_tier(health_factor: float, hf_exec: float = 1.0, hf_watch: float = 1.1, hf_warning: float = 1.5) -> str:
    if health_factor < hf_exec:
        return TIER_LIQUIDATABLE
    if health_factor < hf_watch:
        return TIER_RISK
    if health_factor < hf_warning:
        return TIER_WATCH
    return TIER_SAFE


def classify(snapshot: HealthSnapshot, settings, timestamp: Optional[str] = None) -> Optional[Candidate]:
    """Maps a snapshot to a candidate, or None when it is healthy or dust."""
    hf = snapshot.health_factor
    if hf >= settings.hf_watch:
        return None
    if snapshot.debt_usd < settings.dust_usd:
        return None

    status = STATUS_EXEC_READY if hf < settings.hf_exec else STATUS_WATCH
    return Candidate(
        id=candidate_id(settings.chain_id, snapshot.account),
        borrower=snapshot.account,
        health_factor=hf,
        proximity=proximity(hf),
        collateral_usd=snapshot.collateral_usd,
        debt_usd=snapshot.debt_usd,
        status=status,
        timestamp=timestamp or utc_now_iso(),
        best_debt_asset=snapshot.best_debt_asset,
        best_collateral_asset=snapshot.best_collateral_asset,
        best_debt_amount=snapshot.best_debt_amount,
    )


def summarize(snapshots: Iterable[Optional[HealthSnapshot]], settings) -> Dict[str, int]:
    counts = {TIER_SAFE: 0, TIER_WATCH: 0, TIER_RISK: 0, TIER_LIQUIDATABLE: 0, "failed": 0}
    for snapshot in snapshots:
        if snapshot is None:
            counts["failed"] += 1
            continue
        counts[health_tier(snapshot.health_factor, settings.hf_exec, settings.hf_watch, settings.hf_warning)] += 1
    return counts
