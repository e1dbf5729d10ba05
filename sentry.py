import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import db_manager
from blacklist import BlacklistStore
from classifier import STATUS_EXEC_READY, Candidate, classify, summarize
from health_engine import HealthEngine
from notifier import TelegramNotifier
from state_store import CANDIDATES_KEY, JsonFileStore, SyncStateStore, utc_now_iso

logger = logging.getLogger("Sentry")

PHASE_IDLE = "IDLE"
PHASE_DISCOVER = "DISCOVER"
PHASE_EVALUATE = "EVALUATE"
PHASE_PUBLISH = "PUBLISH"
PHASE_SLEEP = "SLEEP"


@dataclass
class SchedulerState:
    """Everything the sentry loop carries between cycles."""
    universe: List[str] = field(default_factory=list)
    priority: Dict[str, float] = field(default_factory=dict)  # account -> last HF below warning
    cursor: int = 0
    cycle: int = 0
    phase: str = PHASE_IDLE


@dataclass
class CycleReport:
    cycle: int
    evaluated: int = 0
    rotation: int = 0
    skipped_blacklisted: int = 0
    priority_count: int = 0
    active_priority: int = 0  # priority accounts not under a blacklist cooldown
    candidates: List[Candidate] = field(default_factory=list)
    tiers: Dict[str, int] = field(default_factory=dict)
    elapsed_ms: float = 0.0
    sleep_seconds: float = 0.0

    @property
    def exec_ready(self) -> List[Candidate]:
        return [c for c in self.candidates if c.status == STATUS_EXEC_READY]


def merge_accounts(existing: List[str], incoming: List[str]) -> List[str]:
    """Order-preserving union; never drops anything from `existing`."""
    known = set(existing)
    merged = list(existing)
    for account in incoming:
        if account not in known:
            known.add(account)
            merged.append(account)
    return merged


def next_rotation_chunk(state: SchedulerState, size: int) -> List[str]:
    total = len(state.universe)
    if total == 0 or size <= 0:
        return []
    size = min(size, total)
    start = state.cursor % total
    chunk = [state.universe[(start + i) % total] for i in range(size)]
    state.cursor = (start + size) % total
    return chunk


class SentryScheduler:
    """
    Blends the priority set with a rotating slice of the universe every cycle.

    IDLE -> DISCOVER -> EVALUATE -> PUBLISH -> SLEEP -> DISCOVER ...
    """

    def __init__(
        self,
        settings,
        store: JsonFileStore,
        engine: HealthEngine,
        blacklist: BlacklistStore,
        scanner=None,
        notifier: Optional[TelegramNotifier] = None,
    ):
        self.settings = settings
        self.store = store
        self.sync_state = SyncStateStore(store)
        self.engine = engine
        self.blacklist = blacklist
        self.scanner = scanner
        self.notifier = notifier or TelegramNotifier()

    # --- DISCOVER ---

    async def discover(self, state: SchedulerState):
        state.phase = PHASE_DISCOVER
        if self.scanner is not None:
            result = await self.scanner.scan_once()
            if result.new_accounts:
                state.universe = merge_accounts(state.universe, result.new_accounts)

        reload_every = max(1, self.settings.universe_reload_cycles)
        if state.cycle % reload_every == 0:
            persisted = await self.sync_state.aload_universe()
            before = len(state.universe)
            state.universe = merge_accounts(state.universe, persisted)
            if len(state.universe) != before:
                logger.info(f"🔄 Universe reloaded: {before} -> {len(state.universe)} accounts")

    # --- EVALUATE ---

    async def evaluate(self, state: SchedulerState, report: CycleReport) -> List[Candidate]:
        state.phase = PHASE_EVALUATE
        rotation = next_rotation_chunk(state, self.settings.rotation_chunk_size)
        blocked = self.blacklist.active()

        targets = merge_accounts(list(state.priority), rotation)
        eval_set = [account for account in targets if account.lower() not in blocked]
        report.rotation = len(rotation)
        report.skipped_blacklisted = len(targets) - len(eval_set)
        report.evaluated = len(eval_set)

        snapshots = await self.engine.evaluate(eval_set) if eval_set else {}
        for account, snapshot in snapshots.items():
            # Failed reads keep whatever membership the account already had
            if snapshot is None:
                continue
            if snapshot.health_factor < self.settings.hf_warning:
                state.priority[account] = snapshot.health_factor
            else:
                state.priority.pop(account, None)
        report.active_priority = sum(1 for account in state.priority if account.lower() not in blocked)

        report.tiers = summarize(snapshots.values(), self.settings)
        timestamp = utc_now_iso()
        candidates = [
            candidate for candidate in (
                classify(snapshot, self.settings, timestamp) for snapshot in snapshots.values() if snapshot
            ) if candidate
        ]
        candidates.sort(key=lambda c: c.proximity, reverse=True)
        return candidates

    # --- PUBLISH ---

    async def publish(self, state: SchedulerState, report: CycleReport):
        state.phase = PHASE_PUBLISH
        self.store.put(CANDIDATES_KEY, [candidate.to_dict() for candidate in report.candidates])

        db_manager.update_live_targets(report.candidates)
        db_manager.log_sentry_metric(
            state.cycle, report.evaluated, len(state.priority),
            len(report.candidates), len(report.exec_ready), report.elapsed_ms,
        )

        for candidate in report.exec_ready:
            logger.info(f"💀 EXEC READY: {candidate.borrower} (HF: {candidate.health_factor:.4f}, debt ${candidate.debt_usd:,.2f})")
            await self.notifier.send_async(
                f"💀 <b>EXEC READY</b> <code>{candidate.borrower}</code>\n"
                f"❤️ HF: {candidate.health_factor:.4f}\n"
                f"💰 Debt: ${candidate.debt_usd:,.2f}",
                is_error=True,
            )

    async def step(self, state: SchedulerState) -> CycleReport:
        """Runs one full cycle and returns its report; the caller does the sleeping."""
        start = time.time()
        report = CycleReport(cycle=state.cycle)

        await self.discover(state)
        report.candidates = await self.evaluate(state, report)
        report.priority_count = len(state.priority)
        report.elapsed_ms = (time.time() - start) * 1000
        await self.publish(state, report)

        state.phase = PHASE_SLEEP
        report.sleep_seconds = self.settings.sentry_sleep_fast if report.active_priority else self.settings.sentry_sleep_slow
        tiers = report.tiers
        logger.info(
            f"🛰️ Cycle {state.cycle} | eval {report.evaluated} (rot {report.rotation}, bl {report.skipped_blacklisted}) | "
            f"safe {tiers.get('safe', 0)} watch {tiers.get('watch', 0)} risk {tiers.get('risk', 0)} "
            f"liq {tiers.get('liquidatable', 0)} fail {tiers.get('failed', 0)} | "
            f"prio {report.priority_count} | cand {len(report.candidates)} | {report.elapsed_ms:.0f}ms | "
            f"sleep {report.sleep_seconds:.0f}s"
        )
        state.cycle += 1
        return report

    async def run_forever(self, state: Optional[SchedulerState] = None):
        state = state or SchedulerState()
        logger.info(f"🛰️ Sentry started on {self.settings.chain_name} (discovery={'on' if self.scanner else 'off'})")
        while True:
            sleep_seconds = self.settings.sentry_sleep_slow
            try:
                report = await self.step(state)
                sleep_seconds = report.sleep_seconds
            except Exception as e:
                logger.error(f"❌ Sentry cycle {state.cycle} failed in {state.phase}: {e}")
                db_manager.log_event("ERROR", f"Sentry cycle failed in {state.phase}: {e}")
                state.cycle += 1
                state.phase = PHASE_SLEEP
            await asyncio.sleep(sleep_seconds)


async def main():
    from config import configure_logging, load_settings
    from discovery_scanner import DiscoveryScanner
    from rpc_manager import AsyncRPCManager

    settings = load_settings()
    configure_logging(settings.log_file)
    db_manager.init_db(settings.db_file)

    rpc = AsyncRPCManager.from_settings(settings)
    await rpc.connect()
    store = JsonFileStore(settings.data_dir)
    notifier = TelegramNotifier.from_settings(settings)
    scanner = None
    if settings.sentry_discovery:
        scanner = DiscoveryScanner(SyncStateStore(store), rpc, settings, notifier)

    sentry = SentryScheduler(
        settings,
        store,
        HealthEngine(settings, rpc),
        BlacklistStore(store, settings.blacklist_cooldown_sec),
        scanner=scanner,
        notifier=notifier,
    )
    try:
        await sentry.run_forever()
    finally:
        await rpc.close()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("🛑 Sentry Stopped.")
