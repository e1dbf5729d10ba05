import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from hexbytes import HexBytes
from web3 import Web3

from batching import gather_keyed
from exceptions import StoreReadError, TransportError
from notifier import TelegramNotifier
from state_store import SyncStateStore

logger = logging.getLogger("DiscoveryScanner")

MODE_BACKFILL = "BACKFILL"
MODE_FORWARD = "FORWARD"
MODE_IDLE = "IDLE"

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
ARBITRUM_BLOCK_TIME_SEC = 0.26


@dataclass
class ScanWindow:
    mode: str
    from_block: int
    to_block: int

    @property
    def size(self) -> int:
        return max(0, self.to_block - self.from_block + 1)


@dataclass
class ScanResult:
    window: Optional[ScanWindow]
    new_accounts: List[str] = field(default_factory=list)
    logs_seen: int = 0
    error: Optional[str] = None


def plan_window(
    tip: int,
    universe_size: int,
    forward_head: Optional[int],
    backfill_head: Optional[int],
    backfill_anchor: Optional[int],
    settings,
) -> ScanWindow:
    """
    Picks the one window to scan this cycle.

    A small universe mines history backward from the deepest block reached
    (never below the floor). Otherwise, or once backfill hits the floor, it
    follows the tip; a forward gap wider than `catchup_windows` windows is
    skipped rather than replayed.
    """
    window = settings.scan_window_blocks
    floor = settings.backfill_floor_block

    if universe_size < settings.backfill_universe_threshold:
        deep = backfill_head if backfill_head is not None else tip + 1
        to_block = deep - 1
        if to_block >= floor:
            return ScanWindow(MODE_BACKFILL, max(floor, to_block - window + 1), to_block)

    if forward_head is not None:
        from_block = forward_head + 1
    elif backfill_anchor is not None:
        from_block = backfill_anchor + 1
    else:
        from_block = tip - window + 1

    if tip - from_block + 1 > window * settings.catchup_windows:
        logger.info(f"⏩ Forward gap of {tip - from_block + 1} blocks, snapping to tip - {window}")
        from_block = tip - window + 1

    from_block = max(0, from_block)
    to_block = min(from_block + window - 1, tip)
    if from_block > to_block:
        return ScanWindow(MODE_IDLE, from_block, to_block)
    return ScanWindow(MODE_FORWARD, from_block, to_block)


def _topic_bytes(topic) -> bytes:
    if isinstance(topic, (bytes, bytearray)):
        return bytes(topic)
    return bytes(HexBytes(topic))


def extract_accounts(logs: Iterable[dict]) -> List[str]:
    """
    Pulls every address-sized value out of the indexed topics of raw logs.

    Topic 0 (the event signature) is skipped; every other non-zero 32-byte
    topic is trimmed to its low 20 bytes. No event ABI is needed, so Borrow,
    Supply, Repay, LiquidationCall and their per-deployment variants all
    contribute. Non-account values (reserves, referral codes) get through
    too; the health engine drops them later.
    """
    seen = set()
    accounts = []
    for log in logs:
        topics = log.get("topics") or []
        for topic in topics[1:]:
            try:
                raw = _topic_bytes(topic)
            except (TypeError, ValueError):
                continue
            if len(raw) != 32 or not any(raw):
                continue
            account = Web3.to_checksum_address("0x" + raw[-20:].hex())
            if account == ZERO_ADDRESS or account in seen:
                continue
            seen.add(account)
            accounts.append(account)
    return accounts


class DiscoveryScanner:
    """Grows the account universe one bounded block window per call."""

    def __init__(self, state: SyncStateStore, source, settings, notifier: Optional[TelegramNotifier] = None):
        self.state = state
        self.source = source
        self.settings = settings
        self.notifier = notifier or TelegramNotifier()
        self.rpc_was_down = False

    def _split(self, window: ScanWindow) -> List[tuple]:
        chunks = []
        chunk_start = window.from_block
        while chunk_start <= window.to_block:
            chunk_end = min(chunk_start + self.settings.log_chunk_blocks - 1, window.to_block)
            chunks.append((chunk_start, chunk_end))
            chunk_start = chunk_end + 1
        return chunks

    async def fetch_window(self, window: ScanWindow) -> List[dict]:
        """All pool logs in the window. Any failed sub-chunk fails the whole window."""
        address = self.settings.pool_address
        requests = {
            chunk: (lambda s=chunk[0], e=chunk[1]: self.source.get_logs(address, s, e))
            for chunk in self._split(window)
        }
        results = await gather_keyed(requests, self.settings.rpc_max_concurrency)

        logs = []
        for chunk in sorted(results):
            result = results[chunk]
            if not result.ok:
                raise TransportError(f"eth_getLogs {chunk[0]}-{chunk[1]} failed: {result.error}")
            logs.extend(result.value)
        return logs

    async def scan_once(self) -> ScanResult:
        try:
            tip = await self.source.block_number()
        except Exception as e:
            logger.error(f"💥 Discovery RPC down (reason=tip_unavailable): {e}")
            if not self.rpc_was_down:
                await self.notifier.send_async(f"⚠️ <b>Discovery RPC Down:</b>\n<code>{e}</code>", is_error=True)
                self.rpc_was_down = True
            return ScanResult(window=None, error=str(e))

        if self.rpc_was_down:
            await self.notifier.send_async(f"🟢 <b>Discovery RPC Restored</b> (Block {tip})")
            self.rpc_was_down = False

        universe_size = len(self.state.load_universe())
        window = plan_window(
            tip,
            universe_size,
            self.state.forward_head(),
            self.state.backfill_head(),
            self.state.backfill_anchor(),
            self.settings,
        )

        if window.mode == MODE_IDLE:
            logger.info(f"💤 Scan up to date at block {tip}")
            return ScanResult(window=window)

        blocks_ago = tip - window.from_block
        logger.info(
            f"🔍 Syncing events | mode={window.mode} | {window.from_block} -> {window.to_block} "
            f"({window.size} blocks, ~{blocks_ago * ARBITRUM_BLOCK_TIME_SEC / 3600:.1f}h ago) | known={universe_size}"
        )

        try:
            logs = await self.fetch_window(window)
        except Exception as e:
            # Pointers stay put; the same window is retried next cycle.
            logger.warning(f"⚠️ Window {window.from_block}-{window.to_block} aborted (reason=transport): {e}")
            return ScanResult(window=window, error=str(e))

        found = extract_accounts(logs)
        try:
            added = self.state.merge_universe(found)
            if window.mode == MODE_BACKFILL:
                anchor = self.state.backfill_anchor(strict=True)
                self.state.advance_backfill(window.from_block, self.settings.backfill_floor_block,
                                            anchor=anchor if anchor is not None else tip)
            else:
                self.state.advance_forward(window.to_block)
        except StoreReadError as e:
            # Nothing is overwritten and the pointers stay put; the window is retried next cycle.
            logger.error(f"💥 Window {window.from_block}-{window.to_block} not committed (reason=state_unreadable): {e}")
            return ScanResult(window=window, logs_seen=len(logs), error=str(e))

        if added:
            logger.info(f"✨ Universe expanded: +{len(added)} (total {universe_size + len(added)})")
        return ScanResult(window=window, new_accounts=added, logs_seen=len(logs))

    async def run_forever(self):
        logger.info("📡 Discovery scanner started.")
        while True:
            start = time.time()
            try:
                result = await self.scan_once()
                logger.info(
                    f"✅ Discovery cycle done in {time.time() - start:.1f}s | "
                    f"logs={result.logs_seen} | new={len(result.new_accounts)}"
                )
            except Exception as e:
                logger.error(f"❌ Discovery cycle error: {e}")
            await asyncio.sleep(self.settings.discovery_interval_sec)


async def main():
    from config import configure_logging, load_settings
    from rpc_manager import AsyncRPCManager
    from state_store import JsonFileStore

    settings = load_settings()
    configure_logging(settings.log_file)
    rpc = AsyncRPCManager.from_settings(settings)
    scanner = DiscoveryScanner(
        SyncStateStore(JsonFileStore(settings.data_dir)), rpc, settings, TelegramNotifier.from_settings(settings)
    )
    try:
        await scanner.run_forever()
    finally:
        await rpc.close()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("🛑 Discovery Scanner Stopped.")
