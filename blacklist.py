import logging
import time
from typing import Dict, Optional

from exceptions import StoreReadError
from state_store import BLACKLIST_KEY, JsonFileStore

logger = logging.getLogger("Blacklist")


def now_ms() -> int:
    return int(time.time() * 1000)


class BlacklistStore:
    """
    Time-boxed suppression of accounts, persisted as {account_lowercase: expiry_ms}.

    Every read goes back to disk so separate processes converge on the same
    set. Expired entries are ignored on read and dropped on the next write.
    Entries only ever leave by expiring: a write is skipped when the current
    file cannot be read.
    """

    def __init__(self, store: JsonFileStore, cooldown_sec: int = 3600):
        self.store = store
        self.cooldown_ms = int(cooldown_sec * 1000)

    def load(self, strict: bool = False) -> Dict[str, int]:
        data = self.store.get(BLACKLIST_KEY, {}, strict=strict)
        if not isinstance(data, dict):
            if strict:
                raise StoreReadError(f"{BLACKLIST_KEY} does not hold an object")
            return {}
        entries = {}
        for account, expiry in data.items():
            try:
                entries[account.lower()] = int(expiry)
            except (TypeError, ValueError):
                continue
        return entries

    def active(self, now: Optional[int] = None, strict: bool = False) -> Dict[str, int]:
        now = now_ms() if now is None else now
        return {account: expiry for account, expiry in self.load(strict).items() if expiry > now}

    def is_blacklisted(self, account: str, now: Optional[int] = None) -> bool:
        now = now_ms() if now is None else now
        return self.load().get(account.lower(), 0) > now

    def add(self, account: str, reason: str = "", now: Optional[int] = None) -> int:
        """Suppresses `account` for one cooldown. Overlapping adds keep the later expiry."""
        now = now_ms() if now is None else now
        key = account.lower()
        try:
            entries = self.active(now, strict=True)
        except StoreReadError as e:
            logger.error(f"❌ Blacklist unreadable, not recording {account}: {e}")
            return now + self.cooldown_ms

        expiry = max(entries.get(key, 0), now + self.cooldown_ms)
        entries[key] = expiry
        self.store.put(BLACKLIST_KEY, entries)
        logger.warning(f"🚫 Blacklisted {account} for {self.cooldown_ms // 1000}s{f' ({reason})' if reason else ''}")
        return expiry
