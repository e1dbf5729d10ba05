import os
import json
import logging
import datetime
import tempfile
from typing import Any, Iterable, List, Optional

import aiofiles

from exceptions import StoreReadError

logger = logging.getLogger("StateStore")

# Keys shared by the discovery, sentry, planner and executor processes
UNIVERSE_KEY = "borrowers.json"
FORWARD_HEAD_KEY = "sync_head.json"
BACKFILL_HEAD_KEY = "sync_deep.json"
CANDIDATES_KEY = "candidates.jsonl"
BLACKLIST_KEY = "blacklist.json"
PLAN_KEY = "tx_plan.json"
EXEC_RESULT_KEY = "tx_exec.json"


def utc_now_iso() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


class JsonFileStore:
    """
    Last-writer-wins key-value store backed by a directory of JSON files.

    Every write goes to its own temp file followed by os.replace(), so a reader
    in another process sees either the previous value or the new one, never a
    partial file, and concurrent writers never share a temp file.
    Keys ending in `.jsonl` hold a list of records, one per line.

    Reads are lenient by default: an unreadable file logs a warning and yields
    `default`. Read-modify-write callers pass `strict=True` to get a
    StoreReadError instead, so they never overwrite data they failed to read.
    """

    def __init__(self, data_dir: str):
        self.data_dir = data_dir
        os.makedirs(self.data_dir, exist_ok=True)

    def path(self, key: str) -> str:
        return os.path.join(self.data_dir, key)

    @staticmethod
    def _is_lines(key: str) -> bool:
        return key.endswith(".jsonl")

    def _serialize(self, key: str, value: Any) -> str:
        if self._is_lines(key):
            return "".join(json.dumps(record) + "\n" for record in value)
        return json.dumps(value, indent=2)

    def _parse(self, key: str, content: str) -> Any:
        if not self._is_lines(key):
            return json.loads(content)
        records = []
        for line in content.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError:
                logger.warning(f"⚠️ Skipping malformed line in {key}")
        return records

    def _read_failed(self, key: str, error: Exception, default: Any, strict: bool) -> Any:
        if strict:
            raise StoreReadError(f"{key} exists but is unreadable: {error}") from error
        logger.warning(f"⚠️ Failed to read {key}: {error}")
        return default

    def get(self, key: str, default: Any = None, strict: bool = False) -> Any:
        path = self.path(key)
        if not os.path.exists(path):
            return default
        try:
            with open(path, "r") as f:
                content = f.read()
            if not content.strip():
                return default
            return self._parse(key, content)
        except (OSError, json.JSONDecodeError) as e:
            return self._read_failed(key, e, default, strict)

    async def aget(self, key: str, default: Any = None, strict: bool = False) -> Any:
        """Same as get(), without blocking the event loop on disk I/O."""
        path = self.path(key)
        if not os.path.exists(path):
            return default
        try:
            async with aiofiles.open(path, mode="r") as f:
                content = await f.read()
            if not content.strip():
                return default
            return self._parse(key, content)
        except (OSError, json.JSONDecodeError) as e:
            return self._read_failed(key, e, default, strict)

    def put(self, key: str, value: Any):
        fd, temp_path = tempfile.mkstemp(dir=self.data_dir, prefix=f".{key}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(self._serialize(key, value))
            os.replace(temp_path, self.path(key))
        except Exception:
            if os.path.exists(temp_path):
                os.remove(temp_path)
            raise

    def list(self) -> List[str]:
        return sorted(
            name for name in os.listdir(self.data_dir)
            if not name.endswith(".tmp") and os.path.isfile(self.path(name))
        )


class SyncStateStore:
    """Typed view over the store for the discovery cursors and the account universe."""

    def __init__(self, store: JsonFileStore):
        self.store = store

    # --- Universe ---

    def load_universe(self, strict: bool = False) -> List[str]:
        data = self.store.get(UNIVERSE_KEY, [], strict=strict)
        if isinstance(data, list):
            return data
        if strict:
            raise StoreReadError(f"{UNIVERSE_KEY} does not hold a list")
        return []

    async def aload_universe(self) -> List[str]:
        data = await self.store.aget(UNIVERSE_KEY, [])
        return data if isinstance(data, list) else []

    def save_universe(self, accounts: Iterable[str]):
        self.store.put(UNIVERSE_KEY, list(accounts))

    def merge_universe(self, new_accounts: Iterable[str]) -> List[str]:
        """
        Unions `new_accounts` into the persisted universe. Returns the ones not seen before.

        Raises StoreReadError, without writing, when the persisted universe
        exists but cannot be read.
        """
        current = self.load_universe(strict=True)
        known = set(current)
        added = []
        for account in new_accounts:
            if account not in known:
                known.add(account)
                added.append(account)
        if added:
            self.save_universe(current + added)
        return added

    # --- Cursors ---

    def forward_head(self, strict: bool = False) -> Optional[int]:
        data = self.store.get(FORWARD_HEAD_KEY, strict=strict)
        if not data or "lastBlock" not in data:
            return None
        return int(data["lastBlock"])

    def backfill_head(self, strict: bool = False) -> Optional[int]:
        data = self.store.get(BACKFILL_HEAD_KEY, strict=strict)
        if not data or "deepBlock" not in data:
            return None
        return int(data["deepBlock"])

    def backfill_anchor(self, strict: bool = False) -> Optional[int]:
        data = self.store.get(BACKFILL_HEAD_KEY, strict=strict)
        if not data or data.get("anchorBlock") is None:
            return None
        return int(data["anchorBlock"])

    def advance_forward(self, block: int) -> int:
        current = self.forward_head(strict=True)
        if current is not None and block <= current:
            return current
        self.store.put(FORWARD_HEAD_KEY, {"lastBlock": block, "updatedAt": utc_now_iso()})
        return block

    def advance_backfill(self, block: int, floor: int, anchor: Optional[int] = None) -> int:
        block = max(block, floor)
        current = self.backfill_head(strict=True)
        if current is not None and block >= current:
            return current
        if anchor is None:
            anchor = self.backfill_anchor(strict=True)
        self.store.put(BACKFILL_HEAD_KEY, {"deepBlock": block, "anchorBlock": anchor, "updatedAt": utc_now_iso()})
        return block
