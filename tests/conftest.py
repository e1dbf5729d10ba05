import builtins
import os

import pytest
from eth_abi import encode

import state_store
from config import Settings
from state_store import JsonFileStore, SyncStateStore

ALICE = "0x1111111111111111111111111111111111111111"
BOB = "0x2222222222222222222222222222222222222222"
CAROL = "0x3333333333333333333333333333333333333333"

WETH = "0x82aF49447D8a07e3bd95BD0d56f35241523fBab1"
USDC = "0xaf88d065e77c8cC2239327C5EDb3A432268e5831"


@pytest.fixture
def settings(tmp_path):
    return Settings(
        rpc_url="http://localhost:8545",
        data_dir=str(tmp_path / "data"),
        scan_window_blocks=1_000,
        log_chunk_blocks=250,
        catchup_windows=5,
        backfill_floor_block=10_000,
        backfill_universe_threshold=50,
        multicall_batch_size=4,
        rotation_chunk_size=3,
        sentry_sleep_fast=2.0,
        sentry_sleep_slow=15.0,
        universe_reload_cycles=5,
        max_gas_price_wei=0,
    )


@pytest.fixture
def store(settings):
    return JsonFileStore(settings.data_dir)


@pytest.fixture
def sync_state(store):
    return SyncStateStore(store)


def account_data(hf: float, collateral_usd: float = 1_000.0, debt_usd: float = 500.0) -> bytes:
    """ABI-encoded getUserAccountData return value."""
    return encode(
        ["uint256", "uint256", "uint256", "uint256", "uint256", "uint256"],
        [int(collateral_usd * 10 ** 8), int(debt_usd * 10 ** 8), 0, 8_000, 7_500, int(hf * 10 ** 18)],
    )


def address_topic(address: str) -> str:
    return "0x" + "00" * 12 + address[2:].lower()


@pytest.fixture
def flaky_reads(monkeypatch):
    """File names added to the returned set fail their next read with EMFILE."""
    pending = set()
    real_open = builtins.open

    def flaky_open(path, *args, **kwargs):
        name = os.path.basename(str(path))
        if name in pending:
            pending.discard(name)
            raise OSError(24, "Too many open files")
        return real_open(path, *args, **kwargs)

    monkeypatch.setattr(state_store, "open", flaky_open, raising=False)
    return pending
