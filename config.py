import os
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from dotenv import load_dotenv
from web3 import Web3

from exceptions import ConfigError

# --- CHAIN PRESETS (Aave V3) ---
# Every address here can be overridden from .env; presets only fill the gaps.

ARBITRUM_CHAIN_ID = 42161
BASE_CHAIN_ID = 8453

CHAIN_PRESETS: Dict[int, dict] = {
    ARBITRUM_CHAIN_ID: {
        "name": "arbitrum",
        "pool": "0x794a61358D6845594F94dc1DB02A252b5b4814aD",
        "pool_addresses_provider": "0xa97684ead0e402dc232f5a977953df7ecbab3cdb",
        "data_provider": "0x69FA688f1Dc47d4B5d8029D5a35FB7a548310654",
        # Aave V3 went live on Arbitrum around block 7.7M; nothing to scrape below it.
        "backfill_floor_block": 7_700_000,
        "reserves": {
            "USDC": {"address": "0xaf88d065e77c8cC2239327C5EDb3A432268e5831", "decimals": 6},
            "USDT": {"address": "0xFd086bC7CD5C481DCC9C85ebE478A1C0b69FCbb9", "decimals": 6},
            "WETH": {"address": "0x82aF49447D8a07e3bd95BD0d56f35241523fBab1", "decimals": 18},
            "ARB":  {"address": "0x912CE59144191C1204E64559FE8253a0e49E6548", "decimals": 18},
            "WBTC": {"address": "0x2f2a2543B76A4166549F7aaB2e75Bef0aefC5B0f", "decimals": 8},
            "DAI":  {"address": "0xDA10009cBd5D07dd0CeCc66161FC93D7c9000da1", "decimals": 18},
        },
    },
    BASE_CHAIN_ID: {
        "name": "base",
        "pool": "0xA238Dd80C259a72e81d7e4664a9801593F98d1c5",
        "pool_addresses_provider": "0xe20fCBdBfFC4Dd138cE8b2E6FBb6CB49777ad64D",
        "data_provider": "0x2d8A3C5677189723C4cB8873CfC9C8976FDF38Ac",
        "backfill_floor_block": 2_300_000,
        "reserves": {
            "USDC":  {"address": "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913", "decimals": 6},
            "WETH":  {"address": "0x4200000000000000000000000000000000000006", "decimals": 18},
            "cbETH": {"address": "0x2Ae3F1Ec7F1F5012CFEab0185bfc7aa3cf0DEc22", "decimals": 18},
        },
    },
}

MULTICALL3_ADDRESS = "0xcA11bde05977b3631167028862bE2a173976CA11"

LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(message)s"


def _env_str(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip().strip('"').strip("'")


def _env_int(name: str, default: int) -> int:
    raw = _env_str(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = _env_str(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")


def _env_bool(name: str, default: bool = False) -> bool:
    raw = _env_str(name)
    if not raw:
        return default
    return raw.lower() in ("1", "true", "yes", "y", "on")


def _checksum(name: str, value: str) -> str:
    try:
        return Web3.to_checksum_address(value)
    except ValueError:
        raise ConfigError(f"{name} is not a valid address: {value!r}")


@dataclass
class Reserve:
    symbol: str
    address: str
    decimals: int


@dataclass
class Settings:
    """Runtime configuration shared by every component.

    Defaults mirror production values; tests build this directly.
    """
    rpc_url: str = ""
    fallback_rpcs: List[str] = field(default_factory=list)
    rpc_timeout_sec: int = 60
    rpc_max_concurrency: int = 5
    chain_id: int = ARBITRUM_CHAIN_ID

    pool_address: str = CHAIN_PRESETS[ARBITRUM_CHAIN_ID]["pool"]
    pool_addresses_provider: str = CHAIN_PRESETS[ARBITRUM_CHAIN_ID]["pool_addresses_provider"]
    data_provider_address: str = CHAIN_PRESETS[ARBITRUM_CHAIN_ID]["data_provider"]
    multicall_address: str = MULTICALL3_ADDRESS
    reserves: List[Reserve] = field(default_factory=list)

    # Execution
    exec_enabled: bool = False
    executor_address: str = ""
    private_key: str = ""
    referral_code: int = 0
    max_gas_price_wei: int = 0
    order_deadline_sec: int = 300
    plan_max_age_sec: int = 90
    blacklist_cooldown_sec: int = 3600
    swap_fee_tier: int = 3000
    liquidation_bonus: float = 0.05
    close_factor: float = 0.5

    # Fee bidding (heuristic; GWEI_PER_USD is a price-level assumption, retune it)
    bid_profit_share: float = 0.10
    bid_cap_usd: float = 2.0
    bid_floor_gwei: float = 0.1
    gwei_per_usd: float = 0.6

    # Risk thresholds
    hf_exec: float = 1.0
    hf_watch: float = 1.1
    hf_warning: float = 1.5
    dust_usd: float = 10.0

    # Discovery
    scan_window_blocks: int = 10_000
    log_chunk_blocks: int = 2_000
    catchup_windows: int = 5
    backfill_floor_block: int = CHAIN_PRESETS[ARBITRUM_CHAIN_ID]["backfill_floor_block"]
    backfill_universe_threshold: int = 50_000
    discovery_interval_sec: float = 30.0

    # Sentry
    multicall_batch_size: int = 150
    rotation_chunk_size: int = 500
    sentry_sleep_fast: float = 2.0
    sentry_sleep_slow: float = 15.0
    universe_reload_cycles: int = 20
    sentry_discovery: bool = False

    # Storage & alerts
    data_dir: str = "data"
    db_file: str = ""
    log_file: str = ""
    telegram_bot_token: str = ""
    telegram_chat_id: str = ""

    def __post_init__(self):
        if not self.reserves:
            self.reserves = reserves_for_chain(self.chain_id)

    @property
    def chain_name(self) -> str:
        preset = CHAIN_PRESETS.get(self.chain_id)
        return preset["name"] if preset else str(self.chain_id)

    def validate_for_execution(self):
        if not self.exec_enabled:
            raise ConfigError("exec: blocked (set EXEC_ENABLED=1)")
        if not self.private_key:
            raise ConfigError("exec: PRIVATE_KEY missing in .env")
        if not self.executor_address:
            raise ConfigError("exec: EXECUTOR_ADDR missing in .env")


def reserves_for_chain(chain_id: int) -> List[Reserve]:
    preset = CHAIN_PRESETS.get(chain_id, CHAIN_PRESETS[ARBITRUM_CHAIN_ID])
    return [
        Reserve(symbol=sym, address=Web3.to_checksum_address(info["address"]), decimals=info["decimals"])
        for sym, info in preset["reserves"].items()
    ]


def load_settings(env_path: Optional[str] = None, require_rpc: bool = True) -> Settings:
    """Builds Settings from the process environment (and .env, if present)."""
    if env_path is None:
        env_path = ".env"
    load_dotenv(env_path)

    chain_id = _env_int("CHAIN_ID", ARBITRUM_CHAIN_ID)
    if chain_id not in CHAIN_PRESETS:
        raise ConfigError(f"Unsupported CHAIN_ID={chain_id} (expected one of {sorted(CHAIN_PRESETS)})")
    preset = CHAIN_PRESETS[chain_id]

    rpc_url = _env_str("PRIMARY_RPC") or _env_str("RPC_URL")
    if require_rpc and not rpc_url:
        raise ConfigError("PRIMARY_RPC not found in .env")
    fallback_rpcs = [url.strip().strip('"').strip("'") for url in _env_str("FALLBACK_RPCS").split(",") if url.strip()]

    executor_address = _env_str("EXECUTOR_ADDR")
    if executor_address:
        executor_address = _checksum("EXECUTOR_ADDR", executor_address)

    settings = Settings(
        rpc_url=rpc_url,
        fallback_rpcs=fallback_rpcs,
        rpc_timeout_sec=_env_int("RPC_TIMEOUT_SEC", 60),
        rpc_max_concurrency=_env_int("RPC_MAX_CONCURRENCY", 5),
        chain_id=chain_id,
        pool_address=_checksum("AAVE_POOL_ADDRESS", _env_str("AAVE_POOL_ADDRESS", preset["pool"])),
        pool_addresses_provider=_checksum(
            "AAVE_POOL_ADDRESS_PROVIDER", _env_str("AAVE_POOL_ADDRESS_PROVIDER", preset["pool_addresses_provider"])
        ),
        data_provider_address=_checksum(
            "AAVE_DATA_PROVIDER", _env_str("AAVE_DATA_PROVIDER", preset["data_provider"])
        ),
        multicall_address=_checksum("MULTICALL3_ADDRESS", _env_str("MULTICALL3_ADDRESS", MULTICALL3_ADDRESS)),
        reserves=reserves_for_chain(chain_id),
        exec_enabled=_env_bool("EXEC_ENABLED", False),
        executor_address=executor_address,
        private_key=_env_str("PRIVATE_KEY"),
        referral_code=_env_int("AAVE_REFERRAL_CODE", 0),
        max_gas_price_wei=_env_int("MAX_TX_GAS_PRICE_WEI", 0),
        order_deadline_sec=_env_int("ORDER_DEADLINE_SEC", 300),
        plan_max_age_sec=_env_int("PLAN_MAX_AGE_SEC", 90),
        blacklist_cooldown_sec=_env_int("BLACKLIST_COOLDOWN_SEC", 3600),
        swap_fee_tier=_env_int("SWAP_FEE_TIER", 3000),
        liquidation_bonus=_env_float("LIQUIDATION_BONUS", 0.05),
        bid_profit_share=_env_float("BID_PROFIT_SHARE", 0.10),
        bid_cap_usd=_env_float("BID_CAP_USD", 2.0),
        bid_floor_gwei=_env_float("BID_FLOOR_GWEI", 0.1),
        gwei_per_usd=_env_float("GWEI_PER_USD", 0.6),
        hf_exec=_env_float("HF_EXEC", 1.0),
        hf_watch=_env_float("HF_WATCH", 1.1),
        hf_warning=_env_float("HF_WARNING", 1.5),
        dust_usd=_env_float("DUST_USD", 10.0),
        scan_window_blocks=_env_int("SCAN_WINDOW_BLOCKS", 10_000),
        log_chunk_blocks=_env_int("LOG_CHUNK_BLOCKS", 2_000),
        catchup_windows=_env_int("CATCHUP_WINDOWS", 5),
        backfill_floor_block=_env_int("BACKFILL_FLOOR_BLOCK", preset["backfill_floor_block"]),
        backfill_universe_threshold=_env_int("BACKFILL_UNIVERSE_THRESHOLD", 50_000),
        discovery_interval_sec=_env_float("DISCOVERY_INTERVAL", 30.0),
        multicall_batch_size=_env_int("MULTICALL_BATCH_SIZE", 150),
        rotation_chunk_size=_env_int("ROTATION_CHUNK_SIZE", 500),
        sentry_sleep_fast=_env_float("SENTRY_SLEEP_FAST", 2.0),
        sentry_sleep_slow=_env_float("SENTRY_SLEEP_SLOW", 15.0),
        universe_reload_cycles=_env_int("UNIVERSE_RELOAD_CYCLES", 20),
        sentry_discovery=_env_bool("SENTRY_DISCOVERY", False),
        data_dir=_env_str("DATA_DIR", "data"),
        db_file=_env_str("DASHBOARD_DB"),
        log_file=_env_str("LOG_FILE"),
        telegram_bot_token=_env_str("TELEGRAM_BOT_TOKEN"),
        telegram_chat_id=_env_str("TELEGRAM_CHAT_ID"),
    )

    if not (settings.hf_exec <= settings.hf_watch <= settings.hf_warning):
        raise ConfigError(
            f"Risk thresholds out of order: HF_EXEC={settings.hf_exec} HF_WATCH={settings.hf_watch} "
            f"HF_WARNING={settings.hf_warning}"
        )
    if settings.scan_window_blocks <= 0 or settings.log_chunk_blocks <= 0:
        raise ConfigError("SCAN_WINDOW_BLOCKS and LOG_CHUNK_BLOCKS must be positive")
    return settings


def configure_logging(log_file: str = "", level=logging.INFO):
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(format=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S", level=level, handlers=handlers)
