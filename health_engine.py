import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from eth_abi import decode, encode
from web3 import Web3

from batching import gather_keyed
from exceptions import DecodeError, TransportError

logger = logging.getLogger("HealthEngine")

# Aave V3 fixed-point scales
HF_SCALE = 10 ** 18
BASE_CURRENCY_SCALE = 10 ** 8

MULTICALL3_ABI = [
    {
        "inputs": [
            {"name": "requireSuccess", "type": "bool"},
            {
                "components": [
                    {"name": "target", "type": "address"},
                    {"name": "callData", "type": "bytes"}
                ],
                "name": "calls",
                "type": "tuple[]"
            }
        ],
        "name": "tryAggregate",
        "outputs": [
            {
                "components": [
                    {"name": "success", "type": "bool"},
                    {"name": "returnData", "type": "bytes"}
                ],
                "name": "returnData",
                "type": "tuple[]"
            }
        ],
        "stateMutability": "view",
        "type": "function"
    }
]


def selector(signature: str) -> bytes:
    return bytes(Web3.keccak(text=signature)[:4])


GET_USER_ACCOUNT_DATA = selector("getUserAccountData(address)")
GET_USER_RESERVE_DATA = selector("getUserReserveData(address,address)")
GET_ASSETS_PRICES = selector("getAssetsPrices(address[])")
GET_PRICE_ORACLE = selector("getPriceOracle()")

ACCOUNT_DATA_TYPES = ["uint256", "uint256", "uint256", "uint256", "uint256", "uint256"]
# currentATokenBalance, currentStableDebt, currentVariableDebt, principalStableDebt,
# scaledVariableDebt, stableBorrowRate, liquidityRate, stableRateLastUpdated, usageAsCollateralEnabled
USER_RESERVE_TYPES = ["uint256", "uint256", "uint256", "uint256", "uint256", "uint256", "uint256", "uint40", "bool"]


def encode_call(fn_selector: bytes, types: List[str], args: list) -> bytes:
    return fn_selector + encode(types, args)


@dataclass
class BestAssets:
    debt_asset: str
    collateral_asset: str
    debt_amount: int


@dataclass
class HealthSnapshot:
    account: str
    health_factor: float
    collateral_usd: float
    debt_usd: float
    best_debt_asset: Optional[str] = None
    best_collateral_asset: Optional[str] = None
    best_debt_amount: Optional[int] = None

    @property
    def has_assets(self) -> bool:
        return bool(self.best_debt_asset and self.best_collateral_asset)


def decode_account_data(account: str, raw: bytes) -> HealthSnapshot:
    try:
        total_collateral, total_debt, _, _, _, hf_raw = decode(ACCOUNT_DATA_TYPES, raw)
    except Exception as e:
        raise DecodeError(f"getUserAccountData({account}): {e}") from e
    return HealthSnapshot(
        account=account,
        health_factor=hf_raw / HF_SCALE,
        collateral_usd=total_collateral / BASE_CURRENCY_SCALE,
        debt_usd=total_debt / BASE_CURRENCY_SCALE,
    )


class HealthEngine:
    """
    Batched solvency reads against the Aave pool.

    One Multicall3 `tryAggregate` per chunk of accounts for the coarse
    account data; accounts below the risk ceiling get a second, per-account
    multicall that finds their largest debt and collateral positions among
    the allow-listed reserves.
    """

    def __init__(self, settings, rpc=None):
        self.settings = settings
        self.rpc = rpc
        self._oracle: Optional[str] = None

    async def _try_aggregate(self, calls: List[Tuple[str, bytes]]) -> List[Tuple[bool, bytes]]:
        """Raw Multicall3 tryAggregate(false, calls). Raises TransportError on any RPC failure."""
        w3 = await self.rpc.get_w3()
        multicall = w3.eth.contract(address=Web3.to_checksum_address(self.settings.multicall_address), abi=MULTICALL3_ABI)
        try:
            return await multicall.functions.tryAggregate(False, calls).call()
        except Exception as e:
            await self.rpc.handle_error(e)
            raise TransportError(f"tryAggregate ({len(calls)} calls) failed: {e}") from e

    async def price_oracle(self) -> str:
        if self._oracle is None:
            results = await self._try_aggregate([
                (self.settings.pool_addresses_provider, GET_PRICE_ORACLE)
            ])
            success, raw = results[0]
            if not success:
                raise DecodeError("getPriceOracle() reverted")
            self._oracle = Web3.to_checksum_address(decode(["address"], raw)[0])
            logger.info(f"🔮 Price oracle resolved: {self._oracle}")
        return self._oracle

    async def resolve_best_assets(self, account: str) -> Optional[BestAssets]:
        """
        Largest debt and largest collateral position by USD value across the
        allow-listed reserves, plus the raw (stable + variable) debt of the
        chosen debt asset. None when the account holds neither.
        """
        reserves = self.settings.reserves
        oracle = await self.price_oracle()

        calls = [
            (self.settings.data_provider_address,
             encode_call(GET_USER_RESERVE_DATA, ["address", "address"], [reserve.address, account]))
            for reserve in reserves
        ]
        calls.append((oracle, encode_call(GET_ASSETS_PRICES, ["address[]"], [[r.address for r in reserves]])))
        results = await self._try_aggregate(calls)
        if len(results) != len(calls):
            raise DecodeError(f"expected {len(calls)} results, got {len(results)}")

        prices_ok, prices_raw = results[-1]
        if not prices_ok:
            raise DecodeError("getAssetsPrices() reverted")
        prices = decode(["uint256[]"], prices_raw)[0]

        best_debt, best_debt_usd, best_debt_amount = None, 0.0, 0
        best_collateral, best_collateral_usd = None, 0.0
        for reserve, price, (success, raw) in zip(reserves, prices, results[:-1]):
            if not success:
                continue
            try:
                fields = decode(USER_RESERVE_TYPES, raw)
            except Exception as e:
                logger.warning(f"⚠️ getUserReserveData({reserve.symbol}, {account}) undecodable: {e}")
                continue
            a_token_balance, stable_debt, variable_debt = fields[0], fields[1], fields[2]
            unit = 10 ** reserve.decimals

            collateral_usd = a_token_balance * price / unit / BASE_CURRENCY_SCALE
            if a_token_balance > 0 and collateral_usd > best_collateral_usd:
                best_collateral, best_collateral_usd = reserve.address, collateral_usd

            debt_amount = stable_debt + variable_debt
            debt_usd = debt_amount * price / unit / BASE_CURRENCY_SCALE
            if debt_amount > 0 and debt_usd > best_debt_usd:
                best_debt, best_debt_usd, best_debt_amount = reserve.address, debt_usd, debt_amount

        if best_debt is None or best_collateral is None:
            return None
        return BestAssets(debt_asset=best_debt, collateral_asset=best_collateral, debt_amount=best_debt_amount)

    async def _evaluate_chunk(self, chunk: List[str]) -> Dict[str, Optional[HealthSnapshot]]:
        pool = self.settings.pool_address
        calls = [(pool, encode_call(GET_USER_ACCOUNT_DATA, ["address"], [account])) for account in chunk]
        results = await self._try_aggregate(calls)
        if len(results) != len(chunk):
            raise DecodeError(f"expected {len(chunk)} results, got {len(results)}")

        snapshots: Dict[str, Optional[HealthSnapshot]] = {}
        for account, (success, raw) in zip(chunk, results):
            if not success:
                snapshots[account] = None
                continue
            try:
                snapshot = decode_account_data(account, raw)
            except DecodeError as e:
                logger.debug(f"{e}")
                snapshots[account] = None
                continue

            if snapshot.health_factor < self.settings.hf_watch:
                try:
                    best = await self.resolve_best_assets(account)
                except Exception as e:
                    logger.warning(f"⚠️ Detailed read failed for {account} (HF {snapshot.health_factor:.4f}): {e}")
                    best = None
                if best is not None:
                    snapshot.best_debt_asset = best.debt_asset
                    snapshot.best_collateral_asset = best.collateral_asset
                    snapshot.best_debt_amount = best.debt_amount
            snapshots[account] = snapshot
        return snapshots

    async def evaluate(self, accounts: Iterable[str]) -> Dict[str, Optional[HealthSnapshot]]:
        accounts = list(dict.fromkeys(accounts))
        size = max(1, self.settings.multicall_batch_size)
        chunks = [accounts[i:i + size] for i in range(0, len(accounts), size)]

        requests = {
            index: (lambda c=chunk: self._evaluate_chunk(c))
            for index, chunk in enumerate(chunks)
        }
        results = await gather_keyed(requests, self.settings.rpc_max_concurrency)

        snapshots: Dict[str, Optional[HealthSnapshot]] = {}
        for index, chunk in enumerate(chunks):
            result = results[index]
            if result.ok:
                snapshots.update(result.value)
            else:
                logger.error(f"❌ Health chunk {index + 1}/{len(chunks)} failed ({len(chunk)} accounts): {result.error}")
                snapshots.update({account: None for account in chunk})
        return snapshots
