import time
import threading
from dataclasses import dataclass, replace
from typing import List, Tuple

from hexbytes import HexBytes
from web3 import Web3

FEE_BYTES = 3
ADDRESS_BYTES = 20

# Fields serialized as decimal strings (uint256 does not survive a JSON float)
_BIG_INT_FIELDS = ("repayAmount", "amountOutMin", "minProfit", "deadline", "maxTxGasPrice", "nonce")


def encode_path(tokens: List[str], fees: List[int]) -> HexBytes:
    """Uniswap V3 packed path: token ++ fee(uint24, big-endian) ++ token ++ ..."""
    if len(tokens) < 2 or len(fees) != len(tokens) - 1:
        raise ValueError(f"path needs N tokens and N-1 fees, got {len(tokens)} tokens / {len(fees)} fees")
    out = bytes(HexBytes(tokens[0]))
    for fee, token in zip(fees, tokens[1:]):
        if not 0 <= fee < 2 ** 24:
            raise ValueError(f"fee tier {fee} does not fit in 3 bytes")
        out += fee.to_bytes(FEE_BYTES, "big") + bytes(HexBytes(token))
    return HexBytes(out)


def decode_path(path) -> Tuple[List[str], List[int]]:
    raw = bytes(HexBytes(path))
    hop = ADDRESS_BYTES + FEE_BYTES
    if len(raw) < 2 * ADDRESS_BYTES + FEE_BYTES or (len(raw) - ADDRESS_BYTES) % hop != 0:
        raise ValueError(f"malformed path of {len(raw)} bytes")

    tokens = [Web3.to_checksum_address(raw[:ADDRESS_BYTES])]
    fees = []
    offset = ADDRESS_BYTES
    while offset < len(raw):
        fees.append(int.from_bytes(raw[offset:offset + FEE_BYTES], "big"))
        offset += FEE_BYTES
        tokens.append(Web3.to_checksum_address(raw[offset:offset + ADDRESS_BYTES]))
        offset += ADDRESS_BYTES
    return tokens, fees


class NonceSource:
    """Millisecond timestamps, bumped so that no two calls in one process return the same value."""

    def __init__(self):
        self._last = 0
        self._lock = threading.Lock()

    def next(self) -> int:
        with self._lock:
            self._last = max(int(time.time() * 1000), self._last + 1)
            return self._last


NONCES = NonceSource()


def fresh_deadline(horizon_sec: int) -> int:
    return int(time.time()) + horizon_sec


@dataclass
class Order:
    debt_asset: str
    collateral_asset: str
    borrower: str
    repay_amount: int
    uni_path: HexBytes
    amount_out_min: int
    min_profit: int
    deadline: int
    max_tx_gas_price: int
    referral_code: int
    nonce: int

    def refreshed(self, horizon_sec: int, nonces: NonceSource = NONCES) -> "Order":
        """Copy with a new deadline and nonce; persisted values are never broadcast as-is."""
        return replace(self, deadline=fresh_deadline(horizon_sec), nonce=nonces.next())

    def to_tuple(self) -> tuple:
        """Positional form for the `execute(order)` ABI tuple."""
        return (
            Web3.to_checksum_address(self.debt_asset),
            Web3.to_checksum_address(self.collateral_asset),
            Web3.to_checksum_address(self.borrower),
            self.repay_amount,
            bytes(self.uni_path),
            self.amount_out_min,
            self.min_profit,
            self.deadline,
            self.max_tx_gas_price,
            self.referral_code,
            self.nonce,
        )

    def to_dict(self) -> dict:
        data = {
            "debtAsset": self.debt_asset,
            "collateralAsset": self.collateral_asset,
            "borrower": self.borrower,
            "repayAmount": self.repay_amount,
            "uniPath": "0x" + bytes(self.uni_path).hex(),
            "amountOutMin": self.amount_out_min,
            "minProfit": self.min_profit,
            "deadline": self.deadline,
            "maxTxGasPrice": self.max_tx_gas_price,
            "referralCode": self.referral_code,
            "nonce": self.nonce,
        }
        for key in _BIG_INT_FIELDS:
            data[key] = str(data[key])
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Order":
        return cls(
            debt_asset=data["debtAsset"],
            collateral_asset=data["collateralAsset"],
            borrower=data["borrower"],
            repay_amount=int(data["repayAmount"]),
            uni_path=HexBytes(data["uniPath"]),
            amount_out_min=int(data.get("amountOutMin", 0)),
            min_profit=int(data.get("minProfit", 0)),
            deadline=int(data.get("deadline", 0)),
            max_tx_gas_price=int(data.get("maxTxGasPrice", 0)),
            referral_code=int(data.get("referralCode", 0)),
            nonce=int(data.get("nonce", 0)),
        )
