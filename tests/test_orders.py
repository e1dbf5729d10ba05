import time

import pytest
from hexbytes import HexBytes

from orders import NonceSource, Order, decode_path, encode_path
from tests.conftest import ALICE, USDC, WETH

ARB = "0x912CE59144191C1204E64559FE8253a0e49E6548"
WBTC = "0x2f2a2543B76A4166549F7aaB2e75Bef0aefC5B0f"


def make_order(**overrides):
    fields = dict(
        debt_asset=USDC,
        collateral_asset=WETH,
        borrower=ALICE,
        repay_amount=250 * 10 ** 6,
        uni_path=encode_path([WETH, USDC], [3000]),
        amount_out_min=0,
        min_profit=0,
        deadline=1_700_000_000,
        max_tx_gas_price=0,
        referral_code=0,
        nonce=1,
    )
    fields.update(overrides)
    return Order(**fields)


class TestSwapPath:

    def test_single_hop_layout(self):
        path = encode_path([WETH, USDC], [3000])
        assert len(path) == 43
        assert path[:20] == HexBytes(WETH)
        assert path[20:23] == (3000).to_bytes(3, "big")
        assert path[23:] == HexBytes(USDC)

    @pytest.mark.parametrize("tokens,fees", [
        ([WETH, USDC], [500]),
        ([ARB, WETH, USDC], [3000, 500]),
        ([WBTC, WETH, ARB, USDC], [10000, 3000, 100]),
    ])
    def test_decode_recovers_tokens_and_fees(self, tokens, fees):
        assert decode_path(encode_path(tokens, fees)) == (tokens, fees)

    def test_decode_accepts_hex_string(self):
        path = encode_path([WETH, USDC], [3000])
        assert decode_path("0x" + bytes(path).hex()) == ([WETH, USDC], [3000])

    def test_fee_count_must_match(self):
        with pytest.raises(ValueError):
            encode_path([WETH, USDC], [3000, 500])

    def test_fee_must_fit_three_bytes(self):
        with pytest.raises(ValueError):
            encode_path([WETH, USDC], [2 ** 24])

    def test_truncated_path_rejected(self):
        with pytest.raises(ValueError):
            decode_path(bytes(encode_path([WETH, USDC], [3000]))[:-1])


def test_nonce_source_strictly_increasing():
    nonces = NonceSource()
    values = [nonces.next() for _ in range(1_000)]
    assert all(b > a for a, b in zip(values, values[1:]))
    assert values[0] >= int(time.time() * 1000) - 1_000


def test_refreshed_order_gets_new_deadline_and_nonce():
    order = make_order(deadline=1, nonce=1)
    fresh = order.refreshed(300, NonceSource())
    assert fresh.deadline >= int(time.time()) + 299
    assert fresh.nonce > 1
    assert fresh.repay_amount == order.repay_amount
    assert order.deadline == 1


def test_order_dict_serializes_big_ints_as_strings():
    order = make_order(repay_amount=2 ** 200)
    data = order.to_dict()
    assert data["repayAmount"] == str(2 ** 200)
    assert data["uniPath"].startswith("0x")
    assert Order.from_dict(data) == order


def test_order_tuple_matches_abi_layout():
    order = make_order(referral_code=7)
    fields = order.to_tuple()
    assert len(fields) == 11
    assert fields[2] == ALICE
    assert isinstance(fields[4], bytes)
    assert fields[9] == 7
