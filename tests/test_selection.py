from __future__ import annotations

import unittest

from progtoken.config import CONFIG
from progtoken.crypto import key_address
from progtoken.errors import AmountTooSmall, InsufficientBalance
from progtoken.models import OutRef, TxOutput, UTxO
from progtoken.selection import pick_fee_inputs, pick_largest_token_output, token_outputs


ADDR = key_address("0a" * 28, CONFIG.symbol)
BASE = CONFIG.base_unit
TOKEN = "cd" * 28 + "58"
OTHER = "ef" * 28 + "59"


def _utxo(index: int, **assets: int) -> UTxO:
    value = {BASE: assets.pop("base", 2_000_000)}
    value.update({TOKEN if name == "token" else OTHER: quantity for name, quantity in assets.items()})
    return UTxO(OutRef("11" * 32, index), TxOutput(address=ADDR, assets=value))


class SelectionTest(unittest.TestCase):
    def setUp(self) -> None:
        self.outputs = [
            _utxo(0, base=5_000_000),
            _utxo(1, base=20_000_000),
            _utxo(2, token=300),
            _utxo(3, token=700, other=5),
            _utxo(4, base=3_000_000, other=1),
            _utxo(5, base=20_000_000),
        ]

    def test_fee_inputs_are_base_only_and_largest_first(self) -> None:
        picked = pick_fee_inputs(self.outputs)
        self.assertEqual([utxo.ref.index for utxo in picked], [1, 5, 0])

    def test_fee_inputs_stop_when_covered(self) -> None:
        picked = pick_fee_inputs(self.outputs, needed=21_000_000)
        self.assertEqual([utxo.ref.index for utxo in picked], [1, 5])
        with self.assertRaises(InsufficientBalance):
            pick_fee_inputs(self.outputs, needed=100_000_000)

    def test_fee_inputs_honor_exclusions(self) -> None:
        picked = pick_fee_inputs(self.outputs, exclude=[OutRef("11" * 32, 1)])
        self.assertEqual([utxo.ref.index for utxo in picked], [5, 0])

    def test_largest_token_output(self) -> None:
        self.assertEqual(pick_largest_token_output(self.outputs, TOKEN).ref.index, 3)
        self.assertEqual(pick_largest_token_output(self.outputs, TOKEN, amount=700).ref.index, 3)
        self.assertEqual(len(token_outputs(self.outputs, TOKEN)), 2)

    def test_amount_above_largest_output(self) -> None:
        with self.assertRaises(AmountTooSmall):
            pick_largest_token_output(self.outputs, TOKEN, amount=701)

    def test_no_token_output(self) -> None:
        with self.assertRaises(InsufficientBalance):
            pick_largest_token_output(self.outputs, "99" * 28)


if __name__ == "__main__":
    unittest.main()
