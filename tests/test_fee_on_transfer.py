from __future__ import annotations

import dataclasses
import unittest

from progtoken.assembler import TxBuilder
from progtoken.config import CONFIG
from progtoken.errors import EngineRejected, Unauthorized, ValidationError
from progtoken.family import PolicyKind
from progtoken.ledger import Ledger
from progtoken.models import TxOutput
from progtoken.proofs import build_covered_transfer
from progtoken.selection import pick_fee_inputs, pick_largest_token_output
from progtoken.tokens import ProgrammableTokenService
from progtoken.wallet import wallet_from_private_key


PRIV_A = "1" * 64
WALLET_A = wallet_from_private_key(PRIV_A, CONFIG.symbol)

PRIV_B = "2" * 64
WALLET_B = wallet_from_private_key(PRIV_B, CONFIG.symbol)

FEE = 5_000_000


class FeeOnTransferTest(unittest.TestCase):
    def setUp(self) -> None:
        self.ledger = Ledger()
        self.ledger.initialize()
        self.ledger.fund(WALLET_A.address, 500_000_000)
        self.ledger.fund(WALLET_B.address, 100_000_000)
        self.service = ProgrammableTokenService(self.ledger)
        self.service.split_fee_outputs(WALLET_A, count=4, amount=20_000_000)
        self.family = self.service.bootstrap_family(WALLET_A, "FEE", 1_000, [PolicyKind.FEE], fee_amount=FEE)
        self.policy = self.family.policy(PolicyKind.FEE)

    def _unpaid_transfer(self, fee_paid: int | None):
        """A covered transfer whose fee output is dropped or shrunk."""
        source = pick_largest_token_output(self.ledger.utxos_at(WALLET_A.address), self.family.token_unit)
        builder = TxBuilder(self.ledger)
        part = self.service.covered_part(self.family, [source])
        build_covered_transfer(
            builder,
            self.service.proof_scripts,
            [part],
            [
                TxOutput(address=WALLET_B.address, assets={self.family.token_unit: 100}),
                TxOutput(address=WALLET_A.address, assets={self.family.token_unit: 900}),
            ],
        )
        outputs = []
        for output in builder.outputs:
            if output.address == self.policy.fee_address:
                if fee_paid is None:
                    continue
                output = TxOutput(address=output.address, assets={CONFIG.base_unit: fee_paid})
            outputs.append(output)
        builder.outputs = outputs
        builder.add_signer(WALLET_A.identity)
        tx = builder.complete(pick_fee_inputs(self.ledger.utxos_at(WALLET_A.address))[:1], WALLET_A.address)
        return self.ledger.sign(tx, PRIV_A)

    def test_issuance_pays_the_first_fee(self) -> None:
        self.assertEqual(self.service.fee_treasury_balance(self.family), FEE)
        record = self.service.policy_records(self.family)[PolicyKind.FEE]
        self.assertEqual(record.payload.fee_amount, FEE)
        self.assertEqual(record.payload.fee_destination, self.policy.fee_address)
        self.assertIsNone(record.utxo)

    def test_transfer_pays_exactly_the_fee(self) -> None:
        before = self.service.fee_treasury_balance(self.family)
        self.service.transfer(WALLET_A, self.family, WALLET_B.address, 400)
        self.assertEqual(self.service.fee_treasury_balance(self.family), before + FEE)
        self.assertEqual(self.service.balance_of(WALLET_B.address, self.family), 400)

        self.service.transfer(WALLET_B, self.family, WALLET_A.address, 100)
        self.assertEqual(self.service.fee_treasury_balance(self.family), before + 2 * FEE)

    def test_missing_fee_output_is_rejected(self) -> None:
        with self.assertRaises(EngineRejected):
            self.ledger.submit(self._unpaid_transfer(None))

    def test_short_fee_output_is_rejected(self) -> None:
        with self.assertRaises(EngineRejected):
            self.ledger.submit(self._unpaid_transfer(CONFIG.min_output_base))

    def test_admin_withdraws_fees(self) -> None:
        self.service.transfer(WALLET_A, self.family, WALLET_B.address, 400)
        collected = self.service.fee_treasury_balance(self.family)
        before = self.ledger.balance_of(WALLET_A.address)

        self.service.withdraw_fees(WALLET_A, self.family)
        self.assertEqual(self.service.fee_treasury_balance(self.family), 0)
        gained = self.ledger.balance_of(WALLET_A.address) - before
        self.assertGreater(gained, collected - 1_000_000)
        self.assertLess(gained, collected)

    def test_only_admin_withdraws_fees(self) -> None:
        with self.assertRaises(Unauthorized):
            self.service.withdraw_fees(WALLET_B, self.family)
        with self.assertRaises(EngineRejected):
            self.service.withdraw_fees(WALLET_B, self.family, check_admin=False)
        self.assertEqual(self.service.fee_treasury_balance(self.family), FEE)

    def test_fee_must_cover_minimum_output(self) -> None:
        with self.assertRaises(ValueError):
            self.service.bootstrap_family(
                WALLET_A, "LOW", 1_000, [PolicyKind.FEE], fee_amount=CONFIG.min_output_base - 1
            )
        with self.assertRaises(ValueError):
            self.service.bootstrap_family(WALLET_A, "NONE", 1_000, [PolicyKind.FEE])

    def test_withdraw_needs_a_treasury(self) -> None:
        family = dataclasses.replace(self.family, policies=dict(self.family.policies))
        family.policies[PolicyKind.FEE] = dataclasses.replace(self.policy, treasury=None)
        with self.assertRaisesRegex(ValidationError, "no treasury"):
            self.service.withdraw_fees(WALLET_A, family)
        self.assertEqual(self.service.fee_treasury_balance(self.family), FEE)


if __name__ == "__main__":
    unittest.main()
