from __future__ import annotations

import tempfile
import unittest
from dataclasses import replace

from progtoken.assembler import TxBuilder
from progtoken.config import CONFIG
from progtoken.datums import bytes_data
from progtoken.errors import BalancingError, Conflict, EngineRejected, NotFound, ValidationError
from progtoken.ledger import Ledger
from progtoken.models import AttachedScript, OutRef, Transaction, TxOutput
from progtoken.onchain import FREE_MINT, PROOF_MINT
from progtoken.selection import pick_fee_inputs
from progtoken.wallet import wallet_from_private_key


PRIV_A = "1" * 64
WALLET_A = wallet_from_private_key(PRIV_A, CONFIG.symbol)

PRIV_B = "2" * 64
WALLET_B = wallet_from_private_key(PRIV_B, CONFIG.symbol)

BASE = CONFIG.base_unit


def _payment(ledger: Ledger, amount: int, to_address: str = WALLET_B.address) -> Transaction:
    builder = TxBuilder(ledger)
    builder.pay_to_address(to_address, {BASE: amount})
    tx = builder.complete(pick_fee_inputs(ledger.utxos_at(WALLET_A.address)), WALLET_A.address)
    return ledger.sign(tx, PRIV_A)


class LedgerEngineTest(unittest.TestCase):
    def setUp(self) -> None:
        self.ledger = Ledger()
        self.ledger.initialize()
        self.funding_txid = self.ledger.fund(WALLET_A.address, 100_000_000)

    def test_fund_and_query(self) -> None:
        self.assertEqual(self.ledger.height, 1)
        self.assertEqual(self.ledger.balance_of(WALLET_A.address), 100_000_000)
        self.assertEqual(self.ledger.confirmations(self.funding_txid), 1)
        with self.assertRaises(ValidationError):
            self.ledger.fund(WALLET_A.address, 1)
        with self.assertRaises(ValidationError):
            self.ledger.fund("not-an-address", 5_000_000)

    def test_payment_is_confirmed_and_fee_paid(self) -> None:
        tx = _payment(self.ledger, 10_000_000)
        self.assertEqual(self.ledger.evaluate(tx), tx.fee)
        self.assertGreaterEqual(tx.fee, self.ledger.required_fee(tx))

        txid = self.ledger.submit(tx)
        self.assertEqual(self.ledger.balance_of(WALLET_B.address), 0)
        self.assertEqual(self.ledger.await_confirmations(txid, 2), 2)

        self.assertEqual(self.ledger.balance_of(WALLET_B.address), 10_000_000)
        self.assertEqual(self.ledger.balance_of(WALLET_A.address), 90_000_000 - tx.fee)

    def test_value_must_be_conserved(self) -> None:
        tx = _payment(self.ledger, 10_000_000)
        tx.outputs[0] = TxOutput(address=WALLET_B.address, assets={BASE: 10_000_001})
        tx.witnesses = []
        tx.txid = tx.compute_txid()
        tx = self.ledger.sign(tx, PRIV_A)
        with self.assertRaisesRegex(ValidationError, "not conserved"):
            self.ledger.submit(tx)

    def test_fee_below_minimum_is_rejected(self) -> None:
        tx = Transaction(
            inputs=[OutRef(self.funding_txid, 0)],
            outputs=[TxOutput(address=WALLET_B.address, assets={BASE: 100_000_000 - 1_000})],
            fee=1_000,
        )
        tx.txid = tx.compute_txid()
        with self.assertRaisesRegex(ValidationError, "below minimum"):
            self.ledger.submit(self.ledger.sign(tx, PRIV_A))

    def test_input_owner_must_sign(self) -> None:
        tx = _payment(self.ledger, 10_000_000)
        tx.witnesses = []
        with self.assertRaisesRegex(ValidationError, "Missing witness"):
            self.ledger.submit(self.ledger.sign(tx, PRIV_B))

    def test_outputs_below_minimum_base_are_rejected(self) -> None:
        tx = Transaction(
            inputs=[OutRef(self.funding_txid, 0)],
            outputs=[
                TxOutput(address=WALLET_B.address, assets={BASE: 1_000}),
                TxOutput(address=WALLET_A.address, assets={BASE: 100_000_000 - 1_000 - 1_000_000}),
            ],
            fee=1_000_000,
        )
        tx.txid = tx.compute_txid()
        with self.assertRaisesRegex(ValidationError, "minimum base"):
            self.ledger.submit(self.ledger.sign(tx, PRIV_A))

    def test_pending_double_spend_is_a_conflict(self) -> None:
        self.ledger.submit(_payment(self.ledger, 10_000_000))
        with self.assertRaises(Conflict):
            self.ledger.submit(_payment(self.ledger, 20_000_000))

    def test_first_committed_wins(self) -> None:
        first = _payment(self.ledger, 10_000_000)
        second = _payment(self.ledger, 20_000_000)
        self.ledger.submit(first)
        self.ledger.pending.append(second)

        with self.assertRaises(Conflict):
            self.ledger.await_confirmations(second.txid)
        self.assertEqual(self.ledger.confirmations(first.txid), 1)
        self.assertEqual(self.ledger.balance_of(WALLET_B.address), 10_000_000)
        with self.assertRaises(NotFound):
            self.ledger.await_confirmations(second.txid)

    def test_spent_output_is_a_conflict_after_commit(self) -> None:
        first = _payment(self.ledger, 10_000_000)
        second = _payment(self.ledger, 20_000_000)
        self.ledger.await_confirmations(self.ledger.submit(first))
        with self.assertRaises(Conflict):
            self.ledger.submit(second)

    def test_balancing_failures(self) -> None:
        builder = TxBuilder(self.ledger)
        builder.pay_to_address(WALLET_B.address, {BASE: 200_000_000})
        with self.assertRaises(BalancingError):
            builder.complete(self.ledger.utxos_at(WALLET_A.address), WALLET_A.address)

        builder = TxBuilder(self.ledger)
        builder.pay_to_address(WALLET_B.address, {BASE: 100_000_000})
        with self.assertRaisesRegex(BalancingError, "fee"):
            builder.complete(self.ledger.utxos_at(WALLET_A.address), WALLET_A.address)

    def test_dust_change_is_folded_into_fee(self) -> None:
        builder = TxBuilder(self.ledger)
        builder.pay_to_address(WALLET_B.address, {BASE: 99_000_000})
        tx = builder.complete(self.ledger.utxos_at(WALLET_A.address), WALLET_A.address)
        self.assertEqual(len(tx.outputs), 1)
        self.assertEqual(tx.fee, 1_000_000)

    def test_free_mint_tokens_need_no_proof(self) -> None:
        policy = self.ledger.deriver.derive(FREE_MINT, [bytes_data("01")])
        unit = policy.unit("544f4b")
        builder = TxBuilder(self.ledger)
        builder.mint_assets({unit: 50})
        builder.attach(policy)
        builder.pay_to_address(WALLET_B.address, {unit: 50})
        tx = builder.complete(pick_fee_inputs(self.ledger.utxos_at(WALLET_A.address)), WALLET_A.address)
        self.ledger.await_confirmations(self.ledger.submit(self.ledger.sign(tx, PRIV_A)))
        self.assertEqual(self.ledger.balance_of(WALLET_B.address, unit), 50)

    def test_script_attachment_rules(self) -> None:
        policy = self.ledger.deriver.derive(FREE_MINT, [bytes_data("02")])
        builder = TxBuilder(self.ledger)
        builder.mint_assets({policy.unit("aa"): 1})
        builder.pay_to_address(WALLET_B.address, {policy.unit("aa"): 1})
        tx = builder.complete(pick_fee_inputs(self.ledger.utxos_at(WALLET_A.address)), WALLET_A.address)
        with self.assertRaisesRegex(ValidationError, "Missing script"):
            self.ledger.submit(self.ledger.sign(tx, PRIV_A))

        builder.scripts.append(AttachedScript(template_id="bogus.mint", parameters=[]))
        tx = builder.complete(pick_fee_inputs(self.ledger.utxos_at(WALLET_A.address)), WALLET_A.address)
        with self.assertRaisesRegex(ValidationError, "Unknown script template"):
            self.ledger.submit(self.ledger.sign(tx, PRIV_A))

    def test_predicate_failure_is_engine_rejected(self) -> None:
        proof_policy = self.ledger.deriver.derive(PROOF_MINT, [])
        pvt = proof_policy.unit("PVT".encode().hex())
        builder = TxBuilder(self.ledger)
        builder.mint_assets({pvt: 1})
        builder.attach(proof_policy)
        builder.pay_to_address(WALLET_B.address, {pvt: 1})
        tx = builder.complete(pick_fee_inputs(self.ledger.utxos_at(WALLET_A.address)), WALLET_A.address)
        with self.assertRaises(EngineRejected) as ctx:
            self.ledger.submit(self.ledger.sign(tx, PRIV_A))
        self.assertEqual(ctx.exception.purpose, "mint")
        self.assertEqual(ctx.exception.script_hash, proof_policy.policy_id)
        self.assertEqual(self.ledger.pending, [])

    def test_state_persists_across_reload(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            ledger = Ledger(td)
            ledger.initialize()
            ledger.fund(WALLET_A.address, 50_000_000)
            builder = TxBuilder(ledger)
            builder.pay_to_address(WALLET_B.address, {BASE: 5_000_000})
            tx = builder.complete(ledger.utxos_at(WALLET_A.address), WALLET_A.address)
            ledger.await_confirmations(ledger.submit(ledger.sign(tx, PRIV_A)))

            reloaded = Ledger(td)
            self.assertTrue(reloaded.exists())
            reloaded.load()
            self.assertEqual(reloaded.height, ledger.height)
            self.assertEqual(reloaded.utxos, ledger.utxos)
            self.assertEqual(reloaded.balance_of(WALLET_B.address), 5_000_000)

            foreign = Ledger(td, config=replace(CONFIG, symbol="ZZ9"))
            with self.assertRaisesRegex(ValidationError, "symbol"):
                foreign.load()

    def test_initialize_twice_fails(self) -> None:
        with self.assertRaises(ValidationError):
            self.ledger.initialize()


if __name__ == "__main__":
    unittest.main()
