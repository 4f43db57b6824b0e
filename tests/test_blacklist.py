from __future__ import annotations

import unittest

from progtoken.config import CONFIG
from progtoken.errors import EngineRejected, Unauthorized
from progtoken.family import PolicyKind
from progtoken.ledger import Ledger
from progtoken.tokens import ProgrammableTokenService
from progtoken.wallet import wallet_from_private_key


PRIV_A = "1" * 64
WALLET_A = wallet_from_private_key(PRIV_A, CONFIG.symbol)

PRIV_B = "2" * 64
WALLET_B = wallet_from_private_key(PRIV_B, CONFIG.symbol)

PRIV_C = "3" * 64
WALLET_C = wallet_from_private_key(PRIV_C, CONFIG.symbol)


class BlacklistTokenTest(unittest.TestCase):
    def setUp(self) -> None:
        self.ledger = Ledger()
        self.ledger.initialize()
        self.ledger.fund(WALLET_A.address, 500_000_000)
        self.ledger.fund(WALLET_B.address, 100_000_000)
        self.ledger.fund(WALLET_C.address, 100_000_000)
        self.service = ProgrammableTokenService(self.ledger)
        self.service.split_fee_outputs(WALLET_A, count=8, amount=20_000_000)
        self.family = self.service.bootstrap_family(WALLET_A, "BL", 1_000, [PolicyKind.BLACKLIST])

    def _blacklisted(self) -> list[str]:
        return self.service.policy_records(self.family)[PolicyKind.BLACKLIST].payload.blacklisted_identities

    def test_blacklisted_recipient_then_whitelisted(self) -> None:
        self.service.blacklist(WALLET_A, self.family, WALLET_B.identity)
        with self.assertRaises(EngineRejected):
            self.service.transfer(WALLET_A, self.family, WALLET_B.address, 400)
        self.assertEqual(self.service.balance_of(WALLET_B.address, self.family), 0)

        self.service.whitelist(WALLET_A, self.family, WALLET_B.identity)
        self.service.transfer(WALLET_A, self.family, WALLET_B.address, 400)
        self.assertEqual(self.service.balance_of(WALLET_B.address, self.family), 400)

    def test_blacklisted_sender_cannot_move_tokens(self) -> None:
        self.service.transfer(WALLET_A, self.family, WALLET_B.address, 400)
        self.service.blacklist(WALLET_A, self.family, WALLET_B.identity)

        with self.assertRaises(EngineRejected):
            self.service.transfer(WALLET_B, self.family, WALLET_C.address, 100)
        with self.assertRaises(EngineRejected):
            self.service.merge(WALLET_B, self.family)

        self.service.whitelist(WALLET_A, self.family, WALLET_B.identity)
        self.service.transfer(WALLET_B, self.family, WALLET_C.address, 100)
        self.assertEqual(self.service.balance_of(WALLET_C.address, self.family), 100)

    def test_other_holders_are_unaffected(self) -> None:
        self.service.blacklist(WALLET_A, self.family, WALLET_B.identity)
        self.service.transfer(WALLET_A, self.family, WALLET_C.address, 300)
        self.assertEqual(self.service.balance_of(WALLET_C.address, self.family), 300)

    def test_blacklist_keeps_insertion_order(self) -> None:
        self.service.blacklist(WALLET_A, self.family, WALLET_C.identity)
        self.service.blacklist(WALLET_A, self.family, WALLET_B.identity)
        self.assertEqual(self._blacklisted(), [WALLET_C.identity, WALLET_B.identity])

        self.service.blacklist(WALLET_A, self.family, WALLET_C.identity)
        self.assertEqual(self._blacklisted(), [WALLET_C.identity, WALLET_B.identity])

        self.service.whitelist(WALLET_A, self.family, WALLET_C.identity)
        self.assertEqual(self._blacklisted(), [WALLET_B.identity])

    def test_only_admin_may_edit_blacklist(self) -> None:
        with self.assertRaises(Unauthorized):
            self.service.blacklist(WALLET_B, self.family, WALLET_C.identity)
        with self.assertRaises(EngineRejected):
            self.service.blacklist(WALLET_B, self.family, WALLET_C.identity, check_admin=False)
        self.assertEqual(self._blacklisted(), [])

    def test_blacklist_of_one_family_does_not_touch_another(self) -> None:
        other = self.service.bootstrap_family(WALLET_A, "OTHER", 1_000, [PolicyKind.BLACKLIST])
        self.service.blacklist(WALLET_A, self.family, WALLET_B.identity)

        self.service.transfer(WALLET_A, other, WALLET_B.address, 250)
        self.assertEqual(self.service.balance_of(WALLET_B.address, other), 250)

    def test_family_under_freeze_and_blacklist(self) -> None:
        family = self.service.bootstrap_family(
            WALLET_A, "FB", 1_000, [PolicyKind.FREEZE, PolicyKind.BLACKLIST]
        )
        (proof,) = self.service.proofs(family)
        for unit in family.check_units():
            self.assertTrue(proof.carries(unit))

        self.service.transfer(WALLET_A, family, WALLET_B.address, 100)
        self.service.blacklist(WALLET_A, family, WALLET_C.identity)
        with self.assertRaises(EngineRejected):
            self.service.transfer(WALLET_B, family, WALLET_C.address, 50)
        self.service.set_frozen(WALLET_A, family, True)
        with self.assertRaises(EngineRejected):
            self.service.transfer(WALLET_B, family, WALLET_A.address, 50)


if __name__ == "__main__":
    unittest.main()
