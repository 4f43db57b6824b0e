from __future__ import annotations

import unittest

from progtoken.config import CONFIG
from progtoken.crypto import parse_address
from progtoken.datums import bytes_data, out_ref_data
from progtoken.errors import UnknownTemplate
from progtoken.family import PolicyKind, derive_family, derive_proof_scripts, derive_reference_scripts
from progtoken.models import OutRef
from progtoken.onchain import FREE_MINT, PROGRAMMABLE_TOKEN_MINT, PROOF_MINT, VALIDATORS
from progtoken.scripts import ScriptDeriver, ScriptIdentity, ScriptTemplateRepository


SEED_A = OutRef("aa" * 32, 0)
SEED_B = OutRef("aa" * 32, 1)
ADMIN = "ab" * 28


class ScriptDeriverTest(unittest.TestCase):
    def setUp(self) -> None:
        self.deriver = ScriptDeriver()

    def test_same_template_and_parameters_give_same_identity(self) -> None:
        params = [out_ref_data(SEED_A.txid, SEED_A.index), bytes_data("58")]
        first = self.deriver.derive(PROGRAMMABLE_TOKEN_MINT, params)
        second = ScriptDeriver().derive(PROGRAMMABLE_TOKEN_MINT, list(params))
        self.assertEqual(first, second)
        self.assertEqual(len(first.code_hash), 56)
        self.assertEqual(first.policy_id, first.code_hash)
        self.assertEqual(parse_address(first.address, CONFIG.symbol), ("script", first.code_hash))

    def test_one_parameter_byte_changes_the_identity(self) -> None:
        first = self.deriver.derive(PROGRAMMABLE_TOKEN_MINT, [out_ref_data(SEED_A.txid, 0), bytes_data("58")])
        second = self.deriver.derive(PROGRAMMABLE_TOKEN_MINT, [out_ref_data(SEED_A.txid, 0), bytes_data("59")])
        self.assertNotEqual(first.code_hash, second.code_hash)
        self.assertNotEqual(first.address, second.address)

    def test_templates_with_no_parameters_differ(self) -> None:
        hashes = {self.deriver.derive(template_id).code_hash for template_id in VALIDATORS}
        self.assertEqual(len(hashes), len(VALIDATORS))

    def test_unknown_template_fails(self) -> None:
        with self.assertRaises(UnknownTemplate):
            self.deriver.derive("programmable/unknown.mint", [])

    def test_repository_versions_the_code(self) -> None:
        repository = ScriptTemplateRepository({FREE_MINT: b"free_mint@v2"})
        self.assertIn(FREE_MINT, repository)
        self.assertNotIn(PROOF_MINT, repository)
        other = ScriptDeriver(repository=repository)
        self.assertNotEqual(other.derive(FREE_MINT).code_hash, self.deriver.derive(FREE_MINT).code_hash)

    def test_identity_survives_json_roundtrip(self) -> None:
        identity = self.deriver.derive(FREE_MINT, [bytes_data("cafe")])
        restored = ScriptIdentity.from_dict(identity.to_dict())
        self.assertEqual(restored, identity)
        self.assertEqual(self.deriver.from_attachment(restored.attachment()), identity)

    def test_reference_scripts_are_unique_per_seed(self) -> None:
        first = derive_reference_scripts(self.deriver, PolicyKind.FREEZE, SEED_A, ADMIN)
        second = derive_reference_scripts(self.deriver, PolicyKind.FREEZE, SEED_B, ADMIN)
        blacklist = derive_reference_scripts(self.deriver, PolicyKind.BLACKLIST, SEED_A, ADMIN)
        self.assertNotEqual(first.marker_unit, second.marker_unit)
        self.assertNotEqual(first.address, second.address)
        self.assertNotEqual(first.address, blacklist.address)
        self.assertTrue(first.marker_unit.endswith("FREEZE".encode().hex()))

    def test_family_derivation_is_deterministic(self) -> None:
        references = {PolicyKind.FREEZE: derive_reference_scripts(self.deriver, PolicyKind.FREEZE, SEED_A, ADMIN)}
        family = derive_family(self.deriver, "X", ADMIN, SEED_B, references=references, fee_amount=3_000_000)
        again = derive_family(ScriptDeriver(), "X", ADMIN, SEED_B, references=references, fee_amount=3_000_000)
        self.assertEqual(family.to_dict(), again.to_dict())
        self.assertEqual(family.kinds, [PolicyKind.FREEZE, PolicyKind.FEE])
        self.assertEqual(family.token_unit, family.policy_id + "58")
        self.assertEqual(len(set(family.check_units())), 2)
        for unit in family.check_units():
            self.assertTrue(unit.endswith(family.policy_id))

    def test_proof_scripts_are_shared(self) -> None:
        proofs = derive_proof_scripts(self.deriver)
        self.assertEqual(proofs, derive_proof_scripts(ScriptDeriver()))
        self.assertEqual(proofs.pvt_unit, proofs.mint.policy_id + "PVT".encode().hex())


if __name__ == "__main__":
    unittest.main()
