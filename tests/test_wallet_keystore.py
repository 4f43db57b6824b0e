from __future__ import annotations

import json
import tempfile
import unittest
from pathlib import Path

from progtoken.config import CONFIG
from progtoken.crypto import parse_address
from progtoken.wallet import (
    create_wallet,
    load_wallet,
    save_wallet,
    wallet_address,
    wallet_file_requires_password,
    wallet_from_private_key,
)


PRIV_A = "1" * 64


class WalletKeystoreTest(unittest.TestCase):
    def test_wallet_from_private_key_is_deterministic(self) -> None:
        first = wallet_from_private_key(PRIV_A)
        second = wallet_from_private_key(PRIV_A)
        self.assertEqual(first, second)
        self.assertEqual(len(first.identity), 56)
        self.assertEqual(parse_address(first.address, CONFIG.symbol), ("key", first.identity))

    def test_encrypted_wallet_roundtrip_and_wrong_password(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            wallet = create_wallet()
            wallet_path = Path(td) / "wallet_encrypted.json"
            save_wallet(wallet, wallet_path, password="test-password", kdf="scrypt")

            raw = wallet_path.read_text(encoding="utf-8")
            self.assertIn("wallet_format", raw)
            self.assertNotIn(wallet.private_key, raw)
            self.assertTrue(wallet_file_requires_password(wallet_path))

            loaded = load_wallet(wallet_path, password="test-password")
            self.assertEqual(loaded, wallet)

            with self.assertRaisesRegex(ValueError, "requires password"):
                load_wallet(wallet_path)
            with self.assertRaisesRegex(ValueError, "incorrect|modified"):
                load_wallet(wallet_path, password="wrong-password")

    def test_tampered_ciphertext_is_rejected(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            wallet_path = Path(td) / "wallet.json"
            save_wallet(create_wallet(), wallet_path, password="pw")
            payload = json.loads(wallet_path.read_text(encoding="utf-8"))
            flipped = "0" if payload["ciphertext"][0] != "0" else "1"
            payload["ciphertext"] = flipped + payload["ciphertext"][1:]
            wallet_path.write_text(json.dumps(payload), encoding="utf-8")

            with self.assertRaisesRegex(ValueError, "incorrect|modified"):
                load_wallet(wallet_path, password="pw")

    def test_plaintext_wallet_remains_supported(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            wallet = create_wallet()
            wallet_path = Path(td) / "wallet_plain.json"
            save_wallet(wallet, wallet_path)

            loaded = load_wallet(wallet_path)
            self.assertEqual(loaded.address, wallet.address)
            self.assertFalse(wallet_file_requires_password(wallet_path))

    def test_argon2id_wallet_roundtrip(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            wallet = create_wallet()
            wallet_path = Path(td) / "wallet_argon2.json"
            save_wallet(wallet, wallet_path, password="pw", kdf="argon2id")

            payload = json.loads(wallet_path.read_text(encoding="utf-8"))
            self.assertEqual(payload["kdf"]["name"], "argon2id")
            self.assertEqual(load_wallet(wallet_path, password="pw").address, wallet.address)

    def test_unknown_kdf_is_rejected(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            with self.assertRaisesRegex(ValueError, "Unsupported wallet KDF"):
                save_wallet(create_wallet(), Path(td) / "w.json", password="pw", kdf="md5")

    def test_address_is_readable_without_password(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            wallet = create_wallet()
            wallet_path = Path(td) / "wallet.json"
            save_wallet(wallet, wallet_path, password="pw")
            self.assertEqual(wallet_address(wallet_path), wallet.address)


if __name__ == "__main__":
    unittest.main()
