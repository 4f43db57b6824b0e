from __future__ import annotations

import hashlib
import hmac
import json
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from argon2.low_level import Type as Argon2Type
from argon2.low_level import hash_secret_raw as argon2_hash_secret_raw

from .config import CONFIG
from .crypto import generate_private_key_hex, identity_from_public_key, key_address, private_key_to_public_key


ENCRYPTED_WALLET_FORMAT = "progtoken-wallet-encrypted-v1"
ENCRYPTED_WALLET_CIPHER = "xor-hmac-sha256"

_KDF_DKLEN = 64
_NONCE_BYTES = 16
_SALT_BYTES = 16
_DEFAULT_SCRYPT_N = 1 << 14
_DEFAULT_SCRYPT_R = 8
_DEFAULT_SCRYPT_P = 1
_DEFAULT_ARGON2_TIME_COST = 3
_DEFAULT_ARGON2_MEMORY_COST = 65536
_DEFAULT_ARGON2_PARALLELISM = 1


@dataclass
class Wallet:
    private_key: str
    public_key: str
    identity: str
    address: str

    def to_dict(self) -> dict[str, str]:
        return {
            "private_key": self.private_key,
            "public_key": self.public_key,
            "identity": self.identity,
            "address": self.address,
        }

    @classmethod
    def from_dict(cls, data: dict[str, str]) -> "Wallet":
        public_key = data["public_key"]
        return cls(
            private_key=data["private_key"],
            public_key=public_key,
            identity=data.get("identity") or identity_from_public_key(public_key),
            address=data["address"],
        )


def wallet_from_private_key(private_key: str, symbol: str = CONFIG.symbol) -> Wallet:
    public_key = private_key_to_public_key(private_key).hex()
    identity = identity_from_public_key(public_key)
    return Wallet(
        private_key=private_key,
        public_key=public_key,
        identity=identity,
        address=key_address(identity, symbol),
    )


def create_wallet(symbol: str = CONFIG.symbol) -> Wallet:
    return wallet_from_private_key(generate_private_key_hex(), symbol=symbol)


def _normalize_kdf_name(kdf: str) -> str:
    normalized = str(kdf).strip().lower()
    if normalized == "scrypt":
        return "scrypt"
    if normalized in {"argon2", "argon2id"}:
        return "argon2id"
    raise ValueError("Unsupported wallet KDF. Use 'scrypt' or 'argon2id'")


def _default_kdf_params(kdf_name: str) -> dict[str, int]:
    if kdf_name == "scrypt":
        return {"n": _DEFAULT_SCRYPT_N, "r": _DEFAULT_SCRYPT_R, "p": _DEFAULT_SCRYPT_P}
    return {
        "time_cost": _DEFAULT_ARGON2_TIME_COST,
        "memory_cost": _DEFAULT_ARGON2_MEMORY_COST,
        "parallelism": _DEFAULT_ARGON2_PARALLELISM,
    }


def _derive_key(password: str, salt: bytes, kdf_name: str, params: dict[str, Any]) -> bytes:
    if not password:
        raise ValueError("Wallet password must not be empty")

    if kdf_name == "scrypt":
        try:
            n, r, p = int(params["n"]), int(params["r"]), int(params["p"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError("Invalid scrypt wallet KDF parameters") from exc
        if n <= 1 or r <= 0 or p <= 0:
            raise ValueError("Invalid scrypt wallet KDF parameters")
        return hashlib.scrypt(password.encode("utf-8"), salt=salt, n=n, r=r, p=p, dklen=_KDF_DKLEN)

    try:
        time_cost = int(params["time_cost"])
        memory_cost = int(params["memory_cost"])
        parallelism = int(params["parallelism"])
    except (KeyError, TypeError, ValueError) as exc:
        raise ValueError("Invalid Argon2 wallet KDF parameters") from exc
    if time_cost <= 0 or memory_cost <= 0 or parallelism <= 0:
        raise ValueError("Invalid Argon2 wallet KDF parameters")
    return argon2_hash_secret_raw(
        secret=password.encode("utf-8"),
        salt=salt,
        time_cost=time_cost,
        memory_cost=memory_cost,
        parallelism=parallelism,
        hash_len=_KDF_DKLEN,
        type=Argon2Type.ID,
    )


def _xor_keystream(data: bytes, key: bytes, nonce: bytes) -> bytes:
    output = bytearray(len(data))
    for counter, cursor in enumerate(range(0, len(data), 32)):
        block = hmac.new(key, nonce + counter.to_bytes(8, "big"), hashlib.sha256).digest()
        chunk = data[cursor : cursor + 32]
        output[cursor : cursor + len(chunk)] = bytes(a ^ b for a, b in zip(chunk, block))
    return bytes(output)


def _encrypt_wallet_payload(wallet: Wallet, password: str, kdf: str) -> dict[str, Any]:
    kdf_name = _normalize_kdf_name(kdf)
    params = _default_kdf_params(kdf_name)
    salt = secrets.token_bytes(_SALT_BYTES)
    nonce = secrets.token_bytes(_NONCE_BYTES)
    key_material = _derive_key(password, salt=salt, kdf_name=kdf_name, params=params)
    enc_key, mac_key = key_material[:32], key_material[32:]

    plaintext = json.dumps(wallet.to_dict(), sort_keys=True, separators=(",", ":")).encode("utf-8")
    ciphertext = _xor_keystream(plaintext, key=enc_key, nonce=nonce)
    return {
        "wallet_format": ENCRYPTED_WALLET_FORMAT,
        "encrypted": True,
        # public fields stay readable so the CLI can show an address without a password
        "address": wallet.address,
        "identity": wallet.identity,
        "kdf": {"name": kdf_name, "salt": salt.hex(), "params": params},
        "cipher": {"name": ENCRYPTED_WALLET_CIPHER, "nonce": nonce.hex()},
        "ciphertext": ciphertext.hex(),
        "mac": hmac.new(mac_key, nonce + ciphertext, hashlib.sha256).hexdigest(),
    }


def _is_encrypted_wallet_payload(data: Any) -> bool:
    return (
        isinstance(data, dict)
        and str(data.get("wallet_format", "")).strip().lower() == ENCRYPTED_WALLET_FORMAT
        and bool(data.get("encrypted", False))
    )


def _decrypt_wallet_payload(payload: dict[str, Any], password: str) -> Wallet:
    if not password:
        raise ValueError("Encrypted wallet requires password")

    cipher = payload.get("cipher")
    kdf_data = payload.get("kdf")
    if not isinstance(cipher, dict) or not isinstance(kdf_data, dict):
        raise ValueError("Invalid encrypted wallet: missing cipher or kdf section")
    if str(cipher.get("name", "")).strip().lower() != ENCRYPTED_WALLET_CIPHER:
        raise ValueError("Unsupported encrypted wallet cipher")

    kdf_name = _normalize_kdf_name(str(kdf_data.get("name", "scrypt")))
    params = kdf_data.get("params")
    if not isinstance(params, dict):
        raise ValueError("Invalid encrypted wallet: invalid kdf params")

    try:
        salt = bytes.fromhex(str(kdf_data.get("salt", "")))
        nonce = bytes.fromhex(str(cipher.get("nonce", "")))
        ciphertext = bytes.fromhex(str(payload.get("ciphertext", "")))
    except ValueError as exc:
        raise ValueError("Invalid encrypted wallet: non-hex payload fields") from exc
    if len(salt) < 8:
        raise ValueError("Invalid encrypted wallet: bad salt")
    if len(nonce) != _NONCE_BYTES:
        raise ValueError("Invalid encrypted wallet: bad nonce")

    key_material = _derive_key(password, salt=salt, kdf_name=kdf_name, params=params)
    enc_key, mac_key = key_material[:32], key_material[32:]
    expected_mac = hmac.new(mac_key, nonce + ciphertext, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected_mac, str(payload.get("mac", "")).strip().lower()):
        raise ValueError("Wallet password is incorrect or wallet file was modified")

    try:
        decoded = json.loads(_xor_keystream(ciphertext, key=enc_key, nonce=nonce).decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValueError("Encrypted wallet payload could not be decoded") from exc
    if not isinstance(decoded, dict):
        raise ValueError("Encrypted wallet payload is invalid")
    return Wallet.from_dict(decoded)


def wallet_file_requires_password(path: str | Path) -> bool:
    with Path(path).open("r", encoding="utf-8") as handle:
        return _is_encrypted_wallet_payload(json.load(handle))


def save_wallet(wallet: Wallet, path: str | Path, password: str | None = None, kdf: str = "scrypt") -> None:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    payload = wallet.to_dict() if password is None else _encrypt_wallet_payload(wallet, password=password, kdf=kdf)
    with target.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=2)


def load_wallet(path: str | Path, password: str | None = None) -> Wallet:
    with Path(path).open("r", encoding="utf-8") as handle:
        data = json.load(handle)

    if _is_encrypted_wallet_payload(data):
        return _decrypt_wallet_payload(data, password=password or "")
    if not isinstance(data, dict):
        raise ValueError("Invalid wallet file format")
    return Wallet.from_dict(data)


def wallet_address(path: str | Path) -> str:
    """Read the address of a wallet file without decrypting it."""
    with Path(path).open("r", encoding="utf-8") as handle:
        data = json.load(handle)
    if not isinstance(data, dict) or not data.get("address"):
        raise ValueError("Wallet file has no address")
    return str(data["address"])
