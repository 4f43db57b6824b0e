from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from typing import Any, Iterable


def canonical_json(data: Any) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"))


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def text_to_hex(text: str) -> str:
    return text.encode("utf-8").hex()


def merge_assets(*values: dict[str, int]) -> dict[str, int]:
    total: dict[str, int] = {}
    for value in values:
        for unit, quantity in value.items():
            total[unit] = total.get(unit, 0) + int(quantity)
    return {unit: quantity for unit, quantity in total.items() if quantity != 0}


def subtract_assets(left: dict[str, int], right: dict[str, int]) -> dict[str, int]:
    return merge_assets(left, {unit: -quantity for unit, quantity in right.items()})


def units_of_policy(assets: dict[str, int], policy_id: str) -> dict[str, int]:
    return {unit: quantity for unit, quantity in assets.items() if unit.startswith(policy_id) and quantity}


@dataclass(frozen=True, order=True)
class OutRef:
    txid: str
    index: int

    @property
    def key(self) -> str:
        return f"{self.txid}#{self.index}"

    def to_dict(self) -> dict[str, Any]:
        return {"txid": self.txid, "index": self.index}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OutRef":
        return cls(txid=str(data["txid"]), index=int(data["index"]))

    @classmethod
    def parse(cls, key: str) -> "OutRef":
        txid, _, index = str(key).partition("#")
        if not txid or not index:
            raise ValueError(f"Malformed output reference: {key!r}")
        return cls(txid=txid, index=int(index))


@dataclass
class TxOutput:
    address: str
    assets: dict[str, int] = field(default_factory=dict)
    datum: Any = None

    def quantity_of(self, unit: str) -> int:
        return int(self.assets.get(unit, 0))

    def has_only(self, unit: str) -> bool:
        return set(unit_ for unit_, quantity in self.assets.items() if quantity) <= {unit}

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"address": self.address, "assets": dict(sorted(self.assets.items()))}
        if self.datum is not None:
            data["datum"] = self.datum
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TxOutput":
        return cls(
            address=data["address"],
            assets={str(unit): int(quantity) for unit, quantity in data.get("assets", {}).items()},
            datum=data.get("datum"),
        )


@dataclass
class UTxO:
    ref: OutRef
    output: TxOutput

    @property
    def txid(self) -> str:
        return self.ref.txid

    @property
    def address(self) -> str:
        return self.output.address

    @property
    def assets(self) -> dict[str, int]:
        return self.output.assets

    def to_dict(self) -> dict[str, Any]:
        return {"ref": self.ref.to_dict(), "output": self.output.to_dict()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "UTxO":
        return cls(ref=OutRef.from_dict(data["ref"]), output=TxOutput.from_dict(data["output"]))


@dataclass
class Witness:
    pubkey: str
    signature: str

    def to_dict(self) -> dict[str, str]:
        return {"pubkey": self.pubkey, "signature": self.signature}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Witness":
        return cls(pubkey=str(data["pubkey"]), signature=str(data["signature"]))


@dataclass
class AttachedScript:
    template_id: str
    parameters: list[Any] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"template_id": self.template_id, "parameters": list(self.parameters)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AttachedScript":
        return cls(template_id=str(data["template_id"]), parameters=list(data.get("parameters", [])))


@dataclass
class Transaction:
    """A ledger transaction.

    The txid commits to the body only, so witnesses can be appended after the
    id is fixed and every signer signs the same digest.
    """

    inputs: list[OutRef] = field(default_factory=list)
    reference_inputs: list[OutRef] = field(default_factory=list)
    outputs: list[TxOutput] = field(default_factory=list)
    mint: dict[str, int] = field(default_factory=dict)
    scripts: list[AttachedScript] = field(default_factory=list)
    redeemers: dict[str, Any] = field(default_factory=dict)
    required_signers: list[str] = field(default_factory=list)
    fee: int = 0
    nonce: int = 0
    witnesses: list[Witness] = field(default_factory=list)
    txid: str = ""

    def body_dict(self) -> dict[str, Any]:
        return {
            "inputs": [ref.to_dict() for ref in self.inputs],
            "reference_inputs": [ref.to_dict() for ref in self.reference_inputs],
            "outputs": [output.to_dict() for output in self.outputs],
            "mint": dict(sorted(self.mint.items())),
            "scripts": [script.to_dict() for script in self.scripts],
            "redeemers": dict(sorted(self.redeemers.items())),
            "required_signers": sorted(self.required_signers),
            "fee": self.fee,
            "nonce": self.nonce,
        }

    def body_bytes(self) -> bytes:
        return canonical_json(self.body_dict()).encode("utf-8")

    def compute_txid(self) -> str:
        return sha256_hex(self.body_bytes())

    def signing_hash(self) -> bytes:
        return bytes.fromhex(self.compute_txid())

    def to_dict(self) -> dict[str, Any]:
        data = self.body_dict()
        data["witnesses"] = [witness.to_dict() for witness in self.witnesses]
        data["txid"] = self.txid
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Transaction":
        return cls(
            inputs=[OutRef.from_dict(item) for item in data.get("inputs", [])],
            reference_inputs=[OutRef.from_dict(item) for item in data.get("reference_inputs", [])],
            outputs=[TxOutput.from_dict(item) for item in data.get("outputs", [])],
            mint={str(unit): int(quantity) for unit, quantity in data.get("mint", {}).items()},
            scripts=[AttachedScript.from_dict(item) for item in data.get("scripts", [])],
            redeemers=dict(data.get("redeemers", {})),
            required_signers=[str(item) for item in data.get("required_signers", [])],
            fee=int(data.get("fee", 0)),
            nonce=int(data.get("nonce", 0)),
            witnesses=[Witness.from_dict(item) for item in data.get("witnesses", [])],
            txid=data.get("txid", ""),
        )

    def output_refs(self) -> list[OutRef]:
        return [OutRef(self.txid, index) for index in range(len(self.outputs))]

    def produced(self) -> list[UTxO]:
        return [UTxO(ref, output) for ref, output in zip(self.output_refs(), self.outputs)]


def spend_redeemer_key(ref: OutRef) -> str:
    return f"spend:{ref.key}"


def mint_redeemer_key(policy_id: str) -> str:
    return f"mint:{policy_id}"


@dataclass
class Block:
    index: int
    prev_hash: str
    timestamp: int
    txids: list[str] = field(default_factory=list)
    block_hash: str = ""

    def header_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "prev_hash": self.prev_hash,
            "timestamp": self.timestamp,
            "txids": list(self.txids),
        }

    def compute_hash(self) -> str:
        return sha256_hex(canonical_json(self.header_dict()).encode("utf-8"))

    def to_dict(self) -> dict[str, Any]:
        data = self.header_dict()
        data["block_hash"] = self.block_hash
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Block":
        return cls(
            index=int(data["index"]),
            prev_hash=data["prev_hash"],
            timestamp=int(data["timestamp"]),
            txids=[str(item) for item in data.get("txids", [])],
            block_hash=data.get("block_hash", ""),
        )


def total_assets(utxos: Iterable[UTxO]) -> dict[str, int]:
    return merge_assets(*(utxo.assets for utxo in utxos))
