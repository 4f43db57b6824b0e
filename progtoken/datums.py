from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .crypto import key_address, parse_address, script_address
from .errors import DatumError


def constr(index: int, fields: list[Any] | None = None) -> dict[str, Any]:
    return {"constructor": int(index), "fields": list(fields or [])}


def int_data(value: int) -> dict[str, int]:
    return {"int": int(value)}


def bytes_data(value: str) -> dict[str, str]:
    text = str(value).strip().lower()
    try:
        bytes.fromhex(text)
    except ValueError as exc:
        raise DatumError(f"Bytes field is not hex: {value!r}") from exc
    return {"bytes": text}


def list_data(items: list[Any]) -> dict[str, list[Any]]:
    return {"list": list(items)}


VOID = constr(0)


def expect_constr(data: Any, index: int | None = None, arity: int | None = None) -> list[Any]:
    if not isinstance(data, dict) or "constructor" not in data or not isinstance(data.get("fields"), list):
        raise DatumError("Expected a constructor")
    if index is not None and data["constructor"] != index:
        raise DatumError(f"Expected constructor {index}, got {data['constructor']}")
    if arity is not None and len(data["fields"]) != arity:
        raise DatumError(f"Expected {arity} fields, got {len(data['fields'])}")
    return data["fields"]


def expect_int(data: Any) -> int:
    if not isinstance(data, dict) or not isinstance(data.get("int"), int) or isinstance(data.get("int"), bool):
        raise DatumError("Expected an integer")
    return data["int"]


def expect_bytes(data: Any) -> str:
    if not isinstance(data, dict) or not isinstance(data.get("bytes"), str):
        raise DatumError("Expected a byte string")
    return bytes_data(data["bytes"])["bytes"]


def expect_list(data: Any) -> list[Any]:
    if not isinstance(data, dict) or not isinstance(data.get("list"), list):
        raise DatumError("Expected a list")
    return data["list"]


def bool_data(value: bool) -> dict[str, Any]:
    return constr(1 if value else 0)


def decode_bool(data: Any) -> bool:
    expect_constr(data, arity=0)
    if data["constructor"] not in (0, 1):
        raise DatumError("Bool constructor must be 0 or 1")
    return data["constructor"] == 1


def out_ref_data(txid: str, index: int) -> dict[str, Any]:
    return constr(0, [bytes_data(txid), int_data(index)])


def decode_out_ref(data: Any) -> tuple[str, int]:
    txid, index = expect_constr(data, 0, 2)
    return expect_bytes(txid), expect_int(index)


def address_data(address: str, symbol: str) -> dict[str, Any]:
    try:
        kind, credential = parse_address(address, symbol)
    except ValueError as exc:
        raise DatumError(str(exc)) from exc
    return constr(0, [constr(0 if kind == "key" else 1, [bytes_data(credential)]), constr(1)])


def decode_address(data: Any) -> tuple[str, str]:
    payment, _stake = expect_constr(data, 0, 2)
    credential = expect_constr(payment, arity=1)
    if payment["constructor"] not in (0, 1):
        raise DatumError("Payment credential constructor must be 0 or 1")
    return ("key" if payment["constructor"] == 0 else "script"), expect_bytes(credential[0])


@dataclass
class FreezeDatum:
    is_frozen: bool = False

    def to_data(self) -> dict[str, Any]:
        return constr(0, [bool_data(self.is_frozen)])

    @classmethod
    def from_data(cls, data: Any) -> "FreezeDatum":
        (flag,) = expect_constr(data, 0, 1)
        return cls(is_frozen=decode_bool(flag))


@dataclass
class BlacklistDatum:
    blacklisted_identities: list[str] = field(default_factory=list)

    def to_data(self) -> dict[str, Any]:
        return constr(0, [list_data([bytes_data(item) for item in self.blacklisted_identities])])

    @classmethod
    def from_data(cls, data: Any) -> "BlacklistDatum":
        (items,) = expect_constr(data, 0, 1)
        return cls(blacklisted_identities=[expect_bytes(item) for item in expect_list(items)])

    def contains(self, identity: str) -> bool:
        return str(identity).lower() in self.blacklisted_identities


class BlacklistAction(int, Enum):
    BLACKLIST = 0
    WHITELIST = 1


@dataclass
class BlacklistRedeemer:
    action: BlacklistAction
    identity: str

    def to_data(self) -> dict[str, Any]:
        return constr(int(self.action), [bytes_data(self.identity)])

    @classmethod
    def from_data(cls, data: Any) -> "BlacklistRedeemer":
        (identity,) = expect_constr(data, arity=1)
        try:
            action = BlacklistAction(data["constructor"])
        except ValueError as exc:
            raise DatumError("Blacklist redeemer constructor must be 0 or 1") from exc
        return cls(action=action, identity=expect_bytes(identity))

    def apply(self, datum: BlacklistDatum) -> BlacklistDatum:
        """Append or remove the identity, keeping the list order otherwise intact."""
        identity = self.identity.lower()
        current = list(datum.blacklisted_identities)
        if self.action is BlacklistAction.BLACKLIST:
            if identity not in current:
                current.append(identity)
        else:
            current = [item for item in current if item != identity]
        return BlacklistDatum(blacklisted_identities=current)


@dataclass
class ProofDatum:
    covered_indices: list[int] = field(default_factory=list)

    def to_data(self) -> dict[str, Any]:
        return constr(0, [list_data([int_data(index) for index in self.covered_indices])])

    @classmethod
    def from_data(cls, data: Any) -> "ProofDatum":
        (items,) = expect_constr(data, 0, 1)
        return cls(covered_indices=[expect_int(item) for item in expect_list(items)])


@dataclass
class FeeSchedule:
    fee_amount: int
    fee_destination: str

    def to_data(self, symbol: str) -> dict[str, Any]:
        return constr(0, [int_data(self.fee_amount), address_data(self.fee_destination, symbol)])

    @classmethod
    def from_data(cls, data: Any, symbol: str) -> "FeeSchedule":
        amount, address = expect_constr(data, 0, 2)
        kind, credential = decode_address(address)
        destination = key_address(credential, symbol) if kind == "key" else script_address(credential, symbol)
        return cls(fee_amount=expect_int(amount), fee_destination=destination)
