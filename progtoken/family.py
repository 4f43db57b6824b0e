from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .config import CONFIG, LedgerConfig
from .datums import address_data, bytes_data, int_data, out_ref_data
from .errors import RecordNotFound
from .models import OutRef, text_to_hex
from .onchain import (
    BLACKLIST_CHECK_MINT,
    BLACKLIST_REFERENCE_MINT,
    BLACKLIST_REFERENCE_SPEND,
    FEE_CHECK_MINT,
    FEE_TREASURY_SPEND,
    FREEZABLE_CHECK_MINT,
    FREEZE_REFERENCE_MINT,
    FREEZE_REFERENCE_SPEND,
    PROGRAMMABLE_TOKEN_MINT,
    PROOF_MINT,
    PROOF_SPEND,
)
from .scripts import ScriptDeriver, ScriptIdentity


class PolicyKind(str, Enum):
    FREEZE = "freeze"
    BLACKLIST = "blacklist"
    FEE = "fee"

    @classmethod
    def parse(cls, value: str) -> "PolicyKind":
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            raise ValueError(f"Unknown policy kind: {value!r} (use freeze, blacklist or fee)") from exc


# kinds backed by an on-ledger record
RECORD_KINDS = (PolicyKind.FREEZE, PolicyKind.BLACKLIST)

_REFERENCE_TEMPLATES = {
    PolicyKind.FREEZE: (FREEZE_REFERENCE_MINT, FREEZE_REFERENCE_SPEND, FREEZABLE_CHECK_MINT),
    PolicyKind.BLACKLIST: (BLACKLIST_REFERENCE_MINT, BLACKLIST_REFERENCE_SPEND, BLACKLIST_CHECK_MINT),
}


def _marker_name(kind: PolicyKind, config: LedgerConfig) -> str:
    if kind is PolicyKind.FREEZE:
        return config.freeze_marker_name
    if kind is PolicyKind.BLACKLIST:
        return config.blacklist_marker_name
    raise ValueError(f"{kind.value} policy has no validity marker")


@dataclass
class ProofScripts:
    mint: ScriptIdentity
    spend: ScriptIdentity
    pvt_unit: str

    @property
    def address(self) -> str:
        return self.spend.address


@dataclass
class ReferenceScripts:
    kind: PolicyKind
    seed_ref: OutRef
    admin: str
    mint: ScriptIdentity
    spend: ScriptIdentity
    marker_name_hex: str

    @property
    def address(self) -> str:
        return self.spend.address

    @property
    def marker_unit(self) -> str:
        return self.mint.unit(self.marker_name_hex)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "seed_ref": self.seed_ref.to_dict(),
            "admin": self.admin,
            "mint": self.mint.to_dict(),
            "spend": self.spend.to_dict(),
            "marker_name_hex": self.marker_name_hex,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ReferenceScripts":
        return cls(
            kind=PolicyKind.parse(data["kind"]),
            seed_ref=OutRef.from_dict(data["seed_ref"]),
            admin=str(data["admin"]),
            mint=ScriptIdentity.from_dict(data["mint"]),
            spend=ScriptIdentity.from_dict(data["spend"]),
            marker_name_hex=str(data["marker_name_hex"]),
        )


@dataclass
class PolicyScripts:
    """Scripts enforcing one policy kind for one token family."""

    kind: PolicyKind
    check: ScriptIdentity
    token_policy: str
    reference: ReferenceScripts | None = None
    treasury: ScriptIdentity | None = None
    fee_amount: int = 0

    @property
    def check_unit(self) -> str:
        return self.check.unit(self.token_policy)

    @property
    def fee_address(self) -> str:
        if self.treasury is None:
            raise ValueError(f"{self.kind.value} policy has no fee address")
        return self.treasury.address

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "kind": self.kind.value,
            "check": self.check.to_dict(),
            "token_policy": self.token_policy,
        }
        if self.reference is not None:
            data["reference"] = self.reference.to_dict()
        if self.treasury is not None:
            data["treasury"] = self.treasury.to_dict()
            data["fee_amount"] = self.fee_amount
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PolicyScripts":
        reference = data.get("reference")
        treasury = data.get("treasury")
        return cls(
            kind=PolicyKind.parse(data["kind"]),
            check=ScriptIdentity.from_dict(data["check"]),
            token_policy=str(data["token_policy"]),
            reference=ReferenceScripts.from_dict(reference) if reference else None,
            treasury=ScriptIdentity.from_dict(treasury) if treasury else None,
            fee_amount=int(data.get("fee_amount", 0)),
        )


@dataclass
class TokenFamily:
    name: str
    admin: str
    seed_ref: OutRef
    token: ScriptIdentity
    policies: dict[PolicyKind, PolicyScripts] = field(default_factory=dict)

    @property
    def asset_name_hex(self) -> str:
        return text_to_hex(self.name)

    @property
    def policy_id(self) -> str:
        return self.token.policy_id

    @property
    def token_unit(self) -> str:
        return self.token.unit(self.asset_name_hex)

    @property
    def kinds(self) -> list[PolicyKind]:
        return [kind for kind in PolicyKind if kind in self.policies]

    def policy(self, kind: PolicyKind) -> PolicyScripts:
        try:
            return self.policies[kind]
        except KeyError as exc:
            raise RecordNotFound(f"Token family {self.name} does not enforce a {kind.value} policy") from exc

    def check_units(self) -> list[str]:
        return [self.policies[kind].check_unit for kind in self.kinds]

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "admin": self.admin,
            "seed_ref": self.seed_ref.to_dict(),
            "token": self.token.to_dict(),
            "policies": {kind.value: self.policies[kind].to_dict() for kind in self.kinds},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TokenFamily":
        return cls(
            name=str(data["name"]),
            admin=str(data["admin"]),
            seed_ref=OutRef.from_dict(data["seed_ref"]),
            token=ScriptIdentity.from_dict(data["token"]),
            policies={
                PolicyKind.parse(kind): PolicyScripts.from_dict(item)
                for kind, item in data.get("policies", {}).items()
            },
        )


def derive_proof_scripts(deriver: ScriptDeriver, config: LedgerConfig = CONFIG) -> ProofScripts:
    mint = deriver.derive(PROOF_MINT, [])
    return ProofScripts(
        mint=mint,
        spend=deriver.derive(PROOF_SPEND, []),
        pvt_unit=mint.unit(text_to_hex(config.proof_marker_name)),
    )


def derive_reference_scripts(
    deriver: ScriptDeriver,
    kind: PolicyKind,
    seed_ref: OutRef,
    admin: str,
    config: LedgerConfig = CONFIG,
) -> ReferenceScripts:
    mint_template, spend_template, _ = _REFERENCE_TEMPLATES[kind]
    params = [out_ref_data(seed_ref.txid, seed_ref.index), bytes_data(admin)]
    return ReferenceScripts(
        kind=kind,
        seed_ref=seed_ref,
        admin=admin.lower(),
        mint=deriver.derive(mint_template, params),
        spend=deriver.derive(spend_template, params),
        marker_name_hex=text_to_hex(_marker_name(kind, config)),
    )


def derive_token_policy(deriver: ScriptDeriver, seed_ref: OutRef, name: str) -> ScriptIdentity:
    return deriver.derive(
        PROGRAMMABLE_TOKEN_MINT,
        [out_ref_data(seed_ref.txid, seed_ref.index), bytes_data(text_to_hex(name))],
    )


def derive_fee_treasury(
    deriver: ScriptDeriver,
    admin: str,
    token_policy: str,
    config: LedgerConfig = CONFIG,
) -> ScriptIdentity:
    tag = text_to_hex(f"{token_policy}{config.fee_treasury_suffix}")
    return deriver.derive(FEE_TREASURY_SPEND, [bytes_data(admin), bytes_data(tag)])


def derive_record_check(deriver: ScriptDeriver, reference: ReferenceScripts, token_policy: str) -> PolicyScripts:
    _, _, check_template = _REFERENCE_TEMPLATES[reference.kind]
    check = deriver.derive(
        check_template,
        [bytes_data(reference.mint.policy_id), bytes_data(reference.marker_name_hex), bytes_data(token_policy)],
    )
    return PolicyScripts(kind=reference.kind, check=check, token_policy=token_policy, reference=reference)


def derive_fee_check(
    deriver: ScriptDeriver,
    admin: str,
    token_policy: str,
    fee_amount: int,
    config: LedgerConfig = CONFIG,
) -> PolicyScripts:
    treasury = derive_fee_treasury(deriver, admin, token_policy, config)
    check = deriver.derive(
        FEE_CHECK_MINT,
        [address_data(treasury.address, config.symbol), int_data(fee_amount), bytes_data(token_policy)],
    )
    return PolicyScripts(
        kind=PolicyKind.FEE,
        check=check,
        token_policy=token_policy,
        treasury=treasury,
        fee_amount=int(fee_amount),
    )


def derive_family(
    deriver: ScriptDeriver,
    name: str,
    admin: str,
    seed_ref: OutRef,
    references: dict[PolicyKind, ReferenceScripts] | None = None,
    fee_amount: int | None = None,
    config: LedgerConfig = CONFIG,
) -> TokenFamily:
    if not name:
        raise ValueError("Token family name must not be empty")
    token = derive_token_policy(deriver, seed_ref, name)
    policies: dict[PolicyKind, PolicyScripts] = {}
    for kind, reference in (references or {}).items():
        policies[kind] = derive_record_check(deriver, reference, token.policy_id)
    if fee_amount is not None:
        policies[PolicyKind.FEE] = derive_fee_check(deriver, admin, token.policy_id, fee_amount, config)
    return TokenFamily(name=name, admin=admin.lower(), seed_ref=seed_ref, token=token, policies=policies)
