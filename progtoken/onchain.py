from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable

from .config import CONFIG, LedgerConfig
from .crypto import parse_address
from .datums import (
    BlacklistDatum,
    BlacklistRedeemer,
    FreezeDatum,
    ProofDatum,
    expect_bytes,
    expect_int,
    decode_address,
    decode_out_ref,
)
from .errors import DatumError, ScriptFailure
from .models import OutRef, Transaction, TxOutput, UTxO, text_to_hex, units_of_policy

if TYPE_CHECKING:
    from .scripts import ScriptDeriver, ScriptIdentity


PROOF_MINT = "template/proof.mint"
PROOF_SPEND = "template/proof.spend"
PROGRAMMABLE_TOKEN_MINT = "programmable/programmable_token.mint"
FREEZE_REFERENCE_MINT = "programmable/freeze_reference.mint"
FREEZE_REFERENCE_SPEND = "programmable/freeze_reference.spend"
BLACKLIST_REFERENCE_MINT = "programmable/blacklist_reference.mint"
BLACKLIST_REFERENCE_SPEND = "programmable/blacklist_reference.spend"
FREEZABLE_CHECK_MINT = "programmable/freezable_check.mint"
BLACKLIST_CHECK_MINT = "programmable/blacklist_check.mint"
FEE_CHECK_MINT = "programmable/fee_check.mint"
FEE_TREASURY_SPEND = "programmable/fee_treasury.spend"
FREE_MINT = "free_mint.mint"

POLICY_ID_HEX_LEN = 56


@dataclass
class ScriptContext:
    tx: Transaction
    inputs: dict[str, UTxO]
    reference_inputs: dict[str, UTxO]
    signatories: set[str]
    purpose: str
    own: "ScriptIdentity"
    redeemer: Any
    deriver: "ScriptDeriver"
    own_ref: OutRef | None = None
    config: LedgerConfig = field(default=CONFIG)

    @property
    def own_input(self) -> UTxO:
        if self.own_ref is None:
            raise ScriptFailure("Script is not spending an output")
        return self.inputs[self.own_ref.key]

    def spent(self) -> list[UTxO]:
        return [self.inputs[ref.key] for ref in self.tx.inputs]

    def referenced(self) -> list[UTxO]:
        return [self.reference_inputs[ref.key] for ref in self.tx.reference_inputs]

    def outputs_at(self, address: str) -> list[tuple[int, TxOutput]]:
        return [(index, output) for index, output in enumerate(self.tx.outputs) if output.address == address]

    def minted(self, policy_id: str) -> dict[str, int]:
        return units_of_policy(self.tx.mint, policy_id)

    def require_signature(self, identity: str) -> None:
        if identity.lower() not in self.signatories:
            raise ScriptFailure("Transaction is not signed by the policy admin")

    def require_consumed(self, ref: OutRef) -> None:
        if ref not in self.tx.inputs:
            raise ScriptFailure(f"Seed output {ref.key} is not consumed")


def _holds_policy(assets: dict[str, int], policy_id: str) -> bool:
    return any(quantity > 0 for quantity in units_of_policy(assets, policy_id).values())


def _credential(address: str, config: LedgerConfig) -> str:
    return parse_address(address, config.symbol)[1]


def _seed_param(parameter: Any) -> OutRef:
    try:
        txid, index = decode_out_ref(parameter)
    except DatumError as exc:
        raise ScriptFailure(f"Bad seed parameter: {exc}") from exc
    return OutRef(txid, index)


def _proof_identities(ctx: ScriptContext) -> tuple[str, str]:
    proof_address = ctx.deriver.derive(PROOF_SPEND, []).address
    pvt_unit = ctx.deriver.derive(PROOF_MINT, []).policy_id + text_to_hex(ctx.config.proof_marker_name)
    return proof_address, pvt_unit


# Proof validity token


def proof_mint(ctx: ScriptContext) -> None:
    """At most one PVT per transaction, and it must land at the proof validator."""
    proof_address, pvt_unit = _proof_identities(ctx)
    minted = ctx.minted(ctx.own.policy_id)
    for unit, quantity in minted.items():
        if unit != pvt_unit:
            raise ScriptFailure(f"Unexpected asset {unit} under proof policy")
        if quantity > 1:
            raise ScriptFailure("Only one proof token may be minted per transaction")
        if quantity == 1 and not any(output.quantity_of(pvt_unit) > 0 for _, output in ctx.outputs_at(proof_address)):
            raise ScriptFailure("Proof token must be sent to the proof validator")


def proof_spend(ctx: ScriptContext) -> None:
    """Spend a proof either to retire it or to recreate it.

    Retiring: none of the covered outputs is spent here, and every check marker
    the proof carries is burned. Recreating: every covered output is spent
    here, every carried marker is minted afresh, and no marker may leave the
    proof validator. Spending only some of the covered outputs is rejected.
    """
    proof = ctx.own_input
    try:
        datum = ProofDatum.from_data(proof.output.datum)
    except DatumError as exc:
        raise ScriptFailure(f"Proof datum is malformed: {exc}") from exc

    proof_address, pvt_unit = _proof_identities(ctx)
    markers = {
        unit: quantity
        for unit, quantity in proof.assets.items()
        if unit not in (ctx.config.base_unit, pvt_unit) and quantity > 0
    }

    spent_refs = set(ctx.tx.inputs)
    respent = [index for index in datum.covered_indices if OutRef(proof.txid, index) in spent_refs]
    if not respent:
        for unit in markers:
            held = sum(utxo.output.quantity_of(unit) for utxo in ctx.spent() if utxo.address == proof_address)
            if -ctx.tx.mint.get(unit, 0) < held:
                raise ScriptFailure(f"Retiring a proof requires burning its {unit} check marker")
        return
    for index in datum.covered_indices:
        if index not in respent:
            raise ScriptFailure(f"Covered output {proof.txid}#{index} is not spent with its proof")

    for unit in markers:
        if ctx.tx.mint.get(unit, 0) < 1:
            raise ScriptFailure(f"Spending a proof requires a fresh {unit} check marker")

    for unit in list(markers) + [pvt_unit]:
        held_before = sum(utxo.output.quantity_of(unit) for utxo in ctx.spent() if utxo.address == proof_address)
        held_after = sum(output.quantity_of(unit) for _, output in ctx.outputs_at(proof_address))
        if held_after < held_before:
            raise ScriptFailure(f"Marker {unit} may not leave the proof validator")


# Programmable token


def programmable_token_mint(ctx: ScriptContext) -> None:
    seed_param, name_param = ctx.own.parameters
    ctx.require_consumed(_seed_param(seed_param))
    expected_unit = ctx.own.policy_id + expect_bytes(name_param)
    for unit, quantity in ctx.minted(ctx.own.policy_id).items():
        if unit != expected_unit:
            raise ScriptFailure(f"Unexpected asset name under token policy: {unit}")
        if quantity < 0:
            raise ScriptFailure("Programmable tokens cannot be burned")


# Policy records


def _reference_marker(ctx: ScriptContext, mint_template: str, marker_name: str) -> str:
    identity = ctx.deriver.derive(mint_template, list(ctx.own.parameters))
    return identity.policy_id + text_to_hex(marker_name)


def _reference_mint(ctx: ScriptContext, spend_template: str, marker_name: str, decode: Callable[[Any], Any]) -> None:
    seed_param, admin_param = ctx.own.parameters
    ctx.require_consumed(_seed_param(seed_param))
    ctx.require_signature(expect_bytes(admin_param))
    marker = ctx.own.policy_id + text_to_hex(marker_name)
    if ctx.minted(ctx.own.policy_id) != {marker: 1}:
        raise ScriptFailure("Exactly one validity marker must be minted")
    record_address = ctx.deriver.derive(spend_template, list(ctx.own.parameters)).address
    holders = [output for _, output in ctx.outputs_at(record_address) if output.quantity_of(marker) == 1]
    if len(holders) != 1:
        raise ScriptFailure("Validity marker must be locked at the policy record validator")
    try:
        decode(holders[0].datum)
    except DatumError as exc:
        raise ScriptFailure(f"Initial policy record datum is malformed: {exc}") from exc


def _replacement_record(ctx: ScriptContext, marker: str) -> TxOutput | None:
    """Return the record replacing the one being spent, or None for a stray output."""
    ctx.require_signature(expect_bytes(ctx.own.parameters[1]))
    if ctx.tx.mint.get(marker, 0) != 0:
        raise ScriptFailure("Validity marker supply is fixed")
    if ctx.own_input.output.quantity_of(marker) != 1:
        return None
    holders = [output for _, output in ctx.outputs_at(ctx.own.address) if output.quantity_of(marker) == 1]
    if len(holders) != 1:
        raise ScriptFailure("Update must produce exactly one replacement policy record")
    return holders[0]


def freeze_reference_mint(ctx: ScriptContext) -> None:
    _reference_mint(ctx, FREEZE_REFERENCE_SPEND, ctx.config.freeze_marker_name, FreezeDatum.from_data)


def freeze_reference_spend(ctx: ScriptContext) -> None:
    marker = _reference_marker(ctx, FREEZE_REFERENCE_MINT, ctx.config.freeze_marker_name)
    replacement = _replacement_record(ctx, marker)
    if replacement is None:
        return
    try:
        FreezeDatum.from_data(replacement.datum)
    except DatumError as exc:
        raise ScriptFailure(f"Replacement freeze record is malformed: {exc}") from exc


def blacklist_reference_mint(ctx: ScriptContext) -> None:
    _reference_mint(ctx, BLACKLIST_REFERENCE_SPEND, ctx.config.blacklist_marker_name, BlacklistDatum.from_data)


def blacklist_reference_spend(ctx: ScriptContext) -> None:
    marker = _reference_marker(ctx, BLACKLIST_REFERENCE_MINT, ctx.config.blacklist_marker_name)
    replacement = _replacement_record(ctx, marker)
    if replacement is None:
        return
    try:
        redeemer = BlacklistRedeemer.from_data(ctx.redeemer)
        current = BlacklistDatum.from_data(ctx.own_input.output.datum)
        updated = BlacklistDatum.from_data(replacement.datum)
    except DatumError as exc:
        raise ScriptFailure(f"Blacklist update is malformed: {exc}") from exc
    if updated != redeemer.apply(current):
        raise ScriptFailure("Replacement blacklist does not match the requested action")


# Check markers


def _burns_only(ctx: ScriptContext) -> bool:
    """Markers are only ever burned by a transaction retiring the proofs that hold them."""
    minted = ctx.minted(ctx.own.policy_id)
    return bool(minted) and all(quantity < 0 for quantity in minted.values())


def _correlation(ctx: ScriptContext, token_policy: str) -> None:
    """Shared by every check policy: the per-transaction proof protocol."""
    check_unit = ctx.own.policy_id + token_policy
    if ctx.minted(ctx.own.policy_id) != {check_unit: 1}:
        raise ScriptFailure("Exactly one check marker must be minted")

    proof_address, pvt_unit = _proof_identities(ctx)
    proofs = [output for _, output in ctx.outputs_at(proof_address) if output.quantity_of(check_unit) > 0]
    if len(proofs) != 1:
        raise ScriptFailure("Exactly one proof output must carry the check marker")
    proof = proofs[0]
    if proof.quantity_of(pvt_unit) < 1:
        raise ScriptFailure("Proof output is missing the proof token")
    try:
        covered = ProofDatum.from_data(proof.datum).covered_indices
    except DatumError as exc:
        raise ScriptFailure(f"Proof datum is malformed: {exc}") from exc
    if any(index < 0 or index >= len(ctx.tx.outputs) for index in covered):
        raise ScriptFailure("Proof covers an output index outside the transaction")
    holding = [index for index, output in enumerate(ctx.tx.outputs) if _holds_policy(output.assets, token_policy)]
    if any(index not in covered for index in holding):
        raise ScriptFailure("Proof must cover every new token-holding output")

    candidates = [utxo for utxo in ctx.referenced() + ctx.spent() if utxo.address == proof_address]
    for utxo in ctx.spent():
        if not _holds_policy(utxo.assets, token_policy):
            continue
        if not any(p.txid == utxo.txid and p.output.quantity_of(check_unit) > 0 for p in candidates):
            raise ScriptFailure(f"No correlated proof for spent token output {utxo.ref.key}")


def _policy_record(ctx: ScriptContext, validity_policy: str, validity_name: str) -> UTxO:
    marker = validity_policy + validity_name
    records = [utxo for utxo in ctx.referenced() if utxo.output.quantity_of(marker) > 0]
    if len(records) != 1:
        raise ScriptFailure("Transaction must reference the current policy record")
    return records[0]


def freezable_check_mint(ctx: ScriptContext) -> None:
    validity_policy, validity_name, token_policy = (expect_bytes(item) for item in ctx.own.parameters)
    if _burns_only(ctx):
        return
    _correlation(ctx, token_policy)
    record = _policy_record(ctx, validity_policy, validity_name)
    try:
        frozen = FreezeDatum.from_data(record.output.datum).is_frozen
    except DatumError as exc:
        raise ScriptFailure(f"Freeze record is malformed: {exc}") from exc
    if frozen:
        raise ScriptFailure("Token family is frozen")


def blacklist_check_mint(ctx: ScriptContext) -> None:
    validity_policy, validity_name, token_policy = (expect_bytes(item) for item in ctx.own.parameters)
    if _burns_only(ctx):
        return
    _correlation(ctx, token_policy)
    record = _policy_record(ctx, validity_policy, validity_name)
    try:
        blacklist = BlacklistDatum.from_data(record.output.datum)
    except DatumError as exc:
        raise ScriptFailure(f"Blacklist record is malformed: {exc}") from exc
    for utxo in ctx.spent():
        if _holds_policy(utxo.assets, token_policy) and blacklist.contains(_credential(utxo.address, ctx.config)):
            raise ScriptFailure("Sender is blacklisted")
    for output in ctx.tx.outputs:
        if _holds_policy(output.assets, token_policy) and blacklist.contains(_credential(output.address, ctx.config)):
            raise ScriptFailure("Recipient is blacklisted")


def fee_check_mint(ctx: ScriptContext) -> None:
    if _burns_only(ctx):
        return
    address_param, amount_param, token_param = ctx.own.parameters
    token_policy = expect_bytes(token_param)
    _correlation(ctx, token_policy)
    try:
        kind, credential = decode_address(address_param)
        fee_amount = expect_int(amount_param)
    except DatumError as exc:
        raise ScriptFailure(f"Bad fee parameters: {exc}") from exc
    paid = sum(
        output.quantity_of(ctx.config.base_unit)
        for output in ctx.tx.outputs
        if parse_address(output.address, ctx.config.symbol) == (kind, credential)
    )
    if paid < fee_amount:
        raise ScriptFailure(f"Transfer fee of {fee_amount} is not paid to the fee address")


def fee_treasury_spend(ctx: ScriptContext) -> None:
    ctx.require_signature(expect_bytes(ctx.own.parameters[0]))


def free_mint(ctx: ScriptContext) -> None:
    return None


# template id -> (purpose, predicate)
VALIDATORS: dict[str, tuple[str, Callable[[ScriptContext], None]]] = {
    PROOF_MINT: ("mint", proof_mint),
    PROOF_SPEND: ("spend", proof_spend),
    PROGRAMMABLE_TOKEN_MINT: ("mint", programmable_token_mint),
    FREEZE_REFERENCE_MINT: ("mint", freeze_reference_mint),
    FREEZE_REFERENCE_SPEND: ("spend", freeze_reference_spend),
    BLACKLIST_REFERENCE_MINT: ("mint", blacklist_reference_mint),
    BLACKLIST_REFERENCE_SPEND: ("spend", blacklist_reference_spend),
    FREEZABLE_CHECK_MINT: ("mint", freezable_check_mint),
    BLACKLIST_CHECK_MINT: ("mint", blacklist_check_mint),
    FEE_CHECK_MINT: ("mint", fee_check_mint),
    FEE_TREASURY_SPEND: ("spend", fee_treasury_spend),
    FREE_MINT: ("mint", free_mint),
}
