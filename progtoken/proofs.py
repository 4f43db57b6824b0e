from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable

from .datums import VOID, ProofDatum
from .errors import DatumError, NoProofFound
from .family import PolicyKind, ProofScripts, TokenFamily
from .models import OutRef, TxOutput, UTxO, merge_assets, units_of_policy

if TYPE_CHECKING:
    from .assembler import TxBuilder
    from .ledger import Ledger

logger = logging.getLogger(__name__)


@dataclass
class ProofOutput:
    utxo: UTxO
    covered_indices: list[int] = field(default_factory=list)
    position: int = 0

    @property
    def ref(self) -> OutRef:
        return self.utxo.ref

    @property
    def txid(self) -> str:
        return self.utxo.txid

    def covers(self, ref: OutRef) -> bool:
        return ref.txid == self.txid and ref.index in self.covered_indices

    def carries(self, unit: str) -> bool:
        return self.utxo.output.quantity_of(unit) > 0

    @classmethod
    def from_utxo(cls, utxo: UTxO, position: int = 0) -> "ProofOutput":
        try:
            covered = ProofDatum.from_data(utxo.output.datum).covered_indices
        except DatumError:
            covered = []
        return cls(utxo=utxo, covered_indices=covered, position=position)


def proof_outputs(ledger: "Ledger", proof_address: str) -> list[ProofOutput]:
    return [ProofOutput.from_utxo(utxo) for utxo in ledger.utxos_at(proof_address)]


def find_proof(ledger: "Ledger", token_output: UTxO, proof_address: str, check_unit: str) -> ProofOutput:
    """Locate a live proof created by the transaction that produced `token_output`.

    Any match is valid cover, so the first one in output order is returned,
    always with position 0.
    """
    matches = [
        utxo
        for utxo in ledger.utxos_at(proof_address)
        if utxo.txid == token_output.txid and utxo.output.quantity_of(check_unit) > 0
    ]
    if not matches:
        logger.info("No proof for %s carrying %s", token_output.ref.key, check_unit)
        raise NoProofFound(f"No proof output for {token_output.ref.key} carrying {check_unit}")
    return ProofOutput.from_utxo(matches[0], position=0)


def find_proofs(
    ledger: "Ledger",
    token_outputs: Iterable[UTxO],
    proof_address: str,
    check_units: Iterable[str],
) -> list[ProofOutput]:
    units = list(check_units)
    found: dict[str, ProofOutput] = {}
    for utxo in token_outputs:
        for unit in units:
            proof = find_proof(ledger, utxo, proof_address, unit)
            found.setdefault(proof.ref.key, proof)
    return list(found.values())


@dataclass
class CoveredTransfer:
    """One token family's share of a covered transaction."""

    family: TokenFamily
    token_inputs: list[UTxO] = field(default_factory=list)
    proofs: list[ProofOutput] = field(default_factory=list)
    records: list[UTxO] = field(default_factory=list)


def _holds_any(output: TxOutput, policy_ids: set[str]) -> bool:
    return any(units_of_policy(output.assets, policy_id) for policy_id in policy_ids)


def build_covered_transfer(
    builder: "TxBuilder",
    proof_scripts: ProofScripts,
    transfers: Iterable[CoveredTransfer],
    outputs: Iterable[TxOutput],
    consume_proofs: bool = False,
) -> "TxBuilder":
    """Spend token inputs and co-create one proof covering the new token outputs.

    Policy records are referenced, one check marker per enforced policy kind
    is minted, and all markers land in a single proof output. Old proofs are
    referenced, or spent when `consume_proofs` is set and everything they
    cover is spent here as well.
    """
    parts = list(transfers)
    base = builder.config.base_unit

    markers: dict[str, int] = {}
    for part in parts:
        for kind in part.family.kinds:
            markers[part.family.policies[kind].check_unit] = 1

    for part in parts:
        builder.collect_from(part.token_inputs)
    spent = set(builder.inputs)

    consumed: list[ProofOutput] = []
    for part in parts:
        for proof in part.proofs:
            carried = [unit for unit in proof.utxo.assets if unit not in (base, proof_scripts.pvt_unit)]
            if (
                consume_proofs
                and all(OutRef(proof.txid, index) in spent for index in proof.covered_indices)
                and all(unit in markers for unit in carried)
            ):
                if proof not in consumed:
                    consumed.append(proof)
            else:
                builder.read_from([proof.utxo])
    if consumed:
        builder.collect_from([proof.utxo for proof in consumed], redeemer=VOID)
        builder.attach(proof_scripts.spend)

    for part in parts:
        builder.read_from(part.records)

    for output in outputs:
        builder.pay_to_address(output.address, output.assets, output.datum)

    for part in parts:
        for kind in part.family.kinds:
            policy = part.family.policies[kind]
            builder.attach(policy.check)
            if kind is PolicyKind.FEE:
                builder.pay_to_address(policy.fee_address, {base: policy.fee_amount})

    builder.mint_assets(markers)
    builder.mint_assets({proof_scripts.pvt_unit: 1})
    builder.attach(proof_scripts.mint)

    policy_ids = {part.family.policy_id for part in parts}
    covered = [index for index, output in enumerate(builder.outputs) if _holds_any(output, policy_ids)]
    carried_value = merge_assets(
        *({unit: q for unit, q in proof.utxo.assets.items() if unit != base} for proof in consumed)
    )
    builder.pay_to_address(
        proof_scripts.address,
        merge_assets(carried_value, markers, {proof_scripts.pvt_unit: 1}),
        datum=ProofDatum(covered_indices=covered).to_data(),
    )
    logger.debug(
        "Covered transfer: %d input(s), %d proof(s) consumed, covering outputs %s",
        len(spent),
        len(consumed),
        covered,
    )
    return builder
