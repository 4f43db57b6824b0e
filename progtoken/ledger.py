from __future__ import annotations

import json
import logging
import os
import secrets
import time
from pathlib import Path
from typing import Any, Iterable

from .config import CONFIG, LedgerConfig
from .crypto import (
    identity_from_public_key,
    parse_address,
    private_key_to_public_key,
    sign_digest,
    verify_signature,
)
from .datums import VOID
from .errors import (
    BalancingError,
    Conflict,
    DatumError,
    EngineRejected,
    NotFound,
    ScriptFailure,
    UnknownTemplate,
    ValidationError,
)
from .models import (
    Block,
    OutRef,
    Transaction,
    TxOutput,
    UTxO,
    Witness,
    canonical_json,
    merge_assets,
    mint_redeemer_key,
    spend_redeemer_key,
    subtract_assets,
    total_assets,
)
from .onchain import POLICY_ID_HEX_LEN, VALIDATORS, ScriptContext
from .scripts import ScriptDeriver

logger = logging.getLogger(__name__)


class Ledger:
    """In-process UTXO ledger with a deterministic script engine.

    Confirmed state is a UTXO set keyed "<txid>#<index>". Submitted
    transactions wait in an ordered pending pool until a block commits them,
    first committed wins.
    """

    def __init__(
        self,
        data_dir: str | Path | None = None,
        config: LedgerConfig = CONFIG,
        deriver: ScriptDeriver | None = None,
    ):
        self.config = config
        self.deriver = deriver or ScriptDeriver(symbol=config.symbol)
        self.data_dir = Path(data_dir) if data_dir is not None else None
        self.state_path: Path | None = None
        if self.data_dir is not None:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            self.state_path = self.data_dir / "ledger_state.json"

        self.blocks: list[Block] = []
        self.utxos: dict[str, UTxO] = {}
        self.pending: list[Transaction] = []
        self.transactions: dict[str, Transaction] = {}
        self.confirmed_at: dict[str, int] = {}

    @staticmethod
    def _now() -> int:
        return int(time.time())

    def exists(self) -> bool:
        return self.state_path is not None and self.state_path.exists()

    def load(self) -> None:
        if self.state_path is None or not self.state_path.exists():
            raise FileNotFoundError(f"State file not found: {self.state_path}")

        with self.state_path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)

        raw_config = data.get("config", {})
        if raw_config.get("symbol", self.config.symbol) != self.config.symbol:
            raise ValidationError(
                f"State config mismatch for 'symbol': file={raw_config.get('symbol')} runtime={self.config.symbol}"
            )

        self.blocks = [Block.from_dict(item) for item in data.get("blocks", [])]
        self.utxos = {key: UTxO.from_dict(item) for key, item in data.get("utxos", {}).items()}
        self.pending = [Transaction.from_dict(item) for item in data.get("pending", [])]
        self.transactions = {
            txid: Transaction.from_dict(item) for txid, item in data.get("transactions", {}).items()
        }
        self.confirmed_at = {txid: int(height) for txid, height in data.get("confirmed_at", {}).items()}

    def save(self) -> None:
        if self.state_path is None:
            return
        data = {
            "config": {
                "symbol": self.config.symbol,
                "network_id": self.config.network_id,
                "min_output_base": self.config.min_output_base,
                "min_tx_fee": self.config.min_tx_fee,
                "fee_per_byte": self.config.fee_per_byte,
            },
            "height": self.height,
            "blocks": [block.to_dict() for block in self.blocks],
            "utxos": {key: utxo.to_dict() for key, utxo in sorted(self.utxos.items())},
            "pending": [tx.to_dict() for tx in self.pending],
            "transactions": {txid: tx.to_dict() for txid, tx in self.transactions.items()},
            "confirmed_at": self.confirmed_at,
        }
        temp_path = self.state_path.with_suffix(".json.tmp")
        with temp_path.open("w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, self.state_path)

    @property
    def height(self) -> int:
        return len(self.blocks) - 1

    @property
    def tip(self) -> Block | None:
        return self.blocks[-1] if self.blocks else None

    # Queries, confirmed state only.

    def utxos_at(self, address: str) -> list[UTxO]:
        return sorted((utxo for utxo in self.utxos.values() if utxo.address == address), key=lambda utxo: utxo.ref)

    def utxo(self, ref: OutRef) -> UTxO | None:
        return self.utxos.get(ref.key)

    def assets_at(self, address: str) -> dict[str, int]:
        return total_assets(self.utxos_at(address))

    def balance_of(self, address: str, unit: str | None = None) -> int:
        return int(self.assets_at(address).get(unit or self.config.base_unit, 0))

    def is_live(self, ref: OutRef) -> bool:
        return ref.key in self.utxos and ref.key not in self._pending_consumed()

    def _pending_consumed(self) -> set[str]:
        return {ref.key for tx in self.pending for ref in tx.inputs}

    def pending_view(self) -> dict[str, UTxO]:
        view = dict(self.utxos)
        for tx in self.pending:
            self._apply(tx, view)
        return view

    @staticmethod
    def _apply(tx: Transaction, view: dict[str, UTxO]) -> None:
        for ref in tx.inputs:
            view.pop(ref.key, None)
        for utxo in tx.produced():
            view[utxo.ref.key] = utxo

    def _append_block(self, txs: list[Transaction]) -> Block:
        tip = self.tip
        block = Block(
            index=len(self.blocks),
            prev_hash=tip.block_hash if tip else "0" * 64,
            timestamp=self._now(),
            txids=[tx.txid for tx in txs],
        )
        block.block_hash = block.compute_hash()
        self.blocks.append(block)
        for tx in txs:
            self.transactions[tx.txid] = tx
            self.confirmed_at[tx.txid] = block.index
        return block

    def initialize(self) -> Block:
        if self.blocks:
            raise ValidationError("Ledger is already initialized")
        block = self._append_block([])
        logger.info("Initialized ledger %s with genesis block %s", self.config.network_id, block.block_hash)
        self.save()
        return block

    def fund(self, address: str, amount: int) -> str:
        """Faucet: the only way base currency enters the ledger. Confirmed at once."""
        self.validate_address(address)
        if int(amount) < self.config.min_output_base:
            raise ValidationError(f"Faucet amount is below the minimum output ({self.config.min_output_base})")
        tx = Transaction(
            outputs=[TxOutput(address=address, assets={self.config.base_unit: int(amount)})],
            nonce=secrets.randbits(64),
        )
        tx.txid = tx.compute_txid()
        self._apply(tx, self.utxos)
        self._append_block([tx])
        logger.info("Funded %s with %d %s in %s", address, amount, self.config.base_unit, tx.txid)
        self.save()
        return tx.txid

    # Validation

    def required_fee(self, tx: Transaction, signer_count: int | None = None) -> int:
        signers = len(tx.witnesses) if signer_count is None else signer_count
        size = len(tx.body_bytes()) + self.config.witness_bytes * signers
        return self.config.min_tx_fee + self.config.fee_per_byte * size

    def validate_address(self, address: str) -> tuple[str, str]:
        try:
            return parse_address(address, self.config.symbol)
        except ValueError as exc:
            raise ValidationError(f"Invalid address {address!r}: {exc}") from exc

    def _validate_outputs(self, tx: Transaction) -> None:
        if not tx.outputs:
            raise ValidationError("Transaction has no outputs")
        if len(tx.outputs) > self.config.max_tx_outputs:
            raise ValidationError(f"Transaction has too many outputs (max {self.config.max_tx_outputs})")
        for output in tx.outputs:
            self.validate_address(output.address)
            for unit, quantity in output.assets.items():
                if not isinstance(quantity, int) or quantity <= 0:
                    raise ValidationError(f"Output quantity of {unit} must be a positive integer")
            if output.quantity_of(self.config.base_unit) < self.config.min_output_base:
                raise ValidationError(f"Output below minimum base ({self.config.min_output_base})")
            if output.datum is not None and len(canonical_json(output.datum)) > self.config.max_datum_bytes:
                raise ValidationError(f"Datum exceeds size limit ({self.config.max_datum_bytes} bytes)")

    def _validate_mint(self, tx: Transaction) -> None:
        for unit, quantity in tx.mint.items():
            if unit == self.config.base_unit:
                raise ValidationError("Base currency cannot be minted")
            if len(unit) < POLICY_ID_HEX_LEN:
                raise ValidationError(f"Minted unit {unit!r} has no policy id")
            if not isinstance(quantity, int) or quantity == 0:
                raise ValidationError(f"Mint quantity of {unit} must be a non-zero integer")

    def _verify_witnesses(self, tx: Transaction) -> set[str]:
        sighash = tx.signing_hash()
        signatories: set[str] = set()
        for witness in tx.witnesses:
            pubkey = str(witness.pubkey).strip().lower()
            if not verify_signature(pubkey, sighash, str(witness.signature).strip().lower()):
                raise ValidationError("Invalid witness signature")
            signatories.add(identity_from_public_key(pubkey))
        return signatories

    def _resolve(self, refs: Iterable[OutRef], view: dict[str, UTxO], label: str) -> dict[str, UTxO]:
        resolved: dict[str, UTxO] = {}
        for ref in refs:
            if ref.index < 0:
                raise ValidationError(f"{label} index must be >= 0")
            if ref.key in resolved:
                raise ValidationError(f"Duplicate {label.lower()} in transaction")
            utxo = view.get(ref.key)
            if utxo is None:
                raise Conflict(f"Missing UTXO: {ref.key}")
            resolved[ref.key] = utxo
        return resolved

    def validate_transaction(self, tx: Transaction, view: dict[str, UTxO]) -> int:
        if tx.txid != tx.compute_txid():
            raise ValidationError("Transaction ID mismatch")
        if not tx.inputs:
            raise ValidationError("Transaction requires inputs")
        if len(tx.inputs) > self.config.max_tx_inputs:
            raise ValidationError(f"Transaction has too many inputs (max {self.config.max_tx_inputs})")
        if set(tx.inputs) & set(tx.reference_inputs):
            raise ValidationError("An output cannot be both spent and referenced")
        if not isinstance(tx.fee, int) or tx.fee < 0:
            raise ValidationError("Transaction fee must be a non-negative integer")

        inputs = self._resolve(tx.inputs, view, "Input")
        reference_inputs = self._resolve(tx.reference_inputs, view, "Reference input")
        self._validate_outputs(tx)
        self._validate_mint(tx)

        signatories = self._verify_witnesses(tx)
        for utxo in inputs.values():
            kind, credential = self.validate_address(utxo.address)
            if kind == "key" and credential not in signatories:
                raise ValidationError(f"Missing witness for input owner of {utxo.ref.key}")
        for signer in tx.required_signers:
            if signer.lower() not in signatories:
                raise ValidationError(f"Missing required signer {signer}")

        consumed = merge_assets(total_assets(inputs.values()), tx.mint)
        produced = merge_assets(*(output.assets for output in tx.outputs), {self.config.base_unit: tx.fee})
        if consumed != produced:
            raise ValidationError("Value is not conserved: inputs and mint do not equal outputs and fee")
        if tx.fee < self.required_fee(tx):
            raise ValidationError("Transaction fee is below minimum")

        self._run_scripts(tx, inputs, reference_inputs, signatories)
        return tx.fee

    def _run_scripts(
        self,
        tx: Transaction,
        inputs: dict[str, UTxO],
        reference_inputs: dict[str, UTxO],
        signatories: set[str],
    ) -> None:
        attached = {}
        for script in tx.scripts:
            try:
                identity = self.deriver.from_attachment(script)
            except UnknownTemplate as exc:
                raise ValidationError(str(exc)) from exc
            attached[identity.code_hash] = identity

        executions: list[tuple[str, str, OutRef | None, Any]] = []
        for ref in tx.inputs:
            kind, credential = self.validate_address(inputs[ref.key].address)
            if kind == "script":
                executions.append(("spend", credential, ref, tx.redeemers.get(spend_redeemer_key(ref), VOID)))
        for policy_id in sorted({unit[:POLICY_ID_HEX_LEN] for unit in tx.mint}):
            executions.append(("mint", policy_id, None, tx.redeemers.get(mint_redeemer_key(policy_id), VOID)))

        for purpose, script_hash, own_ref, redeemer in executions:
            identity = attached.get(script_hash)
            if identity is None:
                raise ValidationError(f"Missing script for {purpose} purpose {script_hash}")
            expected_purpose, predicate = VALIDATORS[identity.template_id]
            if expected_purpose != purpose:
                raise EngineRejected(
                    f"{identity.template_id} cannot run for purpose {purpose}",
                    script_hash=script_hash,
                    purpose=purpose,
                )
            context = ScriptContext(
                tx=tx,
                inputs=inputs,
                reference_inputs=reference_inputs,
                signatories=signatories,
                purpose=purpose,
                own=identity,
                redeemer=redeemer,
                deriver=self.deriver,
                own_ref=own_ref,
                config=self.config,
            )
            try:
                predicate(context)
            except (ScriptFailure, DatumError, ValueError) as exc:
                raise EngineRejected(
                    f"{identity.template_id} rejected the transaction: {exc}",
                    script_hash=script_hash,
                    purpose=purpose,
                ) from exc

    def evaluate(self, tx: Transaction) -> int:
        """Dry-run against confirmed state plus the pending pool."""
        return self.validate_transaction(tx, self.pending_view())

    def submit(self, tx: Transaction) -> str:
        if tx.txid in self.transactions or any(item.txid == tx.txid for item in self.pending):
            raise ValidationError("Transaction already submitted")

        consumed = self._pending_consumed()
        for ref in list(tx.inputs) + list(tx.reference_inputs):
            if ref.key in consumed:
                raise Conflict(f"Output {ref.key} is already spent by a pending transaction")

        fee = self.validate_transaction(tx, self.pending_view())
        self.pending.append(tx)
        logger.info("Accepted %s into the pending pool (fee %d)", tx.txid, fee)
        self.save()
        return tx.txid

    def await_block(self, count: int = 1) -> list[Block]:
        blocks: list[Block] = []
        for _ in range(max(1, int(count))):
            view = dict(self.utxos)
            accepted: list[Transaction] = []
            for tx in self.pending:
                try:
                    self.validate_transaction(tx, view)
                except ValidationError as exc:
                    logger.warning("Dropped %s at commit: %s", tx.txid, exc)
                    continue
                self._apply(tx, view)
                accepted.append(tx)
            self.pending = []
            self.utxos = view
            block = self._append_block(accepted)
            logger.info("Committed block %d with %d transaction(s)", block.index, len(accepted))
            blocks.append(block)
        self.save()
        return blocks

    def confirmations(self, txid: str) -> int:
        height = self.confirmed_at.get(txid)
        if height is None:
            return 0
        return self.height - height + 1

    def await_confirmations(self, txid: str, confirmations: int | None = None) -> int:
        target = self.config.confirmations if confirmations is None else int(confirmations)
        if txid not in self.confirmed_at and all(tx.txid != txid for tx in self.pending):
            raise NotFound(f"Unknown transaction: {txid}")
        while self.confirmations(txid) < target:
            self.await_block()
            if txid not in self.confirmed_at:
                raise Conflict(f"Transaction {txid} was dropped by a conflicting commit")
        return self.confirmations(txid)

    # Client side

    def balance(self, tx: Transaction, fee_inputs: Iterable[UTxO], change_address: str) -> Transaction:
        """Add fee inputs, a fee and a change output so that value is conserved.

        Change that holds only base currency below the minimum output is folded
        into the fee.
        """
        self.validate_address(change_address)
        view = self.pending_view()
        inputs = list(tx.inputs)
        for utxo in fee_inputs:
            if utxo.ref not in inputs:
                inputs.append(utxo.ref)

        resolved: list[UTxO] = []
        for ref in inputs:
            utxo = view.get(ref.key)
            if utxo is None:
                raise Conflict(f"Missing UTXO: {ref.key}")
            resolved.append(utxo)

        base = self.config.base_unit
        surplus = subtract_assets(
            merge_assets(total_assets(resolved), tx.mint),
            merge_assets(*(output.assets for output in tx.outputs)),
        )
        short = {unit: -quantity for unit, quantity in surplus.items() if quantity < 0}
        if short:
            raise BalancingError(f"Inputs do not cover outputs, short by {short}")

        signers = set(signer.lower() for signer in tx.required_signers)
        for utxo in resolved:
            kind, credential = self.validate_address(utxo.address)
            if kind == "key":
                signers.add(credential)

        fee = self.config.min_tx_fee
        for _ in range(8):
            change = dict(surplus)
            change[base] = change.get(base, 0) - fee
            if change[base] < 0:
                raise BalancingError(f"Inputs do not cover the transaction fee ({fee})")
            candidate = Transaction(
                inputs=list(inputs),
                reference_inputs=list(tx.reference_inputs),
                outputs=list(tx.outputs),
                mint=dict(tx.mint),
                scripts=list(tx.scripts),
                redeemers=dict(tx.redeemers),
                required_signers=list(tx.required_signers),
                fee=fee,
                nonce=tx.nonce,
            )
            carries_assets = any(quantity for unit, quantity in change.items() if unit != base)
            if carries_assets or change[base] >= self.config.min_output_base:
                if change[base] < self.config.min_output_base:
                    raise BalancingError("Change output holding assets is below the minimum output base")
                candidate.outputs.append(TxOutput(address=change_address, assets=merge_assets(change)))
            else:
                candidate.fee = fee + change[base]
            required = self.required_fee(candidate, len(signers))
            if candidate.fee >= required:
                candidate.txid = candidate.compute_txid()
                return candidate
            fee = required
        raise BalancingError("Fee computation did not converge")

    def sign(self, tx: Transaction, private_key_hex: str) -> Transaction:
        if tx.txid != tx.compute_txid():
            raise ValidationError("Transaction ID mismatch; balance the transaction before signing")
        signed = Transaction.from_dict(tx.to_dict())
        try:
            pubkey = private_key_to_public_key(private_key_hex).hex()
        except ValueError as exc:
            raise ValidationError("Invalid private key") from exc
        if all(witness.pubkey != pubkey for witness in signed.witnesses):
            signed.witnesses.append(Witness(pubkey=pubkey, signature=sign_digest(private_key_hex, signed.signing_hash())))
        return signed

    def status(self) -> dict[str, Any]:
        tip = self.tip
        return {
            "network_id": self.config.network_id,
            "symbol": self.config.symbol,
            "height": self.height,
            "tip_hash": tip.block_hash if tip else None,
            "pending_size": len(self.pending),
            "utxo_count": len(self.utxos),
            "transaction_count": len(self.transactions),
            "tx_policy": {
                "min_output_base": self.config.min_output_base,
                "min_tx_fee": self.config.min_tx_fee,
                "fee_per_byte": self.config.fee_per_byte,
                "max_tx_inputs": self.config.max_tx_inputs,
                "max_tx_outputs": self.config.max_tx_outputs,
            },
        }
