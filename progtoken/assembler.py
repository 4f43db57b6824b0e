from __future__ import annotations

import logging
import secrets
from typing import TYPE_CHECKING, Any, Callable, Iterable

from .config import CONFIG, LedgerConfig
from .datums import VOID
from .errors import RETRYABLE_ERRORS, BalancingError
from .models import (
    AttachedScript,
    OutRef,
    Transaction,
    TxOutput,
    UTxO,
    merge_assets,
    mint_redeemer_key,
    spend_redeemer_key,
)
from .onchain import POLICY_ID_HEX_LEN
from .scripts import ScriptIdentity

if TYPE_CHECKING:
    from .ledger import Ledger
    from .wallet import Wallet

logger = logging.getLogger(__name__)


def assemble(
    inputs: Iterable[OutRef],
    outputs: Iterable[TxOutput],
    reference_inputs: Iterable[OutRef] = (),
    mint: dict[str, int] | None = None,
    scripts: Iterable[AttachedScript] = (),
    redeemers: dict[str, Any] | None = None,
    required_signers: Iterable[str] = (),
    nonce: int | None = None,
) -> Transaction:
    """Compose an unbalanced transaction. Pure: no ledger access."""
    attached: list[AttachedScript] = []
    for script in scripts:
        if script not in attached:
            attached.append(script)
    signers: list[str] = []
    for signer in required_signers:
        if signer.lower() not in signers:
            signers.append(signer.lower())
    return Transaction(
        inputs=list(inputs),
        reference_inputs=list(reference_inputs),
        outputs=list(outputs),
        mint={unit: quantity for unit, quantity in (mint or {}).items() if quantity},
        scripts=attached,
        redeemers=dict(redeemers or {}),
        required_signers=signers,
        nonce=secrets.randbits(32) if nonce is None else nonce,
    )


class TxBuilder:
    def __init__(self, ledger: "Ledger", config: LedgerConfig | None = None):
        self.ledger = ledger
        self.config = config or ledger.config
        self.inputs: list[OutRef] = []
        self.reference_inputs: list[OutRef] = []
        self.outputs: list[TxOutput] = []
        self.mint: dict[str, int] = {}
        self.scripts: list[AttachedScript] = []
        self.redeemers: dict[str, Any] = {}
        self.signers: list[str] = []

    def collect_from(self, utxos: Iterable[UTxO], redeemer: Any = None) -> "TxBuilder":
        for utxo in utxos:
            if utxo.ref in self.inputs:
                continue
            self.inputs.append(utxo.ref)
            if redeemer is not None:
                self.redeemers[spend_redeemer_key(utxo.ref)] = redeemer
        return self

    def read_from(self, utxos: Iterable[UTxO]) -> "TxBuilder":
        for utxo in utxos:
            if utxo.ref not in self.reference_inputs and utxo.ref not in self.inputs:
                self.reference_inputs.append(utxo.ref)
        return self

    def pay_to_address(self, address: str, assets: dict[str, int], datum: Any = None) -> "TxBuilder":
        """Append an output, topped up to the minimum base amount."""
        value = merge_assets(assets)
        base = self.config.base_unit
        value[base] = max(value.get(base, 0), self.config.min_output_base)
        self.outputs.append(TxOutput(address=address, assets=value, datum=datum))
        return self

    def mint_assets(self, units: dict[str, int], redeemer: Any = VOID) -> "TxBuilder":
        for unit, quantity in units.items():
            self.mint[unit] = self.mint.get(unit, 0) + int(quantity)
            self.redeemers[mint_redeemer_key(unit[:POLICY_ID_HEX_LEN])] = redeemer
        return self

    def attach(self, *identities: ScriptIdentity) -> "TxBuilder":
        for identity in identities:
            script = identity.attachment()
            if script not in self.scripts:
                self.scripts.append(script)
        return self

    def add_signer(self, identity: str) -> "TxBuilder":
        if identity.lower() not in self.signers:
            self.signers.append(identity.lower())
        return self

    def build(self) -> Transaction:
        return assemble(
            inputs=self.inputs,
            outputs=self.outputs,
            reference_inputs=self.reference_inputs,
            mint=self.mint,
            scripts=self.scripts,
            redeemers=self.redeemers,
            required_signers=self.signers,
        )

    def complete(self, fee_inputs: Iterable[UTxO], change_address: str) -> Transaction:
        return self.ledger.balance(self.build(), fee_inputs, change_address)


def submit_with_retry(
    ledger: "Ledger",
    label: str,
    build: Callable[[bool], Transaction],
    signers: Iterable["Wallet"],
    config: LedgerConfig = CONFIG,
    attempts: int | None = None,
) -> str:
    """Build, sign, submit and wait for confirmation.

    `build` receives True once balancing has failed, asking it to widen its
    fee inputs. Conflicts are retried by rebuilding from fresh ledger reads.
    EngineRejected is never retried.
    """
    wallets = list(signers)
    widen = False
    attempt = 0
    while True:
        attempt += 1
        try:
            tx = build(widen)
            for wallet in wallets:
                tx = ledger.sign(tx, wallet.private_key)
            txid = ledger.submit(tx)
            ledger.await_confirmations(txid, config.confirmations)
            logger.info("%s confirmed in %s", label, txid)
            return txid
        except BalancingError as exc:
            if widen:
                raise
            widen = True
            attempt -= 1
            logger.info("%s: balancing failed (%s), widening fee inputs", label, exc)
        except RETRYABLE_ERRORS as exc:
            if attempt >= (config.retry_attempts if attempts is None else attempts):
                raise
            logger.warning("%s: attempt %d hit %s, re-reading state", label, attempt, exc)
