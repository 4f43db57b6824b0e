from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Iterable

from .assembler import TxBuilder, submit_with_retry
from .config import LedgerConfig
from .datums import VOID
from .errors import InsufficientBalance, NoProofFound, RecordNotFound, Unauthorized, ValidationError
from .family import (
    RECORD_KINDS,
    PolicyKind,
    ProofScripts,
    ReferenceScripts,
    TokenFamily,
    derive_family,
    derive_proof_scripts,
)
from .models import OutRef, Transaction, TxOutput, UTxO, merge_assets
from .policy import PolicyRecord, PolicyRecordStore
from .proofs import CoveredTransfer, ProofOutput, build_covered_transfer, find_proofs, proof_outputs
from .selection import pick_fee_inputs, pick_largest_token_output, token_outputs

if TYPE_CHECKING:
    from .ledger import Ledger
    from .wallet import Wallet

logger = logging.getLogger(__name__)


class ProgrammableTokenService:
    """Issue and move programmable tokens through covered transfers.

    Every submission waits for the configured confirmation depth before
    returning, so the next call always reads committed state.
    """

    def __init__(self, ledger: "Ledger", config: LedgerConfig | None = None):
        self.ledger = ledger
        self.config = config or ledger.config
        self.store = PolicyRecordStore(ledger, self.config)
        self.proof_scripts: ProofScripts = derive_proof_scripts(ledger.deriver, self.config)

    def _wallet_outputs(self, wallet: "Wallet") -> list[UTxO]:
        return self.ledger.utxos_at(wallet.address)

    def _fee_inputs(self, wallet: "Wallet", widen: bool, exclude: Iterable[OutRef] = ()) -> list[UTxO]:
        candidates = pick_fee_inputs(self._wallet_outputs(wallet), self.config.base_unit, exclude=exclude)
        return candidates if widen else candidates[:1]

    def _records(self, family: TokenFamily) -> list[UTxO]:
        records: list[UTxO] = []
        for kind in family.kinds:
            reference = family.policies[kind].reference
            if reference is not None:
                record = self.store.read(reference)
                if record.utxo is not None:
                    records.append(record.utxo)
        return records

    def covered_part(self, family: TokenFamily, token_inputs: list[UTxO]) -> CoveredTransfer:
        proofs = find_proofs(self.ledger, token_inputs, self.proof_scripts.address, family.check_units())
        return CoveredTransfer(family=family, token_inputs=token_inputs, proofs=proofs, records=self._records(family))

    # Maintenance

    def split_fee_outputs(self, wallet: "Wallet", count: int | None = None, amount: int | None = None) -> str:
        """Split base currency into several base-only outputs for fees and seeds."""
        count = self.config.fee_output_count if count is None else int(count)
        amount = self.config.fee_output_amount if amount is None else int(amount)
        if count <= 0:
            raise ValueError("Split count must be positive")
        if amount < self.config.min_output_base:
            raise ValueError(f"Split amount must be at least {self.config.min_output_base}")

        def build(widen: bool) -> Transaction:
            outputs = self._wallet_outputs(wallet)
            if widen:
                inputs = pick_fee_inputs(outputs, self.config.base_unit)
            else:
                needed = count * amount + self.config.min_tx_fee + self.config.min_output_base
                inputs = pick_fee_inputs(outputs, self.config.base_unit, needed=needed)
            builder = TxBuilder(self.ledger, self.config)
            builder.collect_from(inputs)
            for _ in range(count):
                builder.pay_to_address(wallet.address, {self.config.base_unit: amount})
            return builder.complete([], wallet.address)

        return submit_with_retry(self.ledger, f"split {count} fee outputs", build, [wallet], self.config)

    # Bootstrap

    def bootstrap_reference(self, admin_wallet: "Wallet", kind: PolicyKind) -> ReferenceScripts:
        record = self.store.bootstrap(admin_wallet, kind)
        if record.reference is None:
            raise RecordNotFound(f"Bootstrapped {kind.value} record has no reference scripts")
        return record.reference

    def bootstrap_family(
        self,
        admin_wallet: "Wallet",
        asset_name: str,
        supply: int,
        kinds: Iterable[PolicyKind],
        fee_amount: int | None = None,
        splits: list[int] | None = None,
    ) -> TokenFamily:
        """Create the family's Policy Records, then mint its supply under a first proof."""
        kinds = list(dict.fromkeys(kinds))
        if not kinds:
            raise ValueError("A token family needs at least one policy kind")
        if supply <= 0:
            raise ValueError("Initial supply must be positive")
        amounts = list(splits) if splits else [int(supply)]
        if any(item <= 0 for item in amounts) or sum(amounts) != supply:
            raise ValueError("Supply splits must be positive and add up to the supply")
        if PolicyKind.FEE in kinds:
            if fee_amount is None:
                raise ValueError("The fee policy needs a fee amount")
            if fee_amount < self.config.min_output_base:
                raise ValueError(f"Fee amount must be at least the minimum output ({self.config.min_output_base})")

        references = {kind: self.bootstrap_reference(admin_wallet, kind) for kind in kinds if kind in RECORD_KINDS}

        candidates = pick_fee_inputs(self._wallet_outputs(admin_wallet), self.config.base_unit)
        if not candidates:
            raise InsufficientBalance(f"{admin_wallet.address} has no base-only output to use as seed")
        seed = candidates[-1]
        family = derive_family(
            self.ledger.deriver,
            asset_name,
            admin_wallet.identity,
            seed.ref,
            references=references,
            fee_amount=fee_amount if PolicyKind.FEE in kinds else None,
            config=self.config,
        )

        def build(widen: bool) -> Transaction:
            builder = TxBuilder(self.ledger, self.config)
            builder.collect_from([seed])
            builder.mint_assets({family.token_unit: int(supply)})
            builder.attach(family.token)
            build_covered_transfer(
                builder,
                self.proof_scripts,
                [CoveredTransfer(family=family, records=self._records(family))],
                [TxOutput(address=admin_wallet.address, assets={family.token_unit: item}) for item in amounts],
            )
            return builder.complete(self._fee_inputs(admin_wallet, widen, exclude=[seed.ref]), admin_wallet.address)

        submit_with_retry(self.ledger, f"mint {asset_name}", build, [admin_wallet], self.config, attempts=1)
        logger.info(
            "Bootstrapped token family %s (policy %s) with %d unit(s) under %s",
            asset_name,
            family.policy_id,
            supply,
            ", ".join(kind.value for kind in family.kinds),
        )
        return family

    # Transfers

    def transfer(
        self,
        wallet: "Wallet",
        family: TokenFamily,
        recipient: str,
        amount: int,
        consume_proofs: bool = False,
    ) -> str:
        if amount <= 0:
            raise ValueError("Transfer amount must be positive")
        self.ledger.validate_address(recipient)

        def build(widen: bool) -> Transaction:
            source = pick_largest_token_output(self._wallet_outputs(wallet), family.token_unit, amount)
            held = source.output.quantity_of(family.token_unit)
            outputs = [TxOutput(address=recipient, assets={family.token_unit: amount})]
            if held > amount:
                outputs.append(TxOutput(address=wallet.address, assets={family.token_unit: held - amount}))
            builder = TxBuilder(self.ledger, self.config)
            build_covered_transfer(
                builder,
                self.proof_scripts,
                [self.covered_part(family, [source])],
                outputs,
                consume_proofs=consume_proofs,
            )
            builder.add_signer(wallet.identity)
            return builder.complete(self._fee_inputs(wallet, widen), wallet.address)

        return submit_with_retry(
            self.ledger, f"transfer {amount} {family.name} to {recipient}", build, [wallet], self.config
        )

    def transfer_many(
        self,
        wallet: "Wallet",
        transfers: list[tuple[TokenFamily, int]],
        recipient: str,
        consume_proofs: bool = False,
    ) -> str:
        """Move several token families in one transaction under one shared proof."""
        if not transfers:
            raise ValueError("Nothing to transfer")
        if len({family.policy_id for family, _ in transfers}) != len(transfers):
            raise ValueError("Each token family may appear only once")
        if any(amount <= 0 for _, amount in transfers):
            raise ValueError("Transfer amounts must be positive")
        self.ledger.validate_address(recipient)

        def build(widen: bool) -> Transaction:
            wallet_outputs = self._wallet_outputs(wallet)
            parts: list[CoveredTransfer] = []
            sent: dict[str, int] = {}
            change: dict[str, int] = {}
            for family, amount in transfers:
                source = pick_largest_token_output(wallet_outputs, family.token_unit, amount)
                parts.append(self.covered_part(family, [source]))
                sent[family.token_unit] = amount
                change[family.token_unit] = source.output.quantity_of(family.token_unit) - amount
            outputs = [TxOutput(address=recipient, assets=sent)]
            leftover = merge_assets(change)
            if leftover:
                outputs.append(TxOutput(address=wallet.address, assets=leftover))
            builder = TxBuilder(self.ledger, self.config)
            build_covered_transfer(builder, self.proof_scripts, parts, outputs, consume_proofs=consume_proofs)
            builder.add_signer(wallet.identity)
            return builder.complete(self._fee_inputs(wallet, widen), wallet.address)

        names = ", ".join(family.name for family, _ in transfers)
        return submit_with_retry(self.ledger, f"transfer [{names}] to {recipient}", build, [wallet], self.config)

    def merge(
        self,
        wallet: "Wallet",
        family: TokenFamily,
        recipient: str | None = None,
        consume_proofs: bool = False,
    ) -> str:
        """Consolidate every token output of `wallet` into one, citing one proof per input."""
        target = recipient or wallet.address
        self.ledger.validate_address(target)

        def build(widen: bool) -> Transaction:
            sources = token_outputs(self._wallet_outputs(wallet), family.token_unit)
            if not sources:
                raise InsufficientBalance(f"{wallet.address} holds no {family.name}")
            if len(sources) > self.config.max_tx_inputs - 1:
                sources = sources[: self.config.max_tx_inputs - 1]
            total = sum(utxo.output.quantity_of(family.token_unit) for utxo in sources)
            builder = TxBuilder(self.ledger, self.config)
            build_covered_transfer(
                builder,
                self.proof_scripts,
                [self.covered_part(family, sources)],
                [TxOutput(address=target, assets={family.token_unit: total})],
                consume_proofs=consume_proofs,
            )
            builder.add_signer(wallet.identity)
            return builder.complete(self._fee_inputs(wallet, widen), wallet.address)

        return submit_with_retry(self.ledger, f"merge {family.name}", build, [wallet], self.config)

    def retirable_proofs(self, family: TokenFamily) -> list[ProofOutput]:
        """Proofs of `family` whose covered outputs have all been spent."""
        units = set(family.check_units())
        retirable: list[ProofOutput] = []
        for proof in self.proofs(family):
            carried = {
                unit
                for unit in proof.utxo.assets
                if unit not in (self.config.base_unit, self.proof_scripts.pvt_unit)
            }
            if not carried or not carried <= units:
                continue
            if any(self.ledger.is_live(OutRef(proof.txid, index)) for index in proof.covered_indices):
                continue
            retirable.append(proof)
        return retirable

    def retire_proofs(self, wallet: "Wallet", family: TokenFamily) -> str | None:
        """Spend proofs that no longer cover anything, burning their markers and proof tokens.

        The locked base currency returns to `wallet`. Returns None when there is
        nothing to retire.
        """
        if not self.retirable_proofs(family):
            logger.info("No retirable proofs for %s", family.name)
            return None

        def build(widen: bool) -> Transaction:
            proofs = self.retirable_proofs(family)[: self.config.max_tx_inputs - 1]
            if not proofs:
                raise NoProofFound(f"No retirable proofs for {family.name}")
            burned = merge_assets(
                *(
                    {unit: -quantity for unit, quantity in proof.utxo.assets.items() if unit != self.config.base_unit}
                    for proof in proofs
                )
            )
            builder = TxBuilder(self.ledger, self.config)
            builder.collect_from([proof.utxo for proof in proofs], redeemer=VOID)
            builder.attach(self.proof_scripts.spend, self.proof_scripts.mint)
            builder.mint_assets(burned)
            for kind in family.kinds:
                builder.attach(family.policies[kind].check)
            return builder.complete(self._fee_inputs(wallet, widen), wallet.address)

        return submit_with_retry(self.ledger, f"retire {family.name} proofs", build, [wallet], self.config)

    # Policy administration

    def _reference(self, family: TokenFamily, kind: PolicyKind) -> ReferenceScripts:
        reference = family.policy(kind).reference
        if reference is None:
            raise ValidationError(f"{kind.value} policy of {family.name} has no Policy Record")
        return reference

    def set_frozen(
        self, admin_wallet: "Wallet", family: TokenFamily, frozen: bool, check_admin: bool = True
    ) -> PolicyRecord:
        return self.store.set_frozen(
            self._reference(family, PolicyKind.FREEZE), admin_wallet, frozen, check_admin=check_admin
        )

    def blacklist(
        self, admin_wallet: "Wallet", family: TokenFamily, identity: str, check_admin: bool = True
    ) -> PolicyRecord:
        return self.store.blacklist(
            self._reference(family, PolicyKind.BLACKLIST), admin_wallet, identity, check_admin=check_admin
        )

    def whitelist(
        self, admin_wallet: "Wallet", family: TokenFamily, identity: str, check_admin: bool = True
    ) -> PolicyRecord:
        return self.store.whitelist(
            self._reference(family, PolicyKind.BLACKLIST), admin_wallet, identity, check_admin=check_admin
        )

    def policy_records(self, family: TokenFamily) -> dict[PolicyKind, PolicyRecord]:
        return self.store.read_family(family)

    def withdraw_fees(self, admin_wallet: "Wallet", family: TokenFamily, check_admin: bool = True) -> str:
        policy = family.policy(PolicyKind.FEE)
        if check_admin and admin_wallet.identity != family.admin:
            raise Unauthorized(f"{admin_wallet.identity} is not the fee admin of {family.name}")
        if policy.treasury is None:
            raise ValidationError(f"Fee policy of {family.name} has no treasury")
        treasury = policy.treasury

        def build(widen: bool) -> Transaction:
            collected = self.ledger.utxos_at(treasury.address)
            if not collected:
                raise InsufficientBalance(f"Fee treasury of {family.name} is empty")
            builder = TxBuilder(self.ledger, self.config)
            builder.collect_from(collected, redeemer=VOID)
            builder.attach(treasury)
            builder.add_signer(admin_wallet.identity)
            return builder.complete(self._fee_inputs(admin_wallet, widen), admin_wallet.address)

        return submit_with_retry(
            self.ledger, f"withdraw {family.name} fees", build, [admin_wallet], self.config
        )

    # Queries

    def balance_of(self, address: str, family: TokenFamily) -> int:
        return self.ledger.balance_of(address, family.token_unit)

    def fee_treasury_balance(self, family: TokenFamily) -> int:
        return self.ledger.balance_of(family.policy(PolicyKind.FEE).fee_address)

    def proofs(self, family: TokenFamily | None = None) -> list[ProofOutput]:
        found = proof_outputs(self.ledger, self.proof_scripts.address)
        if family is None:
            return found
        units = family.check_units()
        return [proof for proof in found if any(proof.carries(unit) for unit in units)]
