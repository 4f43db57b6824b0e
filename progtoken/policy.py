from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Union

from .assembler import TxBuilder, submit_with_retry
from .config import LedgerConfig
from .datums import VOID, BlacklistAction, BlacklistDatum, BlacklistRedeemer, FeeSchedule, FreezeDatum
from .errors import Conflict, DuplicateRecord, InsufficientBalance, RecordNotFound, StaleRead, Unauthorized
from .family import RECORD_KINDS, PolicyKind, PolicyScripts, ReferenceScripts, TokenFamily, derive_reference_scripts
from .models import OutRef, Transaction, UTxO
from .selection import pick_fee_inputs

if TYPE_CHECKING:
    from .ledger import Ledger
    from .wallet import Wallet

logger = logging.getLogger(__name__)

Payload = Union[FreezeDatum, BlacklistDatum, FeeSchedule]


@dataclass
class PolicyRecord:
    kind: PolicyKind
    payload: Payload
    # None for the fee schedule, which lives in the fee check parameters
    utxo: UTxO | None = None
    reference: ReferenceScripts | None = None

    @property
    def ref(self) -> OutRef | None:
        return self.utxo.ref if self.utxo is not None else None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"kind": self.kind.value, "ref": self.ref.key if self.ref else None}
        if isinstance(self.payload, FreezeDatum):
            data["is_frozen"] = self.payload.is_frozen
        elif isinstance(self.payload, BlacklistDatum):
            data["blacklisted_identities"] = list(self.payload.blacklisted_identities)
        else:
            data["fee_amount"] = self.payload.fee_amount
            data["fee_destination"] = self.payload.fee_destination
        if self.reference is not None:
            data["admin"] = self.reference.admin
            data["address"] = self.reference.address
            data["marker_unit"] = self.reference.marker_unit
        return data


def _default_payload(kind: PolicyKind) -> Payload:
    if kind is PolicyKind.FREEZE:
        return FreezeDatum(is_frozen=False)
    return BlacklistDatum(blacklisted_identities=[])


class PolicyRecordStore:
    """Singleton policy records: one live output per record, replaced atomically."""

    def __init__(self, ledger: "Ledger", config: LedgerConfig | None = None):
        self.ledger = ledger
        self.config = config or ledger.config

    def _fee_inputs(self, wallet: "Wallet", widen: bool, exclude: list[OutRef] | None = None) -> list[UTxO]:
        candidates = pick_fee_inputs(self.ledger.utxos_at(wallet.address), self.config.base_unit, exclude=exclude or [])
        return candidates if widen else candidates[:1]

    def bootstrap(self, admin_wallet: "Wallet", kind: PolicyKind, seed_ref: OutRef | None = None) -> PolicyRecord:
        if kind not in RECORD_KINDS:
            raise ValueError(f"{kind.value} policy has no on-ledger record")

        if seed_ref is None:
            candidates = pick_fee_inputs(self.ledger.utxos_at(admin_wallet.address), self.config.base_unit)
            if not candidates:
                raise InsufficientBalance(f"{admin_wallet.address} has no base-only output to use as seed")
            seed = candidates[-1]
        else:
            seed = self.ledger.utxo(seed_ref)
            if seed is None:
                raise Conflict(f"Missing UTXO: {seed_ref.key}")

        reference = derive_reference_scripts(
            self.ledger.deriver, kind, seed.ref, admin_wallet.identity, self.config
        )
        payload = _default_payload(kind)

        def build(widen: bool) -> Transaction:
            builder = TxBuilder(self.ledger, self.config)
            builder.collect_from([seed])
            builder.mint_assets({reference.marker_unit: 1})
            builder.attach(reference.mint)
            builder.pay_to_address(reference.address, {reference.marker_unit: 1}, datum=payload.to_data())
            builder.add_signer(admin_wallet.identity)
            return builder.complete(self._fee_inputs(admin_wallet, widen, exclude=[seed.ref]), admin_wallet.address)

        submit_with_retry(self.ledger, f"bootstrap {kind.value} record", build, [admin_wallet], self.config, attempts=1)
        logger.info("Bootstrapped %s record at %s (marker %s)", kind.value, reference.address, reference.marker_unit)
        return self.read(reference)

    def read(self, reference: ReferenceScripts) -> PolicyRecord:
        holders = [
            utxo
            for utxo in self.ledger.utxos_at(reference.address)
            if utxo.output.quantity_of(reference.marker_unit) > 0
        ]
        if not holders:
            raise RecordNotFound(f"No live {reference.kind.value} record for marker {reference.marker_unit}")
        if len(holders) > 1:
            logger.error("Store invariant violated: %d live records for %s", len(holders), reference.marker_unit)
            raise DuplicateRecord(f"{len(holders)} live records carry marker {reference.marker_unit}")

        utxo = holders[0]
        if reference.kind is PolicyKind.FREEZE:
            payload: Payload = FreezeDatum.from_data(utxo.output.datum)
        else:
            payload = BlacklistDatum.from_data(utxo.output.datum)
        return PolicyRecord(kind=reference.kind, payload=payload, utxo=utxo, reference=reference)

    def read_fee(self, policy: PolicyScripts) -> PolicyRecord:
        return PolicyRecord(
            kind=PolicyKind.FEE,
            payload=FeeSchedule(fee_amount=policy.fee_amount, fee_destination=policy.fee_address),
        )

    def read_family(self, family: TokenFamily) -> dict[PolicyKind, PolicyRecord]:
        records: dict[PolicyKind, PolicyRecord] = {}
        for kind in family.kinds:
            policy = family.policies[kind]
            if policy.reference is not None:
                records[kind] = self.read(policy.reference)
            else:
                records[kind] = self.read_fee(policy)
        return records

    def update(
        self,
        reference: ReferenceScripts,
        admin_wallet: "Wallet",
        new_payload: Payload,
        redeemer: Any = None,
        expected: PolicyRecord | None = None,
        check_admin: bool = True,
    ) -> PolicyRecord:
        """Consume the live record and produce its replacement carrying `new_payload`.

        `expected` pins the record the caller read; if it is no longer live the
        update fails with StaleRead instead of silently applying to newer state.
        """
        if check_admin and admin_wallet.identity != reference.admin:
            raise Unauthorized(f"{admin_wallet.identity} is not the admin of this {reference.kind.value} record")

        record = expected or self.read(reference)
        if record.utxo is None or not self.ledger.is_live(record.utxo.ref):
            raise StaleRead(f"Policy record {record.ref.key if record.ref else '?'} is no longer live")
        current = record.utxo

        def build(widen: bool) -> Transaction:
            builder = TxBuilder(self.ledger, self.config)
            builder.collect_from([current], redeemer=VOID if redeemer is None else redeemer)
            builder.attach(reference.spend)
            builder.pay_to_address(reference.address, {reference.marker_unit: 1}, datum=new_payload.to_data())
            builder.add_signer(admin_wallet.identity)
            return builder.complete(self._fee_inputs(admin_wallet, widen), admin_wallet.address)

        try:
            submit_with_retry(
                self.ledger, f"update {reference.kind.value} record", build, [admin_wallet], self.config, attempts=1
            )
        except Conflict as exc:
            if not self.ledger.is_live(current.ref):
                raise StaleRead(f"Policy record {current.ref.key} was replaced concurrently") from exc
            raise
        logger.info("Updated %s record %s", reference.kind.value, reference.marker_unit)
        return self.read(reference)

    def update_with_retry(
        self,
        reference: ReferenceScripts,
        admin_wallet: "Wallet",
        change: Callable[[PolicyRecord], tuple[Payload, Any]],
        check_admin: bool = True,
    ) -> PolicyRecord:
        """Read-modify-write loop: re-read and re-apply `change` after a StaleRead."""
        attempt = 0
        while True:
            attempt += 1
            record = self.read(reference)
            payload, redeemer = change(record)
            try:
                return self.update(reference, admin_wallet, payload, redeemer, expected=record, check_admin=check_admin)
            except StaleRead as exc:
                if attempt >= self.config.retry_attempts:
                    raise
                logger.warning("Stale %s record on attempt %d: %s", reference.kind.value, attempt, exc)

    def set_frozen(
        self,
        reference: ReferenceScripts,
        admin_wallet: "Wallet",
        frozen: bool,
        check_admin: bool = True,
    ) -> PolicyRecord:
        return self.update_with_retry(
            reference,
            admin_wallet,
            lambda record: (FreezeDatum(is_frozen=frozen), VOID),
            check_admin=check_admin,
        )

    def _blacklist_action(
        self,
        reference: ReferenceScripts,
        admin_wallet: "Wallet",
        action: BlacklistAction,
        identity: str,
        check_admin: bool,
    ) -> PolicyRecord:
        redeemer = BlacklistRedeemer(action=action, identity=identity.lower())

        def change(record: PolicyRecord) -> tuple[Payload, Any]:
            return redeemer.apply(record.payload), redeemer.to_data()

        return self.update_with_retry(reference, admin_wallet, change, check_admin=check_admin)

    def blacklist(
        self, reference: ReferenceScripts, admin_wallet: "Wallet", identity: str, check_admin: bool = True
    ) -> PolicyRecord:
        return self._blacklist_action(reference, admin_wallet, BlacklistAction.BLACKLIST, identity, check_admin)

    def whitelist(
        self, reference: ReferenceScripts, admin_wallet: "Wallet", identity: str, check_admin: bool = True
    ) -> PolicyRecord:
        return self._blacklist_action(reference, admin_wallet, BlacklistAction.WHITELIST, identity, check_admin)
