from __future__ import annotations

from typing import Iterable

from .config import CONFIG
from .errors import AmountTooSmall, InsufficientBalance
from .models import OutRef, UTxO


def pick_fee_inputs(
    wallet_outputs: Iterable[UTxO],
    base_unit: str = CONFIG.base_unit,
    needed: int | None = None,
    exclude: Iterable[OutRef] = (),
) -> list[UTxO]:
    """Base-only outputs, largest first.

    With `needed`, stop once the picked outputs cover that much base currency.
    """
    skipped = set(exclude)
    candidates = [
        utxo
        for utxo in wallet_outputs
        if utxo.ref not in skipped and utxo.output.has_only(base_unit) and utxo.output.quantity_of(base_unit) > 0
    ]
    candidates.sort(key=lambda utxo: (-utxo.output.quantity_of(base_unit), utxo.ref))
    if needed is None:
        return candidates

    picked: list[UTxO] = []
    total = 0
    for utxo in candidates:
        if total >= needed:
            break
        picked.append(utxo)
        total += utxo.output.quantity_of(base_unit)
    if total < needed:
        raise InsufficientBalance(f"Base-only outputs hold {total}, need {needed}")
    return picked


def token_outputs(wallet_outputs: Iterable[UTxO], token_unit: str) -> list[UTxO]:
    return [utxo for utxo in wallet_outputs if utxo.output.quantity_of(token_unit) > 0]


def pick_largest_token_output(wallet_outputs: Iterable[UTxO], token_unit: str, amount: int | None = None) -> UTxO:
    holders = token_outputs(wallet_outputs, token_unit)
    if not holders:
        raise InsufficientBalance(f"No output holds {token_unit}")
    largest = max(holders, key=lambda utxo: utxo.output.quantity_of(token_unit))
    if amount is not None and amount > largest.output.quantity_of(token_unit):
        raise AmountTooSmall(
            f"Largest output holds {largest.output.quantity_of(token_unit)} of {token_unit}, "
            f"{amount} requested; merge outputs first"
        )
    return largest
