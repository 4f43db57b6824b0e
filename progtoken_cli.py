from __future__ import annotations

import argparse
import getpass
import json
import os
from pathlib import Path

from progtoken.config import CONFIG
from progtoken.crypto import parse_address
from progtoken.errors import ProgTokenError, ValidationError
from progtoken.family import PolicyKind, TokenFamily
from progtoken.ledger import Ledger
from progtoken.logging_config import configure_logging
from progtoken.registry import FamilyRegistry
from progtoken.tokens import ProgrammableTokenService
from progtoken.wallet import Wallet, create_wallet, load_wallet, save_wallet, wallet_address


def _load_ledger(data_dir: str, must_exist: bool = True) -> Ledger:
    ledger = Ledger(data_dir)
    if ledger.exists():
        ledger.load()
        return ledger

    if must_exist:
        raise ValidationError(f"Ledger state not found in '{data_dir}'. Run 'init' first.")

    return ledger


def _registry(data_dir: str) -> FamilyRegistry:
    return FamilyRegistry(Path(data_dir) / "families.json")


def _service(args: argparse.Namespace) -> tuple[ProgrammableTokenService, FamilyRegistry]:
    return ProgrammableTokenService(_load_ledger(args.data_dir)), _registry(args.data_dir)


def _resolve_wallet_password(args: argparse.Namespace, prompt_if_missing: bool = False) -> str | None:
    direct = str(getattr(args, "wallet_password", "") or "").strip()
    if direct:
        return direct

    env_name = str(getattr(args, "wallet_password_env", "") or "").strip()
    if env_name:
        value = os.environ.get(env_name)
        if value is None:
            raise ValidationError(f"Wallet password environment variable '{env_name}' is not set")
        if not value:
            raise ValidationError(f"Wallet password environment variable '{env_name}' is empty")
        return value

    if bool(getattr(args, "wallet_password_prompt", False)) or prompt_if_missing:
        try:
            entered = getpass.getpass("Wallet password: ")
        except (EOFError, OSError) as exc:
            raise ValidationError(f"Failed to read wallet password: {exc}") from exc
        if not entered:
            raise ValidationError("Wallet password must not be empty")
        return entered

    return None


def _load_wallet_with_args(path: str | Path, args: argparse.Namespace) -> Wallet:
    password = _resolve_wallet_password(args)
    try:
        return load_wallet(path, password=password)
    except ValueError as exc:
        if not password and "Encrypted wallet requires password" in str(exc):
            try:
                return load_wallet(path, password=_resolve_wallet_password(args, prompt_if_missing=True))
            except ValueError as retry_exc:
                raise ValidationError(str(retry_exc)) from retry_exc
        raise ValidationError(str(exc)) from exc
    except OSError as exc:
        raise ValidationError(f"Failed to read wallet file '{path}': {exc}") from exc


def _add_wallet_password_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--wallet-password", help="Wallet password for encrypted wallet files")
    parser.add_argument("--wallet-password-env", help="Environment variable containing wallet password")
    parser.add_argument("--wallet-password-prompt", action="store_true", help="Prompt for wallet password")


def _add_data_dir_arg(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--data-dir", default="./data", help="Ledger data directory")


def _target_address(args: argparse.Namespace) -> str:
    if getattr(args, "wallet", None):
        try:
            return wallet_address(args.wallet)
        except (OSError, ValueError) as exc:
            raise ValidationError(f"Failed to read wallet file '{args.wallet}': {exc}") from exc
    if getattr(args, "address", None):
        return args.address
    raise ValidationError("Provide --wallet or --address")


def _identity_arg(args: argparse.Namespace) -> str:
    if args.identity:
        return args.identity.lower()
    try:
        kind, credential = parse_address(args.address, CONFIG.symbol)
    except ValueError as exc:
        raise ValidationError(f"Invalid address {args.address!r}: {exc}") from exc
    if kind != "key":
        raise ValidationError("Only key addresses can be blacklisted by address")
    return credential


def _print_family(family: TokenFamily) -> None:
    print(
        json.dumps(
            {
                "name": family.name,
                "policy_id": family.policy_id,
                "token_unit": family.token_unit,
                "admin": family.admin,
                "policies": [kind.value for kind in family.kinds],
                "check_units": family.check_units(),
            },
            indent=2,
        )
    )


def cmd_wallet_new(args: argparse.Namespace) -> None:
    wallet = create_wallet()
    password: str | None = None
    if bool(args.encrypt):
        password = _resolve_wallet_password(args, prompt_if_missing=True)

    try:
        save_wallet(wallet, args.out, password=password, kdf=args.kdf)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc
    print(f"Wallet created: {args.out}")
    summary = {
        "address": wallet.address,
        "identity": wallet.identity,
        "public_key": wallet.public_key,
        "encrypted": bool(password),
        "kdf": args.kdf if password else "",
    }
    print(json.dumps(summary, indent=2))


def cmd_wallet_address(args: argparse.Namespace) -> None:
    print(_target_address(args))


def cmd_init(args: argparse.Namespace) -> None:
    ledger = _load_ledger(args.data_dir, must_exist=False)
    block = ledger.initialize()
    summary: dict[str, object] = {"height": block.index, "hash": block.block_hash}
    if args.fund_wallet or args.fund_address:
        address = wallet_address(args.fund_wallet) if args.fund_wallet else args.fund_address
        summary["funded"] = {"address": address, "amount": args.amount, "txid": ledger.fund(address, args.amount)}
    print("Ledger initialized")
    print(json.dumps(summary, indent=2))


def cmd_fund(args: argparse.Namespace) -> None:
    ledger = _load_ledger(args.data_dir)
    address = _target_address(args)
    txid = ledger.fund(address, args.amount)
    print(json.dumps({"txid": txid, "address": address, "amount": args.amount}, indent=2))


def cmd_split_fee_utxos(args: argparse.Namespace) -> None:
    service, _ = _service(args)
    wallet = _load_wallet_with_args(args.wallet, args)
    txid = service.split_fee_outputs(wallet, count=args.count, amount=args.amount)
    print(json.dumps({"txid": txid}, indent=2))


def cmd_bootstrap(args: argparse.Namespace) -> None:
    service, registry = _service(args)
    wallet = _load_wallet_with_args(args.wallet, args)
    if args.name in registry.families:
        raise ValidationError(f"Token family {args.name} is already registered")
    try:
        kinds = [PolicyKind.parse(item) for item in args.policy]
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc
    try:
        family = service.bootstrap_family(
            wallet,
            args.name,
            args.supply,
            kinds,
            fee_amount=args.fee_amount,
            splits=args.split or None,
        )
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc
    registry.add(family)
    _print_family(family)


def cmd_transfer(args: argparse.Namespace) -> None:
    service, registry = _service(args)
    wallet = _load_wallet_with_args(args.wallet, args)
    if len(args.family) != len(args.amount):
        raise ValidationError("Give one --amount per --family")
    families = [registry.get(name) for name in args.family]
    try:
        if len(families) == 1:
            txid = service.transfer(wallet, families[0], args.to, args.amount[0], consume_proofs=args.consume_proofs)
        else:
            txid = service.transfer_many(
                wallet, list(zip(families, args.amount)), args.to, consume_proofs=args.consume_proofs
            )
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc
    print(json.dumps({"txid": txid, "to": args.to}, indent=2))


def cmd_merge(args: argparse.Namespace) -> None:
    service, registry = _service(args)
    wallet = _load_wallet_with_args(args.wallet, args)
    family = registry.get(args.family)
    txid = service.merge(wallet, family, recipient=args.to, consume_proofs=args.consume_proofs)
    print(json.dumps({"txid": txid, "balance": service.balance_of(args.to or wallet.address, family)}, indent=2))


def _set_frozen(args: argparse.Namespace, frozen: bool) -> None:
    service, registry = _service(args)
    wallet = _load_wallet_with_args(args.wallet, args)
    record = service.set_frozen(wallet, registry.get(args.family), frozen)
    print(json.dumps(record.to_dict(), indent=2))


def cmd_freeze(args: argparse.Namespace) -> None:
    _set_frozen(args, True)


def cmd_unfreeze(args: argparse.Namespace) -> None:
    _set_frozen(args, False)


def cmd_blacklist(args: argparse.Namespace) -> None:
    service, registry = _service(args)
    wallet = _load_wallet_with_args(args.wallet, args)
    record = service.blacklist(wallet, registry.get(args.family), _identity_arg(args))
    print(json.dumps(record.to_dict(), indent=2))


def cmd_whitelist(args: argparse.Namespace) -> None:
    service, registry = _service(args)
    wallet = _load_wallet_with_args(args.wallet, args)
    record = service.whitelist(wallet, registry.get(args.family), _identity_arg(args))
    print(json.dumps(record.to_dict(), indent=2))


def cmd_policy_show(args: argparse.Namespace) -> None:
    service, registry = _service(args)
    records = service.policy_records(registry.get(args.family))
    print(json.dumps({kind.value: record.to_dict() for kind, record in records.items()}, indent=2))


def cmd_proofs(args: argparse.Namespace) -> None:
    service, registry = _service(args)
    family = registry.get(args.family) if args.family else None
    rows = [
        {
            "ref": proof.ref.key,
            "covered_indices": proof.covered_indices,
            "assets": proof.utxo.assets,
        }
        for proof in service.proofs(family)
    ]
    print(json.dumps({"address": service.proof_scripts.address, "proofs": rows}, indent=2))


def cmd_balance(args: argparse.Namespace) -> None:
    ledger = _load_ledger(args.data_dir)
    address = _target_address(args)
    if args.family:
        print(ledger.balance_of(address, _registry(args.data_dir).get(args.family).token_unit))
    else:
        print(json.dumps(ledger.assets_at(address), indent=2))


def cmd_withdraw_fees(args: argparse.Namespace) -> None:
    service, registry = _service(args)
    wallet = _load_wallet_with_args(args.wallet, args)
    family = registry.get(args.family)
    withdrawn = service.fee_treasury_balance(family)
    txid = service.withdraw_fees(wallet, family)
    print(json.dumps({"txid": txid, "withdrawn": withdrawn}, indent=2))


def cmd_retire_proofs(args: argparse.Namespace) -> None:
    service, registry = _service(args)
    wallet = _load_wallet_with_args(args.wallet, args)
    family = registry.get(args.family)
    retired = [proof.ref.key for proof in service.retirable_proofs(family)]
    txid = service.retire_proofs(wallet, family)
    print(json.dumps({"txid": txid, "retired": retired if txid else []}, indent=2))


def cmd_families(args: argparse.Namespace) -> None:
    print(json.dumps(_registry(args.data_dir).names(), indent=2))


def cmd_status(args: argparse.Namespace) -> None:
    ledger = _load_ledger(args.data_dir)
    print(json.dumps(ledger.status(), indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="progtoken",
        description="Programmable tokens with freeze, blacklist and fee policies on an emulated UTXO ledger.",
    )
    parser.add_argument("--log-level", default=CONFIG.log_level, help="Log level (DEBUG, INFO, WARNING, ERROR)")
    parser.add_argument("--log-json", action="store_true", help="Emit structured JSON log records")
    parser.add_argument("--log-file", help="Also write log records to this file")
    subparsers = parser.add_subparsers(dest="command", required=True)

    wallet_new = subparsers.add_parser("wallet-new", help="Create a new wallet")
    wallet_new.add_argument("--out", default="wallet.json", help="Wallet output file")
    wallet_new.add_argument("--kdf", choices=["scrypt", "argon2id"], default="scrypt", help="Wallet file KDF")
    wallet_new.add_argument("--encrypt", dest="encrypt", action="store_true", default=True, help="Encrypt wallet file")
    wallet_new.add_argument("--no-encrypt", dest="encrypt", action="store_false", help="Store wallet file in plaintext")
    _add_wallet_password_args(wallet_new)
    wallet_new.set_defaults(func=cmd_wallet_new)

    wallet_address_cmd = subparsers.add_parser("wallet-address", help="Print wallet address")
    wallet_address_cmd.add_argument("--wallet", required=True, help="Wallet file path")
    wallet_address_cmd.set_defaults(func=cmd_wallet_address)

    init = subparsers.add_parser("init", help="Initialize ledger state")
    _add_data_dir_arg(init)
    init.add_argument("--fund-wallet", help="Wallet file to fund from the faucet")
    init.add_argument("--fund-address", help="Address to fund from the faucet")
    init.add_argument("--amount", type=int, default=1_000_000_000, help="Faucet amount in base units")
    init.set_defaults(func=cmd_init)

    fund = subparsers.add_parser("fund", help="Faucet base currency to an address")
    _add_data_dir_arg(fund)
    fund.add_argument("--wallet", help="Wallet file to fund")
    fund.add_argument("--address", help="Address to fund")
    fund.add_argument("--amount", type=int, required=True, help="Amount in base units")
    fund.set_defaults(func=cmd_fund)

    split = subparsers.add_parser("split-fee-utxos", help="Split base currency into fee-sized outputs")
    _add_data_dir_arg(split)
    split.add_argument("--wallet", required=True, help="Wallet file path")
    split.add_argument("--count", type=int, default=CONFIG.fee_output_count, help="Number of outputs")
    split.add_argument("--amount", type=int, default=CONFIG.fee_output_amount, help="Base units per output")
    _add_wallet_password_args(split)
    split.set_defaults(func=cmd_split_fee_utxos)

    bootstrap = subparsers.add_parser("bootstrap", help="Bootstrap a token family and mint its supply")
    _add_data_dir_arg(bootstrap)
    bootstrap.add_argument("--wallet", required=True, help="Admin wallet file path")
    bootstrap.add_argument("--name", required=True, help="Asset name")
    bootstrap.add_argument("--supply", type=int, required=True, help="Initial supply")
    bootstrap.add_argument(
        "--policy",
        action="append",
        required=True,
        help="Policy kind to enforce: freeze, blacklist or fee (repeatable)",
    )
    bootstrap.add_argument("--fee-amount", type=int, help="Per-transfer fee for the fee policy")
    bootstrap.add_argument("--split", type=int, action="append", help="Mint the supply into outputs of these sizes")
    _add_wallet_password_args(bootstrap)
    bootstrap.set_defaults(func=cmd_bootstrap)

    transfer = subparsers.add_parser("transfer", help="Transfer tokens under a fresh proof")
    _add_data_dir_arg(transfer)
    transfer.add_argument("--wallet", required=True, help="Sender wallet file path")
    transfer.add_argument("--family", action="append", required=True, help="Token family name (repeatable)")
    transfer.add_argument("--amount", type=int, action="append", required=True, help="Amount per family")
    transfer.add_argument("--to", required=True, help="Recipient address")
    transfer.add_argument("--consume-proofs", action="store_true", help="Spend old proofs when fully covered")
    _add_wallet_password_args(transfer)
    transfer.set_defaults(func=cmd_transfer)

    merge = subparsers.add_parser("merge", help="Merge all token outputs of a wallet into one")
    _add_data_dir_arg(merge)
    merge.add_argument("--wallet", required=True, help="Wallet file path")
    merge.add_argument("--family", required=True, help="Token family name")
    merge.add_argument("--to", help="Recipient address (default: the wallet itself)")
    merge.add_argument("--consume-proofs", action="store_true", help="Spend old proofs when fully covered")
    _add_wallet_password_args(merge)
    merge.set_defaults(func=cmd_merge)

    for name, func, help_text in (
        ("freeze", cmd_freeze, "Freeze a token family"),
        ("unfreeze", cmd_unfreeze, "Unfreeze a token family"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        _add_data_dir_arg(sub)
        sub.add_argument("--wallet", required=True, help="Admin wallet file path")
        sub.add_argument("--family", required=True, help="Token family name")
        _add_wallet_password_args(sub)
        sub.set_defaults(func=func)

    for name, func, help_text in (
        ("blacklist", cmd_blacklist, "Add an identity to a family's blacklist"),
        ("whitelist", cmd_whitelist, "Remove an identity from a family's blacklist"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        _add_data_dir_arg(sub)
        sub.add_argument("--wallet", required=True, help="Admin wallet file path")
        sub.add_argument("--family", required=True, help="Token family name")
        target = sub.add_mutually_exclusive_group(required=True)
        target.add_argument("--identity", help="Identity (key hash hex)")
        target.add_argument("--address", help="Key address whose identity to use")
        _add_wallet_password_args(sub)
        sub.set_defaults(func=func)

    policy_show = subparsers.add_parser("policy-show", help="Show the live Policy Records of a family")
    _add_data_dir_arg(policy_show)
    policy_show.add_argument("--family", required=True, help="Token family name")
    policy_show.set_defaults(func=cmd_policy_show)

    proofs = subparsers.add_parser("proofs", help="List live proof outputs")
    _add_data_dir_arg(proofs)
    proofs.add_argument("--family", help="Only proofs carrying this family's check markers")
    proofs.set_defaults(func=cmd_proofs)

    balance = subparsers.add_parser("balance", help="Show address balance")
    _add_data_dir_arg(balance)
    balance.add_argument("--wallet", help="Wallet file path")
    balance.add_argument("--address", help="Address")
    balance.add_argument("--family", help="Only this token family's balance")
    balance.set_defaults(func=cmd_balance)

    withdraw = subparsers.add_parser("withdraw-fees", help="Drain a family's fee treasury to the admin")
    _add_data_dir_arg(withdraw)
    withdraw.add_argument("--wallet", required=True, help="Admin wallet file path")
    withdraw.add_argument("--family", required=True, help="Token family name")
    _add_wallet_password_args(withdraw)
    withdraw.set_defaults(func=cmd_withdraw_fees)

    retire = subparsers.add_parser("retire-proofs", help="Burn proofs whose covered outputs are all spent")
    _add_data_dir_arg(retire)
    retire.add_argument("--wallet", required=True, help="Wallet file path receiving the released base currency")
    retire.add_argument("--family", required=True, help="Token family name")
    _add_wallet_password_args(retire)
    retire.set_defaults(func=cmd_retire_proofs)

    families = subparsers.add_parser("families", help="List registered token families")
    _add_data_dir_arg(families)
    families.set_defaults(func=cmd_families)

    status = subparsers.add_parser("status", help="Show ledger status")
    _add_data_dir_arg(status)
    status.set_defaults(func=cmd_status)

    return parser


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()

    try:
        configure_logging(level=args.log_level, json_format=args.log_json, log_file=args.log_file)
    except ValueError as exc:
        parser.error(str(exc))

    try:
        args.func(args)
    except ProgTokenError as exc:
        print(f"{type(exc).__name__}: {exc}")
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
