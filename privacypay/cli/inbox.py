#!/usr/bin/env python3
# privacypay/cli/inbox.py
# Command-line front end: inbox keys, memo envelopes, receipt checks and
# shielded transfer planning.

from __future__ import annotations

import argparse
import asyncio
import base64
import dataclasses
import enum
import json
import sys
from typing import Any, Optional

import base58

from privacypay import config
from privacypay.api.logging_config import configure_logging, get_logger
from privacypay.cli.retry import RetryError, run_with_retry
from privacypay.crypto_core.keys import KeyVault, resolve_decryption_keys
from privacypay.crypto_core.memo import MemoMode, decrypt_with_keys, encrypt_with_fallback
from privacypay.crypto_core.wallet import KeypairSigner
from privacypay.errors import PrivacyPayError
from privacypay.ledger.models import InstructionPlan
from privacypay.ledger.payments import validate_address
from privacypay.ledger.receipts import parse_receipt
from privacypay.ledger.rpc import LedgerClient
from privacypay.ledger.shielded import ShieldedTransferPlanner
from privacypay.ledger.verify import ReceiptVerifier
from privacypay.store import JsonFileStore

logger = get_logger("cli")


# ======== Helpers ========

def _vault(args: argparse.Namespace) -> KeyVault:
    return KeyVault(JsonFileStore(args.keystore))


def _read_arg_or_stdin(value: Optional[str]) -> str:
    if value is None or value == "-":
        return sys.stdin.read().strip()
    return value


def _recipient_key(value: Optional[str]) -> Optional[bytes]:
    if not value:
        return None
    try:
        raw = base58.b58decode(value)
    except ValueError:
        raise SystemExit("Recipient inbox key is not valid base58.")
    if len(raw) != 32:
        raise SystemExit("Recipient inbox key must be 32 bytes.")
    return raw


def _jsonable(obj: Any) -> Any:
    if isinstance(obj, bytes):
        return base64.b64encode(obj).decode()
    if isinstance(obj, enum.Enum):
        return obj.value
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def _print_plan(plan: InstructionPlan) -> None:
    out = dataclasses.asdict(plan)
    out["input_total"] = plan.input_total
    out["change"] = plan.change
    print(json.dumps(out, indent=2, default=_jsonable))


def _ledger() -> LedgerClient:
    return LedgerClient(rpc_url=config.SOLANA_RPC_URL)


# ======== keys ========

def cmd_keys_show(args: argparse.Namespace) -> int:
    print(_vault(args).device_public_key_base58())
    return 0


def cmd_keys_export(args: argparse.Namespace) -> int:
    print(_vault(args).export_keys())
    return 0


def cmd_keys_import(args: argparse.Namespace) -> int:
    with open(args.file, "r", encoding="utf-8") as f:
        kp = _vault(args).import_keys(f.read())
    print(f"Imported inbox key {kp.public_key_base58}")
    return 0


def cmd_keys_unlock(args: argparse.Namespace) -> int:
    signer = KeypairSigner.from_keyfile(args.keyfile)
    kp = asyncio.run(_vault(args).unlock_with_signer(signer))
    print(kp.public_key_base58)
    return 0


# ======== memo ========

def cmd_memo_encrypt(args: argparse.Namespace) -> int:
    vault = _vault(args)
    text = _read_arg_or_stdin(args.text)
    blob, mode = encrypt_with_fallback(
        text,
        _recipient_key(args.to),
        sender_key=vault.get_or_create_device_key() if args.allow_self else None,
        allow_self=args.allow_self,
        allow_plaintext=args.allow_plaintext,
    )
    if mode in (MemoMode.SELF, MemoMode.PLAINTEXT):
        logger.warning(f"Memo encrypted in '{mode.value}' mode")
    print(blob)
    return 0


def cmd_memo_decrypt(args: argparse.Namespace) -> int:
    vault = _vault(args)
    if args.keyfile:
        asyncio.run(vault.unlock_with_signer(KeypairSigner.from_keyfile(args.keyfile)))
    text, _ = decrypt_with_keys(_read_arg_or_stdin(args.blob), resolve_decryption_keys(vault))
    print(text)
    return 0


# ======== receipt ========

async def _verify(text: str) -> dict:
    receipt = parse_receipt(text)
    async with _ledger() as ledger:
        result = await ReceiptVerifier(ledger).verify(receipt)
    return {"ref": receipt.ref, "signature": receipt.signature, **result.as_dict()}


def cmd_receipt_verify(args: argparse.Namespace) -> int:
    out = asyncio.run(_verify(_read_arg_or_stdin(args.receipt)))
    print(json.dumps(out, indent=2))
    return 0 if out["valid"] else 1


# ======== shielded ========

async def _balance(owner: str) -> int:
    async with _ledger() as ledger:
        return await ShieldedTransferPlanner(ledger).shielded_balance(owner)


def cmd_shielded_balance(args: argparse.Namespace) -> int:
    owner = validate_address(args.owner)
    lamports = asyncio.run(_balance(owner))
    print(json.dumps({"owner": owner, "lamports": lamports}))
    return 0


async def _plan(args: argparse.Namespace) -> InstructionPlan:
    async with _ledger() as ledger:
        planner = ShieldedTransferPlanner(ledger)
        payer = validate_address(args.payer)
        if args.shielded_cmd == "plan-shield":
            call = lambda: planner.plan_shield(payer, args.amount)
        elif args.shielded_cmd == "plan-unshield":
            dest = validate_address(args.destination)
            call = lambda: planner.plan_unshield(payer, dest, args.amount)
        else:
            to = validate_address(args.to)
            call = lambda: planner.plan_transfer(payer, to, args.amount, args.memo or None)
        return await run_with_retry(call, max_retries=args.retries, description=args.shielded_cmd)


def cmd_shielded_plan(args: argparse.Namespace) -> int:
    _print_plan(asyncio.run(_plan(args)))
    return 0


# ======== Entrypoint ========

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="privacypay-cli", description="Privacy Pay inbox and payments CLI")
    parser.add_argument("--keystore", default=str(config.KEYSTORE_PATH),
                        help="device key store file (default: %(default)s)")
    parser.add_argument("--log-level", default=None, help="override LOG_LEVEL")
    sub = parser.add_subparsers(dest="group", required=True)

    keys = sub.add_parser("keys", help="device inbox key").add_subparsers(dest="keys_cmd", required=True)
    keys.add_parser("show", help="print the device inbox public key").set_defaults(func=cmd_keys_show)
    keys.add_parser("export", help="print a JSON backup of the device key").set_defaults(func=cmd_keys_export)
    p = keys.add_parser("import", help="restore the device key from a backup file")
    p.add_argument("file")
    p.set_defaults(func=cmd_keys_import)
    p = keys.add_parser("unlock", help="derive the wallet-bound inbox key")
    p.add_argument("--keyfile", required=True, help="solana-keygen JSON keypair")
    p.set_defaults(func=cmd_keys_unlock)

    memo = sub.add_parser("memo", help="memo envelopes").add_subparsers(dest="memo_cmd", required=True)
    p = memo.add_parser("encrypt")
    p.add_argument("text", nargs="?", help="memo text, or '-' for stdin")
    p.add_argument("--to", help="recipient inbox public key (base58)")
    p.add_argument("--allow-self", action="store_true", help="encrypt to own key when recipient key is unknown")
    p.add_argument("--allow-plaintext", action="store_true", help="send a plaintext envelope when recipient key is unknown")
    p.set_defaults(func=cmd_memo_encrypt)
    p = memo.add_parser("decrypt")
    p.add_argument("blob", nargs="?", help="envelope, or '-' for stdin")
    p.add_argument("--keyfile", help="also try the wallet-derived key of this keypair")
    p.set_defaults(func=cmd_memo_decrypt)

    receipt = sub.add_parser("receipt", help="payment receipts").add_subparsers(dest="receipt_cmd", required=True)
    p = receipt.add_parser("verify")
    p.add_argument("receipt", nargs="?", help="receipt JSON or share link, or '-' for stdin")
    p.set_defaults(func=cmd_receipt_verify)

    shielded = sub.add_parser("shielded", help="compressed balance and transfer plans").add_subparsers(
        dest="shielded_cmd", required=True)
    p = shielded.add_parser("balance")
    p.add_argument("owner")
    p.set_defaults(func=cmd_shielded_balance)
    for name in ("plan-shield", "plan-unshield", "plan-transfer"):
        p = shielded.add_parser(name)
        p.add_argument("--payer", required=True)
        p.add_argument("--amount", type=int, required=True, help="lamports")
        p.add_argument("--retries", type=int, default=3)
        if name == "plan-unshield":
            p.add_argument("--destination", required=True)
        if name == "plan-transfer":
            p.add_argument("--to", required=True)
            p.add_argument("--memo", default="", help="encrypted memo envelope")
        p.set_defaults(func=cmd_shielded_plan)

    return parser


def main(argv: Optional[list] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(level=args.log_level)
    try:
        return args.func(args)
    except RetryError as e:
        print(f"❌ {e}", file=sys.stderr)
        return 2
    except PrivacyPayError as e:
        print(f"❌ {e.message}", file=sys.stderr)
        return 2
    except ValueError as e:
        print(f"❌ {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
