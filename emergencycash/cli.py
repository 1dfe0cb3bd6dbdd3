#!/usr/bin/env python3
"""
EmergencyCash Command Line Interface

Usage:
    emergencycash derive --uid <uid>
    emergencycash sign --uid <uid> --merchant <addr> --token <addr> --amount <decimal>
    emergencycash verify --intent <file|->
    emergencycash settle --intent <file|->
    emergencycash revoke add|rm|list|import ...
    emergencycash ledger list|import ...
    emergencycash balance --uid <uid>
    emergencycash pos [--input <file>]
    emergencycash serve [--host <host>] [--port <port>]
"""

import argparse
import json
import logging
import sys
import time

from . import config
from .errors import ConfigError, EmergencyCashError, IdentityError, IntentError, LedgerError, StorageError
from .identity import derive_identity, discovery_name
from .intent import SignedIntent
from .logging_config import configure_logging
from .settlement import RejectReason, SettlementResult
from .util import format_units, parse_units

logger = logging.getLogger(__name__)

INTENT_PREFIX = "INTENT_JSON:"

EXIT_OK = 0
EXIT_USAGE = 1

EXIT_CODES = {
    RejectReason.INVALID_INTENT: 2,
    RejectReason.EXPIRED: 3,
    RejectReason.REVOKED: 4,
    RejectReason.REPLAYED: 5,
    RejectReason.INSUFFICIENT_FUNDS: 6,
    RejectReason.NO_GAS: 7,
    RejectReason.TRANSFER_FAILED: 8,
    RejectReason.STORAGE_ERROR: 9,
}


def load_json(path: str) -> dict:
    """Load JSON from a file, or stdin for "-"."""
    if path == "-":
        return json.load(sys.stdin)
    with open(path, 'r') as f:
        return json.load(f)


def load_intent(source: str) -> SignedIntent:
    """Read a SignedIntent; a leading INTENT_JSON: marker is accepted."""
    if source == "-":
        text = sys.stdin.read()
    else:
        with open(source, 'r') as f:
            text = f.read()
    text = text.strip()
    if text.startswith(INTENT_PREFIX):
        text = text[len(INTENT_PREFIX):].strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise IntentError("intent", f"not valid JSON: {e}")
    return SignedIntent.from_dict(data)


def open_store(args):
    from .db import SqliteStore
    return SqliteStore(args.db or config.db_path())


def build_chain(args):
    from .ledger import Web3ChainClient
    return Web3ChainClient(
        args.rpc_url or config.load_rpc_url(),
        chain_id=config.load_chain_id(),
        gas_limit=config.GAS_LIMIT,
        receipt_timeout=config.RECEIPT_TIMEOUT_SECONDS,
        default_decimals=config.DECIMALS,
    )


def build_orchestrator(args, store):
    from .replay import SqliteReplayLedger
    from .revocation import SqliteRevocationRegistry
    from .settlement import SettlementOrchestrator

    revocations = SqliteRevocationRegistry(store)
    orchestrator = SettlementOrchestrator(
        config.load_master_secret(),
        build_chain(args),
        SqliteReplayLedger(store),
        revocations,
        secret_encoding=config.MASTER_SECRET_ENCODING,
        claim_lease_seconds=config.CLAIM_LEASE_SECONDS,
        mark_used_retries=config.MARK_USED_RETRIES,
        mark_used_retry_delay=config.MARK_USED_RETRY_DELAY,
    )
    return orchestrator, revocations


def report(result: SettlementResult) -> int:
    print(json.dumps(result.to_dict(), indent=2))
    if result.settled():
        print(f"\n✓ SETTLED {result.tx_hash}", file=sys.stderr)
        if not result.nonce_committed:
            print("  nonce commit pending; keep this process running", file=sys.stderr)
        return EXIT_OK
    print(f"\n✗ REJECTED {result.reason.value}: {result.details}", file=sys.stderr)
    return EXIT_CODES[result.reason]


def cmd_derive(args):
    """Show the address derived for a card UID."""
    identity = derive_identity(config.load_master_secret(), args.uid, config.MASTER_SECRET_ENCODING)
    print(f"uid:     {identity.uid}")
    print(f"address: {identity.address}")
    print(f"label:   {discovery_name(args.uid, config.ENS_PARENT_NAME)}")
    return EXIT_OK


def cmd_sign(args):
    """Build and sign an intent offline."""
    from .revocation import SqliteRevocationRegistry
    from .signing import build_signed_intent

    merchant = args.merchant or config.require("MERCHANT_ADDR", config.MERCHANT_ADDR)
    token = args.token or config.require("TOKEN_ADDR", config.TOKEN_ADDR)
    try:
        amount = parse_units(args.amount, args.decimals)
    except ValueError as e:
        raise IntentError("amount", str(e))

    identity = derive_identity(config.load_master_secret(), args.uid, config.MASTER_SECRET_ENCODING)
    if SqliteRevocationRegistry(open_store(args)).is_revoked(identity.uid):
        print(f"✗ UID {identity.uid} is revoked; not signing", file=sys.stderr)
        return EXIT_CODES[RejectReason.REVOKED]

    signed = build_signed_intent(
        identity,
        merchant=merchant,
        token=token,
        amount=amount,
        nonce=args.nonce if args.nonce is not None else time.time_ns() // 1_000_000,
        expiry=args.expiry,
        ttl_seconds=args.ttl,
    )
    payload = json.dumps(signed.to_dict(), separators=(",", ":"))
    if args.output:
        with open(args.output, 'w') as f:
            f.write(payload + "\n")
        print(f"Intent saved to: {args.output}", file=sys.stderr)
    print(f"{INTENT_PREFIX} {payload}")
    return EXIT_OK


def cmd_verify(args):
    """Verify a SignedIntent offline."""
    from .verifier import VerificationOutcome, verify_intent

    signed = load_intent(args.intent)
    result = verify_intent(signed, config.load_master_secret(), config.MASTER_SECRET_ENCODING)
    if result.is_valid():
        print(f"✓ {result.outcome.value}")
        return EXIT_OK
    print(f"✗ {result.outcome.value}: {result.reason}")
    if result.details:
        print(json.dumps(result.details, indent=2))
    if result.outcome == VerificationOutcome.EXPIRED:
        return EXIT_CODES[RejectReason.EXPIRED]
    return EXIT_CODES[RejectReason.INVALID_INTENT]


def cmd_settle(args):
    """Redeem a SignedIntent against the token ledger."""
    signed = load_intent(args.intent)
    orchestrator, _ = build_orchestrator(args, open_store(args))
    return report(orchestrator.settle(signed))


def cmd_revoke(args):
    """Administer the revocation registry."""
    from .revocation import SqliteRevocationRegistry

    registry = SqliteRevocationRegistry(open_store(args))
    if args.revoke_command == "add":
        changed = registry.revoke(args.uid)
        print(f"{args.uid.strip().upper()}: {'revoked' if changed else 'already revoked'}")
    elif args.revoke_command == "rm":
        changed = registry.unrevoke(args.uid)
        print(f"{args.uid.strip().upper()}: {'reinstated' if changed else 'not revoked'}")
    elif args.revoke_command == "list":
        for uid in registry.list_revoked():
            print(uid)
    elif args.revoke_command == "import":
        data = load_json(args.file)
        added = registry.revoke_many(data.get("revoked", []))
        print(f"Imported {added} revoked UIDs")
    return EXIT_OK


def cmd_ledger(args):
    """Inspect or seed the replay ledger."""
    from .replay import SqliteReplayLedger

    ledger = SqliteReplayLedger(open_store(args))
    if args.ledger_command == "list":
        for key in ledger.list_used():
            print(key)
    elif args.ledger_command == "import":
        data = load_json(args.file)
        try:
            added = ledger.import_used(data.get("used", []))
        except ValueError as e:
            print(f"✗ {e}", file=sys.stderr)
            return EXIT_USAGE
        print(f"Imported {added} used nonces")
    return EXIT_OK


def cmd_balance(args):
    """Show a card's token and native balances."""
    identity = derive_identity(config.load_master_secret(), args.uid, config.MASTER_SECRET_ENCODING)
    chain = build_chain(args)
    token = chain.token(args.token or config.require("TOKEN_ADDR", config.TOKEN_ADDR))
    decimals = token.decimals()
    print(f"card:   {identity.address}")
    print(f"token:  {format_units(token.balance_of(identity.address), decimals)} {token.symbol()}")
    print(f"native: {chain.native_balance(identity.address)} wei")
    return EXIT_OK


def cmd_pos(args):
    """Run the point-of-sale loop over a card event stream."""
    from .scanner import PosTerminal, ScanSerializer

    merchant = args.merchant or config.require("MERCHANT_ADDR", config.MERCHANT_ADDR)
    token = args.token or config.require("TOKEN_ADDR", config.TOKEN_ADDR)
    try:
        price_units = parse_units(args.price or config.PRICE, args.decimals)
    except ValueError as e:
        raise ConfigError(f"PRICE: {e}")

    orchestrator, revocations = build_orchestrator(args, open_store(args))
    terminal = PosTerminal(
        config.load_master_secret(),
        merchant,
        token,
        price_units,
        orchestrator,
        revocations,
        serializer=ScanSerializer(config.SCAN_COOLDOWN_SECONDS),
        intent_ttl_seconds=config.POS_INTENT_TTL_SECONDS,
        secret_encoding=config.MASTER_SECRET_ENCODING,
    )

    def on_result(uid, result):
        if result.settled():
            print(f"✓ {uid} paid {args.price or config.PRICE}: {result.tx_hash}")
        else:
            print(f"✗ {uid} {result.reason.value}: {result.details}")

    if args.input and args.input != "-":
        with open(args.input, 'r') as stream:
            settled = terminal.run(stream, on_result)
    else:
        print("Waiting for cards... (Ctrl+C to stop)", file=sys.stderr)
        settled = terminal.run(sys.stdin, on_result)
    print(f"{settled} payments settled", file=sys.stderr)
    return EXIT_OK


def cmd_serve(args):
    """Run the HTTP settlement service."""
    import uvicorn

    uvicorn.run("emergencycash.api:app", host=args.host, port=args.port)
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="emergencycash",
        description="EmergencyCash payment intent CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  emergencycash derive --uid CA0F79B4
  emergencycash sign --uid CA0F79B4 --amount 1.0 > intent.txt
  emergencycash verify --intent intent.txt
  emergencycash settle --intent intent.txt
  emergencycash revoke add CA0F79B4
  emergencycash pos --input /dev/ttyUSB0
        """
    )
    parser.add_argument("--db", help="SQLite database path (default: DB_PATH)")
    parser.add_argument("--rpc-url", help="JSON-RPC endpoint (default: RPC_URL)")
    parser.add_argument("--log-level", default=config.LOG_LEVEL, help="Logging level")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # derive
    derive_parser = subparsers.add_parser("derive", help="Show a card's derived address")
    derive_parser.add_argument("-u", "--uid", required=True, help="Card UID")

    # sign
    sign_parser = subparsers.add_parser("sign", help="Sign a payment intent offline")
    sign_parser.add_argument("-u", "--uid", required=True, help="Card UID")
    sign_parser.add_argument("-m", "--merchant", help="Merchant address (default: MERCHANT_ADDR)")
    sign_parser.add_argument("-t", "--token", help="Token address (default: TOKEN_ADDR)")
    sign_parser.add_argument("-a", "--amount", required=True, help="Amount in token units, e.g. 1.5")
    sign_parser.add_argument("-d", "--decimals", type=int, default=config.DECIMALS, help="Token decimals")
    sign_parser.add_argument("-n", "--nonce", type=int, help="Nonce (default: current time in ms)")
    sign_parser.add_argument("-e", "--expiry", type=int, help="Absolute unix expiry")
    sign_parser.add_argument("--ttl", type=int, default=3600, help="Seconds until expiry")
    sign_parser.add_argument("-o", "--output", help="Also write the intent JSON to a file")

    # verify
    verify_parser = subparsers.add_parser("verify", help="Verify a signed intent offline")
    verify_parser.add_argument("-i", "--intent", required=True, help="Intent JSON file, or - for stdin")

    # settle
    settle_parser = subparsers.add_parser("settle", help="Settle a signed intent")
    settle_parser.add_argument("-i", "--intent", required=True, help="Intent JSON file, or - for stdin")

    # revoke
    revoke_parser = subparsers.add_parser("revoke", help="Manage revoked UIDs")
    revoke_sub = revoke_parser.add_subparsers(dest="revoke_command")
    revoke_sub.required = True
    revoke_sub.add_parser("add", help="Revoke a UID").add_argument("uid")
    revoke_sub.add_parser("rm", help="Reinstate a UID").add_argument("uid")
    revoke_sub.add_parser("list", help="List revoked UIDs")
    revoke_sub.add_parser("import", help='Import {"revoked": [...]} JSON').add_argument("file")

    # ledger
    ledger_parser = subparsers.add_parser("ledger", help="Inspect the replay ledger")
    ledger_sub = ledger_parser.add_subparsers(dest="ledger_command")
    ledger_sub.required = True
    ledger_sub.add_parser("list", help="List used nonces")
    ledger_sub.add_parser("import", help='Import {"used": [...]} JSON').add_argument("file")

    # balance
    balance_parser = subparsers.add_parser("balance", help="Show card balances")
    balance_parser.add_argument("-u", "--uid", required=True, help="Card UID")
    balance_parser.add_argument("-t", "--token", help="Token address (default: TOKEN_ADDR)")

    # pos
    pos_parser = subparsers.add_parser("pos", help="Run the point-of-sale loop")
    pos_parser.add_argument("-i", "--input", help="Card event stream (default: stdin)")
    pos_parser.add_argument("-m", "--merchant", help="Merchant address (default: MERCHANT_ADDR)")
    pos_parser.add_argument("-t", "--token", help="Token address (default: TOKEN_ADDR)")
    pos_parser.add_argument("-p", "--price", help="Price in token units (default: PRICE)")
    pos_parser.add_argument("-d", "--decimals", type=int, default=config.DECIMALS, help="Token decimals")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP settlement service")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8000)

    return parser


COMMANDS = {
    "derive": cmd_derive,
    "sign": cmd_sign,
    "verify": cmd_verify,
    "settle": cmd_settle,
    "revoke": cmd_revoke,
    "ledger": cmd_ledger,
    "balance": cmd_balance,
    "pos": cmd_pos,
    "serve": cmd_serve,
}


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return EXIT_USAGE

    level = "DEBUG" if config.is_debug() else args.log_level
    configure_logging(level=level, json_format=config.LOG_JSON)

    try:
        return COMMANDS[args.command](args)
    except ConfigError as e:
        print(f"✗ Configuration error: {e}", file=sys.stderr)
        return EXIT_USAGE
    except IdentityError as e:
        print(f"✗ {e}", file=sys.stderr)
        return EXIT_USAGE
    except IntentError as e:
        print(f"✗ Invalid intent: {e}", file=sys.stderr)
        return EXIT_CODES[RejectReason.INVALID_INTENT]
    except StorageError as e:
        print(f"✗ Storage unavailable: {e}", file=sys.stderr)
        return EXIT_CODES[RejectReason.STORAGE_ERROR]
    except LedgerError as e:
        print(f"✗ Token ledger unavailable: {e}", file=sys.stderr)
        return EXIT_CODES[RejectReason.TRANSFER_FAILED]
    except EmergencyCashError as e:
        print(f"✗ {e}", file=sys.stderr)
        return EXIT_USAGE
    except (OSError, ValueError) as e:
        print(f"✗ {e}", file=sys.stderr)
        return EXIT_USAGE


if __name__ == "__main__":
    sys.exit(main())
