"""
genledger CLI

Commands:
  serve         - Run the API server
  balance       - Show a user's balance
  transactions  - List a user's recent transactions
  reconcile     - Check a user's balance against the transaction log
  packages      - List credit packages
"""

import argparse
import sys

from .config import Settings, configure_logging


def _ledger(args):
    from .billing.ledger import Ledger
    from .persistence.database import get_database

    settings = Settings.from_env()
    db = get_database(args.database_url or settings.database_url)
    return Ledger(db, currency=settings.currency)


def cmd_serve(args):
    """Run the API server."""
    import uvicorn

    settings = Settings.from_env()
    port = args.port or settings.port
    host = args.host or "0.0.0.0"

    print(f"Starting genledger on {host}:{port}")

    uvicorn.run(
        "genledger.api.server:app",
        host=host,
        port=port,
        reload=args.reload,
        workers=args.workers,
    )


def cmd_balance(args):
    """Show a user's balance."""
    account = _ledger(args).get_account(args.user_id)
    print(f"User: {account.user_id}")
    print(f"  Balance: {account.balance} {account.currency}")
    print(f"  Total purchased: {account.total_purchased}")
    print(f"  Total spent: {account.total_spent}")


def cmd_transactions(args):
    """List a user's recent transactions."""
    result = _ledger(args).list_transactions(args.user_id, limit=args.limit)
    for txn in result["transactions"]:
        print(
            f"{txn['created_at'][:19]}  {txn['kind']:<8} {txn['amount']:>10}  "
            f"-> {txn['balance_after']:>10}  {txn['description']}"
        )
    print(f"({result['pagination']['total']} total)")


def cmd_reconcile(args):
    """Check a user's balance against the transaction log."""
    result = _ledger(args).reconcile(args.user_id)
    print(f"Cached balance:   {result.cached_balance}")
    print(f"Computed balance: {result.computed_balance}")
    print(f"Transactions:     {result.transaction_count}")
    if not result.consistent:
        print("INCONSISTENT")
        sys.exit(1)
    print("OK")


def cmd_packages(args):
    """List credit packages."""
    from .billing.pricing import list_packages

    print("Credit packages")
    print("=" * 40)
    for package in list_packages():
        print(
            f"{package.package_id:<12} {package.base_amount:>8} + {package.bonus_amount:>6} bonus"
            f" = {package.total_amount}"
        )


def main():
    parser = argparse.ArgumentParser(
        description="genledger - Credit accounting and generation settlement",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--database-url", help="Overrides DATABASE_URL")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the server")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=None)
    serve_parser.add_argument("--reload", action="store_true")
    serve_parser.add_argument("--workers", type=int, default=1)

    # balance
    balance_parser = subparsers.add_parser("balance", help="Show balance")
    balance_parser.add_argument("user_id", help="User id")

    # transactions
    txn_parser = subparsers.add_parser("transactions", help="List transactions")
    txn_parser.add_argument("user_id", help="User id")
    txn_parser.add_argument("--limit", type=int, default=20)

    # reconcile
    reconcile_parser = subparsers.add_parser("reconcile", help="Reconcile balance")
    reconcile_parser.add_argument("user_id", help="User id")

    # packages
    subparsers.add_parser("packages", help="List credit packages")

    args = parser.parse_args()
    configure_logging(json_logs=Settings.from_env().log_json)

    if args.command == "serve":
        cmd_serve(args)
    elif args.command == "balance":
        cmd_balance(args)
    elif args.command == "transactions":
        cmd_transactions(args)
    elif args.command == "reconcile":
        cmd_reconcile(args)
    elif args.command == "packages":
        cmd_packages(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
