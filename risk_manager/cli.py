#!/usr/bin/env python3
"""
Tradovate Risk Management CLI
=============================

Usage:
    risk-manager --daily-loss 500 --daily-profit 1000
    risk-manager --view
    risk-manager --daily-loss 500 --daily-profit 1000 --account-id 12345

Authentication (first match wins):
    --token / TRADOVATE_ACCESS_TOKEN           existing access token
    TRADOVATE_USERNAME + TRADOVATE_PASSWORD    API Access login
"""

import argparse
import asyncio
import logging
import math
import os
import sys

from .accounts import list_accounts, resolve_caller_role
from .auth import request_access_token
from .client import TradovateClient
from .config import get_base_url, get_environment, get_log_level
from .errors import RiskManagerError
from .risk import OWNER, format_settings, get_settings, set_daily_limits

logger = logging.getLogger(__name__)


def _positive_amount(value: str) -> float:
    try:
        amount = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"{value!r} is not a number") from None
    if not math.isfinite(amount) or amount <= 0:
        raise argparse.ArgumentTypeError("must be a positive number")
    return amount


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='risk-manager',
        description='View or set Tradovate auto-liquidation limits.',
    )
    parser.add_argument('--daily-loss', type=_positive_amount,
                        help='Daily loss limit in dollars (triggers auto-liq)')
    parser.add_argument('--daily-profit', type=_positive_amount,
                        help='Daily profit target in dollars (triggers auto-liq)')
    parser.add_argument('--account-id', type=int,
                        help='Target a specific account ID (otherwise all active accounts)')
    parser.add_argument('--no-lock', action='store_true',
                        help='Allow the account to unlock after a trigger (default: stays closed)')
    parser.add_argument('--view', action='store_true',
                        help='View current auto-liq settings without changing them')
    parser.add_argument('--token', default=os.getenv('TRADOVATE_ACCESS_TOKEN'),
                        help='Tradovate access token')
    parser.add_argument('--env', choices=('demo', 'live'), default=None,
                        help='Tradovate environment (default: TRADOVATE_ENV or demo)')
    return parser


async def _obtain_token(args, environment: str) -> str:
    if args.token:
        return args.token

    username = os.getenv('TRADOVATE_USERNAME')
    password = os.getenv('TRADOVATE_PASSWORD')
    if not username or not password:
        raise RiskManagerError(
            "No credentials: pass --token, set TRADOVATE_ACCESS_TOKEN, "
            "or set TRADOVATE_USERNAME and TRADOVATE_PASSWORD"
        )

    grant = await request_access_token(
        username,
        password,
        cid=os.getenv('TRADOVATE_CID'),
        sec=os.getenv('TRADOVATE_SEC'),
        environment=environment,
    )
    return grant.access_token


async def run(args) -> int:
    environment = get_environment(args.env)
    base_url = get_base_url(environment)

    print(f"\nEnvironment: {environment.upper()}")
    print(f"API URL:     {base_url}\n")

    token = await _obtain_token(args, environment)

    async with TradovateClient(token, base_url) as client:
        accounts = await list_accounts(client)
        print(f"Found {len(accounts)} account(s):\n")
        for account in accounts:
            print(f"  [{account.id}] {account.name} - {account.account_type}, active={account.active}")

        if args.account_id is not None:
            targets = [a for a in accounts if a.id == args.account_id]
        else:
            targets = [a for a in accounts if a.active]

        if not targets:
            if args.account_id is not None:
                print(f"\n❌ Account ID {args.account_id} not found.", file=sys.stderr)
            else:
                print("\n❌ No active accounts found.", file=sys.stderr)
            return 1

        for account in targets:
            print(f"\n{'=' * 60}")
            print(f"Account: {account.name} (ID: {account.id})")
            print('=' * 60)

            current = await get_settings(client, account.id)
            print("\nCurrent auto-liq settings:")
            print(format_settings(current))

            if args.view:
                continue

            role = await resolve_caller_role(client, account.id)
            if role != OWNER and not args.no_lock:
                print("\n⚠️  Not the account owner - 'stay closed' cannot be set and will be skipped.")

            print("\nApplying new settings...")
            updated = await set_daily_limits(
                client,
                account.id,
                args.daily_loss,
                args.daily_profit,
                keep_closed=not args.no_lock,
                caller_role=role,
            )
            print("\nUpdated auto-liq settings:")
            print(format_settings(updated))

    print("\nDone.")
    return 0


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.view and (args.daily_loss is None or args.daily_profit is None):
        parser.error("--daily-loss and --daily-profit are required (or use --view)")

    logging.basicConfig(level=get_log_level(), format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    try:
        return asyncio.run(run(args))
    except RiskManagerError as e:
        print(f"\n❌ Fatal error: {e}", file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
