#!/usr/bin/env python3
"""
StakeVault Server Runner — hosts a staking program behind the HTTP API:
  - Loads TOML config (+ STAKEVAULT_* env overrides)
  - Restores program state from SQLite when storage is enabled
  - On first run creates the stake and reward mints and initializes the program
  - Serves the REST API, saving state after every committed write

Usage:
    python run_server.py --config stakevault.toml --port 8080 \\
                         --fund <address> 1000000000

The operator address signs nothing at runtime; it is recorded as the
program authority and as the stake mint's authority for ``--fund``.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import sys

# ---------------------------------------------------------------------------
# Ensure the project root is in sys.path so imports work before pip install
# ---------------------------------------------------------------------------
PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from stakevault_core.api import APIServer  # noqa: E402
from stakevault_core.config import StakeVaultConfig, load_config  # noqa: E402
from stakevault_core.logging_config import setup_logging  # noqa: E402
from stakevault_core.program import StakingProgram  # noqa: E402
from stakevault_core.storage import ProgramStore  # noqa: E402
from stakevault_core.token_ledger import TokenLedger, get_associated_token_address  # noqa: E402
from stakevault_core.wallet import Wallet  # noqa: E402

logger = logging.getLogger("stakevault_server")


def bootstrap(program: StakingProgram, cfg: StakeVaultConfig, operator: str) -> None:
    """Create both mints and initialize the program on an empty ledger."""
    tokens = program.tokens
    stake_mint = tokens.create_mint(cfg.program.stake_decimals, operator)
    reward_mint = tokens.create_mint(
        cfg.program.reward_decimals, program.reward_authority_address,
    )
    program.initialize_program(operator, stake_mint.address, reward_mint.address)
    logger.info(
        f"Bootstrapped program {program.program_id}: "
        f"stake_mint={stake_mint.address} reward_mint={reward_mint.address}"
    )


def fund(program: StakingProgram, address: str, amount: int) -> None:
    """Open both token accounts for *address* and mint it stake tokens."""
    glob = program.get_global()
    tokens = program.tokens
    for mint in (glob.stake_mint, glob.reward_mint):
        if not tokens.has_account(get_associated_token_address(address, mint)):
            tokens.create_account(mint, address)
    if amount > 0:
        stake_mint = tokens.get_mint(glob.stake_mint)
        tokens.mint_to(
            glob.stake_mint,
            get_associated_token_address(address, glob.stake_mint),
            stake_mint.mint_authority,
            amount,
        )
    logger.info(f"Funded {address} with {amount} stake units")


def parse_args(argv: list[str] | None = None):
    p = argparse.ArgumentParser(description="StakeVault staking program server")
    p.add_argument("--config", default=None, help="Path to stakevault.toml config file")
    p.add_argument("--host", default=None, help="API listen host")
    p.add_argument("--port", type=int, default=None, help="API listen port")
    p.add_argument("--db", default=None, help="SQLite database path (enables storage)")
    p.add_argument("--authority", default=None,
                   help="Operator address recorded as program authority "
                        "(default: a freshly generated wallet)")
    p.add_argument("--fund", nargs=2, action="append", default=[],
                   metavar=("ADDRESS", "AMOUNT"),
                   help="Open token accounts for ADDRESS and mint it AMOUNT stake units")
    return p.parse_args(argv)


async def serve(cfg: StakeVaultConfig, args) -> None:
    program = StakingProgram.from_config(cfg.program, TokenLedger())

    store = ProgramStore(cfg.storage.path) if cfg.storage.enabled else None
    restored = store.restore_program(program) if store is not None else False
    if not restored:
        operator = args.authority or Wallet.create().address
        bootstrap(program, cfg, operator)

    for address, amount in args.fund:
        fund(program, address, int(amount))
    if store is not None:
        store.snapshot_program(program)

    api = None
    if cfg.api.enabled:
        api = APIServer(
            program, cfg.api.host, cfg.api.port, api_config=cfg.api, store=store,
        )
        await api.start()
    else:
        logger.warning("API disabled; the server will idle until interrupted")

    try:
        while True:
            await asyncio.sleep(3600)
    except asyncio.CancelledError:
        pass
    finally:
        if api is not None:
            await api.stop()
        if store is not None:
            store.snapshot_program(program)
            store.close()
        logger.info("Server stopped")


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)

    # Load config (TOML + env overrides); CLI flags win
    cfg = load_config(args.config)
    if args.host:
        cfg.api.host = args.host
    if args.port is not None:
        cfg.api.port = args.port
    if args.db:
        cfg.storage.path = args.db
        cfg.storage.enabled = True

    setup_logging(cfg.logging.level, cfg.logging.format, cfg.logging.file)

    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(serve(cfg, args))


if __name__ == "__main__":
    main()
