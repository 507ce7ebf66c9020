"""
Shared pytest fixtures for the StakeVault test suite.
"""

import pytest

from stakevault_core.clock import ManualClock
from stakevault_core.program import StakingProgram
from stakevault_core.token_ledger import TokenLedger, get_associated_token_address
from stakevault_core.wallet import Wallet

START = 1_700_000_000


@pytest.fixture
def clock():
    """Manual clock starting at a fixed timestamp."""
    return ManualClock(START)


@pytest.fixture
def tokens():
    return TokenLedger()


@pytest.fixture
def operator():
    """Wallet that owns the program and the stake mint."""
    return Wallet.create()


@pytest.fixture
def program(tokens, clock):
    """Program with nothing initialized yet."""
    return StakingProgram(tokens, clock)


@pytest.fixture
def mints(program, operator):
    """(stake_mint, reward_mint), both 6 decimals; reward mint held by the program."""
    stake = program.tokens.create_mint(6, operator.address)
    reward = program.tokens.create_mint(6, program.reward_authority_address)
    return stake, reward


@pytest.fixture
def staking(program, operator, mints):
    """Initialized program."""
    stake, reward = mints
    program.initialize_program(operator.address, stake.address, reward.address)
    return program


@pytest.fixture
def make_user(staking, operator, mints):
    """Factory: new wallet with both token accounts and *balance* stake units."""
    stake, reward = mints

    def _make(balance: int = 1_000_000_000, vault: bool = True) -> Wallet:
        w = Wallet.create()
        staking.tokens.create_account(stake.address, w.address)
        staking.tokens.create_account(reward.address, w.address)
        if balance:
            staking.tokens.mint_to(
                stake.address,
                get_associated_token_address(w.address, stake.address),
                operator.address,
                balance,
            )
        if vault:
            staking.initialize_vault(w.address)
        return w

    return _make


@pytest.fixture
def alice(make_user):
    return make_user()


@pytest.fixture
def bob(make_user):
    return make_user()
