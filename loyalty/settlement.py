"""
Settlement gateway boundary.

The ledger never moves value itself; it asks a gateway to transfer tokens
between wallets and records the outcome. ``SimulatedSettlementGateway`` is the
in-process stand-in used for local runs and tests.
"""

import logging
import secrets
import string
import threading
import time
from abc import ABC, abstractmethod
from typing import Optional

from pydantic import BaseModel

from .errors import NotFoundError

log = logging.getLogger("loyalty.settlement")

_ADDRESS_ALPHABET = string.ascii_lowercase + string.digits


class TokenRef(BaseModel):
    address: str
    symbol: str
    name: str
    total_supply: int
    decimals: int
    mint_authority: Optional[str] = None
    freeze_authority: Optional[str] = None


class SettlementGateway(ABC):
    @abstractmethod
    def transfer(self, from_wallet: str, to_wallet: str, token_address: str, amount: int) -> bool:
        """Move ``amount`` of a token between wallets. Not idempotent."""

    @abstractmethod
    def create_token(
        self,
        name: str,
        symbol: str,
        decimals: int,
        supply: int,
        mintable: bool = False,
        freezable: bool = False,
        authority: Optional[str] = None,
    ) -> TokenRef: ...

    @abstractmethod
    def get_balance(self, wallet_address: str, token_address: str) -> int:
        """Informational on-chain balance; the ledger does not trust it."""

    @abstractmethod
    def get_token_info(self, token_address: str) -> TokenRef:
        """Metadata the network holds for a token address."""


class SimulatedSettlementGateway(SettlementGateway):
    def __init__(self, fail_transfers: bool = False, delay: float = 0.0):
        self.fail_transfers = fail_transfers
        self.delay = delay
        self.transfers: list[dict] = []
        self._balances: dict[tuple[str, str], int] = {}
        self._tokens: dict[str, TokenRef] = {}
        self._lock = threading.Lock()

    def transfer(self, from_wallet: str, to_wallet: str, token_address: str, amount: int) -> bool:
        if self.delay:
            time.sleep(self.delay)
        if self.fail_transfers:
            log.warning("Simulated transfer of %s %s from %s to %s rejected",
                        amount, token_address, from_wallet, to_wallet)
            return False

        log.info("Transferring %s %s from %s to %s", amount, token_address, from_wallet, to_wallet)
        with self._lock:
            self._balances[(from_wallet, token_address)] = self._balances.get((from_wallet, token_address), 0) - amount
            self._balances[(to_wallet, token_address)] = self._balances.get((to_wallet, token_address), 0) + amount
            self.transfers.append({
                "from": from_wallet, "to": to_wallet,
                "token": token_address, "amount": amount,
            })
        return True

    def create_token(self, name, symbol, decimals, supply, mintable=False, freezable=False, authority=None):
        address = "So1" + "".join(secrets.choice(_ADDRESS_ALPHABET) for _ in range(8))
        ref = TokenRef(
            address=address,
            symbol=symbol,
            name=name,
            total_supply=supply,
            decimals=decimals,
            mint_authority=authority if mintable else None,
            freeze_authority=authority if freezable else None,
        )
        with self._lock:
            self._tokens[address] = ref
            if authority:
                self._balances[(authority, address)] = supply
        return ref

    def get_balance(self, wallet_address: str, token_address: str) -> int:
        with self._lock:
            return self._balances.get((wallet_address, token_address), 0)

    def get_token_info(self, token_address: str) -> TokenRef:
        with self._lock:
            ref = self._tokens.get(token_address)
        if ref is None:
            raise NotFoundError(f"Token {token_address} is not known to the network")
        return ref
