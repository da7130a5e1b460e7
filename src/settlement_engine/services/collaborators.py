"""Interfaces to the systems that own contracts and connected accounts.

The settlement engine does not manage users or contracts. It reads them
through these protocols; in-memory implementations are provided for local
development and tests.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from typing import Protocol


@dataclass(frozen=True)
class ContractInfo:
    """What the engine needs to know about a contract."""

    contract_ref: str
    payer_id: str
    payee_id: str
    status: str
    service_amount: int  # minor units
    gig_ref: str | None = None
    description: str | None = None


class ContractDirectory(Protocol):
    def get_contract(self, contract_ref: str) -> ContractInfo | None:
        """Return the contract or None if it does not exist."""
        ...


class AccountDirectory(Protocol):
    def get_provider_account_ref(self, user_id: str, provider: str) -> str | None:
        """Connected account reference of a user with a provider, if any."""
        ...

    def invalidate_provider_account(self, provider: str, account_ref: str) -> list[str]:
        """Clear a stored account reference everywhere it appears.

        Returns:
            The user ids whose reference was cleared.
        """
        ...


class InMemoryContractDirectory:
    """Dict-backed ContractDirectory."""

    def __init__(self, contracts: list[ContractInfo] | None = None):
        self._contracts: dict[str, ContractInfo] = {}
        self._lock = threading.Lock()
        for contract in contracts or []:
            self.add(contract)

    def add(self, contract: ContractInfo) -> None:
        with self._lock:
            self._contracts[contract.contract_ref] = contract

    def set_status(self, contract_ref: str, status: str) -> None:
        with self._lock:
            self._contracts[contract_ref] = replace(self._contracts[contract_ref], status=status)

    def get_contract(self, contract_ref: str) -> ContractInfo | None:
        with self._lock:
            return self._contracts.get(contract_ref)


class InMemoryAccountDirectory:
    """Dict-backed AccountDirectory keyed by (user, provider)."""

    def __init__(self) -> None:
        self._accounts: dict[tuple[str, str], str] = {}
        self._lock = threading.Lock()

    def link(self, user_id: str, provider: str, account_ref: str) -> None:
        with self._lock:
            self._accounts[(user_id, provider)] = account_ref

    def get_provider_account_ref(self, user_id: str, provider: str) -> str | None:
        with self._lock:
            return self._accounts.get((user_id, provider))

    def invalidate_provider_account(self, provider: str, account_ref: str) -> list[str]:
        with self._lock:
            cleared = [
                user_id
                for (user_id, prov), ref in self._accounts.items()
                if prov == provider and ref == account_ref
            ]
            for user_id in cleared:
                del self._accounts[(user_id, provider)]
            return cleared
