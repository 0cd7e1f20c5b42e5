# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Account registry.

Holds the accounts known for each provider and drives the parallel
per-account fetch of a refresh cycle. Adding or removing an account only
touches metadata; it never waits on fetches that are already running.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from ..core.constants import DEFAULT_MAX_ACCOUNTS_PER_PROVIDER, DEFAULT_MAX_CONCURRENT_FETCHES
from ..core.errors import ClassifiedError, ErrorKind, classify_error
from ..core.types import Account, CredentialKind, Failure, FetchResult, ProviderConfig

lib_logger = logging.getLogger("quota_library")

# Strategies that find their credential on the machine without a stored account.
# OAuth strategies need a stored token, so they do not count.
AMBIENT_KINDS = (CredentialKind.CLI_SESSION,)

DEFAULT_ACCOUNT_ID = "default"

FetchRunner = Callable[[ProviderConfig, Account], Awaitable[FetchResult]]


class AccountRegistry:
    """
    Accounts per provider, in insertion order.

    Usage:
        registry = AccountRegistry(providers)
        registry.add_account(Account("claude", "Work"))
        results = await registry.fetch_all(orchestrator.execute, max_concurrency=4)
    """

    def __init__(
        self,
        providers: Dict[str, ProviderConfig],
        max_accounts_per_provider: int = DEFAULT_MAX_ACCOUNTS_PER_PROVIDER,
    ):
        self.providers = dict(providers)
        self.max_accounts_per_provider = max(1, max_accounts_per_provider)
        self._accounts: Dict[str, List[Account]] = {pid: [] for pid in self.providers}
        self._implicit: Dict[str, Account] = {}

    # =========================================================================
    # MEMBERSHIP
    # =========================================================================

    def add_account(self, account: Account) -> Account:
        """
        Register an account. Replaces an existing one with the same id.

        Raises:
            KeyError: The provider is not configured
        """
        if account.provider_id not in self.providers:
            raise KeyError(f"Unknown provider: {account.provider_id}")
        accounts = self._accounts.setdefault(account.provider_id, [])
        for index, existing in enumerate(accounts):
            if existing.account_id == account.account_id:
                accounts[index] = account
                return account
        accounts.append(account)
        lib_logger.debug(f"Registered {account.provider_id} account '{account.label}'")
        return account

    def add_accounts(self, accounts: Iterable[Account]) -> None:
        for account in accounts:
            try:
                self.add_account(account)
            except KeyError as e:
                lib_logger.warning(f"Skipping account '{account.label}': {e}")

    def remove_account(self, provider_id: str, account_id: str) -> Optional[Account]:
        """Remove an account; in-flight fetches for it finish undisturbed."""
        accounts = self._accounts.get(provider_id, [])
        for index, account in enumerate(accounts):
            if account.account_id == account_id:
                # Rebind instead of mutating so running iterations see the old list
                self._accounts[provider_id] = accounts[:index] + accounts[index + 1:]
                return account
        return None

    def get_account(self, provider_id: str, account_id: str) -> Optional[Account]:
        for account in self._accounts.get(provider_id, []):
            if account.account_id == account_id:
                return account
        implicit = self._implicit.get(provider_id)
        if implicit is not None and implicit.account_id == account_id:
            return implicit
        return None

    def accounts_for(self, provider_id: str) -> List[Account]:
        return list(self._accounts.get(provider_id, []))

    def enabled_providers(self) -> List[ProviderConfig]:
        return [p for p in self.providers.values() if p.enabled]

    def _implicit_account(self, provider: ProviderConfig) -> Optional[Account]:
        if not any(provider.supports(kind) for kind in AMBIENT_KINDS):
            return None
        account = self._implicit.get(provider.provider_id)
        if account is None:
            account = Account(
                provider_id=provider.provider_id,
                label="default",
                account_id=DEFAULT_ACCOUNT_ID,
            )
            self._implicit[provider.provider_id] = account
        return account

    def enabled_accounts(self) -> List[Tuple[ProviderConfig, Account]]:
        """
        Every (provider, account) pair to fetch, in deterministic order.

        Provider table order, then account insertion order, capped at
        max_accounts_per_provider. A provider without stored accounts gets an
        implicit default account when it has a CLI session strategy.
        """
        pairs = []
        for provider in self.enabled_providers():
            accounts = self._accounts.get(provider.provider_id, [])
            if not accounts:
                implicit = self._implicit_account(provider)
                if implicit is not None:
                    pairs.append((provider, implicit))
                continue
            if len(accounts) > self.max_accounts_per_provider:
                lib_logger.debug(
                    f"{provider.provider_id}: fetching first {self.max_accounts_per_provider} "
                    f"of {len(accounts)} accounts"
                )
            for account in accounts[: self.max_accounts_per_provider]:
                pairs.append((provider, account))
        return pairs

    # =========================================================================
    # FAN-OUT
    # =========================================================================

    async def fetch_all(
        self,
        runner: FetchRunner,
        max_concurrency: int = DEFAULT_MAX_CONCURRENT_FETCHES,
        pairs: Optional[List[Tuple[ProviderConfig, Account]]] = None,
    ) -> List[Tuple[ProviderConfig, Account, FetchResult]]:
        """
        Run one fetch per account on a bounded worker pool.

        Args:
            runner: Coroutine function producing a FetchResult for an account
            max_concurrency: Maximum fetches in flight
            pairs: Explicit work list; defaults to enabled_accounts()

        Returns:
            (provider, account, result) in input order. An exception from one
            account becomes that account's Failure.
        """
        if pairs is None:
            pairs = self.enabled_accounts()
        semaphore = asyncio.Semaphore(max(1, max_concurrency))

        async def fetch_single(provider: ProviderConfig, account: Account) -> FetchResult:
            async with semaphore:
                return await runner(provider, account)

        results = await asyncio.gather(
            *(fetch_single(provider, account) for provider, account in pairs),
            return_exceptions=True,
        )

        combined = []
        for (provider, account), result in zip(pairs, results):
            if isinstance(result, asyncio.CancelledError):
                result = Failure(
                    ClassifiedError(ErrorKind.CANCELLED, "cancelled", original_exception=result)
                )
            elif isinstance(result, BaseException):
                lib_logger.warning(
                    f"Fetch for {provider.provider_id}/{account.label} raised: {result}"
                )
                result = Failure(classify_error(result))
            combined.append((provider, account, result))
        return combined
