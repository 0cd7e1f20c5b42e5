# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
QuotaManager facade.

This is the main public API: it wires the configuration, credential store,
migrations, account registry, cookie cache, fetch orchestrator and cost
scanner together.
"""

import asyncio
import logging
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import httpx

from .accounts.registry import AccountRegistry
from .browser.cookie_cache import CookieHeaderCache
from .config import CoreConfig, load_core_config, load_provider_table
from .core.constants import COOKIE_CACHE_FILE, CREDENTIALS_FILE, SCAN_CACHE_FILE
from .core.types import Account, Failure, FetchResult, ProviderConfig
from .cost.scanner import CostReport, JsonlScanner, UsageDelta
from .credentials.migration import Failed, Migrated, MigrationEngine, MigrationOutcome
from .credentials.store import CredentialStore
from .fetch.orchestrator import FetchPlanOrchestrator
from .fetch.strategy import FetchStrategy, StrategyRegistry

lib_logger = logging.getLogger("quota_library")

FetchResults = List[Tuple[ProviderConfig, Account, FetchResult]]


class QuotaManager:
    """
    Main facade for credential handling, usage fetches and cost scans.

    Example:
        async with QuotaManager() as manager:
            manager.register_strategy("claude", ClaudeOAuthStrategy())
            for provider, account, result in await manager.fetch_all_enabled():
                ...
            delta = manager.scan_cost(path_to_session_log)
    """

    def __init__(
        self,
        config: Optional[CoreConfig] = None,
        providers: Optional[Dict[str, ProviderConfig]] = None,
        credential_store: Optional[CredentialStore] = None,
        cookie_cache: Optional[CookieHeaderCache] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        scanner: Optional[JsonlScanner] = None,
        persist_caches: bool = True,
    ):
        """
        Args:
            config: Pre-built configuration; loaded from the environment if None
            providers: Provider table; built from config if None
            credential_store: Store to load accounts from; defaults to
                credentials.json in the data directory
            cookie_cache: Cookie header cache; built from config if None
            http_client: Shared client; one is created (and closed) if None
            scanner: JSONL scanner used by scan_cost
            persist_caches: Persist cookie and scan caches in the data dir
        """
        self._config = config
        self._providers = providers
        self._store = credential_store
        self._cookie_cache = cookie_cache
        self._http_client = http_client
        self._owns_http_client = http_client is None
        self._scanner = scanner
        self._persist_caches = persist_caches

        self.strategies = StrategyRegistry()
        self._registry: Optional[AccountRegistry] = None
        self._orchestrator: Optional[FetchPlanOrchestrator] = None
        self._migration_outcomes: List[MigrationOutcome] = []
        self._cancel_event = asyncio.Event()
        self._lock = asyncio.Lock()
        self._initialized = False

    async def __aenter__(self) -> "QuotaManager":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        await self.shutdown()
        return False

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def initialize(self) -> None:
        """
        Load configuration and credentials and bring records up to date.

        Safe to call more than once; later calls are no-ops.
        """
        async with self._lock:
            if self._initialized:
                return

            if self._config is None:
                self._config = await asyncio.to_thread(load_core_config)
            config = self._config
            if self._providers is None:
                self._providers = await asyncio.to_thread(load_provider_table, config)

            if self._store is None:
                self._store = CredentialStore(config.data_dir / CREDENTIALS_FILE)
            await asyncio.to_thread(self._store.load)
            self._migration_outcomes = await asyncio.to_thread(self._run_migrations)

            if self._cookie_cache is None:
                self._cookie_cache = CookieHeaderCache(
                    staleness_seconds=config.cookie_staleness_seconds,
                    max_store_concurrency=config.max_store_concurrency,
                    persist_path=(
                        config.data_dir / "cache" / COOKIE_CACHE_FILE
                        if self._persist_caches
                        else None
                    ),
                )
            if self._scanner is None:
                self._scanner = JsonlScanner(
                    persist_path=(
                        config.data_dir / "cache" / SCAN_CACHE_FILE
                        if self._persist_caches
                        else None
                    )
                )
            if self._http_client is None:
                self._http_client = httpx.AsyncClient(timeout=config.default_timeout)
                self._owns_http_client = True

            self._registry = AccountRegistry(
                self._providers, config.max_accounts_per_provider
            )
            accounts = await asyncio.to_thread(self._store.load_accounts, self._providers)
            self._registry.add_accounts(accounts)

            self._orchestrator = FetchPlanOrchestrator(
                self.strategies, self._cookie_cache, self._http_client
            )
            self._initialized = True
            lib_logger.info(
                f"QuotaManager initialized: {len(self._providers)} provider(s), "
                f"{len(accounts)} stored account(s)"
            )

    def _run_migrations(self) -> List[MigrationOutcome]:
        engine = MigrationEngine(
            persist=self._store.write_record,
            providers=self._providers,
            seq_source=self._store.next_seq,
        )
        outcomes = engine.migrate_all(list(self._store.iter_records()))
        migrated = sum(1 for o in outcomes if isinstance(o, Migrated))
        failed = [o for o in outcomes if isinstance(o, Failed)]
        if migrated:
            lib_logger.info(f"Migrated {migrated} credential record(s)")
        for outcome in failed:
            record = outcome.record
            lib_logger.warning(
                f"Credential migration failed for {record.provider_id}/{record.account_id[:8]}: "
                f"{outcome.error}"
            )
        return outcomes

    async def shutdown(self) -> None:
        """Cancel running fetches, persist caches and close the HTTP client."""
        self.cancel_refresh()
        if self._cookie_cache is not None and self._persist_caches:
            await asyncio.to_thread(self._cookie_cache.save)
        if self._scanner is not None and self._persist_caches:
            await asyncio.to_thread(self._scanner.save)
        if self._http_client is not None and self._owns_http_client:
            await self._http_client.aclose()
            self._http_client = None
        self._initialized = False

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise RuntimeError("QuotaManager.initialize() has not been called")

    # =========================================================================
    # FETCHING
    # =========================================================================

    def register_strategy(self, provider_id: str, strategy: FetchStrategy) -> None:
        """Register a provider adapter's strategy implementation."""
        self.strategies.register(provider_id, strategy)

    async def fetch_all_enabled(self) -> FetchResults:
        """
        Fetch usage for every enabled account once.

        Returns:
            (provider, account, result) in provider table order. Failures are
            results, never exceptions.
        """
        await self.initialize()
        if self._cancel_event.is_set():
            self._cancel_event = asyncio.Event()
        cancel_event = self._cancel_event

        async def runner(provider: ProviderConfig, account: Account) -> FetchResult:
            return await self._orchestrator.execute(provider, account, cancel_event)

        results = await self._registry.fetch_all(runner, self._config.max_concurrent_fetches)

        # Persist last_used for stored accounts that produced data
        stored = [
            account
            for _, account, result in results
            if not isinstance(result, Failure)
            and account in self._registry.accounts_for(account.provider_id)
        ]
        for account in stored:
            await asyncio.to_thread(self._store.save_account, account)

        failures = sum(1 for _, _, result in results if isinstance(result, Failure))
        lib_logger.debug(f"Refresh finished: {len(results)} fetch(es), {failures} failed")
        return results

    async def fetch_account(self, provider_id: str, account_id: str) -> FetchResult:
        """Fetch usage for a single account."""
        await self.initialize()
        provider = self._providers.get(provider_id)
        if provider is None:
            raise KeyError(f"Unknown provider: {provider_id}")
        account = self._registry.get_account(provider_id, account_id)
        if account is None:
            raise KeyError(f"Unknown account {account_id} for {provider_id}")
        return await self._orchestrator.execute(provider, account, self._cancel_event)

    def cancel_refresh(self) -> None:
        """Ask running fetches to stop at their next suspension point."""
        self._cancel_event.set()

    # =========================================================================
    # ACCOUNTS
    # =========================================================================

    async def add_account(self, account: Account) -> Account:
        await self.initialize()
        self._registry.add_account(account)
        await asyncio.to_thread(self._store.save_account, account)
        return account

    async def remove_account(self, provider_id: str, account_id: str) -> bool:
        await self.initialize()
        removed = self._registry.remove_account(provider_id, account_id) is not None
        stored = await asyncio.to_thread(self._store.remove_account, provider_id, account_id)
        self._cookie_cache.invalidate_account(provider_id, account_id)
        return removed or stored

    def accounts(self, provider_id: str) -> List[Account]:
        self._require_initialized()
        return self._registry.accounts_for(provider_id)

    @property
    def providers(self) -> Dict[str, ProviderConfig]:
        self._require_initialized()
        return dict(self._providers)

    @property
    def migration_outcomes(self) -> List[MigrationOutcome]:
        return list(self._migration_outcomes)

    # =========================================================================
    # COOKIE CACHE
    # =========================================================================

    def invalidate_cookie_cache(
        self, provider_id: str, account_id: str, domain: Optional[str] = None
    ) -> int:
        """
        Drop cached cookie headers so the next fetch re-reads the browsers.

        Args:
            provider_id: Provider of the account
            account_id: Account whose headers to drop
            domain: Only this domain; every domain of the account if None

        Returns:
            Number of entries removed
        """
        self._require_initialized()
        if domain is None:
            return self._cookie_cache.invalidate_account(provider_id, account_id)
        provider = self._providers.get(provider_id)
        account = self._registry.get_account(provider_id, account_id)
        if provider is None or account is None:
            return 0
        return int(self._cookie_cache.invalidate(provider, account, domain))

    @property
    def cookie_cache(self) -> Optional[CookieHeaderCache]:
        return self._cookie_cache

    # =========================================================================
    # COST
    # =========================================================================

    def _get_scanner(self) -> JsonlScanner:
        if self._scanner is None:
            self._scanner = JsonlScanner()
        return self._scanner

    def scan_cost(self, path: Union[str, Path]) -> UsageDelta:
        """Scan newly appended lines of one session log."""
        return self._get_scanner().scan(path)

    async def scan_cost_async(self, path: Union[str, Path]) -> UsageDelta:
        return await self._get_scanner().scan_async(path)

    async def cost_report(
        self, fmt: str, root: Optional[Path] = None, since_days: Optional[int] = 30
    ) -> CostReport:
        """Aggregate a whole log tree ("codex" or "claude") off the event loop."""
        scanner = self._get_scanner()
        return await asyncio.to_thread(scanner.scan_directory, root, fmt, since_days)
