# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Fetch plan orchestrator.

Runs a provider's ordered list of strategies for one account:

- Strategies run strictly in declared order, never in parallel, since an
  earlier strategy may refresh shared state (the cookie cache) that a later
  one reads.
- Each attempt is bounded by the strategy's timeout and raced against an
  optional cancel event.
- Only transient errors (network, rate limit) are retried on the same
  strategy, with capped exponential backoff plus jitter. Everything else
  falls through to the next strategy immediately.
- The first full success wins. Partial results are kept and merged while
  later strategies are tried.
"""

import asyncio
import logging
import random
import time
from dataclasses import replace
from typing import Dict, List, Optional, Tuple

import httpx

from ..browser.cookie_cache import CookieHeaderCache
from ..core.errors import ClassifiedError, ErrorKind, StrategyError, classify_error
from ..core.types import (
    Account,
    Failure,
    FetchAttempt,
    FetchResult,
    PartialSuccess,
    ProviderConfig,
    StrategyConfig,
    StrategyOutcome,
    Success,
    UsageSnapshot,
)
from .strategy import FetchContext, FetchStrategy, StrategyRegistry

lib_logger = logging.getLogger("quota_library")

TripleKey = Tuple[str, str, str]


class ErrorAction:
    """What to do after a strategy attempt failed."""

    RETRY_SAME = "retry_same"  # Same strategy again after backoff
    FALLBACK = "fallback"  # Move on to the next strategy


class _FetchCancelled(Exception):
    """Internal signal: the cancel event fired during an attempt or backoff."""


def _cancelled_error() -> ClassifiedError:
    return ClassifiedError(ErrorKind.CANCELLED, "fetch cancelled")


def more_specific(current: Optional[ClassifiedError], new: ClassifiedError) -> ClassifiedError:
    """
    Pick the error to report when every strategy failed.

    The latest error wins, except that an "unavailable" kind never replaces
    an earlier real failure.
    """
    if current is None:
        return new
    if new.is_unavailable and not current.is_unavailable:
        return current
    return new


class FetchPlanOrchestrator:
    """
    Executes fetch plans.

    Usage:
        orchestrator = FetchPlanOrchestrator(registry, cookie_cache, http_client)
        result = await orchestrator.execute(provider, account, cancel_event)
    """

    def __init__(
        self,
        strategies: StrategyRegistry,
        cookie_cache: Optional[CookieHeaderCache] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.strategies = strategies
        self.cookie_cache = cookie_cache
        self.http_client = http_client
        self._inflight_locks: Dict[TripleKey, asyncio.Lock] = {}

    def _get_lock(self, key: TripleKey) -> asyncio.Lock:
        lock = self._inflight_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._inflight_locks[key] = lock
        return lock

    # =========================================================================
    # PLAN EXECUTION
    # =========================================================================

    async def execute(
        self,
        provider: ProviderConfig,
        account: Account,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> FetchResult:
        """
        Run the provider's fetch plan for one account.

        Args:
            provider: Provider configuration with its ordered strategies
            account: Account whose credentials are used
            cancel_event: When set, the fetch stops at the next suspension
                point and returns a cancelled Failure

        Returns:
            Success, PartialSuccess, or Failure with the attempt log
        """
        attempts: List[FetchAttempt] = []
        if cancel_event is not None and cancel_event.is_set():
            return Failure(_cancelled_error(), ())

        partial_snapshot: Optional[UsageSnapshot] = None
        partial_warnings: List[str] = []
        partial_strategy = ""
        last_error: Optional[ClassifiedError] = None
        any_available = False

        for config in provider.strategies:
            strategy = self.strategies.resolve(provider.provider_id, config)
            if strategy is None:
                attempts.append(
                    FetchAttempt(
                        strategy_id=config.strategy_id,
                        kind=config.kind,
                        was_available=False,
                        error="no implementation registered",
                        error_kind=ErrorKind.NOT_INSTALLED,
                        outcome="unavailable",
                    )
                )
                continue

            context = FetchContext(
                provider=provider,
                account=account,
                config=config,
                credential=account.credential(config.kind),
                cookie_cache=self.cookie_cache,
                http_client=self.http_client,
            )
            if not strategy.is_available(context):
                lib_logger.debug(
                    f"{provider.provider_id}/{account.label}: {strategy.strategy_id} unavailable"
                )
                attempts.append(
                    FetchAttempt(
                        strategy_id=strategy.strategy_id,
                        kind=config.kind,
                        was_available=False,
                        error_kind=ErrorKind.NOT_INSTALLED,
                        outcome="unavailable",
                    )
                )
                continue

            any_available = True
            key = (provider.provider_id, account.account_id, strategy.strategy_id)
            async with self._get_lock(key):
                outcome, record, error = await self._run_strategy(
                    strategy, context, cancel_event
                )
            attempts.append(record)

            if error is not None and error.error_type == ErrorKind.CANCELLED:
                lib_logger.debug(f"{provider.provider_id}/{account.label}: fetch cancelled")
                return Failure(error, tuple(attempts))

            if outcome is None:
                last_error = more_specific(last_error, error)
                continue

            snapshot = outcome.snapshot
            if snapshot.source_label is None:
                snapshot = replace(snapshot, source_label=strategy.strategy_id)

            if not outcome.is_partial:
                if partial_snapshot is not None:
                    snapshot = snapshot.merge(partial_snapshot)
                account.mark_used()
                return Success(snapshot, strategy.strategy_id, tuple(attempts))

            # Keep the partial data and see if a later strategy does better
            lib_logger.debug(
                f"{provider.provider_id}/{account.label}: partial data from "
                f"{strategy.strategy_id}: {outcome.warning}"
            )
            if partial_snapshot is None:
                partial_snapshot = snapshot
                partial_strategy = strategy.strategy_id
            else:
                partial_snapshot = partial_snapshot.merge(snapshot)
            partial_warnings.append(outcome.warning)

        if partial_snapshot is not None:
            account.mark_used()
            return PartialSuccess(
                partial_snapshot,
                "; ".join(partial_warnings),
                partial_strategy,
                tuple(attempts),
            )

        if not any_available:
            return Failure(
                ClassifiedError(
                    ErrorKind.NOT_INSTALLED,
                    f"No available strategy for {provider.provider_id}",
                ),
                tuple(attempts),
            )

        lib_logger.warning(
            f"All strategies failed for {provider.provider_id}/{account.label}: {last_error}"
        )
        return Failure(last_error, tuple(attempts))

    # =========================================================================
    # SINGLE STRATEGY
    # =========================================================================

    async def _run_strategy(
        self,
        strategy: FetchStrategy,
        context: FetchContext,
        cancel_event: Optional[asyncio.Event],
    ) -> Tuple[Optional[StrategyOutcome], FetchAttempt, Optional[ClassifiedError]]:
        config = context.config
        started = time.monotonic()
        attempt = 0

        def record(outcome: str, error: Optional[ClassifiedError] = None) -> FetchAttempt:
            return FetchAttempt(
                strategy_id=strategy.strategy_id,
                kind=config.kind,
                was_available=True,
                attempts=attempt,
                error=str(error) if error is not None else None,
                error_kind=error.error_type if error is not None else None,
                duration_ms=int((time.monotonic() - started) * 1000),
                outcome=outcome,
            )

        while True:
            attempt += 1
            try:
                outcome = await self._run_attempt(strategy, context, config.timeout, cancel_event)
                return outcome, record("partial" if outcome.is_partial else "success"), None
            except _FetchCancelled:
                error = _cancelled_error()
                return None, record("cancelled", error), error
            except Exception as e:
                classified = classify_error(e)

            action = self._handle_error(classified, attempt, config)
            if action == ErrorAction.RETRY_SAME:
                wait_time = self._backoff_delay(classified, attempt, config)
                lib_logger.info(
                    f"Retrying {strategy.strategy_id} for {context.provider.provider_id}/"
                    f"{context.account.label} in {wait_time:.1f}s after {classified.error_type}"
                )
                if await self._sleep(wait_time, cancel_event):
                    error = _cancelled_error()
                    return None, record("cancelled", error), error
                continue

            lib_logger.debug(
                f"{strategy.strategy_id} failed for {context.provider.provider_id}/"
                f"{context.account.label}: {classified}"
            )
            return None, record("failed", classified), classified

    @staticmethod
    def _handle_error(classified: ClassifiedError, attempt: int, config: StrategyConfig) -> str:
        if classified.is_transient and attempt <= config.max_retries:
            return ErrorAction.RETRY_SAME
        return ErrorAction.FALLBACK

    @staticmethod
    def _backoff_delay(classified: ClassifiedError, attempt: int, config: StrategyConfig) -> float:
        if classified.retry_after is not None:
            return min(classified.retry_after, config.backoff_max)
        delay = config.backoff_base * (2 ** (attempt - 1)) + random.uniform(0, config.backoff_base)
        return min(delay, config.backoff_max)

    async def _run_attempt(
        self,
        strategy: FetchStrategy,
        context: FetchContext,
        timeout: float,
        cancel_event: Optional[asyncio.Event],
    ) -> StrategyOutcome:
        task = asyncio.ensure_future(strategy.fetch(context))
        waiters = {task}
        cancel_waiter = None
        if cancel_event is not None:
            cancel_waiter = asyncio.ensure_future(cancel_event.wait())
            waiters.add(cancel_waiter)

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        # Abandoned attempt: wait for it to unwind, its outcome is irrelevant
        await asyncio.gather(task, return_exceptions=True)
        if cancel_event is not None and cancel_event.is_set():
            raise _FetchCancelled()
        raise StrategyError(ErrorKind.TIMEOUT, f"{strategy.strategy_id} timed out after {timeout}s")

    @staticmethod
    async def _sleep(delay: float, cancel_event: Optional[asyncio.Event]) -> bool:
        """Sleep for delay seconds. Returns True if cancelled meanwhile."""
        if cancel_event is None:
            await asyncio.sleep(delay)
            return False
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=delay)
            return True
        except asyncio.TimeoutError:
            return False
