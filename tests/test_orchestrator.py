"""Tests for the fetch plan orchestrator."""

import asyncio

from quota_library.core.errors import ClassifiedError, ErrorKind, StrategyError
from quota_library.core.types import (
    Account,
    CredentialKind,
    Failure,
    PartialSuccess,
    ProviderConfig,
    RateWindow,
    StrategyConfig,
    StrategyOutcome,
    Success,
    UsageSnapshot,
)
from quota_library.fetch.orchestrator import FetchPlanOrchestrator, more_specific
from quota_library.fetch.strategy import FetchStrategy, StrategyRegistry


class ScriptedStrategy(FetchStrategy):
    """Plays back a list of results; exceptions are raised."""

    def __init__(self, strategy_id, kind, script, available=True, delay=0.0):
        self.kind = kind
        super().__init__(strategy_id)
        self.script = list(script)
        self.available = available
        self.delay = delay
        self.calls = 0

    def is_available(self, context):
        return self.available

    async def fetch(self, context):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        result = self.script[min(self.calls, len(self.script)) - 1]
        if isinstance(result, BaseException):
            raise result
        return result


def _config(kind, strategy_id, max_retries=2, timeout=5.0):
    return StrategyConfig(
        kind, strategy_id, timeout=timeout, max_retries=max_retries, backoff_base=0.001, backoff_max=0.01
    )


def _setup(*strategies, max_retries=2, timeout=5.0):
    registry = StrategyRegistry()
    for strategy in strategies:
        registry.register("codex", strategy)
    provider = ProviderConfig(
        "codex",
        strategies=tuple(_config(s.kind, s.strategy_id, max_retries, timeout) for s in strategies),
    )
    return FetchPlanOrchestrator(registry), provider, Account("codex", "Main", account_id="a1")


def _snapshot(percent=10.0, **kwargs):
    return UsageSnapshot(primary=RateWindow(used_percent=percent), **kwargs)


OK = StrategyOutcome(_snapshot(account_email="me@example.com", plan="pro"))


class TestFallback:
    def test_transient_failure_retried_then_next_strategy_succeeds(self):
        a = ScriptedStrategy("a", CredentialKind.OAUTH_TOKEN, [StrategyError(ErrorKind.NETWORK_ERROR)])
        b = ScriptedStrategy("b", CredentialKind.COOKIE_HEADER, [OK])
        orchestrator, provider, account = _setup(a, b, max_retries=2)

        result = asyncio.run(orchestrator.execute(provider, account))

        assert isinstance(result, Success)
        assert result.strategy_id == "b"
        assert a.calls == 3
        assert b.calls == 1
        assert [attempt.attempts for attempt in result.attempts] == [3, 1]
        assert result.attempts[0].error_kind == ErrorKind.NETWORK_ERROR
        assert account.last_used is not None

    def test_auth_expired_is_not_retried(self):
        a = ScriptedStrategy("a", CredentialKind.OAUTH_TOKEN, [StrategyError(ErrorKind.AUTH_EXPIRED)])
        b = ScriptedStrategy("b", CredentialKind.COOKIE_HEADER, [OK])
        orchestrator, provider, account = _setup(a, b)

        result = asyncio.run(orchestrator.execute(provider, account))

        assert isinstance(result, Success)
        assert a.calls == 1
        assert result.attempts[0].outcome == "failed"

    def test_transient_recovers_on_same_strategy(self):
        a = ScriptedStrategy(
            "a", CredentialKind.OAUTH_TOKEN, [StrategyError(ErrorKind.RATE_LIMITED, retry_after=0.001), OK]
        )
        b = ScriptedStrategy("b", CredentialKind.COOKIE_HEADER, [OK])
        orchestrator, provider, account = _setup(a, b)

        result = asyncio.run(orchestrator.execute(provider, account))

        assert result.strategy_id == "a"
        assert a.calls == 2
        assert b.calls == 0

    def test_timeout_falls_through_without_retry(self):
        a = ScriptedStrategy("a", CredentialKind.OAUTH_TOKEN, [OK], delay=1.0)
        b = ScriptedStrategy("b", CredentialKind.COOKIE_HEADER, [OK])
        orchestrator, provider, account = _setup(a, b, timeout=0.05)

        result = asyncio.run(orchestrator.execute(provider, account))

        assert result.strategy_id == "b"
        assert a.calls == 1
        assert result.attempts[0].error_kind == ErrorKind.TIMEOUT

    def test_unavailable_strategy_is_skipped(self):
        a = ScriptedStrategy("a", CredentialKind.OAUTH_TOKEN, [OK], available=False)
        b = ScriptedStrategy("b", CredentialKind.COOKIE_HEADER, [OK])
        orchestrator, provider, account = _setup(a, b)

        result = asyncio.run(orchestrator.execute(provider, account))

        assert result.strategy_id == "b"
        assert a.calls == 0
        assert result.attempts[0].outcome == "unavailable"
        assert not result.attempts[0].was_available


class TestFailure:
    def test_all_failed_reports_last_real_error(self):
        a = ScriptedStrategy("a", CredentialKind.OAUTH_TOKEN, [StrategyError(ErrorKind.AUTH_EXPIRED)])
        b = ScriptedStrategy("b", CredentialKind.COOKIE_HEADER, [StrategyError(ErrorKind.STORE_UNAVAILABLE)])
        orchestrator, provider, account = _setup(a, b)

        result = asyncio.run(orchestrator.execute(provider, account))

        assert isinstance(result, Failure)
        assert result.kind == ErrorKind.AUTH_EXPIRED
        assert len(result.attempts) == 2
        assert account.last_used is None

    def test_nothing_available_is_not_installed(self):
        a = ScriptedStrategy("a", CredentialKind.OAUTH_TOKEN, [OK], available=False)
        orchestrator, provider, account = _setup(a)

        result = asyncio.run(orchestrator.execute(provider, account))

        assert isinstance(result, Failure)
        assert result.kind == ErrorKind.NOT_INSTALLED

    def test_unregistered_strategy_is_recorded(self):
        orchestrator = FetchPlanOrchestrator(StrategyRegistry())
        provider = ProviderConfig("codex", strategies=(StrategyConfig(CredentialKind.API_KEY),))
        result = asyncio.run(orchestrator.execute(provider, Account("codex", "x")))
        assert isinstance(result, Failure)
        assert result.attempts[0].error == "no implementation registered"

    def test_unexpected_exception_is_classified(self):
        a = ScriptedStrategy("a", CredentialKind.OAUTH_TOKEN, [KeyError("used_percent")])
        orchestrator, provider, account = _setup(a)
        result = asyncio.run(orchestrator.execute(provider, account))
        assert result.kind == ErrorKind.PARSE_ERROR

    def test_more_specific_keeps_real_error(self):
        real = ClassifiedError(ErrorKind.AUTH_EXPIRED)
        unavailable = ClassifiedError(ErrorKind.NOT_INSTALLED)
        assert more_specific(real, unavailable) is real
        assert more_specific(unavailable, real) is real
        assert more_specific(None, unavailable) is unavailable


class TestPartial:
    def test_partial_then_success_merges(self):
        partial = StrategyOutcome(_snapshot(50.0, credits_remaining=12.0), warning="no plan info")
        a = ScriptedStrategy("a", CredentialKind.OAUTH_TOKEN, [partial])
        b = ScriptedStrategy("b", CredentialKind.COOKIE_HEADER, [StrategyOutcome(_snapshot(60.0))])
        orchestrator, provider, account = _setup(a, b)

        result = asyncio.run(orchestrator.execute(provider, account))

        assert isinstance(result, Success)
        assert result.snapshot.primary.used_percent == 60.0
        assert result.snapshot.credits_remaining == 12.0

    def test_only_partials_give_partial_success(self):
        partial = StrategyOutcome(_snapshot(50.0), warning="weekly window missing")
        a = ScriptedStrategy("a", CredentialKind.OAUTH_TOKEN, [partial])
        b = ScriptedStrategy("b", CredentialKind.COOKIE_HEADER, [StrategyError(ErrorKind.AUTH_EXPIRED)])
        orchestrator, provider, account = _setup(a, b)

        result = asyncio.run(orchestrator.execute(provider, account))

        assert isinstance(result, PartialSuccess)
        assert result.warning == "weekly window missing"
        assert result.strategy_id == "a"
        assert result.snapshot.source_label == "a"


class TestCancellation:
    def test_pre_cancelled_returns_immediately(self):
        a = ScriptedStrategy("a", CredentialKind.OAUTH_TOKEN, [OK])
        orchestrator, provider, account = _setup(a)

        async def run():
            event = asyncio.Event()
            event.set()
            return await orchestrator.execute(provider, account, event)

        result = asyncio.run(run())
        assert result.is_cancelled
        assert a.calls == 0

    def test_cancel_during_attempt(self):
        a = ScriptedStrategy("a", CredentialKind.OAUTH_TOKEN, [OK], delay=5.0)
        b = ScriptedStrategy("b", CredentialKind.COOKIE_HEADER, [OK])
        orchestrator, provider, account = _setup(a, b)

        async def run():
            event = asyncio.Event()
            asyncio.get_running_loop().call_later(0.05, event.set)
            return await orchestrator.execute(provider, account, event)

        result = asyncio.run(run())
        assert isinstance(result, Failure)
        assert result.is_cancelled
        assert b.calls == 0
        assert account.last_used is None

    def test_same_triple_is_serialized(self):
        in_flight = {"now": 0, "max": 0}

        class Tracking(ScriptedStrategy):
            async def fetch(self, context):
                in_flight["now"] += 1
                in_flight["max"] = max(in_flight["max"], in_flight["now"])
                await asyncio.sleep(0.01)
                in_flight["now"] -= 1
                return OK

        a = Tracking("a", CredentialKind.OAUTH_TOKEN, [OK])
        orchestrator, provider, account = _setup(a)

        async def run():
            await asyncio.gather(*(orchestrator.execute(provider, account) for _ in range(3)))

        asyncio.run(run())
        assert in_flight["max"] == 1
