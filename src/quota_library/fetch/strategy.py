# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Fetch strategies.

A strategy is one authentication channel for one provider. It knows how to
check whether its credential is present and how to turn that credential into
a UsageSnapshot. Provider adapters subclass the HTTP strategies here and
supply the request and response shapes; the orchestrator only sees the
FetchStrategy interface.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import httpx

from ..browser.cookie_cache import CookieHeaderCache, normalize_cookie_header
from ..core.errors import ErrorKind, StrategyError, classify_error, mask_credential
from ..core.types import (
    Account,
    ApiKey,
    CliSessionRef,
    CookieHeader,
    Credential,
    CredentialKind,
    OAuthToken,
    ProviderConfig,
    StrategyConfig,
    StrategyOutcome,
    UsageSnapshot,
    credential_is_expired,
)

lib_logger = logging.getLogger("quota_library")

ResponseParser = Callable[[Any, "FetchContext"], Union[UsageSnapshot, StrategyOutcome]]


@dataclass
class FetchContext:
    """Everything a strategy may touch during one attempt."""

    provider: ProviderConfig
    account: Account
    config: StrategyConfig
    credential: Optional[Credential] = None
    cookie_cache: Optional[CookieHeaderCache] = None
    http_client: Optional[httpx.AsyncClient] = None


class FetchStrategy(ABC):
    """
    One authentication channel.

    Subclasses set `kind` and implement fetch(). fetch() raises
    StrategyError (or any exception classify_error understands) on failure.
    """

    kind: str = ""

    def __init__(self, strategy_id: Optional[str] = None):
        self.strategy_id = strategy_id or self.kind

    def is_available(self, context: FetchContext) -> bool:
        """Cheap local check: is the credential for this channel present?"""
        return context.credential is not None

    @abstractmethod
    async def fetch(self, context: FetchContext) -> StrategyOutcome:
        ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}(strategy_id={self.strategy_id!r})"


def _as_outcome(result: Union[UsageSnapshot, StrategyOutcome]) -> StrategyOutcome:
    if isinstance(result, StrategyOutcome):
        return result
    if isinstance(result, UsageSnapshot):
        return StrategyOutcome(result)
    raise TypeError(f"parser returned {type(result).__name__}")


# =============================================================================
# HTTP STRATEGIES
# =============================================================================


class HttpUsageStrategy(FetchStrategy):
    """
    Generic httpx-backed strategy.

    Adapters either pass `url` and `parser`, or override build_request() and
    parse_response(). The shared AsyncClient from the context is used when
    present; otherwise a short-lived client is created for the attempt.
    """

    def __init__(
        self,
        url: str = "",
        parser: Optional[ResponseParser] = None,
        method: str = "GET",
        headers: Optional[Dict[str, str]] = None,
        strategy_id: Optional[str] = None,
    ):
        super().__init__(strategy_id)
        self.url = url
        self.method = method
        self.headers = dict(headers or {})
        self._parser = parser

    async def auth_headers(self, context: FetchContext) -> Dict[str, str]:
        return {}

    def build_request(
        self, context: FetchContext, client: httpx.AsyncClient, headers: Dict[str, str]
    ) -> httpx.Request:
        if not self.url:
            raise NotImplementedError(f"{type(self).__name__} has no url")
        return client.build_request(self.method, self.url, headers={**self.headers, **headers})

    def parse_response(
        self, response: httpx.Response, context: FetchContext
    ) -> Union[UsageSnapshot, StrategyOutcome]:
        if self._parser is None:
            raise NotImplementedError(f"{type(self).__name__} has no parser")
        try:
            data = response.json()
        except ValueError as e:
            raise StrategyError(ErrorKind.PARSE_ERROR, f"Invalid JSON: {e}") from e
        return self._parser(data, context)

    async def fetch(self, context: FetchContext) -> StrategyOutcome:
        headers = await self.auth_headers(context)
        if context.http_client is not None:
            return await self._send(context.http_client, context, headers)
        async with httpx.AsyncClient(timeout=context.config.timeout) as client:
            return await self._send(client, context, headers)

    async def _send(
        self, client: httpx.AsyncClient, context: FetchContext, headers: Dict[str, str]
    ) -> StrategyOutcome:
        request = self.build_request(context, client, headers)
        response = await client.send(request)
        response.raise_for_status()
        try:
            return _as_outcome(self.parse_response(response, context))
        except StrategyError:
            raise
        except (KeyError, ValueError, TypeError) as e:
            raise StrategyError(
                ErrorKind.PARSE_ERROR, f"Unexpected response shape: {e}"
            ) from e


class OAuthUsageStrategy(HttpUsageStrategy):
    """Sends the account's OAuth access token as a Bearer token."""

    kind = CredentialKind.OAUTH_TOKEN

    def is_available(self, context: FetchContext) -> bool:
        return isinstance(context.credential, OAuthToken)

    async def auth_headers(self, context: FetchContext) -> Dict[str, str]:
        token = context.credential
        if credential_is_expired(token):
            raise StrategyError(ErrorKind.AUTH_EXPIRED, "OAuth token has expired")
        return {"Authorization": f"Bearer {token.access_token}"}


class ApiKeyUsageStrategy(HttpUsageStrategy):
    """Sends a static API key in a configurable header."""

    kind = CredentialKind.API_KEY

    def __init__(self, *args, header_name: str = "Authorization", prefix: str = "Bearer ", **kwargs):
        super().__init__(*args, **kwargs)
        self.header_name = header_name
        self.prefix = prefix

    def is_available(self, context: FetchContext) -> bool:
        return isinstance(context.credential, ApiKey)

    async def auth_headers(self, context: FetchContext) -> Dict[str, str]:
        return {self.header_name: f"{self.prefix}{context.credential.key}"}


class CookieUsageStrategy(HttpUsageStrategy):
    """
    Sends a Cookie header.

    A manually stored CookieHeader credential takes precedence; otherwise the
    header comes from the cookie cache (browser cookies). An authentication
    failure invalidates the cached header so the next attempt re-reads the
    browsers.
    """

    kind = CredentialKind.COOKIE_HEADER

    def __init__(self, *args, domain: Optional[str] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.domain = domain

    def cookie_domain(self, context: FetchContext) -> Optional[str]:
        if self.domain:
            return self.domain
        domains = context.provider.cookie_domains
        return domains[0] if domains else None

    def is_available(self, context: FetchContext) -> bool:
        if isinstance(context.credential, CookieHeader):
            return True
        return context.cookie_cache is not None and self.cookie_domain(context) is not None

    async def auth_headers(self, context: FetchContext) -> Dict[str, str]:
        manual = (
            context.credential.header
            if isinstance(context.credential, CookieHeader)
            else None
        )
        domain = self.cookie_domain(context)
        if context.cookie_cache is not None and domain is not None:
            header = await context.cookie_cache.get_or_refresh(
                context.provider, context.account, domain, manual_header=manual
            )
        elif manual is not None:
            header = normalize_cookie_header(manual)
        else:
            raise StrategyError(ErrorKind.NOT_INSTALLED, "No cookie source configured")
        return {"Cookie": header}

    async def fetch(self, context: FetchContext) -> StrategyOutcome:
        try:
            return await super().fetch(context)
        except (httpx.HTTPStatusError, StrategyError) as e:
            if classify_error(e).error_type == ErrorKind.AUTH_EXPIRED:
                domain = self.cookie_domain(context)
                if context.cookie_cache is not None and domain is not None:
                    context.cookie_cache.invalidate(context.provider, context.account, domain)
                    lib_logger.debug(
                        f"Cookie rejected for {context.provider.provider_id}/"
                        f"{context.account.label}; cache invalidated"
                    )
            raise


# =============================================================================
# CLI SESSION STRATEGY
# =============================================================================


def _lookup_field(data: Any, dotted: str) -> Any:
    current = data
    for part in dotted.split("."):
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


class CliSessionUsageStrategy(HttpUsageStrategy):
    """
    Reads a token a provider's CLI stored on disk, then sends it as a Bearer
    token.

    The file is read on every attempt so a CLI re-login is picked up without
    touching the credential store.
    """

    kind = CredentialKind.CLI_SESSION

    def __init__(
        self,
        *args,
        default_path: Optional[Path] = None,
        token_field: str = "access_token",
        **kwargs,
    ):
        super().__init__(*args, **kwargs)
        self.default_path = default_path
        self.token_field = token_field

    def session_ref(self, context: FetchContext) -> Optional[CliSessionRef]:
        if isinstance(context.credential, CliSessionRef):
            return context.credential
        if self.default_path is not None:
            return CliSessionRef(path=str(self.default_path), token_field=self.token_field)
        return None

    def is_available(self, context: FetchContext) -> bool:
        ref = self.session_ref(context)
        return ref is not None and Path(ref.path).expanduser().is_file()

    async def read_token(self, context: FetchContext) -> str:
        ref = self.session_ref(context)
        if ref is None:
            raise StrategyError(ErrorKind.NOT_INSTALLED, "No CLI session configured")
        path = Path(ref.path).expanduser()

        def _read() -> Any:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)

        try:
            data = await asyncio.to_thread(_read)
        except FileNotFoundError as e:
            raise StrategyError(
                ErrorKind.NOT_INSTALLED, f"CLI session file not found: {path.name}"
            ) from e
        except json.JSONDecodeError as e:
            raise StrategyError(
                ErrorKind.PARSE_ERROR, f"CLI session file is not JSON: {e}"
            ) from e

        token = _lookup_field(data, ref.token_field)
        if not isinstance(token, str) or not token:
            raise StrategyError(
                ErrorKind.AUTH_EXPIRED, f"No '{ref.token_field}' in {path.name}"
            )
        lib_logger.debug(f"Read CLI token {mask_credential(token)} from {path.name}")
        return token

    async def auth_headers(self, context: FetchContext) -> Dict[str, str]:
        return {"Authorization": f"Bearer {await self.read_token(context)}"}


# =============================================================================
# REGISTRY
# =============================================================================


class StrategyRegistry:
    """
    Strategy implementations per provider.

    Lookup is by the configured strategy_id, falling back to the first
    registered strategy of the same kind.
    """

    def __init__(self):
        self._strategies: Dict[str, List[FetchStrategy]] = {}

    def register(self, provider_id: str, strategy: FetchStrategy) -> None:
        strategies = self._strategies.setdefault(provider_id, [])
        strategies[:] = [s for s in strategies if s.strategy_id != strategy.strategy_id]
        strategies.append(strategy)

    def unregister(self, provider_id: str, strategy_id: str) -> bool:
        strategies = self._strategies.get(provider_id, [])
        remaining = [s for s in strategies if s.strategy_id != strategy_id]
        self._strategies[provider_id] = remaining
        return len(remaining) != len(strategies)

    def resolve(self, provider_id: str, config: StrategyConfig) -> Optional[FetchStrategy]:
        strategies = self._strategies.get(provider_id, [])
        for strategy in strategies:
            if strategy.strategy_id == config.strategy_id:
                return strategy
        for strategy in strategies:
            if strategy.kind == config.kind:
                return strategy
        return None

    def strategies_for(self, provider_id: str) -> List[FetchStrategy]:
        return list(self._strategies.get(provider_id, []))
