# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
quota_library: credential acquisition, caching and usage fetch orchestration
for AI providers, plus incremental cost scanning of local session logs.
"""

from .accounts.registry import AccountRegistry
from .browser.cookie_cache import CookieHeaderCache, normalize_cookie_header
from .browser.decryptor import CookieDecryptor, EncryptionMetadata
from .config import CoreConfig, load_core_config, load_provider_table
from .core.errors import (
    ClassifiedError,
    DecryptionError,
    ErrorKind,
    MigrationFailed,
    QuotaLibraryError,
    StoreUnavailable,
    StrategyError,
)
from .core.types import (
    Account,
    ApiKey,
    CliSessionRef,
    CookieHeader,
    CredentialKind,
    Failure,
    FetchResult,
    OAuthToken,
    PartialSuccess,
    ProviderConfig,
    RateWindow,
    StrategyConfig,
    StrategyOutcome,
    Success,
    UsageSnapshot,
)
from .cost.scanner import CostReport, JsonlScanner, UsageDelta, UsageTotals
from .credentials.migration import MigrationEngine
from .fetch.orchestrator import FetchPlanOrchestrator
from .fetch.strategy import (
    ApiKeyUsageStrategy,
    CliSessionUsageStrategy,
    CookieUsageStrategy,
    FetchContext,
    FetchStrategy,
    HttpUsageStrategy,
    OAuthUsageStrategy,
    StrategyRegistry,
)
from .log_config import configure_logging
from .manager import QuotaManager

__version__ = "0.1.0"

__all__ = [
    "Account",
    "AccountRegistry",
    "ApiKey",
    "ApiKeyUsageStrategy",
    "ClassifiedError",
    "CliSessionRef",
    "CliSessionUsageStrategy",
    "CookieDecryptor",
    "CookieHeader",
    "CookieHeaderCache",
    "CookieUsageStrategy",
    "CoreConfig",
    "CostReport",
    "CredentialKind",
    "DecryptionError",
    "EncryptionMetadata",
    "ErrorKind",
    "Failure",
    "FetchContext",
    "FetchPlanOrchestrator",
    "FetchResult",
    "FetchStrategy",
    "HttpUsageStrategy",
    "JsonlScanner",
    "MigrationEngine",
    "MigrationFailed",
    "OAuthToken",
    "OAuthUsageStrategy",
    "PartialSuccess",
    "ProviderConfig",
    "QuotaLibraryError",
    "QuotaManager",
    "RateWindow",
    "StoreUnavailable",
    "StrategyConfig",
    "StrategyError",
    "StrategyOutcome",
    "StrategyRegistry",
    "Success",
    "UsageDelta",
    "UsageSnapshot",
    "UsageTotals",
    "configure_logging",
    "load_core_config",
    "load_provider_table",
    "normalize_cookie_header",
]
