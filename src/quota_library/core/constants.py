# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Default values for the quota library.

Every value here can be overridden through the environment (see config.py);
these are deliberately conservative.
"""

# Cookie header cache: minutes-scale staleness window
DEFAULT_COOKIE_STALENESS_SECONDS = 300

# Strategy execution
DEFAULT_STRATEGY_TIMEOUT = 30.0
DEFAULT_MAX_RETRIES = 2
DEFAULT_BACKOFF_BASE = 1.0
DEFAULT_BACKOFF_MAX = 30.0

# Fan-out across accounts/providers
DEFAULT_MAX_CONCURRENT_FETCHES = 4

# Concurrent readers per browser cookie database
DEFAULT_MAX_STORE_CONCURRENCY = 1

# Maximum number of accounts fetched per provider in one refresh cycle
DEFAULT_MAX_ACCOUNTS_PER_PROVIDER = 6

# Cookie store locked-file handling
DEFAULT_STORE_LOCK_RETRIES = 3
DEFAULT_STORE_LOCK_BACKOFF = 0.1

# JSONL scanner
SCAN_LOCK_TIMEOUT = 0.5
SCAN_HEAD_DIGEST_BYTES = 4096

# File names inside the data/cache directories
CREDENTIALS_FILE = "credentials.json"
PROVIDERS_FILE = "providers.json"
COOKIE_CACHE_FILE = "cookie-cache.json"
SCAN_CACHE_FILE = "scan-cache.json"
