import io
import os
import sys
from unittest.mock import Mock
from urllib.error import HTTPError

import pytest

# Ensure project root on sys.path for imports
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

_CLEARED_ENV = (
    "WEBSITE_SCAN_API_KEY",
    "ZEROBOUNCE_API_KEY",
    "DISCOVERY_CHAIN",
    "AUTHORITY_URL",
    "WEBSITE_SCAN_URL",
    "ZEROBOUNCE_BASE_URLS",
    "EXCLUDED_HOSTS",
    "ROLE_EMAIL_PREFIXES",
    "CONTENT_HEAVY_KEYWORDS",
    "QUOTA_MARKERS",
    "MIN_LEAD_SCORE",
    "MIN_EMAIL_SCORE",
    "VALIDATION_BATCH_SIZE",
    "VALIDATION_USE_BATCH",
    "MAX_DOMAINS_PER_KEYWORD",
    "MAX_KEYWORDS_PER_RUN",
    "MAX_RETRY_AFTER",
    "OUTREACH_ENV_FILE",
)


def pytest_configure(config):
    for marker in ("unit", "http", "circuit_breaker", "integration", "e2e"):
        config.addinivalue_line("markers", f"{marker}: {marker} tests")


@pytest.fixture(autouse=True)
def _test_env(monkeypatch):
    for name in _CLEARED_ENV:
        monkeypatch.delenv(name, raising=False)

    # Satisfy config validation with dummy values
    monkeypatch.setenv("RAPIDAPI_KEY", "test_rapidapi_key")
    monkeypatch.setenv("HUNTER_API_KEY", "test_hunter_key")
    monkeypatch.setenv("TOMBA_API_KEY", "test_tomba_key")
    monkeypatch.setenv("TOMBA_SECRET", "test_tomba_secret")
    monkeypatch.setenv("API_ZERO_KEY", "test_zero_key")

    # No real waiting in tests; timing tests pass explicit values
    monkeypatch.setenv("DOMAIN_DELAY", "0")
    monkeypatch.setenv("KEYWORD_DELAY", "0")
    monkeypatch.setenv("VALIDATION_BATCH_DELAY", "0")
    monkeypatch.setenv("AUTH_COOLDOWN", "0")
    monkeypatch.setenv("RATE_LIMIT_BACKOFF", "0")
    monkeypatch.setenv("TRANSIENT_BACKOFF", "0")
    monkeypatch.setenv("CIRCUIT_BREAKER_ENABLED", "false")


@pytest.fixture
def json_response():
    """Build a urlopen() context-manager mock returning the given body."""

    def _build(body=b"{}", content_type="application/json"):
        mock_response = Mock()
        mock_response.read.return_value = body
        mock_response.headers.get.return_value = content_type
        context = Mock()
        context.__enter__ = Mock(return_value=mock_response)
        context.__exit__ = Mock(return_value=False)
        return context

    return _build


@pytest.fixture
def http_error():
    """Build an HTTPError with an optional body and headers."""

    def _build(code, body=b"", headers=None, url="https://api.example.com"):
        return HTTPError(url, code, f"HTTP {code}", headers or {}, io.BytesIO(body))

    return _build
