#!/usr/bin/env python3
"""
SERP Outreach Pipeline - keyword to ranked, validated outreach leads

Production Features:
- One shared resilient fetcher with per-provider status-code policies
- Prioritized email-discovery provider chain with quota-aware fallback
- Circuit breakers for flaky providers
- Run-wide batched email validation that fails open
- Deterministic lead scoring and threshold filtering
- Operational metrics and per-keyword log capture

Steps:
1. Look up organic search results for the keyword and collapse them into one
   domain per host, keeping the best rank seen for that host.
2. Enrich every domain sequentially: authority score plus email candidates from
   the configured discovery chain, merged and stripped of role mailboxes.
3. Validate the union of discovered emails once, in paced fixed-size batches.
4. Score each domain (authority 0-50, rank 0-30, best email 0-20), sort, and
   flatten leads that clear the thresholds into output rows.

Environment variables configure API keys, hosts, thresholds and pacing. Run with
`python outreach_pipeline.py --keyword "emergency plumber leeds"`.
"""

from __future__ import annotations

import argparse
import csv
import http.client
import json
import logging
import math
import os
import re
import sys
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

from log_capture import KeywordLogCapture

DEFAULT_EXCLUDED_HOSTS: Tuple[str, ...] = (
    "youtube.com",
    "amazon.com",
    "facebook.com",
    "instagram.com",
    "pinterest.com",
    "reddit.com",
    "quora.com",
    "linkedin.com",
    "x.com",
    "twitter.com",
)

ROLE_EMAIL_PREFIXES: Tuple[str, ...] = (
    "info",
    "support",
    "admin",
    "sales",
    "billing",
    "noreply",
    "no-reply",
    "webmaster",
    "contact",
    "help",
)

ROLE_SEPARATORS = ".-_+"

CONTENT_HEAVY_KEYWORDS: Tuple[str, ...] = ("blog", "article", "news", "post")

DEFAULT_QUOTA_MARKERS: Tuple[str, ...] = (
    "quota",
    "usage limit",
    "credits",
    "exceeded your",
    "insufficient balance",
)

DEFAULT_DISCOVERY_CHAIN = "hunter:primary,website_scan:always,tomba:fallback"

DEFAULT_MIN_LEAD_SCORE = 30.0
DEFAULT_MIN_EMAIL_SCORE = 0.5

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

STATUS_VALID = "valid"
STATUS_CATCH_ALL = "catch-all"
STATUS_UNKNOWN = "unknown"
STATUS_INVALID = "invalid"

# ZeroBounce reports a few extra buckets; anything that should never be mailed
# collapses into invalid with the provider status kept as the sub-status.
PROVIDER_STATUS_MAP: Dict[str, str] = {
    "valid": STATUS_VALID,
    "invalid": STATUS_INVALID,
    "catch-all": STATUS_CATCH_ALL,
    "catch_all": STATUS_CATCH_ALL,
    "accept_all": STATUS_CATCH_ALL,
    "unknown": STATUS_UNKNOWN,
    "spamtrap": STATUS_INVALID,
    "abuse": STATUS_INVALID,
    "do_not_mail": STATUS_INVALID,
}


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class OutreachError(Exception):
    """Base class for pipeline errors."""


class ConfigError(OutreachError, ValueError):
    """Missing or invalid configuration."""


class CircuitOpenError(OutreachError, RuntimeError):
    """Raised when a provider's circuit breaker rejects a call."""


class FetchError(OutreachError):
    """A provider call that could not be completed."""

    def __init__(self, provider: str, status: Optional[int], last_message: str):
        self.provider = provider
        self.status = status
        self.last_message = last_message
        super().__init__(f"{provider} request failed (status={status}): {last_message}")


class AuthError(FetchError):
    """401-class failure that survived the auth cooldown retries."""


class RateLimitError(FetchError):
    """429-class failure that survived every backoff."""


class NotFoundError(FetchError):
    """404 on an endpoint believed fixed; signals misconfiguration."""


class TransientError(FetchError):
    """5xx or network failure that survived every retry."""


class QuotaExhausted(FetchError):
    """Provider-reported quota or billing exhaustion; never retried."""


# ---------------------------------------------------------------------------
# HTTP utilities
# ---------------------------------------------------------------------------

def _http_request(
    method: str,
    url: str,
    *,
    headers: Optional[Dict[str, str]] = None,
    json_body: Optional[Dict[str, Any]] = None,
    params: Optional[Dict[str, Any]] = None,
    timeout: float = 15.0,
) -> Any:
    """
    Perform a single HTTP request with JSON support.

    Retrying is the caller's job (see ResilientFetcher).

    Returns:
        Parsed JSON response (dict/list) when possible, else decoded text.

    Raises:
        urllib.error.HTTPError / urllib.error.URLError on failure.
    """
    headers = dict(headers or {})
    data: Optional[bytes] = None

    if json_body is not None:
        headers.setdefault("Content-Type", "application/json")
        data = json.dumps(json_body).encode("utf-8")

    if params:
        encoded = urllib.parse.urlencode({k: v for k, v in params.items() if v is not None})
        url = f"{url}?{encoded}"

    req = urllib.request.Request(url, data=data, headers=headers, method=method.upper())
    with urllib.request.urlopen(req, timeout=timeout) as resp:
        raw = resp.read()
        if not raw:
            return {}

        content_type = resp.headers.get("Content-Type") or ""
        text = raw.decode("utf-8", errors="ignore")

        try:
            return json.loads(text)
        except json.JSONDecodeError:
            if "application/json" in content_type.lower():
                logging.debug("Failed to decode JSON despite header; returning text")
        return text


def _retry_after_delay(error: urllib.error.HTTPError) -> Optional[float]:
    """Helper to parse Retry-After header."""
    headers = getattr(error, "headers", None)
    retry_after = headers.get("Retry-After") if headers else None
    if not retry_after:
        return None
    try:
        return float(retry_after)
    except ValueError:
        try:
            parsed = datetime.strptime(retry_after, "%a, %d %b %Y %H:%M:%S %Z")
            delta = parsed.replace(tzinfo=timezone.utc) - datetime.now(timezone.utc)
            return max(delta.total_seconds(), 0.0)
        except ValueError:
            return None


def _error_message(error: urllib.error.HTTPError) -> str:
    """Best-effort error body, falling back to the HTTP reason phrase."""
    try:
        body = error.read()
    except Exception:  # noqa: BLE001
        body = b""
    text = body.decode("utf-8", errors="ignore").strip() if body else ""
    return text[:500] or str(getattr(error, "reason", "") or error)


# ---------------------------------------------------------------------------
# Resilient fetcher
# ---------------------------------------------------------------------------

class FetchAction(Enum):
    """What the fetcher does after a failed attempt."""
    AUTH = "auth"                    # fixed cooldown, then retry
    RATE_LIMIT = "rate_limit"        # attempt-scaled backoff, then retry
    RETRY = "retry"                  # smaller attempt-scaled backoff, then retry
    FATAL = "fatal"                  # fail immediately as NotFoundError
    NEXT_ENDPOINT = "next_endpoint"  # move to the next endpoint pattern
    QUOTA = "quota"                  # fail immediately as QuotaExhausted


DEFAULT_STATUS_ACTIONS: Dict[int, FetchAction] = {
    401: FetchAction.AUTH,
    402: FetchAction.QUOTA,
    403: FetchAction.AUTH,
    404: FetchAction.FATAL,
    429: FetchAction.RATE_LIMIT,
}


@dataclass
class FetchPolicy:
    """Per-provider attempt limit, timeouts and status-code table."""

    timeout: float = 15.0
    max_attempts: int = 3
    auth_cooldown: float = 3.0
    rate_limit_backoff: float = 2.5
    transient_backoff: float = 1.5
    max_retry_after: float = 30.0
    status_actions: Dict[int, FetchAction] = field(default_factory=lambda: dict(DEFAULT_STATUS_ACTIONS))
    quota_markers: Tuple[str, ...] = DEFAULT_QUOTA_MARKERS

    def action_for(self, status: Optional[int], message: str = "") -> FetchAction:
        if status is None:
            return FetchAction.RETRY
        if status in (401, 403, 429) and self.looks_like_quota(message):
            return FetchAction.QUOTA
        return self.status_actions.get(status, FetchAction.RETRY)

    def looks_like_quota(self, message: str) -> bool:
        lowered = (message or "").lower()
        return any(marker in lowered for marker in self.quota_markers if marker)

    def with_actions(self, overrides: Dict[int, FetchAction]) -> "FetchPolicy":
        actions = dict(self.status_actions)
        actions.update(overrides)
        return replace(self, status_actions=actions)


_EXHAUSTED_ERRORS = {
    FetchAction.AUTH: AuthError,
    FetchAction.RATE_LIMIT: RateLimitError,
    FetchAction.RETRY: TransientError,
}


class ResilientFetcher:
    """Bounded retry with backoff, shared by every provider adapter."""

    def call(
        self,
        provider: str,
        urls: Union[str, Sequence[str]],
        *,
        policy: FetchPolicy,
        method: str = "GET",
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        max_attempts: Optional[int] = None,
    ) -> Any:
        endpoints = [urls] if isinstance(urls, str) else [u for u in urls if u]
        if not endpoints:
            raise ConfigError(f"No endpoint configured for {provider}")

        attempts = max(1, max_attempts or policy.max_attempts)
        endpoint_index = 0
        attempt = 0
        last_status: Optional[int] = None
        last_message = ""
        action = FetchAction.RETRY

        while attempt < attempts:
            attempt += 1
            url = endpoints[endpoint_index]
            retry_after: Optional[float] = None
            try:
                result = _http_request(
                    method,
                    url,
                    headers=headers,
                    json_body=json_body,
                    params=params,
                    timeout=policy.timeout,
                )
            except urllib.error.HTTPError as exc:
                last_status = exc.code
                last_message = _error_message(exc)
                retry_after = _retry_after_delay(exc)
                action = policy.action_for(exc.code, last_message)
            except (urllib.error.URLError, http.client.HTTPException, OSError) as exc:
                last_status = None
                last_message = str(getattr(exc, "reason", None) or exc)
                action = FetchAction.RETRY
            else:
                logging.info("fetch provider=%s status=ok attempt=%d/%d", provider, attempt, attempts)
                return result

            logging.warning(
                "fetch provider=%s status=%s action=%s attempt=%d/%d: %s",
                provider,
                last_status,
                action.value,
                attempt,
                attempts,
                last_message,
            )

            if action is FetchAction.QUOTA:
                raise QuotaExhausted(provider, last_status, last_message)
            if action is FetchAction.FATAL:
                raise NotFoundError(provider, last_status, last_message)
            if action is FetchAction.NEXT_ENDPOINT:
                endpoint_index += 1
                if endpoint_index >= len(endpoints):
                    raise NotFoundError(provider, last_status, last_message)
                # A moved endpoint is not a failed attempt.
                attempt -= 1
                continue
            if attempt >= attempts:
                break

            if action is FetchAction.AUTH:
                wait_for = policy.auth_cooldown
            elif action is FetchAction.RATE_LIMIT:
                wait_for = max(
                    attempt * policy.rate_limit_backoff,
                    min(retry_after or 0.0, policy.max_retry_after),
                )
            else:
                wait_for = attempt * policy.transient_backoff
            time.sleep(wait_for)

        raise _EXHAUSTED_ERRORS.get(action, TransientError)(provider, last_status, last_message)


# ---------------------------------------------------------------------------
# Circuit breaker pattern for provider resilience
# ---------------------------------------------------------------------------

class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing if provider recovered


class CircuitBreaker:
    """
    Stop calling a provider that keeps failing.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: Provider failing, reject requests immediately
    - HALF_OPEN: Let one request through to test recovery
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 300.0,
        expected_exception: type = Exception,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exception = expected_exception
        self.failure_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = CircuitState.CLOSED

    def call(self, func, *args, **kwargs):
        """Execute function with circuit breaker protection."""
        if self.state == CircuitState.OPEN:
            if self.last_failure_time and time.time() - self.last_failure_time > self.recovery_timeout:
                logging.info("Circuit breaker %s entering HALF_OPEN state", self.name)
                self.state = CircuitState.HALF_OPEN
            else:
                raise CircuitOpenError(f"Circuit breaker {self.name} is OPEN")

        try:
            result = func(*args, **kwargs)
        except self.expected_exception:
            self._on_failure()
            raise
        self._on_success()
        return result

    def _on_success(self):
        if self.state == CircuitState.HALF_OPEN:
            logging.info("Circuit breaker %s recovered, entering CLOSED state", self.name)
        self.failure_count = 0
        self.state = CircuitState.CLOSED

    def _on_failure(self):
        self.failure_count += 1
        self.last_failure_time = time.time()

        if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.failure_threshold:
            logging.error(
                "Circuit breaker %s OPEN after %d failures",
                self.name,
                self.failure_count,
            )
            self.state = CircuitState.OPEN


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

@dataclass
class SearchHit:
    """One organic search result; rank is its 1-based position."""
    url: str
    rank: int
    title: str = ""


@dataclass
class Domain:
    host: str
    best_rank: int
    hits: List[SearchHit] = field(default_factory=list)


@dataclass
class AuthoritySignal:
    domain_score: float = 0.0


@dataclass
class EmailCandidate:
    address: str
    confidence: Optional[float] = None
    source_provider: str = ""
    role_hint: Optional[str] = None

    @property
    def key(self) -> str:
        return (self.address or "").strip().lower()


@dataclass
class ValidationResult:
    address: str
    status: str = STATUS_UNKNOWN
    sub_status: str = ""


@dataclass
class LeadEmail:
    """An email candidate merged with its validation outcome."""
    address: str
    confidence: Optional[float]
    source_provider: str
    status: str
    sub_status: str
    score: float

    @property
    def valid(self) -> bool:
        return self.status == STATUS_VALID

    def to_dict(self) -> Dict[str, Any]:
        return {
            "email": self.address,
            "confidence": self.confidence,
            "source": self.source_provider,
            "status": self.status,
            "sub_status": self.sub_status,
            "valid": self.valid,
            "score": self.score,
        }


@dataclass
class EnrichedDomain:
    domain: Domain
    authority_score: float = 0.0
    emails: List[EmailCandidate] = field(default_factory=list)
    providers_used: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class LeadScore:
    total: float
    breakdown: Dict[str, float]


@dataclass(frozen=True)
class Lead:
    domain: str
    rank: int
    authority_score: float
    emails: Tuple[LeadEmail, ...]
    score: float
    score_breakdown: Dict[str, float]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "domain": self.domain,
            "rank": self.rank,
            "authority_score": self.authority_score,
            "emails": [email.to_dict() for email in self.emails],
            "score": self.score,
            "score_breakdown": dict(self.score_breakdown),
        }


@dataclass
class OutreachResult:
    keyword: str
    total_domains: int
    leads: List[Lead] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "keyword": self.keyword,
            "total_domains": self.total_domains,
            "leads": [lead.to_dict() for lead in self.leads],
        }


@dataclass
class OutputRow:
    timestamp: str
    keyword: str
    domain: str
    authority_score: float
    rank: int
    email: str
    email_score: float
    lead_score: float

    def to_dict(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in OUTPUT_ROW_FIELDS}


OUTPUT_ROW_FIELDS: Tuple[str, ...] = (
    "timestamp",
    "keyword",
    "domain",
    "authority_score",
    "rank",
    "email",
    "email_score",
    "lead_score",
)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

def _load_env_file(path: str = ".env") -> None:
    """
    Load environment variables from a simple KEY=VALUE file if present.

    Existing environment variables take precedence. OUTREACH_ENV_FILE points at
    an explicit file; otherwise `path` is tried relative to the working
    directory and then to this module's directory.
    """
    if not path:
        return

    candidates: List[Path] = []
    override = os.getenv("OUTREACH_ENV_FILE")
    if override:
        candidates.append(Path(override).expanduser())

    raw_path = Path(path)
    if raw_path.is_absolute():
        candidates.append(raw_path)
    else:
        candidates.append(Path.cwd() / raw_path)
        candidates.append(Path(__file__).resolve().parent / raw_path)

    for candidate in candidates:
        if not candidate.is_file():
            continue
        try:
            with candidate.open("r", encoding="utf-8") as handle:
                for raw_line in handle:
                    line = raw_line.strip()
                    if not line or line.startswith("#") or "=" not in line:
                        continue
                    key, value = line.split("=", 1)
                    key = key.strip()
                    value = value.strip()
                    if not key:
                        continue
                    if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
                        value = value[1:-1]
                    os.environ.setdefault(key, value)
            return
        except OSError as exc:
            print(f"Warning: failed to load environment file {candidate}: {exc}", file=sys.stderr)


def _env_list(name: str, default: Sequence[str]) -> Tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return tuple(default)
    return tuple(item.strip().lower() for item in raw.split(",") if item.strip())


class ChainPolicy(Enum):
    """When a discovery provider in the chain gets called."""
    PRIMARY = "primary"    # skipped for content-heavy domains
    ALWAYS = "always"      # called whenever it has a key
    FALLBACK = "fallback"  # called only if nothing earlier produced candidates


DISCOVERY_PROVIDERS = ("hunter", "website_scan", "tomba")


def parse_discovery_chain(value: str) -> List[Tuple[str, ChainPolicy]]:
    """Parse `name:policy,name:policy` into an ordered provider chain."""
    chain: List[Tuple[str, ChainPolicy]] = []
    seen: Set[str] = set()
    for raw in (value or "").split(","):
        token = raw.strip().lower()
        if not token:
            continue
        name, _, policy_name = token.partition(":")
        name = name.strip()
        policy_name = policy_name.strip() or ChainPolicy.ALWAYS.value
        if name not in DISCOVERY_PROVIDERS:
            raise ConfigError(f"Unknown discovery provider in chain: {name!r}")
        try:
            policy = ChainPolicy(policy_name)
        except ValueError:
            raise ConfigError(f"Unknown chain policy for {name}: {policy_name!r}") from None
        if name in seen:
            raise ConfigError(f"Discovery provider listed twice in chain: {name}")
        seen.add(name)
        chain.append((name, policy))
    if not chain:
        raise ConfigError("Discovery chain is empty")
    return chain


@dataclass
class Config:
    """Environment-driven configuration container with validation."""

    # Search + authority (RapidAPI SERP scraper)
    rapidapi_key: str = field(default_factory=lambda: os.getenv("RAPIDAPI_KEY", ""))
    serp_host: str = field(
        default_factory=lambda: os.getenv("SERP_API_HOST", "serp-data-scraper.p.rapidapi.com")
    )
    serp_country: str = field(default_factory=lambda: os.getenv("SERP_COUNTRY", "uk"))
    serp_language: str = field(default_factory=lambda: os.getenv("SERP_LANGUAGE", "en"))
    authority_url: str = field(default_factory=lambda: os.getenv("AUTHORITY_URL", ""))

    # Email discovery providers
    hunter_api_key: str = field(default_factory=lambda: os.getenv("HUNTER_API_KEY", ""))
    hunter_base_url: str = field(
        default_factory=lambda: os.getenv("HUNTER_BASE_URL", "https://api.hunter.io/v2")
    )
    hunter_limit: int = field(default_factory=lambda: int(os.getenv("HUNTER_LIMIT", "10")))
    website_scan_key: str = field(
        default_factory=lambda: os.getenv("WEBSITE_SCAN_API_KEY") or os.getenv("RAPIDAPI_KEY", "")
    )
    website_scan_url: str = field(default_factory=lambda: os.getenv("WEBSITE_SCAN_URL", ""))
    tomba_api_key: str = field(default_factory=lambda: os.getenv("TOMBA_API_KEY", ""))
    tomba_secret: str = field(default_factory=lambda: os.getenv("TOMBA_SECRET", ""))
    tomba_base_url: str = field(
        default_factory=lambda: os.getenv("TOMBA_BASE_URL", "https://api.tomba.io/v1")
    )
    discovery_chain: str = field(
        default_factory=lambda: os.getenv("DISCOVERY_CHAIN", DEFAULT_DISCOVERY_CHAIN)
    )

    # Email validation (ZeroBounce)
    zerobounce_api_key: str = field(
        default_factory=lambda: os.getenv("API_ZERO_KEY") or os.getenv("ZEROBOUNCE_API_KEY", "")
    )
    zerobounce_base_urls: Tuple[str, ...] = field(
        default_factory=lambda: tuple(
            url.strip().rstrip("/")
            for url in os.getenv(
                "ZEROBOUNCE_BASE_URLS",
                "https://api.zerobounce.net/v2,https://api-us.zerobounce.net/v2",
            ).split(",")
            if url.strip()
        )
    )
    validation_batch_size: int = field(default_factory=lambda: int(os.getenv("VALIDATION_BATCH_SIZE", "50")))
    validation_batch_delay: float = field(
        default_factory=lambda: float(os.getenv("VALIDATION_BATCH_DELAY", "4.0"))
    )
    validation_use_batch: bool = field(
        default_factory=lambda: os.getenv("VALIDATION_USE_BATCH", "true").lower() == "true"
    )

    # Fetch policy
    search_timeout: float = field(default_factory=lambda: float(os.getenv("SEARCH_TIMEOUT", "20")))
    provider_timeout: float = field(default_factory=lambda: float(os.getenv("PROVIDER_TIMEOUT", "15")))
    validation_timeout: float = field(default_factory=lambda: float(os.getenv("VALIDATION_TIMEOUT", "30")))
    search_max_attempts: int = field(default_factory=lambda: int(os.getenv("SEARCH_MAX_ATTEMPTS", "5")))
    provider_max_attempts: int = field(default_factory=lambda: int(os.getenv("PROVIDER_MAX_ATTEMPTS", "3")))
    validation_max_attempts: int = field(
        default_factory=lambda: int(os.getenv("VALIDATION_MAX_ATTEMPTS", "2"))
    )
    auth_cooldown: float = field(default_factory=lambda: float(os.getenv("AUTH_COOLDOWN", "3.0")))
    rate_limit_backoff: float = field(default_factory=lambda: float(os.getenv("RATE_LIMIT_BACKOFF", "2.5")))
    transient_backoff: float = field(default_factory=lambda: float(os.getenv("TRANSIENT_BACKOFF", "1.5")))
    max_retry_after: float = field(default_factory=lambda: float(os.getenv("MAX_RETRY_AFTER", "30")))
    quota_markers: Tuple[str, ...] = field(
        default_factory=lambda: _env_list("QUOTA_MARKERS", DEFAULT_QUOTA_MARKERS)
    )

    # Pacing
    domain_delay: float = field(default_factory=lambda: float(os.getenv("DOMAIN_DELAY", "0.5")))
    keyword_delay: float = field(default_factory=lambda: float(os.getenv("KEYWORD_DELAY", "2.5")))

    # Domain selection + enrichment heuristics
    excluded_hosts: Tuple[str, ...] = field(
        default_factory=lambda: _env_list("EXCLUDED_HOSTS", DEFAULT_EXCLUDED_HOSTS)
    )
    role_prefixes: Tuple[str, ...] = field(
        default_factory=lambda: _env_list("ROLE_EMAIL_PREFIXES", ROLE_EMAIL_PREFIXES)
    )
    content_heavy_keywords: Tuple[str, ...] = field(
        default_factory=lambda: _env_list("CONTENT_HEAVY_KEYWORDS", CONTENT_HEAVY_KEYWORDS)
    )
    content_heavy_min_hits: int = field(default_factory=lambda: int(os.getenv("CONTENT_HEAVY_MIN_HITS", "5")))
    max_domains_per_keyword: int = field(
        default_factory=lambda: int(os.getenv("MAX_DOMAINS_PER_KEYWORD", "20"))
    )
    max_keywords_per_run: int = field(default_factory=lambda: int(os.getenv("MAX_KEYWORDS_PER_RUN", "50")))

    # Scoring + filtering
    min_lead_score: float = field(
        default_factory=lambda: float(os.getenv("MIN_LEAD_SCORE", str(DEFAULT_MIN_LEAD_SCORE)))
    )
    min_email_score: float = field(
        default_factory=lambda: float(os.getenv("MIN_EMAIL_SCORE", str(DEFAULT_MIN_EMAIL_SCORE)))
    )
    catch_all_confidence_factor: float = field(
        default_factory=lambda: float(os.getenv("CATCH_ALL_CONFIDENCE_FACTOR", "0.5"))
    )
    unknown_confidence_factor: float = field(
        default_factory=lambda: float(os.getenv("UNKNOWN_CONFIDENCE_FACTOR", "0.0"))
    )

    # Circuit breaker settings
    circuit_breaker_enabled: bool = field(
        default_factory=lambda: os.getenv("CIRCUIT_BREAKER_ENABLED", "true").lower() == "true"
    )
    circuit_breaker_threshold: int = field(default_factory=lambda: int(os.getenv("CIRCUIT_BREAKER_THRESHOLD", "5")))
    circuit_breaker_timeout: float = field(
        default_factory=lambda: float(os.getenv("CIRCUIT_BREAKER_TIMEOUT", "300"))
    )

    def discovery_key(self, provider: str) -> str:
        """API key backing a discovery provider ('' when unset)."""
        if provider == "hunter":
            return self.hunter_api_key
        if provider == "website_scan":
            return self.website_scan_key
        if provider == "tomba":
            return self.tomba_api_key if self.tomba_secret else ""
        return ""

    def fetch_policy(self, *, timeout: float, max_attempts: int) -> FetchPolicy:
        return FetchPolicy(
            timeout=timeout,
            max_attempts=max_attempts,
            auth_cooldown=self.auth_cooldown,
            rate_limit_backoff=self.rate_limit_backoff,
            transient_backoff=self.transient_backoff,
            max_retry_after=self.max_retry_after,
            quota_markers=tuple(self.quota_markers),
        )

    def validate(self) -> None:
        """Ensure critical configuration exists and is valid."""
        missing = []
        invalid = []

        if not self.rapidapi_key:
            missing.append("RAPIDAPI_KEY")

        try:
            chain = parse_discovery_chain(self.discovery_chain)
        except ConfigError as exc:
            invalid.append(str(exc))
            chain = []
        if chain and not any(self.discovery_key(name) for name, _ in chain):
            missing.append(
                "a key for at least one discovery provider ("
                + ", ".join(name for name, _ in chain)
                + ")"
            )

        if not self.zerobounce_api_key:
            logging.warning("No email validation key configured; every email will be marked unknown")

        if not 1 <= self.validation_batch_size <= 200:
            invalid.append(f"VALIDATION_BATCH_SIZE out of range: {self.validation_batch_size} (1-200)")
        for name, value in [
            ("VALIDATION_BATCH_DELAY", self.validation_batch_delay),
            ("DOMAIN_DELAY", self.domain_delay),
            ("KEYWORD_DELAY", self.keyword_delay),
            ("AUTH_COOLDOWN", self.auth_cooldown),
            ("RATE_LIMIT_BACKOFF", self.rate_limit_backoff),
            ("TRANSIENT_BACKOFF", self.transient_backoff),
            ("MAX_RETRY_AFTER", self.max_retry_after),
        ]:
            if value < 0:
                invalid.append(f"{name} cannot be negative (got {value})")
        for name, value in [
            ("SEARCH_MAX_ATTEMPTS", self.search_max_attempts),
            ("PROVIDER_MAX_ATTEMPTS", self.provider_max_attempts),
            ("VALIDATION_MAX_ATTEMPTS", self.validation_max_attempts),
            ("MAX_DOMAINS_PER_KEYWORD", self.max_domains_per_keyword),
            ("MAX_KEYWORDS_PER_RUN", self.max_keywords_per_run),
        ]:
            if value < 1:
                invalid.append(f"{name} must be at least 1 (got {value})")
        if not 0 <= self.min_lead_score <= 100:
            invalid.append(f"MIN_LEAD_SCORE out of range: {self.min_lead_score} (0-100)")
        if not 0 <= self.min_email_score <= 1:
            invalid.append(f"MIN_EMAIL_SCORE out of range: {self.min_email_score} (0-1)")
        for name, value in [
            ("CATCH_ALL_CONFIDENCE_FACTOR", self.catch_all_confidence_factor),
            ("UNKNOWN_CONFIDENCE_FACTOR", self.unknown_confidence_factor),
        ]:
            if not 0 <= value <= 1:
                invalid.append(f"{name} out of range: {value} (0-1)")

        if missing:
            raise ConfigError(f"Missing required configuration: {', '.join(missing)}")
        if invalid:
            raise ConfigError(f"Invalid configuration: {'; '.join(invalid)}")


# ---------------------------------------------------------------------------
# Normalization helpers
# ---------------------------------------------------------------------------

def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _as_float(value: Any) -> float:
    """Coerce provider numbers; anything unusable counts as 0."""
    if isinstance(value, bool):
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(number):
        return 0.0
    return number


def normalize_confidence(value: Any, scale: Optional[float] = None) -> Optional[float]:
    """
    Map a provider confidence onto 0-1; None if absent.

    With a known ``scale`` the value is divided by it. Without one, values
    above 1 are read as percentages.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number):
        return None
    if scale:
        number = number / scale
    elif number > 1:
        number = number / 100.0
    return _clamp(number, 0.0, 1.0)


def canonical_host(url: str) -> str:
    """Lowercase hostname with any leading 'www.' removed ('' if unparsable)."""
    if not isinstance(url, str) or not url.strip():
        return ""
    value = url.strip()
    if "://" not in value:
        value = f"https://{value}"
    try:
        host = urllib.parse.urlparse(value).hostname or ""
    except ValueError:
        return ""
    host = host.lower()
    if host.startswith("www."):
        host = host[4:]
    return host.rstrip(".")


def is_excluded_host(host: str, excluded: Iterable[str]) -> bool:
    return any(host == d or host.endswith("." + d) for d in excluded)


def is_valid_email(address: str) -> bool:
    return isinstance(address, str) and bool(EMAIL_PATTERN.match(address.strip()))


def normalize_validation_status(status: Any, sub_status: Any = "") -> Tuple[str, str]:
    """Collapse a provider status into valid / catch-all / unknown / invalid."""
    raw = str(status or "").strip().lower()
    sub = str(sub_status or "").strip()
    normalized = PROVIDER_STATUS_MAP.get(raw, STATUS_UNKNOWN)
    if normalized == STATUS_INVALID and raw not in (STATUS_INVALID, ""):
        sub = sub or raw
    return normalized, sub


# ---------------------------------------------------------------------------
# Provider adapters
# ---------------------------------------------------------------------------

class ProviderAdapter:
    """One external capability behind one fetch call plus normalization."""

    name = "provider"

    def __init__(self, config: Config, fetcher: Optional[ResilientFetcher] = None):
        self.config = config
        self.fetcher = fetcher or ResilientFetcher()

    @property
    def api_key(self) -> str:
        return ""

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _require_key(self) -> None:
        if not self.configured:
            raise ConfigError(f"No API key configured for {self.name}")

    def _policy(self) -> FetchPolicy:
        return self.config.fetch_policy(
            timeout=self.config.provider_timeout,
            max_attempts=self.config.provider_max_attempts,
        )

    def _rapidapi_headers(self, key: str) -> Dict[str, str]:
        return {"X-RapidAPI-Key": key, "X-RapidAPI-Host": self.config.serp_host}


class SearchAdapter(ProviderAdapter):
    """Organic search results from the RapidAPI SERP scraper."""

    name = "serp"

    @property
    def api_key(self) -> str:
        return self.config.rapidapi_key

    def lookup_search_results(self, keyword: str) -> List[SearchHit]:
        self._require_key()
        response = self.fetcher.call(
            self.name,
            f"https://{self.config.serp_host}/scrape",
            policy=self.config.fetch_policy(
                timeout=self.config.search_timeout,
                max_attempts=self.config.search_max_attempts,
            ),
            params={"q": keyword, "gl": self.config.serp_country, "hl": self.config.serp_language},
            headers=self._rapidapi_headers(self.api_key),
        )
        return self.parse_search_results(response)

    @staticmethod
    def parse_search_results(response: Any) -> List[SearchHit]:
        """Organic items in response order; linkless items still use up a rank."""
        if not isinstance(response, dict):
            return []
        organic = response.get("organic_results") or response.get("results") or []
        if not isinstance(organic, list):
            return []
        hits: List[SearchHit] = []
        for index, item in enumerate(organic):
            if not isinstance(item, dict):
                continue
            link = item.get("link") or item.get("url")
            if not isinstance(link, str) or not link.strip():
                continue
            hits.append(SearchHit(url=link.strip(), rank=index + 1, title=str(item.get("title") or "")))
        return hits


class AuthorityAdapter(ProviderAdapter):
    """Domain authority from the RapidAPI website scan."""

    name = "authority"

    @property
    def api_key(self) -> str:
        return self.config.rapidapi_key

    @property
    def url(self) -> str:
        return self.config.authority_url or f"https://{self.config.serp_host}/website-scan"

    def lookup_authority(self, domain: str) -> Optional[AuthoritySignal]:
        self._require_key()
        response = self.fetcher.call(
            self.name,
            self.url,
            policy=self._policy(),
            params={"domain": domain},
            headers=self._rapidapi_headers(self.api_key),
        )
        return self.parse_authority(response)

    @staticmethod
    def parse_authority(response: Any) -> Optional[AuthoritySignal]:
        if not isinstance(response, dict):
            return None
        raw = response.get("da")
        if isinstance(raw, dict):
            raw = raw.get("da", raw.get("domain_authority"))
        if raw is None:
            raw = response.get("domain_authority")
        if raw is None or isinstance(raw, bool):
            return None
        try:
            value = float(raw)
        except (TypeError, ValueError):
            return None
        if math.isnan(value):
            return None
        return AuthoritySignal(domain_score=_clamp(value, 0.0, 100.0))


class EmailDiscoveryAdapter(ProviderAdapter):
    """Base for providers that return candidate emails for a domain."""

    # Upper bound of the provider's confidence field; None when undocumented.
    confidence_scale: Optional[float] = None

    def discover_emails(self, domain: str) -> List[EmailCandidate]:
        self._require_key()
        response = self._fetch(domain)
        return self.parse_emails(response)

    def _fetch(self, domain: str) -> Any:
        raise NotImplementedError

    def parse_emails(self, response: Any) -> List[EmailCandidate]:
        raise NotImplementedError

    def _candidate(self, address: Any, confidence: Any = None, role_hint: Any = None) -> Optional[EmailCandidate]:
        if not isinstance(address, str):
            return None
        address = address.strip().lower()
        if "@" not in address:
            return None
        return EmailCandidate(
            address=address,
            confidence=normalize_confidence(confidence, self.confidence_scale),
            source_provider=self.name,
            role_hint=str(role_hint).lower() if isinstance(role_hint, str) and role_hint else None,
        )


class HunterDiscoveryAdapter(EmailDiscoveryAdapter):
    name = "hunter"
    confidence_scale = 100.0

    @property
    def api_key(self) -> str:
        return self.config.hunter_api_key

    def _fetch(self, domain: str) -> Any:
        return self.fetcher.call(
            self.name,
            f"{self.config.hunter_base_url.rstrip('/')}/domain-search",
            policy=self._policy(),
            params={"domain": domain, "api_key": self.api_key, "limit": self.config.hunter_limit},
        )

    def parse_emails(self, response: Any) -> List[EmailCandidate]:
        data = response.get("data") if isinstance(response, dict) else None
        items = data.get("emails") if isinstance(data, dict) else None
        if not isinstance(items, list):
            return []
        candidates = []
        for item in items:
            if not isinstance(item, dict):
                continue
            candidate = self._candidate(item.get("value") or item.get("email"), item.get("confidence"), item.get("type"))
            if candidate:
                candidates.append(candidate)
        return candidates


class WebsiteScanDiscoveryAdapter(EmailDiscoveryAdapter):
    name = "website_scan"

    @property
    def api_key(self) -> str:
        return self.config.website_scan_key

    @property
    def url(self) -> str:
        return self.config.website_scan_url or f"https://{self.config.serp_host}/website-scan"

    def _fetch(self, domain: str) -> Any:
        return self.fetcher.call(
            self.name,
            self.url,
            policy=self._policy(),
            params={"domain": domain},
            headers=self._rapidapi_headers(self.api_key),
        )

    def parse_emails(self, response: Any) -> List[EmailCandidate]:
        items = response.get("emails") if isinstance(response, dict) else None
        if not isinstance(items, list):
            return []
        candidates = []
        for item in items:
            if isinstance(item, str):
                candidate = self._candidate(item)
            elif isinstance(item, dict):
                candidate = self._candidate(
                    item.get("email") or item.get("address") or item.get("value"),
                    item.get("score", item.get("confidence")),
                    item.get("type"),
                )
            else:
                candidate = None
            if candidate:
                candidates.append(candidate)
        return candidates


class TombaDiscoveryAdapter(EmailDiscoveryAdapter):
    name = "tomba"
    confidence_scale = 100.0

    @property
    def api_key(self) -> str:
        return self.config.tomba_api_key if self.config.tomba_secret else ""

    def _fetch(self, domain: str) -> Any:
        return self.fetcher.call(
            self.name,
            f"{self.config.tomba_base_url.rstrip('/')}/domain-search",
            policy=self._policy(),
            params={"domain": domain},
            headers={"X-Tomba-Key": self.config.tomba_api_key, "X-Tomba-Secret": self.config.tomba_secret},
        )

    def parse_emails(self, response: Any) -> List[EmailCandidate]:
        data = response.get("data") if isinstance(response, dict) else None
        items = data.get("emails") if isinstance(data, dict) else None
        if not isinstance(items, list):
            return []
        candidates = []
        for item in items:
            if not isinstance(item, dict):
                continue
            candidate = self._candidate(item.get("email"), item.get("score"), item.get("type"))
            if candidate:
                candidates.append(candidate)
        return candidates


def build_discovery_adapters(config: Config, fetcher: ResilientFetcher) -> Dict[str, EmailDiscoveryAdapter]:
    adapters: List[EmailDiscoveryAdapter] = [
        HunterDiscoveryAdapter(config, fetcher),
        WebsiteScanDiscoveryAdapter(config, fetcher),
        TombaDiscoveryAdapter(config, fetcher),
    ]
    return {adapter.name: adapter for adapter in adapters}


class ValidationAdapter(ProviderAdapter):
    """ZeroBounce single and batch validation.

    ZeroBounce serves the same API from regional hosts, so a 404 moves on to
    the next configured base URL instead of failing the call.
    """

    name = "zerobounce"

    @property
    def api_key(self) -> str:
        return self.config.zerobounce_api_key

    def _urls(self, path: str) -> List[str]:
        return [f"{base}{path}" for base in self.config.zerobounce_base_urls]

    def _policy(self) -> FetchPolicy:
        policy = self.config.fetch_policy(
            timeout=self.config.validation_timeout,
            max_attempts=self.config.validation_max_attempts,
        )
        return policy.with_actions({404: FetchAction.NEXT_ENDPOINT})

    def validate_email(self, address: str) -> ValidationResult:
        self._require_key()
        response = self.fetcher.call(
            self.name,
            self._urls("/validate"),
            policy=self._policy(),
            params={"api_key": self.api_key, "email": address, "ip_address": ""},
        )
        if not isinstance(response, dict):
            raise TransientError(self.name, None, "unexpected validation response")
        return self.parse_result(response, address)

    def validate_batch(self, addresses: Sequence[str]) -> Dict[str, ValidationResult]:
        self._require_key()
        payload = {
            "api_key": self.api_key,
            "email_batch": [{"email_address": address, "ip_address": None} for address in addresses],
        }
        response = self.fetcher.call(
            self.name,
            self._urls("/batch-validate"),
            policy=self._policy(),
            method="POST",
            json_body=payload,
        )
        items = response.get("email_batch") if isinstance(response, dict) else None
        if not isinstance(items, list):
            raise TransientError(self.name, None, "unexpected batch validation response")
        results: Dict[str, ValidationResult] = {}
        for item in items:
            if not isinstance(item, dict):
                continue
            result = self.parse_result(item)
            if result.address:
                results[result.address] = result
        return results

    @staticmethod
    def parse_result(item: Dict[str, Any], address: Optional[str] = None) -> ValidationResult:
        reported = item.get("address") or item.get("email_address") or address or ""
        status, sub_status = normalize_validation_status(item.get("status"), item.get("sub_status"))
        return ValidationResult(address=str(reported).strip().lower(), status=status, sub_status=sub_status)


# ---------------------------------------------------------------------------
# Email merging
# ---------------------------------------------------------------------------

def is_role_address(address: str, role_prefixes: Iterable[str] = ROLE_EMAIL_PREFIXES) -> bool:
    """True for generic mailboxes like info@ or support.team@."""
    local = (address or "").split("@", 1)[0].strip().lower()
    if not local:
        return False
    for prefix in role_prefixes:
        if local == prefix:
            return True
        if local.startswith(prefix) and len(local) > len(prefix) and local[len(prefix)] in ROLE_SEPARATORS:
            return True
    return False


def merge_email_candidates(
    candidate_lists: Iterable[Iterable[EmailCandidate]],
    role_prefixes: Iterable[str] = ROLE_EMAIL_PREFIXES,
) -> List[EmailCandidate]:
    """
    Deduplicate candidates across providers.

    The highest confidence record wins per lowercased address; a known
    confidence beats None and ties keep the first seen. Output keeps the order
    of first occurrence, then role mailboxes are dropped.
    """
    merged: Dict[str, EmailCandidate] = {}
    for candidates in candidate_lists:
        for candidate in candidates or []:
            key = candidate.key
            if "@" not in key:
                continue
            existing = merged.get(key)
            if existing is None:
                merged[key] = candidate
                continue
            if candidate.confidence is None:
                continue
            if existing.confidence is None or candidate.confidence > existing.confidence:
                merged[key] = candidate

    prefixes = tuple(role_prefixes)
    return [c for key, c in merged.items() if not is_role_address(key, prefixes)]


# ---------------------------------------------------------------------------
# Domain extraction + enrichment
# ---------------------------------------------------------------------------

def extract_domains(hits: Iterable[SearchHit], excluded_hosts: Iterable[str] = DEFAULT_EXCLUDED_HOSTS) -> List[Domain]:
    """One Domain per host in first-seen order, keeping the lowest rank."""
    excluded = tuple(excluded_hosts)
    domains: Dict[str, Domain] = {}
    for hit in hits:
        host = canonical_host(hit.url)
        if not host or is_excluded_host(host, excluded):
            continue
        existing = domains.get(host)
        if existing is None:
            domains[host] = Domain(host=host, best_rank=hit.rank, hits=[hit])
            continue
        existing.hits.append(hit)
        if hit.rank < existing.best_rank:
            existing.best_rank = hit.rank
    return list(domains.values())


def is_content_heavy(
    domain: Domain,
    min_hits: int = 5,
    keywords: Iterable[str] = CONTENT_HEAVY_KEYWORDS,
) -> bool:
    """Cheap guess that a domain is a publisher rather than a business."""
    if len(domain.hits) >= min_hits:
        return True
    words = [re.escape(k) for k in keywords if k]
    if not words:
        return False
    pattern = re.compile(r"(?<![a-z0-9])(?:" + "|".join(words) + r")s?(?![a-z0-9])")
    return any(pattern.search(f"{hit.url} {hit.title}".lower()) for hit in domain.hits)


class RunMetrics:
    """Operational counters kept for the lifetime of an orchestrator."""

    def __init__(self):
        self.start_time = time.time()
        self.counters: Dict[str, int] = {
            "keywords_run": 0,
            "domains_enriched": 0,
            "emails_discovered": 0,
            "emails_validated": 0,
            "validation_batches": 0,
            "validation_batches_failed": 0,
            "providers_skipped": 0,
        }
        self.api_calls: Dict[str, Dict[str, int]] = {}
        self.errors: List[Dict[str, Any]] = []

    def increment(self, name: str, amount: int = 1) -> None:
        self.counters[name] = self.counters.get(name, 0) + amount

    def track_api_call(self, service: str, success: bool = True) -> None:
        stats = self.api_calls.setdefault(service, {"success": 0, "failure": 0})
        stats["success" if success else "failure"] += 1

    def track_error(self, error: str, context: Dict[str, Any]) -> None:
        self.errors.append({
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "error": error,
            "context": context,
        })
        logging.debug("Error: %s | Context: %s", error, json.dumps(context, default=str))

    def snapshot(self) -> Dict[str, Any]:
        return {
            "elapsed_seconds": round(time.time() - self.start_time, 1),
            **self.counters,
            "api_calls": {name: dict(stats) for name, stats in self.api_calls.items()},
            "errors": list(self.errors),
        }


@dataclass
class ProviderSlot:
    adapter: EmailDiscoveryAdapter
    policy: ChainPolicy
    breaker: Optional[CircuitBreaker] = None

    @property
    def name(self) -> str:
        return self.adapter.name


class EmailProviderChain:
    """Ordered discovery providers, each with a run policy.

    A provider that reports quota exhaustion is disabled for the lifetime of
    the chain, which spans every keyword of a batch run.
    """

    def __init__(self, slots: Iterable[ProviderSlot]):
        self.slots: List[ProviderSlot] = list(slots)
        self.disabled: Set[str] = set()

    @classmethod
    def from_config(
        cls,
        config: Config,
        fetcher: ResilientFetcher,
        *,
        adapters: Optional[Dict[str, EmailDiscoveryAdapter]] = None,
        breakers: Optional[Dict[str, CircuitBreaker]] = None,
    ) -> "EmailProviderChain":
        registry = adapters if adapters is not None else build_discovery_adapters(config, fetcher)
        breakers = breakers if breakers is not None else {}
        slots = []
        for name, policy in parse_discovery_chain(config.discovery_chain):
            adapter = registry.get(name)
            if adapter is None:
                raise ConfigError(f"No adapter registered for discovery provider {name}")
            slots.append(ProviderSlot(adapter=adapter, policy=policy, breaker=breakers.get(name)))
        return cls(slots)

    def disable(self, name: str) -> None:
        if name not in self.disabled:
            logging.warning("Disabling %s for the rest of this run (quota exhausted)", name)
        self.disabled.add(name)

    def is_disabled(self, name: str) -> bool:
        return name in self.disabled


class DomainEnricher:
    """Authority + email discovery for one domain; never raises."""

    def __init__(
        self,
        config: Config,
        authority: AuthorityAdapter,
        chain: EmailProviderChain,
        *,
        metrics: Optional[RunMetrics] = None,
        authority_breaker: Optional[CircuitBreaker] = None,
    ):
        self.config = config
        self.authority = authority
        self.chain = chain
        self.metrics = metrics or RunMetrics()
        self.authority_breaker = authority_breaker

    def enrich(self, domain: Domain) -> EnrichedDomain:
        authority_score = self._lookup_authority(domain.host)
        content_heavy = is_content_heavy(
            domain,
            self.config.content_heavy_min_hits,
            self.config.content_heavy_keywords,
        )

        collected: List[List[EmailCandidate]] = []
        providers_used: List[str] = []
        for slot in self.chain.slots:
            if not self._should_call(slot, domain, content_heavy, collected):
                continue
            candidates = self._discover(slot, domain.host)
            if candidates is None:
                continue
            providers_used.append(slot.name)
            collected.append(candidates)

        emails = merge_email_candidates(collected, self.config.role_prefixes)
        self.metrics.increment("domains_enriched")
        self.metrics.increment("emails_discovered", len(emails))
        logging.info(
            "Enriched %s: authority=%.1f emails=%d providers=%s",
            domain.host,
            authority_score,
            len(emails),
            ",".join(providers_used) or "-",
        )
        return EnrichedDomain(
            domain=domain,
            authority_score=authority_score,
            emails=emails,
            providers_used=providers_used,
        )

    def _should_call(
        self,
        slot: ProviderSlot,
        domain: Domain,
        content_heavy: bool,
        collected: List[List[EmailCandidate]],
    ) -> bool:
        if not slot.adapter.configured:
            logging.debug("Skipping %s for %s: no API key configured", slot.name, domain.host)
            return False
        if self.chain.is_disabled(slot.name):
            logging.debug("Skipping %s for %s: disabled for this run", slot.name, domain.host)
            self.metrics.increment("providers_skipped")
            return False
        if slot.policy is ChainPolicy.PRIMARY and content_heavy:
            logging.info("Skipping %s for %s: content-heavy domain", slot.name, domain.host)
            self.metrics.increment("providers_skipped")
            return False
        if slot.policy is ChainPolicy.FALLBACK and any(collected):
            return False
        return True

    def _lookup_authority(self, host: str) -> float:
        if not self.authority.configured:
            return 0.0
        try:
            if self.authority_breaker is not None:
                signal = self.authority_breaker.call(self.authority.lookup_authority, host)
            else:
                signal = self.authority.lookup_authority(host)
        except Exception as exc:  # noqa: BLE001
            logging.warning("Authority lookup failed for %s: %s", host, exc)
            self.metrics.track_api_call(self.authority.name, success=False)
            self.metrics.track_error(str(exc), {"provider": self.authority.name, "domain": host})
            return 0.0
        self.metrics.track_api_call(self.authority.name, success=True)
        return signal.domain_score if signal else 0.0

    def _discover(self, slot: ProviderSlot, host: str) -> Optional[List[EmailCandidate]]:
        try:
            if slot.breaker is not None:
                candidates = slot.breaker.call(slot.adapter.discover_emails, host)
            else:
                candidates = slot.adapter.discover_emails(host)
        except QuotaExhausted as exc:
            self.chain.disable(slot.name)
            self.metrics.track_api_call(slot.name, success=False)
            self.metrics.track_error(str(exc), {"provider": slot.name, "domain": host, "quota": True})
            return None
        except CircuitOpenError as exc:
            logging.warning("Skipping %s for %s: %s", slot.name, host, exc)
            self.metrics.increment("providers_skipped")
            return None
        except Exception as exc:  # noqa: BLE001
            logging.warning("%s discovery failed for %s: %s", slot.name, host, exc)
            self.metrics.track_api_call(slot.name, success=False)
            self.metrics.track_error(str(exc), {"provider": slot.name, "domain": host})
            return None
        self.metrics.track_api_call(slot.name, success=True)
        return list(candidates or [])


# ---------------------------------------------------------------------------
# Batch validation
# ---------------------------------------------------------------------------

def normalize_addresses(addresses: Iterable[str]) -> List[str]:
    """Lowercased, deduplicated, well-formed addresses in first-seen order."""
    seen: Dict[str, None] = {}
    for address in addresses:
        if not isinstance(address, str):
            continue
        key = address.strip().lower()
        if key and key not in seen and is_valid_email(key):
            seen[key] = None
    return list(seen)


def chunk_addresses(addresses: Sequence[str], batch_size: int) -> List[List[str]]:
    size = max(1, int(batch_size))
    items = list(addresses)
    return [items[start:start + size] for start in range(0, len(items), size)]


class BatchValidator:
    """Validate every email of a keyword run in paced, fail-open batches."""

    def __init__(self, config: Config, adapter: ValidationAdapter, *, metrics: Optional[RunMetrics] = None):
        self.config = config
        self.adapter = adapter
        self.metrics = metrics or RunMetrics()

    def validate_all(self, addresses: Iterable[str]) -> Dict[str, ValidationResult]:
        unique = normalize_addresses(addresses)
        if not unique:
            return {}
        if not self.adapter.configured:
            logging.warning("No validation key configured; marking %d emails unknown", len(unique))
            return {a: ValidationResult(a, STATUS_UNKNOWN, "not_checked") for a in unique}
        if not self.config.validation_use_batch:
            return self._validate_singly(unique)

        batches = chunk_addresses(unique, self.config.validation_batch_size)
        results: Dict[str, ValidationResult] = {}
        for index, batch in enumerate(batches, start=1):
            self.metrics.increment("validation_batches")
            try:
                returned = self.adapter.validate_batch(batch)
            except Exception as exc:  # noqa: BLE001
                logging.warning(
                    "Validation batch %d/%d failed (%s); marking %d emails unknown",
                    index,
                    len(batches),
                    exc,
                    len(batch),
                )
                self.metrics.increment("validation_batches_failed")
                self.metrics.track_api_call(self.adapter.name, success=False)
                self.metrics.track_error(str(exc), {"provider": self.adapter.name, "batch": index})
                for address in batch:
                    results[address] = ValidationResult(address, STATUS_UNKNOWN, "batch_failed")
            else:
                self.metrics.track_api_call(self.adapter.name, success=True)
                for address in batch:
                    results[address] = returned.get(address) or ValidationResult(
                        address, STATUS_UNKNOWN, "not_returned"
                    )
                self.metrics.increment("emails_validated", len(batch))
                logging.info("Validation batch %d/%d validated (%d emails)", index, len(batches), len(batch))

            if index < len(batches):
                time.sleep(self.config.validation_batch_delay)
        return results

    def _validate_singly(self, addresses: List[str]) -> Dict[str, ValidationResult]:
        results: Dict[str, ValidationResult] = {}
        for address in addresses:
            try:
                result = self.adapter.validate_email(address)
            except Exception as exc:  # noqa: BLE001
                logging.warning("Validation failed for %s: %s", address, exc)
                self.metrics.track_api_call(self.adapter.name, success=False)
                results[address] = ValidationResult(address, STATUS_UNKNOWN, "request_failed")
                continue
            self.metrics.track_api_call(self.adapter.name, success=True)
            self.metrics.increment("emails_validated")
            results[address] = replace(result, address=address)
        return results


# ---------------------------------------------------------------------------
# Scoring + filtering
# ---------------------------------------------------------------------------

def _round_half_up(value: float) -> float:
    """One decimal place, halves rounded up (0.25 -> 0.3)."""
    return math.floor(value * 10 + 0.5) / 10


def score_lead(authority_score: Any, rank: Any, best_email_confidence: Any) -> LeadScore:
    """
    Combine authority (0-50), search rank (0-30) and best email (0-20).

    Ranks outside 1-20 earn nothing; inside, rank 1 earns 30 and each step
    down costs 1.5.
    """
    authority = _clamp(_as_float(authority_score), 0.0, 100.0) * 50.0 / 100.0

    rank_value = _as_float(rank)
    rank_component = 0.0
    if 1 <= rank_value <= 20:
        rank_component = (21 - _clamp(rank_value, 1.0, 20.0)) * 30.0 / 20.0

    email = _clamp(_as_float(best_email_confidence), 0.0, 1.0) * 20.0

    return LeadScore(
        total=_round_half_up(authority + rank_component + email),
        breakdown={
            "authority": _round_half_up(authority),
            "rank": _round_half_up(rank_component),
            "email": _round_half_up(email),
        },
    )


def validated_confidence(
    confidence: Optional[float],
    status: str,
    *,
    catch_all_factor: float = 0.5,
    unknown_factor: float = 0.0,
) -> float:
    """Email score after validation; provider confidence defaults to 1."""
    base = 1.0 if confidence is None else _clamp(confidence, 0.0, 1.0)
    if status == STATUS_VALID:
        return base
    if status == STATUS_CATCH_ALL:
        return base * catch_all_factor
    if status == STATUS_UNKNOWN:
        return base * unknown_factor
    return 0.0


def build_lead(enriched: EnrichedDomain, validations: Dict[str, ValidationResult], config: Config) -> Lead:
    emails: List[LeadEmail] = []
    for candidate in enriched.emails:
        key = candidate.key
        validation = validations.get(key) or ValidationResult(key, STATUS_UNKNOWN, "not_validated")
        emails.append(
            LeadEmail(
                address=key,
                confidence=candidate.confidence,
                source_provider=candidate.source_provider,
                status=validation.status,
                sub_status=validation.sub_status,
                score=validated_confidence(
                    candidate.confidence,
                    validation.status,
                    catch_all_factor=config.catch_all_confidence_factor,
                    unknown_factor=config.unknown_confidence_factor,
                ),
            )
        )
    best = max((email.score for email in emails), default=0.0)
    scored = score_lead(enriched.authority_score, enriched.domain.best_rank, best)
    return Lead(
        domain=enriched.domain.host,
        rank=enriched.domain.best_rank,
        authority_score=enriched.authority_score,
        emails=tuple(emails),
        score=scored.total,
        score_breakdown=scored.breakdown,
    )


def sort_leads(leads: Iterable[Lead]) -> List[Lead]:
    """Score descending; ties fall back to authority descending."""
    return sorted(leads, key=lambda lead: (-lead.score, -lead.authority_score))


def extract_rows(
    result: OutreachResult,
    min_lead_score: float = DEFAULT_MIN_LEAD_SCORE,
    min_email_score: float = DEFAULT_MIN_EMAIL_SCORE,
    *,
    now: Optional[datetime] = None,
) -> List[OutputRow]:
    """Flatten leads into one row per qualifying valid email."""
    if result is None:
        return []
    timestamp = (now or datetime.now(timezone.utc)).isoformat()
    rows: List[OutputRow] = []
    for lead in result.leads:
        if lead.score < min_lead_score:
            continue
        for email in lead.emails:
            if not email.valid or email.score < min_email_score:
                continue
            rows.append(
                OutputRow(
                    timestamp=timestamp,
                    keyword=result.keyword,
                    domain=lead.domain,
                    authority_score=lead.authority_score,
                    rank=lead.rank,
                    email=email.address,
                    email_score=email.score,
                    lead_score=lead.score,
                )
            )
    return rows


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class OutreachOrchestrator:
    """Runs search, enrichment, validation and scoring for one keyword at a time."""

    def __init__(
        self,
        config: Config,
        *,
        fetcher: Optional[ResilientFetcher] = None,
        search: Optional[SearchAdapter] = None,
        authority: Optional[AuthorityAdapter] = None,
        discovery_adapters: Optional[Dict[str, EmailDiscoveryAdapter]] = None,
        validation: Optional[ValidationAdapter] = None,
    ):
        config.validate()
        self.config = config
        self.fetcher = fetcher or ResilientFetcher()
        self.metrics = RunMetrics()

        self.circuit_breakers: Dict[str, CircuitBreaker] = {}
        if config.circuit_breaker_enabled:
            for name in ("authority",) + DISCOVERY_PROVIDERS:
                self.circuit_breakers[name] = CircuitBreaker(
                    name,
                    config.circuit_breaker_threshold,
                    config.circuit_breaker_timeout,
                )

        self.search = search or SearchAdapter(config, self.fetcher)
        self.authority = authority or AuthorityAdapter(config, self.fetcher)
        self.chain = EmailProviderChain.from_config(
            config,
            self.fetcher,
            adapters=discovery_adapters,
            breakers=self.circuit_breakers,
        )
        self.enricher = DomainEnricher(
            config,
            self.authority,
            self.chain,
            metrics=self.metrics,
            authority_breaker=self.circuit_breakers.get("authority"),
        )
        self.validator = BatchValidator(
            config,
            validation or ValidationAdapter(config, self.fetcher),
            metrics=self.metrics,
        )

    def run_outreach(self, keyword: str) -> OutreachResult:
        keyword = (keyword or "").strip()
        if not keyword:
            raise ValueError("keyword required")

        logging.info("SERP lookup for keyword: %s", keyword)
        self.metrics.increment("keywords_run")
        try:
            hits = self.search.lookup_search_results(keyword)
        except Exception as exc:
            self.metrics.track_api_call(self.search.name, success=False)
            self.metrics.track_error(str(exc), {"provider": self.search.name, "keyword": keyword})
            raise
        self.metrics.track_api_call(self.search.name, success=True)

        domains = extract_domains(hits, self.config.excluded_hosts)
        total_domains = len(domains)
        if total_domains > self.config.max_domains_per_keyword:
            logging.info(
                "Keyword %s produced %d domains; enriching the first %d",
                keyword,
                total_domains,
                self.config.max_domains_per_keyword,
            )
            domains = domains[: self.config.max_domains_per_keyword]

        enriched: List[EnrichedDomain] = []
        for index, domain in enumerate(domains):
            if index:
                time.sleep(self.config.domain_delay)
            enriched.append(self._enrich_safely(domain))

        addresses = [candidate.key for item in enriched for candidate in item.emails]
        validations = self.validator.validate_all(addresses)

        leads = sort_leads(build_lead(item, validations, self.config) for item in enriched)
        logging.info("Keyword %s: %d domains, %d leads", keyword, total_domains, len(leads))
        return OutreachResult(keyword=keyword, total_domains=total_domains, leads=leads)

    def extract_rows(
        self,
        result: OutreachResult,
        min_lead_score: Optional[float] = None,
        min_email_score: Optional[float] = None,
    ) -> List[OutputRow]:
        return extract_rows(
            result,
            self.config.min_lead_score if min_lead_score is None else min_lead_score,
            self.config.min_email_score if min_email_score is None else min_email_score,
        )

    def _enrich_safely(self, domain: Domain) -> EnrichedDomain:
        try:
            return self.enricher.enrich(domain)
        except Exception as exc:  # noqa: BLE001
            logging.error("Enrichment failed for %s: %s", domain.host, exc)
            self.metrics.track_error(str(exc), {"stage": "enrich", "domain": domain.host})
            return EnrichedDomain(domain=domain)


# ---------------------------------------------------------------------------
# Batch runner + row sink
# ---------------------------------------------------------------------------

def load_keywords(path: Union[str, Path]) -> List[str]:
    text = Path(path).read_text(encoding="utf-8")
    return [line.strip() for line in text.splitlines() if line.strip()]


class CsvRowSink:
    """Append accepted rows to a CSV file, writing the header once."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def append_rows(self, rows: Iterable[OutputRow]) -> int:
        rows = list(rows)
        if not rows:
            return 0
        self.path.parent.mkdir(parents=True, exist_ok=True)
        write_header = not self.path.exists() or self.path.stat().st_size == 0
        with self.path.open("a", newline="", encoding="utf-8") as handle:
            writer = csv.DictWriter(handle, fieldnames=list(OUTPUT_ROW_FIELDS))
            if write_header:
                writer.writeheader()
            for row in rows:
                writer.writerow(row.to_dict())
        logging.info("Appended %d rows to %s", len(rows), self.path)
        return len(rows)


def run_keyword_batch(
    orchestrator: OutreachOrchestrator,
    keywords: Iterable[str],
    *,
    sink: Optional[CsvRowSink] = None,
    on_result: Optional[Callable[[OutreachResult, List[OutputRow]], None]] = None,
) -> List[Dict[str, Any]]:
    """Run keywords one after another; a failing keyword never stops the batch."""
    config = orchestrator.config
    selected = [k.strip() for k in keywords if isinstance(k, str) and k.strip()]
    selected = selected[: config.max_keywords_per_run]
    logging.info("Running rationed block of %d keywords", len(selected))

    summary: List[Dict[str, Any]] = []
    for index, keyword in enumerate(selected, start=1):
        logging.info("[%d/%d] SERP scan: %s", index, len(selected), keyword)
        entry: Dict[str, Any] = {"keyword": keyword, "domains": 0, "leads": 0, "rows_saved": 0, "error": None}
        with KeywordLogCapture(keyword) as capture:
            try:
                result = orchestrator.run_outreach(keyword)
                rows = orchestrator.extract_rows(result)
                entry["domains"] = result.total_domains
                entry["leads"] = len(result.leads)
                if rows and sink is not None:
                    entry["rows_saved"] = sink.append_rows(rows)
                if on_result is not None:
                    on_result(result, rows)
            except Exception as exc:  # noqa: BLE001
                logging.error("Keyword %s failed: %s", keyword, exc)
                entry["error"] = str(exc)
        entry["warnings"] = capture.warning_count
        entry["errors"] = capture.error_count
        summary.append(entry)

        if index < len(selected):
            time.sleep(config.keyword_delay)

    logging.info("Rationed block complete: %d keywords", len(summary))
    return summary


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="SERP outreach lead pipeline")
    source = parser.add_mutually_exclusive_group()
    source.add_argument("--keyword", help="Single search keyword to process")
    source.add_argument("--keywords-file", dest="keywords_file", help="File with one keyword per line")
    parser.add_argument("--min-lead-score", dest="min_lead_score", type=float, help="Override MIN_LEAD_SCORE")
    parser.add_argument("--min-email-score", dest="min_email_score", type=float, help="Override MIN_EMAIL_SCORE")
    parser.add_argument("--rows-csv", dest="rows_csv", help="Append accepted rows to this CSV file")
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity",
    )
    parser.add_argument(
        "--output",
        help="Optional path to write JSON results (defaults to stdout only)",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    _load_env_file()
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(message)s",
    )

    if not args.keyword and not args.keywords_file:
        parser.error("--keyword or --keywords-file is required")

    try:
        config = Config()
        overrides = {}
        if args.min_lead_score is not None:
            overrides["min_lead_score"] = args.min_lead_score
        if args.min_email_score is not None:
            overrides["min_email_score"] = args.min_email_score
        if overrides:
            config = replace(config, **overrides)
        orchestrator = OutreachOrchestrator(config)
    except ConfigError as exc:
        logging.error("Configuration error: %s", exc)
        return 2

    sink = CsvRowSink(args.rows_csv) if args.rows_csv else None

    try:
        if args.keywords_file:
            keywords = load_keywords(args.keywords_file)
            payload: Dict[str, Any] = {
                "keywords": run_keyword_batch(orchestrator, keywords, sink=sink),
                "metrics": orchestrator.metrics.snapshot(),
            }
        else:
            result = orchestrator.run_outreach(args.keyword)
            rows = orchestrator.extract_rows(result)
            if sink is not None:
                sink.append_rows(rows)
            payload = result.to_dict()
            payload["rows"] = [row.to_dict() for row in rows]
    except Exception as exc:  # pylint: disable=broad-except
        logging.error("Fatal error: %s", exc)
        return 1

    output_json = json.dumps(payload, indent=2)
    print(output_json)

    if args.output:
        with open(args.output, "w", encoding="utf-8") as handle:
            handle.write(output_json)
        logging.info("Wrote results to %s", args.output)

    return 0


if __name__ == "__main__":
    sys.exit(main())
