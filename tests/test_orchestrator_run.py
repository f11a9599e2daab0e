"""
End-to-end tests for OutreachOrchestrator.run_outreach.

Most tests inject fake adapters; the wiring test at the bottom replaces
_http_request instead so the real adapters, fetcher and chain run.
"""

from unittest.mock import patch
from urllib.error import URLError

import pytest

from outreach_pipeline import (
    AuthoritySignal,
    Config,
    ConfigError,
    EmailCandidate,
    OutreachOrchestrator,
    SearchHit,
    TransientError,
    ValidationResult,
)


class FakeSearch:
    name = "serp"
    configured = True

    def __init__(self, hits=None, error=None):
        self.hits = hits or []
        self.error = error
        self.calls = []

    def lookup_search_results(self, keyword):
        self.calls.append(keyword)
        if self.error is not None:
            raise self.error
        return list(self.hits)


class FakeAuthority:
    name = "authority"
    configured = True

    def __init__(self, scores):
        self.scores = scores
        self.calls = []

    def lookup_authority(self, domain):
        self.calls.append(domain)
        return AuthoritySignal(self.scores.get(domain, 0))


class FakeDiscovery:
    configured = True

    def __init__(self, name, results=None):
        self.name = name
        self.results = results or {}
        self.calls = []

    def discover_emails(self, domain):
        self.calls.append(domain)
        return [EmailCandidate(a, c, self.name) for a, c in self.results.get(domain, [])]


class FakeValidation:
    name = "zerobounce"
    configured = True

    def __init__(self, statuses=None):
        self.statuses = statuses or {}
        self.batches = []

    def validate_batch(self, addresses):
        self.batches.append(list(addresses))
        return {a: ValidationResult(a, self.statuses.get(a, "valid"), "") for a in addresses}

    def validate_email(self, address):
        return ValidationResult(address, self.statuses.get(address, "valid"), "")


def _orchestrator(config=None, hits=None, scores=None, emails=None, search_error=None, statuses=None):
    search = FakeSearch(hits, search_error)
    authority = FakeAuthority(scores or {})
    discovery = {
        "hunter": FakeDiscovery("hunter", emails or {}),
        "website_scan": FakeDiscovery("website_scan"),
        "tomba": FakeDiscovery("tomba"),
    }
    validation = FakeValidation(statuses)
    orchestrator = OutreachOrchestrator(
        config or Config(),
        search=search,
        authority=authority,
        discovery_adapters=discovery,
        validation=validation,
    )
    return orchestrator, search, authority, discovery, validation


@pytest.mark.unit
class TestRunOutreach:
    def test_scores_and_orders_leads(self):
        orchestrator, _, _, _, validation = _orchestrator(
            hits=[
                SearchHit("https://a.com/", 1, "A Plumbing"),
                SearchHit("https://b.com/", 2, "B Plumbing"),
                SearchHit("https://www.youtube.com/watch?v=x", 3, "Video"),
            ],
            scores={"a.com": 80, "b.com": 0},
            emails={"a.com": [("jane@a.com", 1.0)]},
        )

        result = orchestrator.run_outreach("emergency plumber leeds")

        assert result.keyword == "emergency plumber leeds"
        assert result.total_domains == 2
        assert [(lead.domain, lead.score) for lead in result.leads] == [("a.com", 90.0), ("b.com", 28.5)]
        assert validation.batches == [["jane@a.com"]]

        rows = orchestrator.extract_rows(result)
        assert [(r.domain, r.email, r.lead_score) for r in rows] == [("a.com", "jane@a.com", 90.0)]

    def test_validates_union_of_emails_once(self):
        orchestrator, _, _, _, validation = _orchestrator(
            hits=[SearchHit("https://a.com", 1), SearchHit("https://b.com", 2)],
            emails={"a.com": [("jane@a.com", 0.9)], "b.com": [("sam@b.com", 0.8), ("JANE@a.com", 0.5)]},
        )

        orchestrator.run_outreach("plumber")

        assert validation.batches == [["jane@a.com", "sam@b.com"]]

    def test_low_rank_high_authority_can_outrank(self):
        orchestrator, *_ = _orchestrator(
            hits=[SearchHit("https://weak.com", 1), SearchHit("https://strong.com", 15)],
            scores={"weak.com": 0, "strong.com": 100},
            emails={"strong.com": [("owner@strong.com", 1.0)]},
        )

        result = orchestrator.run_outreach("plumber")

        assert [lead.domain for lead in result.leads] == ["strong.com", "weak.com"]

    def test_search_failure_propagates(self):
        orchestrator, _, authority, _, validation = _orchestrator(search_error=TransientError("serp", 500, "down"))

        with pytest.raises(TransientError):
            orchestrator.run_outreach("plumber")

        assert authority.calls == []
        assert validation.batches == []
        assert orchestrator.metrics.api_calls["serp"] == {"success": 0, "failure": 1}

    def test_no_results_is_empty_success(self):
        orchestrator, *_ = _orchestrator(hits=[])

        result = orchestrator.run_outreach("plumber")

        assert result.total_domains == 0
        assert result.leads == []

    def test_caps_domains_per_keyword(self):
        orchestrator, _, authority, _, _ = _orchestrator(
            config=Config(max_domains_per_keyword=2),
            hits=[SearchHit(f"https://site{i}.com", i + 1) for i in range(4)],
        )

        result = orchestrator.run_outreach("plumber")

        assert result.total_domains == 4
        assert len(result.leads) == 2
        assert authority.calls == ["site0.com", "site1.com"]

    @patch("outreach_pipeline.time.sleep")
    def test_paces_between_domains(self, mock_sleep):
        orchestrator, *_ = _orchestrator(
            config=Config(domain_delay=0.5),
            hits=[SearchHit(f"https://site{i}.com", i + 1) for i in range(3)],
        )

        orchestrator.run_outreach("plumber")

        assert [c[0][0] for c in mock_sleep.call_args_list] == [0.5, 0.5]

    def test_enrichment_crash_still_yields_lead(self, monkeypatch):
        orchestrator, *_ = _orchestrator(hits=[SearchHit("https://a.com", 1)])

        def explode(domain):
            raise RuntimeError("unexpected")

        monkeypatch.setattr(orchestrator.enricher, "enrich", explode)

        result = orchestrator.run_outreach("plumber")

        assert [(lead.domain, lead.score) for lead in result.leads] == [("a.com", 30.0)]

    def test_blank_keyword_rejected(self):
        orchestrator, *_ = _orchestrator()

        with pytest.raises(ValueError):
            orchestrator.run_outreach("   ")

    def test_extract_rows_threshold_override(self):
        orchestrator, *_ = _orchestrator(
            hits=[SearchHit("https://b.com", 2)],
            emails={"b.com": [("sam@b.com", 0.4)]},
        )
        result = orchestrator.run_outreach("plumber")

        assert orchestrator.extract_rows(result) == []
        assert [r.email for r in orchestrator.extract_rows(result, 0, 0)] == ["sam@b.com"]

    def test_metrics_snapshot(self):
        orchestrator, *_ = _orchestrator(
            hits=[SearchHit("https://a.com", 1)],
            emails={"a.com": [("jane@a.com", 0.9)]},
        )

        orchestrator.run_outreach("plumber")
        snapshot = orchestrator.metrics.snapshot()

        assert snapshot["keywords_run"] == 1
        assert snapshot["domains_enriched"] == 1
        assert snapshot["emails_discovered"] == 1
        assert snapshot["emails_validated"] == 1
        assert snapshot["api_calls"]["hunter"] == {"success": 1, "failure": 0}


@pytest.mark.unit
class TestOrchestratorConstruction:
    def test_requires_search_key(self, monkeypatch):
        monkeypatch.delenv("RAPIDAPI_KEY")

        with pytest.raises(ConfigError, match="RAPIDAPI_KEY"):
            OutreachOrchestrator(Config())

    def test_breakers_follow_config(self):
        enabled = OutreachOrchestrator(Config(circuit_breaker_enabled=True, circuit_breaker_threshold=2))
        disabled = OutreachOrchestrator(Config())

        assert sorted(enabled.circuit_breakers) == ["authority", "hunter", "tomba", "website_scan"]
        assert enabled.circuit_breakers["hunter"].failure_threshold == 2
        assert enabled.chain.slots[0].breaker is enabled.circuit_breakers["hunter"]
        assert disabled.circuit_breakers == {}


def _all_valid(batch):
    return {"email_batch": [{"address": item["email_address"], "status": "valid", "sub_status": ""} for item in batch]}


def _scripted_providers(requests, validate_batch=_all_valid):
    """Fake _http_request serving every provider; validate_batch answers /batch-validate."""

    def fake_http_request(method, url, **kwargs):
        requests.append((method, url))
        params = kwargs.get("params") or {}
        if url.endswith("/scrape"):
            return {
                "organic_results": [
                    {"link": "https://www.a.com/", "title": "A Plumbing Leeds"},
                    {"link": "https://reddit.com/r/plumbing", "title": "Reddit"},
                    {"link": "https://b.com/contact", "title": "B Heating"},
                ]
            }
        if url.endswith("/website-scan"):
            if params["domain"] == "a.com":
                return {"da": 80, "emails": ["info@a.com"]}
            return {"da": {"da": 20}, "emails": []}
        if "hunter.io" in url:
            if params["domain"] == "a.com":
                return {"data": {"emails": [{"value": "jane@a.com", "confidence": 100, "type": "personal"}]}}
            return {"data": {"emails": []}}
        if "tomba.io" in url:
            return {"data": {"emails": [{"email": "tom@b.com", "score": 70}]}}
        if url.endswith("/batch-validate"):
            return validate_batch(kwargs["json_body"]["email_batch"])
        raise AssertionError(f"unexpected request {method} {url}")

    return fake_http_request


@pytest.mark.integration
class TestHttpWiring:
    def test_real_adapters_against_scripted_http(self, monkeypatch):
        requests = []
        monkeypatch.setattr("outreach_pipeline._http_request", _scripted_providers(requests))
        orchestrator = OutreachOrchestrator(Config())

        result = orchestrator.run_outreach("emergency plumber leeds")

        assert result.total_domains == 2
        assert [(lead.domain, lead.score) for lead in result.leads] == [("a.com", 90.0), ("b.com", 51.0)]
        assert [e.address for e in result.leads[0].emails] == ["jane@a.com"]
        assert [e.address for e in result.leads[1].emails] == ["tom@b.com"]
        assert sum(1 for _, url in requests if url.endswith("/batch-validate")) == 1
        assert sum(1 for _, url in requests if "tomba.io" in url) == 1

    @patch("outreach_pipeline.time.sleep")
    def test_unreachable_validation_fails_open(self, mock_sleep, monkeypatch):
        requests = []

        def unreachable(batch):
            raise URLError("connection refused")

        monkeypatch.setattr("outreach_pipeline._http_request", _scripted_providers(requests, unreachable))
        orchestrator = OutreachOrchestrator(Config())

        result = orchestrator.run_outreach("emergency plumber leeds")

        emails = [email for lead in result.leads for email in lead.emails]
        assert [e.address for e in emails] == ["jane@a.com", "tom@b.com"]
        assert all((e.status, e.sub_status, e.score) == ("unknown", "batch_failed", 0.0) for e in emails)
        assert sum(1 for _, url in requests if url.endswith("/batch-validate")) == 2
        assert orchestrator.extract_rows(result) == []
