"""Tests for the rationed keyword batch runner, keyword loading and CSV row sink."""

import csv
import logging
import types
from unittest.mock import patch

import pytest

from outreach_pipeline import (
    CsvRowSink,
    OutputRow,
    OutreachResult,
    TransientError,
    load_keywords,
    run_keyword_batch,
)


def _row(keyword, domain="a.com", email="jane@a.com"):
    return OutputRow(
        timestamp="2026-03-01T12:00:00+00:00",
        keyword=keyword,
        domain=domain,
        authority_score=80.0,
        rank=1,
        email=email,
        email_score=1.0,
        lead_score=90.0,
    )


class FakeOrchestrator:
    def __init__(self, failing=(), max_keywords=50, keyword_delay=0.0):
        self.config = types.SimpleNamespace(max_keywords_per_run=max_keywords, keyword_delay=keyword_delay)
        self.failing = set(failing)
        self.keywords = []

    def run_outreach(self, keyword):
        self.keywords.append(keyword)
        if keyword in self.failing:
            logging.warning("search provider struggling for %s", keyword)
            raise TransientError("serp", 503, "unavailable")
        return OutreachResult(keyword=keyword, total_domains=3, leads=[])

    def extract_rows(self, result):
        return [_row(result.keyword)]


class RecordingSink:
    def __init__(self):
        self.rows = []

    def append_rows(self, rows):
        self.rows.extend(rows)
        return len(rows)


@pytest.mark.unit
class TestRunKeywordBatch:
    def test_failing_keyword_does_not_stop_batch(self):
        orchestrator = FakeOrchestrator(failing={"bad"})
        sink = RecordingSink()

        summary = run_keyword_batch(orchestrator, ["good one", "bad", "good two"], sink=sink)

        assert orchestrator.keywords == ["good one", "bad", "good two"]
        assert [s["keyword"] for s in summary] == ["good one", "bad", "good two"]
        assert summary[1]["error"] == "serp request failed (status=503): unavailable"
        assert summary[0]["error"] is None
        assert summary[0]["rows_saved"] == 1
        assert summary[0]["domains"] == 3
        assert [r.keyword for r in sink.rows] == ["good one", "good two"]

    def test_counts_warnings_and_errors_per_keyword(self):
        summary = run_keyword_batch(FakeOrchestrator(failing={"bad"}), ["bad", "fine"])

        assert (summary[0]["warnings"], summary[0]["errors"]) == (1, 1)
        assert (summary[1]["warnings"], summary[1]["errors"]) == (0, 0)

    def test_caps_keywords_per_run(self):
        orchestrator = FakeOrchestrator(max_keywords=2)

        summary = run_keyword_batch(orchestrator, ["one", "two", "three"])

        assert orchestrator.keywords == ["one", "two"]
        assert len(summary) == 2

    def test_skips_blank_keywords(self):
        orchestrator = FakeOrchestrator()

        run_keyword_batch(orchestrator, ["  ", "one", "", " two "])

        assert orchestrator.keywords == ["one", "two"]

    @patch("outreach_pipeline.time.sleep")
    def test_paces_between_keywords(self, mock_sleep):
        run_keyword_batch(FakeOrchestrator(keyword_delay=2.5), ["one", "two", "three"])

        assert [c[0][0] for c in mock_sleep.call_args_list] == [2.5, 2.5]

    def test_sink_failure_is_reported_for_that_keyword(self):
        class BrokenSink:
            def append_rows(self, rows):
                raise OSError("disk full")

        summary = run_keyword_batch(FakeOrchestrator(), ["one"], sink=BrokenSink())

        assert summary[0]["error"] == "disk full"

    def test_on_result_callback(self):
        seen = []

        run_keyword_batch(FakeOrchestrator(), ["one"], on_result=lambda result, rows: seen.append((result.keyword, len(rows))))

        assert seen == [("one", 1)]


@pytest.mark.unit
class TestLoadKeywords:
    def test_reads_non_blank_lines(self, tmp_path):
        path = tmp_path / "keywords.txt"
        path.write_text("emergency plumber leeds\n\n  boiler repair york  \n", encoding="utf-8")

        assert load_keywords(path) == ["emergency plumber leeds", "boiler repair york"]


@pytest.mark.unit
class TestCsvRowSink:
    def test_writes_header_once(self, tmp_path):
        path = tmp_path / "out" / "leads.csv"
        sink = CsvRowSink(path)

        assert sink.append_rows([_row("one")]) == 1
        assert sink.append_rows([_row("two", email="sam@a.com")]) == 1

        with path.open(encoding="utf-8", newline="") as handle:
            rows = list(csv.reader(handle))
        assert rows[0] == [
            "timestamp",
            "keyword",
            "domain",
            "authority_score",
            "rank",
            "email",
            "email_score",
            "lead_score",
        ]
        assert [r[1] for r in rows[1:]] == ["one", "two"]
        assert rows[2][5] == "sam@a.com"

    def test_empty_rows_do_not_create_file(self, tmp_path):
        path = tmp_path / "leads.csv"

        assert CsvRowSink(path).append_rows([]) == 0
        assert not path.exists()
