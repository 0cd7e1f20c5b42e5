"""Tests for the incremental JSONL usage scanner."""

import datetime
import json
import os

import pytest

from quota_library.cost.scanner import UNKNOWN_DAY, JsonlScanner, UsageTotals


def codex_turn(model, timestamp="2026-10-15T09:00:00Z"):
    return {"timestamp": timestamp, "type": "turn_context", "payload": {"model": model}}


def codex_tokens(total_input, total_cached, total_output, timestamp="2026-10-15T09:00:05Z"):
    return {
        "timestamp": timestamp,
        "type": "event_msg",
        "payload": {
            "type": "token_count",
            "info": {
                "total_token_usage": {
                    "input_tokens": total_input,
                    "cached_input_tokens": total_cached,
                    "output_tokens": total_output,
                }
            },
        },
    }


def claude_message(message_id, request_id="req-1", input_tokens=100, output_tokens=50, timestamp="2026-10-15T10:00:00Z"):
    return {
        "timestamp": timestamp,
        "type": "assistant",
        "requestId": request_id,
        "message": {
            "id": message_id,
            "model": "claude-sonnet-4-5-20250929",
            "usage": {
                "input_tokens": input_tokens,
                "cache_read_input_tokens": 10,
                "cache_creation_input_tokens": 5,
                "output_tokens": output_tokens,
            },
        },
    }


def write_lines(path, objects, mode="w"):
    with open(path, mode, encoding="utf-8") as f:
        for obj in objects:
            f.write((obj if isinstance(obj, str) else json.dumps(obj)) + "\n")


def token_fields(totals: UsageTotals):
    return {
        key: (c.input_tokens, c.cached_input_tokens, c.cache_creation_tokens, c.output_tokens, c.events)
        for key, c in totals.buckets.items()
    }


class TestCodexScan:
    def test_cumulative_usage_becomes_deltas(self, tmp_path):
        log = tmp_path / "rollout.jsonl"
        write_lines(log, [codex_turn("gpt-5"), codex_tokens(1000, 200, 100), codex_tokens(1500, 300, 150)])

        delta = JsonlScanner(fmt="codex").scan(log)

        total = delta.totals.total
        assert (total.input_tokens, total.cached_input_tokens, total.output_tokens) == (1500, 300, 150)
        assert total.events == 2
        assert list(delta.totals.by_model) == ["gpt-5"]
        assert list(delta.totals.by_day) == ["2026-10-15"]
        assert total.cost_usd == pytest.approx(0.002025 + 0.00101250)

    def test_incremental_equals_full_scan(self, tmp_path):
        log = tmp_path / "rollout.jsonl"
        write_lines(log, [codex_turn("gpt-5"), codex_tokens(1000, 200, 100)])
        scanner = JsonlScanner(fmt="codex")
        first = scanner.scan(log)

        write_lines(
            log,
            [codex_turn("gpt-5.2"), codex_tokens(4000, 1000, 400), codex_tokens(4500, 1000, 450)],
            mode="a",
        )
        second = scanner.scan(log)
        assert not second.reset
        assert second.lines_parsed == 3

        combined = first.totals.copy()
        combined.merge(second.totals)
        full = JsonlScanner(fmt="codex").scan(log).totals

        assert token_fields(combined) == token_fields(full)
        assert token_fields(scanner.totals_for(log)) == token_fields(full)
        assert combined.total.cost_usd == pytest.approx(full.total.cost_usd)

    def test_unchanged_file_gives_empty_delta(self, tmp_path):
        log = tmp_path / "rollout.jsonl"
        write_lines(log, [codex_tokens(10, 0, 5)])
        scanner = JsonlScanner(fmt="codex")
        scanner.scan(log)

        delta = scanner.scan(log)

        assert delta.is_empty
        assert delta.lines_parsed == 0
        assert not delta.reset
        assert scanner.totals_for(log).total.input_tokens == 10

    def test_missing_model_falls_back(self, tmp_path):
        log = tmp_path / "rollout.jsonl"
        write_lines(log, [codex_tokens(10, 0, 5, timestamp=None)])
        totals = JsonlScanner(fmt="codex").scan(log).totals
        assert list(totals.buckets) == [(UNKNOWN_DAY, "gpt-5", "token_count")]


class TestFileChanges:
    def test_truncation_resets(self, tmp_path):
        log = tmp_path / "rollout.jsonl"
        write_lines(log, [codex_tokens(1000, 0, 100), codex_tokens(2000, 0, 200)])
        scanner = JsonlScanner(fmt="codex")
        scanner.scan(log)

        write_lines(log, [codex_tokens(30, 0, 3)])
        delta = scanner.scan(log)

        assert delta.reset
        assert scanner.totals_for(log).total.input_tokens == 30

    def test_replaced_head_resets(self, tmp_path):
        log = tmp_path / "rollout.jsonl"
        write_lines(log, [codex_tokens(1000, 0, 100)])
        scanner = JsonlScanner(fmt="codex")
        scanner.scan(log)

        # Same inode, longer file, different first bytes
        write_lines(log, [codex_tokens(7, 0, 1, timestamp="2026-10-14T00:00:00Z"), codex_tokens(9, 0, 2)])
        delta = scanner.scan(log)

        assert delta.reset
        assert scanner.totals_for(log).total.input_tokens == 9

    def test_partial_trailing_line_waits(self, tmp_path):
        log = tmp_path / "rollout.jsonl"
        complete = json.dumps(codex_tokens(100, 0, 10)) + "\n"
        pending = json.dumps(codex_tokens(300, 0, 30))
        log.write_text(complete + pending[:20], encoding="utf-8")
        scanner = JsonlScanner(fmt="codex")

        first = scanner.scan(log)
        assert first.offset == len(complete.encode("utf-8"))
        assert first.parse_errors == 0

        with open(log, "a", encoding="utf-8") as f:
            f.write(pending[20:] + "\n")
        second = scanner.scan(log)

        assert second.lines_parsed == 1
        assert scanner.totals_for(log).total.input_tokens == 300

    def test_malformed_line_counted_and_skipped(self, tmp_path):
        log = tmp_path / "rollout.jsonl"
        write_lines(log, [codex_tokens(100, 0, 10), "{not json", "[1, 2]", "", codex_tokens(150, 0, 20)])
        scanner = JsonlScanner(fmt="codex")

        delta = scanner.scan(log)

        assert delta.parse_errors == 2
        assert delta.lines_parsed == 4
        assert delta.totals.total.input_tokens == 150
        assert scanner.entry(log).parse_errors == 2
        assert scanner.entry(log).offset == log.stat().st_size

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            JsonlScanner().scan(tmp_path / "gone.jsonl")

    def test_busy_file_is_skipped(self, tmp_path):
        log = tmp_path / "rollout.jsonl"
        write_lines(log, [codex_tokens(100, 0, 10)])
        scanner = JsonlScanner(fmt="codex", lock_timeout=0.01)
        lock = scanner._get_path_lock(os.path.abspath(log))

        lock.acquire()
        try:
            delta = scanner.scan(log)
        finally:
            lock.release()

        assert delta.skipped
        assert scanner.entry(log) is None
        assert not scanner.scan(log).skipped


class TestClaudeScan:
    def test_streamed_duplicates_counted_once(self, tmp_path):
        log = tmp_path / "session.jsonl"
        write_lines(
            log,
            [
                {"type": "user", "message": {"content": "hi"}},
                claude_message("msg-1"),
                claude_message("msg-1"),
                claude_message("msg-1", request_id="req-2"),
            ],
        )
        scanner = JsonlScanner(fmt="claude")
        delta = scanner.scan(log)

        total = delta.totals.total
        assert total.events == 2
        assert (total.input_tokens, total.cached_input_tokens, total.cache_creation_tokens) == (200, 20, 10)
        assert list(delta.totals.by_model) == ["claude-sonnet-4-5"]

        # Dedup state carries across incremental scans
        write_lines(log, [claude_message("msg-1")], mode="a")
        assert scanner.scan(log).is_empty

    def test_auto_detects_format(self, tmp_path):
        log = tmp_path / "session.jsonl"
        write_lines(log, [claude_message("msg-1")])
        scanner = JsonlScanner()
        scanner.scan(log)
        assert scanner.entry(log).fmt == "claude"

    def test_unknown_model_is_counted_but_unpriced(self, tmp_path, monkeypatch):
        monkeypatch.setattr("quota_library.cost.pricing._litellm_model_info", lambda model: None)
        log = tmp_path / "session.jsonl"
        line = claude_message("msg-1")
        line["message"]["model"] = "claude-imaginary-9"
        write_lines(log, [line])

        total = JsonlScanner(fmt="claude").scan(log).totals.total

        assert total.input_tokens == 100
        assert total.cost_usd == 0.0
        assert total.unpriced_events == 1


class TestPersistence:
    def test_resume_from_saved_offsets(self, tmp_path):
        log = tmp_path / "rollout.jsonl"
        cache_path = tmp_path / "cache" / "scan-cache.json"
        write_lines(log, [codex_turn("gpt-5"), codex_tokens(1000, 200, 100)])
        scanner = JsonlScanner(fmt="codex", persist_path=cache_path)
        scanner.scan(log)
        scanner.save()

        write_lines(log, [codex_tokens(1600, 200, 160)], mode="a")
        resumed = JsonlScanner(fmt="codex", persist_path=cache_path)
        delta = resumed.scan(log)

        assert not delta.reset
        assert delta.lines_parsed == 1
        assert delta.totals.total.input_tokens == 600
        full = JsonlScanner(fmt="codex").scan(log).totals
        assert token_fields(resumed.totals_for(log)) == token_fields(full)

    def test_corrupt_cache_starts_empty(self, tmp_path):
        cache_path = tmp_path / "scan-cache.json"
        cache_path.write_text(json.dumps({"version": 1, "files": {"/x.jsonl": {"offset": "nan?"}}}), encoding="utf-8")
        scanner = JsonlScanner(persist_path=cache_path)
        assert scanner.entry("/x.jsonl") is None


class TestScanDirectory:
    def test_codex_day_window(self, tmp_path):
        recent_dir = tmp_path / "2026" / "10" / "15"
        old_dir = tmp_path / "2026" / "08" / "01"
        recent_dir.mkdir(parents=True)
        old_dir.mkdir(parents=True)
        write_lines(recent_dir / "rollout-a.jsonl", [codex_turn("gpt-5"), codex_tokens(1000, 200, 100)])
        write_lines(
            old_dir / "rollout-b.jsonl",
            [codex_tokens(9000, 0, 900, timestamp="2026-08-01T00:00:00Z")],
        )
        scanner = JsonlScanner(fmt="codex")

        report = scanner.scan_directory(tmp_path, since_days=30, today=datetime.date(2026, 10, 16))

        assert report.files_scanned == 1
        assert report.since_day == "2026-09-16"
        assert report.totals.total.input_tokens == 1000
        assert report.total_cost_usd == pytest.approx(0.002025)
        assert set(report.cost_by_model) == {"gpt-5"}

    def test_requires_explicit_format(self, tmp_path):
        with pytest.raises(ValueError):
            JsonlScanner().scan_directory(tmp_path)
