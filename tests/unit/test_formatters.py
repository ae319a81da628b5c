"""
Unit tests for ktx/formatters.py: all pure functions, no mocking needed.
"""

from __future__ import annotations

from ktx.formatters import (
    ToolError,
    _err,
    bullet_list,
    entries_table,
    health_line,
    kv_table,
    section,
    status_icon,
)
from ktx.index import ContextIndex
from ktx.prober import HealthRecord, HealthStatus
from ktx.store import parse_document
from tests.conftest import SAMPLE_KUBECONFIG


# ---------------------------------------------------------------------------
# section() / bullet_list() / kv_table()
# ---------------------------------------------------------------------------

def test_section_format():
    lines = section("Title", "body text").splitlines()
    assert lines[0] == "Title"
    assert lines[1] == "─" * len("Title")
    assert lines[2] == "body text"


def test_bullet_list_prefix():
    assert bullet_list(["alpha", "beta"]) == "  • alpha\n  • beta"


def test_bullet_list_empty():
    assert bullet_list([]) == ""


def test_kv_table_alignment():
    lines = kv_table([("short", "v1"), ("a-longer-key", "v2")]).splitlines()
    assert lines[0].index("v1") == lines[1].index("v2")


def test_kv_table_empty():
    assert kv_table([]) == ""


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

def test_err_is_tool_error():
    result = _err("boom")
    assert isinstance(result, ToolError)
    assert result[0].text == "Error: boom"


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

def test_status_icons():
    assert status_icon(HealthStatus.REACHABLE) == "🟢"
    assert status_icon("unreachable") == "🔴"
    assert status_icon(HealthStatus.AUTH_FAILED) == "🟡"
    assert status_icon(HealthStatus.UNKNOWN) == "⚪"


def test_health_line_includes_error_and_streak():
    record = HealthRecord(
        "old-staging", HealthStatus.UNREACHABLE, last_error="connection refused", consecutive_failures=3,
    )
    line = health_line(record)
    assert line.startswith("🔴 old-staging: unreachable")
    assert "connection refused" in line
    assert "[3 passes]" in line


def test_health_line_reachable_shows_version():
    line = health_line(HealthRecord("prod-east", HealthStatus.REACHABLE, server_version="v1.29.2"))
    assert line == "🟢 prod-east: reachable (v1.29.2)"


# ---------------------------------------------------------------------------
# entries_table()
# ---------------------------------------------------------------------------

def test_entries_table_marks_current_context():
    table = entries_table(ContextIndex(parse_document(SAMPLE_KUBECONFIG)).entries)
    lines = table.splitlines()
    assert "CONTEXT" in lines[0] and "HEALTH" in lines[0]
    current = [line for line in lines if line.startswith("*")]
    assert len(current) == 1 and "prod-east" in current[0]
    assert "payments" in current[0]


def test_entries_table_empty():
    assert entries_table([]) == "No contexts."
