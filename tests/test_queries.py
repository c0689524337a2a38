from __future__ import annotations

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from stackaudit.queries import (
    AuditRule,
    build_data_inventory_query,
    build_dimensional_health_query,
    build_heartbeat_query,
    build_smart_discovery_query,
    events_table,
    sql_string,
)


def test_events_table_is_backticked_wildcard() -> None:
    assert events_table("demo-project", "analytics_123") == "`demo-project.analytics_123.events_*`"


@pytest.mark.parametrize("project, dataset", [("demo`; DROP", "analytics_1"), ("demo", ""), ("demo", "a b")])
def test_events_table_rejects_unsafe_identifiers(project: str, dataset: str) -> None:
    with pytest.raises(ValueError):
        events_table(project, dataset)


def test_sql_string_escapes_quotes_and_backslashes() -> None:
    assert sql_string("it's") == "'it\\'s'"
    assert sql_string("a\\b") == "'a\\\\b'"


def test_heartbeat_query_embeds_thresholds_and_window() -> None:
    sql = build_heartbeat_query(
        "demo",
        "analytics_1",
        warning_threshold=25,
        critical_threshold=40.5,
        min_event_count=250,
        lookback_days=400,
    )

    assert "`demo.analytics_1.events_*`" in sql
    assert "INTERVAL 400 DAY" in sql
    assert "ABS(vs_week_avg_pct) > 40.5 THEN 'CRITICAL'" in sql
    assert "ABS(vs_week_avg_pct) > 25 THEN 'WARNING'" in sql
    assert "actual >= 250" in sql
    assert "INTERVAL 364 DAY" in sql


def test_heartbeat_lookback_always_covers_last_year() -> None:
    sql = build_heartbeat_query("demo", "analytics_1", lookback_days=30)

    assert "INTERVAL 366 DAY" in sql
    assert "INTERVAL 30 DAY" not in sql


def test_dimensional_health_query_has_one_branch_per_rule() -> None:
    rules = [
        AuditRule("purchase", "transaction_id", "ALL", 99),
        AuditRule("page_view", "im_page_type", "web", 90),
        AuditRule("sign_up", "o'brien", "ALL", 80),
    ]

    sql = build_dimensional_health_query("demo", "analytics_1", rules)

    assert sql.count("UNION ALL") == 2
    assert "AND platform = 'WEB'" in sql
    assert sql.count("AND platform =") == 1
    assert "'o\\'brien'" in sql
    assert "99 AS min_fill_rate" in sql


def test_dimensional_health_requires_rules() -> None:
    with pytest.raises(ValueError):
        build_dimensional_health_query("demo", "analytics_1", [])


def test_inventory_query_classifies_standard_parameters() -> None:
    sql = build_data_inventory_query("demo", "analytics_1")

    assert "INTERVAL 30 DAY" in sql
    assert "'page_location'" in sql
    assert "'CUSTOM'" in sql


def test_smart_discovery_query_limits_and_scores() -> None:
    sql = build_smart_discovery_query("demo", "analytics_1", limit=25)

    assert sql.rstrip().endswith("LIMIT 25")
    for score in ("THEN 100", "THEN 90", "THEN 80", "THEN 70"):
        assert score in sql
    assert "WHERE priority_score >= 70" in sql
