"""Standard SQL builders for the GA4 export analyses.

All queries read the daily ``events_*`` export tables and restrict
``_TABLE_SUFFIX`` so only the needed days are scanned. Values that come from
the ``CONFIG_AUDIT`` sheet are escaped before being embedded as literals.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, List, Sequence

DEFAULT_WARNING_THRESHOLD = 30.0
DEFAULT_CRITICAL_THRESHOLD = 50.0
DEFAULT_MIN_EVENT_COUNT = 100
DEFAULT_LOOKBACK_DAYS = 400
INVENTORY_WINDOW_DAYS = 30
SMART_DISCOVERY_LIMIT = 50

STANDARD_PARAMETERS: Sequence[str] = (
    "page_location", "page_title", "page_referrer", "screen_class",
    "screen_name", "firebase_screen", "firebase_event_origin", "engagement_time_msec",
    "ga_session_id", "ga_session_number", "session_engaged", "entrances", "debug_mode",
    "ignore_referrer", "term", "medium", "source", "campaign", "content", "campaign_id",
    "gclid", "dclid", "srsltid", "engaged_session_event", "firebase_conversion",
)

# Parameters that never make a useful monitoring rule on their own.
UNREMARKABLE_PARAMETERS: Sequence[str] = (
    "page_location", "page_title", "page_referrer",
    "engagement_time_msec", "ga_session_id", "ga_session_number", "debug_mode",
    "firebase_event_origin", "session_engaged", "entrances",
)

ECOMMERCE_PARAMETERS: Sequence[str] = (
    "item_id", "item_name", "value", "price", "transaction_id", "currency", "quantity",
)

CRITICAL_EVENTS: Sequence[str] = (
    "purchase", "add_to_cart", "begin_checkout", "add_payment_info",
    "sign_up", "login", "generate_lead", "tutorial_complete",
    "add_to_wishlist", "view_item", "view_item_list", "select_item",
    "share", "search", "select_content", "view_promotion",
)

_IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9_.:-]+$")


@dataclass(slots=True)
class AuditRule:
    event_name: str
    param_name: str
    platform: str = "ALL"
    min_fill_rate: float = 90.0
    alert_type: str = "DROP"


def sql_string(value: str) -> str:
    """Return ``value`` as a quoted standard SQL string literal."""

    escaped = str(value).replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


def _sql_list(values: Iterable[str]) -> str:
    return ", ".join(sql_string(value) for value in values)


def _number(value: float) -> str:
    number = float(value)
    return str(int(number)) if number.is_integer() else repr(number)


def events_table(project_id: str, dataset_id: str) -> str:
    for part in (project_id, dataset_id):
        if not part or not _IDENTIFIER_RE.match(part):
            raise ValueError(f"Invalid BigQuery identifier: {part!r}")
    return f"`{project_id}.{dataset_id}.events_*`"


def _suffix_between(start_days_ago: int, end_days_ago: int) -> str:
    return (
        "_TABLE_SUFFIX BETWEEN\n"
        f"    FORMAT_DATE('%Y%m%d', DATE_SUB(CURRENT_DATE(), INTERVAL {int(start_days_ago)} DAY))\n"
        f"    AND FORMAT_DATE('%Y%m%d', DATE_SUB(CURRENT_DATE(), INTERVAL {int(end_days_ago)} DAY))"
    )


# ---------------------------------------------------------------------------
# Heartbeat
# ---------------------------------------------------------------------------
def build_heartbeat_query(
    project_id: str,
    dataset_id: str,
    *,
    warning_threshold: float = DEFAULT_WARNING_THRESHOLD,
    critical_threshold: float = DEFAULT_CRITICAL_THRESHOLD,
    min_event_count: int = DEFAULT_MIN_EVENT_COUNT,
    lookback_days: int = DEFAULT_LOOKBACK_DAYS,
) -> str:
    """Compare D-2 event counts with D-1, D-7, D-364 and the prior 7-day average."""

    warning = _number(warning_threshold)
    critical = _number(critical_threshold)
    return f"""
WITH base_data AS (
  SELECT
    platform,
    event_name,
    PARSE_DATE('%Y%m%d', event_date) AS event_date,
    COUNT(*) AS event_count
  FROM {events_table(project_id, dataset_id)}
  WHERE {_suffix_between(max(lookback_days, 366), 2)}
  GROUP BY 1, 2, 3
),
d2_data AS (
  SELECT * FROM base_data
  WHERE event_date = DATE_SUB(CURRENT_DATE(), INTERVAL 2 DAY)
),
comparisons AS (
  SELECT
    d2.platform,
    d2.event_name,
    d2.event_date,
    d2.event_count AS actual,
    d1.event_count AS prev_day,
    ROUND(100 * SAFE_DIVIDE(d2.event_count - d1.event_count, d1.event_count), 2) AS vs_prev_day_pct,
    d7.event_count AS same_weekday,
    ROUND(100 * SAFE_DIVIDE(d2.event_count - d7.event_count, d7.event_count), 2) AS vs_weekday_pct,
    d364.event_count AS last_year,
    ROUND(100 * SAFE_DIVIDE(d2.event_count - d364.event_count, d364.event_count), 2) AS vs_last_year_pct,
    week_avg.avg_count AS week_avg,
    ROUND(100 * SAFE_DIVIDE(d2.event_count - week_avg.avg_count, week_avg.avg_count), 2) AS vs_week_avg_pct
  FROM d2_data d2
  LEFT JOIN base_data d1 ON d2.platform = d1.platform
    AND d2.event_name = d1.event_name
    AND d1.event_date = DATE_SUB(d2.event_date, INTERVAL 1 DAY)
  LEFT JOIN base_data d7 ON d2.platform = d7.platform
    AND d2.event_name = d7.event_name
    AND d7.event_date = DATE_SUB(d2.event_date, INTERVAL 7 DAY)
  LEFT JOIN base_data d364 ON d2.platform = d364.platform
    AND d2.event_name = d364.event_name
    AND d364.event_date = DATE_SUB(d2.event_date, INTERVAL 364 DAY)
  LEFT JOIN (
    SELECT platform, event_name, AVG(event_count) AS avg_count
    FROM base_data
    WHERE event_date BETWEEN DATE_SUB(CURRENT_DATE(), INTERVAL 9 DAY)
      AND DATE_SUB(CURRENT_DATE(), INTERVAL 3 DAY)
    GROUP BY 1, 2
  ) week_avg ON d2.platform = week_avg.platform AND d2.event_name = week_avg.event_name
)
SELECT
  platform,
  event_name,
  event_date,
  actual,
  prev_day,
  vs_prev_day_pct,
  same_weekday,
  vs_weekday_pct,
  last_year,
  vs_last_year_pct,
  ROUND(week_avg, 0) AS week_avg,
  vs_week_avg_pct,
  CASE
    WHEN ABS(vs_week_avg_pct) > {critical} THEN 'CRITICAL'
    WHEN ABS(vs_week_avg_pct) > {warning} THEN 'WARNING'
    ELSE 'NORMAL'
  END AS alert_level
FROM comparisons
WHERE actual >= {int(min_event_count)}
  AND (ABS(vs_prev_day_pct) > {warning} OR ABS(vs_week_avg_pct) > {warning})
ORDER BY
  CASE WHEN ABS(vs_week_avg_pct) > {critical} THEN 1 WHEN ABS(vs_week_avg_pct) > {warning} THEN 2 ELSE 3 END,
  ABS(vs_week_avg_pct) DESC
"""


# ---------------------------------------------------------------------------
# Dimensional health
# ---------------------------------------------------------------------------
def _param_present(param: str) -> str:
    key = sql_string(param)
    return (
        f"(SELECT value.string_value FROM UNNEST(event_params) WHERE key = {key}) IS NOT NULL\n"
        f"           OR (SELECT value.int_value FROM UNNEST(event_params) WHERE key = {key}) IS NOT NULL\n"
        f"           OR (SELECT value.double_value FROM UNNEST(event_params) WHERE key = {key}) IS NOT NULL"
    )


def _rule_select(table: str, rule: AuditRule) -> str:
    platform = (rule.platform or "ALL").strip().upper()
    platform_filter = "" if platform == "ALL" else f"AND platform = {sql_string(platform)}"
    present = _param_present(rule.param_name)
    return f"""
    SELECT
      {sql_string(rule.event_name)} AS event_name,
      {sql_string(rule.param_name)} AS parameter_name,
      {sql_string(platform)} AS expected_platform,
      platform AS actual_platform,
      {_number(rule.min_fill_rate)} AS min_fill_rate,
      COUNT(*) AS total_events,
      COUNTIF({present}) AS with_param,
      ROUND(100 * COUNTIF({present}) / COUNT(*), 2) AS fill_rate_pct
    FROM {table}
    WHERE _TABLE_SUFFIX = FORMAT_DATE('%Y%m%d', DATE_SUB(CURRENT_DATE(), INTERVAL 2 DAY))
      AND event_name = {sql_string(rule.event_name)}
      {platform_filter}
    GROUP BY platform"""


def build_dimensional_health_query(project_id: str, dataset_id: str, rules: Sequence[AuditRule]) -> str:
    """Measure the D-2 fill rate of every rule's parameter on its event."""

    if not rules:
        raise ValueError("At least one active audit rule is required.")
    table = events_table(project_id, dataset_id)
    union = "\n    UNION ALL\n".join(_rule_select(table, rule) for rule in rules)
    return f"""
WITH param_stats AS (
  {union}
)
SELECT
  event_name,
  parameter_name,
  expected_platform,
  actual_platform,
  min_fill_rate,
  total_events,
  with_param,
  fill_rate_pct,
  CASE
    WHEN fill_rate_pct < min_fill_rate - 10 THEN 'CRITICAL'
    WHEN fill_rate_pct < min_fill_rate THEN 'WARNING'
    ELSE 'OK'
  END AS status
FROM param_stats
WHERE total_events > 0
ORDER BY
  CASE WHEN fill_rate_pct < min_fill_rate - 10 THEN 1 WHEN fill_rate_pct < min_fill_rate THEN 2 ELSE 3 END,
  fill_rate_pct ASC
"""


# ---------------------------------------------------------------------------
# Data inventory
# ---------------------------------------------------------------------------
def build_data_inventory_query(project_id: str, dataset_id: str, *, window_days: int = INVENTORY_WINDOW_DAYS) -> str:
    """Discover every event parameter of the last ``window_days`` with type and usage."""

    return f"""
WITH param_discovery AS (
  SELECT
    event_name,
    ep.key AS parameter_name,
    CASE
      WHEN COUNT(DISTINCT ep.value.string_value) > 0 AND MAX(ep.value.string_value) IS NOT NULL THEN 'STRING'
      WHEN COUNT(DISTINCT ep.value.int_value) > 0 AND MAX(ep.value.int_value) IS NOT NULL THEN 'INT'
      WHEN COUNT(DISTINCT ep.value.double_value) > 0 AND MAX(ep.value.double_value) IS NOT NULL THEN 'DOUBLE'
      ELSE 'UNKNOWN'
    END AS data_type,
    platform,
    COUNT(*) AS usage_count,
    COUNT(DISTINCT PARSE_DATE('%Y%m%d', event_date)) AS days_active,
    MIN(PARSE_DATE('%Y%m%d', event_date)) AS first_seen,
    MAX(PARSE_DATE('%Y%m%d', event_date)) AS last_seen
  FROM {events_table(project_id, dataset_id)}
  CROSS JOIN UNNEST(event_params) ep
  WHERE {_suffix_between(window_days, 1)}
  GROUP BY event_name, parameter_name, platform
)
SELECT
  event_name,
  parameter_name,
  data_type,
  platform,
  usage_count,
  days_active,
  first_seen,
  last_seen,
  CASE
    WHEN days_active = 1 THEN 'NEW'
    WHEN days_active < 7 THEN 'RECENT'
    WHEN usage_count < 100 THEN 'LOW_USAGE'
    ELSE 'ACTIVE'
  END AS status,
  CASE
    WHEN parameter_name IN ({_sql_list(STANDARD_PARAMETERS)}) THEN 'STANDARD'
    ELSE 'CUSTOM'
  END AS param_category
FROM param_discovery
ORDER BY
  event_name,
  usage_count DESC
"""


# ---------------------------------------------------------------------------
# Smart discovery
# ---------------------------------------------------------------------------
def build_smart_discovery_query(
    project_id: str,
    dataset_id: str,
    *,
    window_days: int = INVENTORY_WINDOW_DAYS,
    limit: int = SMART_DISCOVERY_LIMIT,
) -> str:
    """Score event/parameter pairs and suggest a fill-rate threshold for each."""

    events = _sql_list(CRITICAL_EVENTS)
    return f"""
WITH param_stats AS (
  SELECT
    event_name,
    ep.key AS parameter_name,
    platform,
    COUNT(*) AS usage_count,
    COUNT(DISTINCT PARSE_DATE('%Y%m%d', event_date)) AS days_active,
    ROUND(100 * COUNT(CASE
      WHEN ep.value.string_value IS NOT NULL
        OR ep.value.int_value IS NOT NULL
        OR ep.value.double_value IS NOT NULL
      THEN 1 END) / COUNT(*), 2) AS current_fill_rate
  FROM {events_table(project_id, dataset_id)}
  CROSS JOIN UNNEST(event_params) ep
  WHERE {_suffix_between(window_days, 1)}
  GROUP BY event_name, parameter_name, platform
),
scored_params AS (
  SELECT
    event_name,
    parameter_name,
    platform,
    usage_count,
    days_active,
    current_fill_rate,
    CASE
      WHEN event_name IN ({events})
        AND (parameter_name LIKE 'im_%'
          OR parameter_name LIKE 'custom_%'
          OR parameter_name NOT IN ({_sql_list(UNREMARKABLE_PARAMETERS)}))
        AND usage_count > 100
      THEN 100
      WHEN event_name IN ({events})
        AND parameter_name IN ({_sql_list(ECOMMERCE_PARAMETERS)})
      THEN 90
      WHEN (parameter_name LIKE 'im_%' OR parameter_name LIKE 'custom_%')
        AND usage_count > 1000
        AND days_active >= 7
      THEN 80
      WHEN event_name IN ({events})
        AND days_active >= 14
        AND current_fill_rate >= 80
      THEN 70
      ELSE 0
    END AS priority_score
  FROM param_stats
)
SELECT
  event_name,
  parameter_name,
  platform,
  usage_count,
  days_active,
  current_fill_rate,
  priority_score,
  CASE
    WHEN current_fill_rate >= 99 THEN 98
    WHEN current_fill_rate >= 95 THEN 90
    WHEN current_fill_rate >= 90 THEN 85
    WHEN current_fill_rate >= 80 THEN 75
    ELSE 70
  END AS suggested_threshold
FROM scored_params
WHERE priority_score >= 70
ORDER BY priority_score DESC, usage_count DESC
LIMIT {int(limit)}
"""


__all__ = [
    "AuditRule",
    "CRITICAL_EVENTS",
    "DEFAULT_CRITICAL_THRESHOLD",
    "DEFAULT_LOOKBACK_DAYS",
    "DEFAULT_MIN_EVENT_COUNT",
    "DEFAULT_WARNING_THRESHOLD",
    "STANDARD_PARAMETERS",
    "build_data_inventory_query",
    "build_dimensional_health_query",
    "build_heartbeat_query",
    "build_smart_discovery_query",
    "events_table",
    "sql_string",
]
