"""Marketing stack audit tooling backed by Google Sheets and BigQuery."""

__version__ = "1.0.0"
