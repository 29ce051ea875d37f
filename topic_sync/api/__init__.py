"""Run-control HTTP API for topic sync."""
