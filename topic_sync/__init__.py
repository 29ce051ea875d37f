"""Intercom topic sync: harvest, enrich and categorize support conversations."""

__version__ = "0.1.0"
