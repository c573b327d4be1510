"""Utility helpers shared by the sync engine and services."""

from .datetime_utils import parse_date_value, resolve_instant, resolve_zone

__all__ = ["parse_date_value", "resolve_instant", "resolve_zone"]
