"""Errors raised by the station core."""

from __future__ import annotations


class WeatherCoreError(Exception):
    """Base exception for ingestion and query failures."""


class IngestFailure(WeatherCoreError):
    """Raised when a reading cannot be parsed or written; the cycle is aborted."""


class QueryFailure(WeatherCoreError):
    """Raised for an invalid query interval or a failed store read."""
