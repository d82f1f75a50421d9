"""Aggregations over persisted payments."""
