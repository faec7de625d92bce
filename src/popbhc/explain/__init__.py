"""Merge tracing utilities."""

from .trace import TRACE_SCHEMA_VERSION, TraceRecord, hash_payload

__all__ = ["TRACE_SCHEMA_VERSION", "TraceRecord", "hash_payload"]
