"""Ingestion layer.

This package contains adapters that turn payloads received over pub/sub or
read from the realtime store into normalized events. Entry points live in
:mod:`pyloudness.ingestion.normalizer`.
"""

__all__: list[str] = []
