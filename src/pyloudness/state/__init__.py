"""State layer.

This package is the single source of truth for how normalized events from
pub/sub and the realtime store are merged into per-device records and the
recent-alert feed.
"""
