"""Incremental stats aggregation engine for the enrichment event log.

Events appended by producers are folded by the event applier into
multi-resolution (1m/5m/15m/60m) buckets across the global, session,
subreddit, entity and thread dimensions.
"""

__version__ = "0.1.0"
