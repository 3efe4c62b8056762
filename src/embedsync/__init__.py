"""embedsync - diff-driven embedding job queue.

This package keeps a derived vector-embedding index consistent with
frequently edited, organization-scoped source records. It provides the
PostgreSQL-backed job store, the diff-aware enqueuer, and the drain worker
that claims jobs exclusively and writes embeddings back transactionally.
"""

__version__ = "0.1.0"
