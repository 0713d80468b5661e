"""Execution compactor.

Reduces raw exchange executions into one row per (timestamp, side) and
commits them to PostgreSQL with COPY, advancing a per-partition watermark
in the same transaction.

Layout:
- models/: hot path records (dataclass) and persisted state (Pydantic)
- core/: pure aggregation and encoding logic, no I/O
- storage/: asyncpg access to the raw, destination, watermark and lease tables
- services/: commit coordination, per-partition cycles and scheduling
"""

__version__ = "0.3.0"
