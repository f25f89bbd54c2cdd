"""
Enumerations shared by the storage engine and the catalog tables.
"""

import enum


class PartitionState(str, enum.Enum):
    """Partition lifecycle."""
    OPEN = "OPEN"  # Accepting rows in row form
    COMPACTING = "COMPACTING"  # Snapshot being encoded, reads see the rows
    COMPACTED = "COMPACTED"  # Columnar segment committed
    EVICTED = "EVICTED"  # Past retention, data dropped


class AggregateFunction(str, enum.Enum):
    """Reduction applied to a metric inside a bucket."""
    SUM = "sum"
    AVG = "avg"
    LAST = "last"
    MAX = "max"
    MIN = "min"
    COUNT = "count"


class RefreshMode(str, enum.Enum):
    """When rollup buckets absorb new points."""
    ASYNC = "async"  # Background refresh behind a watermark
    SYNC = "sync"  # Updated as part of the append


class QuerySource(str, enum.Enum):
    """Which storage answered a query."""
    ROLLUP = "rollup"
    RAW = "raw"
