"""Pure compaction logic: aggregation, encoding and the error taxonomy.

No database or network access happens in this package.
"""

from compactor.core.aggregation import (
    Accumulator,
    reduce_batch,
    trim_open_group,
    validate_batch,
)
from compactor.core.encoding import TARGET_COLUMNS, BulkEncoder, decode_payload

__all__ = [
    "Accumulator",
    "reduce_batch",
    "trim_open_group",
    "validate_batch",
    "TARGET_COLUMNS",
    "BulkEncoder",
    "decode_payload",
]
