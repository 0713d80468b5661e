"""Staging artifacts for COPY payloads.

One artifact per commit attempt: a temp file under the staging directory,
or an in-memory buffer when no directory is configured. The artifact is
removed when the attempt ends, whatever its outcome.
"""

from __future__ import annotations

import io
import logging
import os
import re
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import BinaryIO

from compactor.models import BulkPayload

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]")


@contextmanager
def stage_payload(
    payload: BulkPayload, staging_dir: Path | None = None
) -> Iterator[Path | BinaryIO]:
    """Yield a COPY source holding the payload bytes."""
    if staging_dir is None:
        buffer = io.BytesIO(payload.data)
        try:
            yield buffer
        finally:
            buffer.close()
        return

    staging_dir.mkdir(parents=True, exist_ok=True)
    prefix = _UNSAFE.sub("_", f"{payload.partition.exchange}_{payload.partition.instrument}_")
    fd, name = tempfile.mkstemp(
        prefix=f"{prefix}{payload.first_sequence}-{payload.last_sequence}_",
        suffix=".copy",
        dir=staging_dir,
    )
    path = Path(name)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(payload.data)
        logger.debug(f"Staged {payload.size_bytes} bytes at {path}")
        yield path
    finally:
        path.unlink(missing_ok=True)
