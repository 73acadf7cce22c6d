from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Iterator, Optional


@contextmanager
def log_duration(
    logger: logging.Logger,
    what: str,
    level: int = logging.DEBUG,
    run_id: Optional[str] = None,
) -> Iterator[None]:
    """Log how long the wrapped block took, e.g. a stage load or one decode."""
    t0 = time.time()
    try:
        yield
    finally:
        elapsed = time.time() - t0
        prefix = f"[{run_id}] " if run_id else ""
        logger.log(level, f"{prefix}{what} ({elapsed:.3f}s)")
