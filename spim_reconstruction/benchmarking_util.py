import contextlib
import logging
import time
from typing import Generator

import psutil

logger = logging.getLogger(__name__)


@contextlib.contextmanager
def debug_timing(span_name: str) -> Generator[None, None, None]:
    """Log the wall time and resident memory change of this context at debug level."""
    process = psutil.Process()
    start_rss = process.memory_info().rss
    start_time = time.perf_counter()
    try:
        yield
    finally:
        total_time = time.perf_counter() - start_time
        rss_delta_mb = (process.memory_info().rss - start_rss) / 2**20
        logger.debug(f"{span_name}: {total_time:0.3f}s, rss {rss_delta_mb:+.1f} MiB")
