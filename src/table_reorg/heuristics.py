"""Size-driven tuning of parallel degree, batch size and statistics sampling."""
from __future__ import annotations
import logging
import math
from dataclasses import dataclass

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024

MAX_PARALLEL_DEGREE = 16
MIN_BATCH_SIZE = 1_000
MAX_BATCH_SIZE = 50_000


@dataclass(frozen=True)
class Tuning:
    parallel_degree: int
    batch_size: int
    sampling_percent: int


SAFE_DEFAULT = Tuning(parallel_degree=4, batch_size=10_000, sampling_percent=10)


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


def parallel_degree(size_mb: float, ceiling: int = MAX_PARALLEL_DEGREE) -> int:
    if size_mb > 50_000:
        degree = min(16, math.floor(size_mb / 5_000))
    elif size_mb > 10_000:
        degree = min(8, math.floor(size_mb / 2_000))
    elif size_mb > 1_000:
        degree = min(4, math.floor(size_mb / 500))
    else:
        degree = 1
    return _clamp(degree, 1, max(1, ceiling))


def batch_size(size_mb: float) -> int:
    if size_mb > 10_000:
        size = 50_000
    elif size_mb > 1_000:
        size = 25_000
    else:
        size = 10_000
    return _clamp(size, MIN_BATCH_SIZE, MAX_BATCH_SIZE)


def sampling_percent(size_mb: float) -> int:
    if size_mb > 50_000:
        return 1
    if size_mb > 10_000:
        return 5
    return 10


def tune(size_bytes: int, max_parallel_degree: int = MAX_PARALLEL_DEGREE) -> Tuning:
    """Never raises; unusable input yields SAFE_DEFAULT."""
    try:
        size_mb = float(size_bytes) / BYTES_PER_MB
        if math.isnan(size_mb) or size_mb < 0:
            raise ValueError(f"invalid object size {size_bytes!r}")
        return Tuning(
            parallel_degree=parallel_degree(size_mb, max_parallel_degree),
            batch_size=batch_size(size_mb),
            sampling_percent=sampling_percent(size_mb),
        )
    except Exception as e:
        logger.warning(f"Tuning failed for size {size_bytes!r}, using defaults: {e}")
        return SAFE_DEFAULT


def estimate_impact(size_bytes: int, row_estimate: int | None = None) -> dict:
    """Rough cost summary for a reorganization of an object of the given size."""
    tuning = tune(size_bytes)
    size_mb = max(0.0, float(size_bytes or 0) / BYTES_PER_MB)
    if size_mb > 10_000:
        complexity = "HIGH"
    elif size_mb > 1_000:
        complexity = "MEDIUM"
    else:
        complexity = "LOW"
    batches = math.ceil(row_estimate / tuning.batch_size) if row_estimate else None
    return {
        "size_mb": round(size_mb, 2),
        "parallel_degree": tuning.parallel_degree,
        "batch_size": tuning.batch_size,
        "sampling_percent": tuning.sampling_percent,
        "estimated_batches": batches,
        "complexity": complexity,
    }
