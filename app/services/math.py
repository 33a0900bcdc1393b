from typing import Sequence
import math
import statistics


def safe_ratio(numerator: float, denominator: float) -> float:
    """numerator / denominator, or 0.0 when the denominator is zero."""
    return numerator / denominator if denominator else 0.0


def mean_and_stddev(values: Sequence[float]) -> tuple[float, float]:
    """Population mean and standard deviation; (0, 0) for an empty series."""
    if not values:
        return 0.0, 0.0
    return statistics.fmean(values), math.sqrt(statistics.pvariance(values))
