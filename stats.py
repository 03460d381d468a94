
import math
import statistics
from dataclasses import dataclass
from typing import Sequence

Z_95 = 1.96


def mean(samples: Sequence[float]) -> float:
    if not samples:
        raise ValueError("mean requires at least one sample")
    return statistics.fmean(samples)


def stddev(samples: Sequence[float]) -> float:
    """Population standard deviation (divides by N)."""
    if not samples:
        raise ValueError("stddev requires at least one sample")
    return statistics.pstdev(samples)


def interval95(samples: Sequence[float]) -> float:
    """Normal-approximation 95% half-width; no small-sample correction."""
    return Z_95 * stddev(samples) / math.sqrt(len(samples))


@dataclass(frozen=True)
class ResultRow:
    page_size: int
    mean: float
    stddev: float
    interval95: float
    samples: int

    def format(self) -> str:
        return (
            f"Page size {self.page_size} Mb, waiting time "
            f"{self.mean:.2f} ± {self.interval95:.2f} ms"
        )


def summarize(page_size: int, samples: Sequence[float]) -> ResultRow:
    return ResultRow(
        page_size=page_size,
        mean=mean(samples),
        stddev=stddev(samples),
        interval95=interval95(samples),
        samples=len(samples),
    )
