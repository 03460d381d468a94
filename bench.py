
import argparse
import logging
import sys
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

from client import measure_scan_query
from protocol import PROTOCOL_VERSION, ProtocolError
from stats import ResultRow, summarize

log = logging.getLogger(__name__)

DEFAULT_HOST = "localhost"
DEFAULT_PORT = 10800
DEFAULT_SAMPLES = 20
DEFAULT_PAGE_SIZES = (5, 10, 20, 50, 100, 150, 200, 300, 400, 500, 600)
DEFAULT_CACHE_NAME = "TEST_CACHE"
MAX_PAGE_SIZE = 2**31 - 1  # int32 on the wire


@dataclass(frozen=True)
class BenchConfig:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    samples: int = DEFAULT_SAMPLES
    page_sizes: Tuple[int, ...] = DEFAULT_PAGE_SIZES
    cache_name: str = DEFAULT_CACHE_NAME
    version: Tuple[int, int, int] = PROTOCOL_VERSION

    def __post_init__(self):
        if self.samples < 1:
            raise ValueError(f"samples must be >= 1, got {self.samples}")
        if not self.page_sizes:
            raise ValueError("page_sizes must not be empty")
        bad = [p for p in self.page_sizes if not 0 < p <= MAX_PAGE_SIZE]
        if bad:
            raise ValueError(f"page sizes must be in 1..{MAX_PAGE_SIZE}, got {bad}")


def collect(config: BenchConfig, page_size: int) -> List[float]:
    return [
        measure_scan_query(page_size, config.host, config.port, config.cache_name, config.version)
        for _ in range(config.samples)
    ]


def run(config: BenchConfig, emit: Callable[[str], None] = print) -> List[ResultRow]:
    """
    Sweep the page sizes in order, one line per page size. Any failure aborts
    the whole run; lines already emitted stay emitted.
    """
    rows = []
    for page_size in config.page_sizes:
        row = summarize(page_size, collect(config, page_size))
        log.debug("page_size=%d stddev=%.3f n=%d", page_size, row.stddev, row.samples)
        emit(row.format())
        rows.append(row)
    return rows


def _page_sizes(text: str) -> Tuple[int, ...]:
    try:
        sizes = tuple(int(p) for p in text.split(",") if p.strip())
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid page size list: {text!r}")
    if not sizes or any(not 0 < p <= MAX_PAGE_SIZE for p in sizes):
        raise argparse.ArgumentTypeError(f"page sizes must be in 1..{MAX_PAGE_SIZE}: {text!r}")
    return sizes


def main(argv: Optional[Sequence[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Scan query latency micro-benchmark")
    ap.add_argument("--host", default=DEFAULT_HOST)
    ap.add_argument("--port", type=int, default=DEFAULT_PORT)
    ap.add_argument("--samples", type=int, default=DEFAULT_SAMPLES)
    ap.add_argument("--page-sizes", type=_page_sizes, default=DEFAULT_PAGE_SIZES,
                    help="comma separated, e.g. 5,10,20")
    ap.add_argument("--cache-name", default=DEFAULT_CACHE_NAME)
    ap.add_argument("-v", "--verbose", action="store_true")
    args = ap.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = BenchConfig(
            host=args.host,
            port=args.port,
            samples=args.samples,
            page_sizes=args.page_sizes,
            cache_name=args.cache_name,
        )
    except ValueError as e:
        ap.error(str(e))

    try:
        run(config)
    except (ProtocolError, OSError) as e:
        log.error("benchmark aborted: %s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
