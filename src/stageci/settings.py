from __future__ import annotations
import os

CACHE_DIR = os.environ.get("STAGECI_CACHE_DIR", ".stageci/cache")
CACHE_KEEP = int(os.environ.get("STAGECI_CACHE_KEEP", "3"))
MAX_WORKERS = int(os.environ["STAGECI_MAX_WORKERS"]) if os.environ.get("STAGECI_MAX_WORKERS") else None
SHELL = os.environ.get("STAGECI_SHELL", "bash")
TOOLCHAIN = os.environ.get("STAGECI_TOOLCHAIN", "nightly-2025-01-28")
OUTPUT_TAIL = int(os.environ.get("STAGECI_OUTPUT_TAIL", "4000"))

CODECOV_URL = os.environ.get("CODECOV_URL", "https://codecov.io/upload/v4")
CODECOV_TOKEN = os.environ.get("CODECOV_TOKEN")
CODECOV_SLUG = os.environ.get("CODECOV_SLUG")


def default_workers() -> int:
    if MAX_WORKERS is not None:
        return max(1, MAX_WORKERS)
    c = os.cpu_count() or 2
    return max(1, c - 1)
