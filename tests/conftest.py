"""Shared fixtures: a scraper double serving recorded Slurm output."""

import pathlib
import threading
import time

import pytest
from prometheus_client import Counter

FIXTURES = pathlib.Path(__file__).parent / "fixtures"


class MockScraper:
    """Scraper double returning fixed content with zero duration.

    Counts invocations so tests can assert how often the underlying
    command would have run.
    """

    def __init__(
        self,
        fixture: str | None = None,
        content: bytes = b"",
        error: Exception | None = None,
        delay: float = 0.0,
    ):
        self.content = (FIXTURES / fixture).read_bytes() if fixture else content
        self.error = error
        self.delay = delay
        self.call_count = 0
        self._lock = threading.Lock()

    def fetch_raw_bytes(self) -> bytes:
        with self._lock:
            self.call_count += 1
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.content

    def duration(self) -> float:
        return 0.0


@pytest.fixture
def scraper() -> type[MockScraper]:
    """The MockScraper class, for building scrapers from fixture files."""
    return MockScraper


@pytest.fixture
def error_counter() -> Counter:
    """Unregistered scrape error counter."""
    return Counter("test_scrape_errors", "test scrape errors", registry=None)


def counter_value(counter: Counter) -> float:
    """Read the current value of an unregistered counter."""
    for metric in counter.collect():
        for sample in metric.samples:
            if sample.name.endswith("_total"):
                return sample.value
    return 0.0


@pytest.fixture
def read_counter():
    """Function reading a counter's current value."""
    return counter_value
