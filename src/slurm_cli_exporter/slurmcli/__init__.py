"""Slurm command-line access package.

Provides the subprocess scraper that runs Slurm commands and the raw
response types their ``--json`` output decodes into. Business logic and
metric transformations are handled by collector modules.

Exports:
    CliScraper: Subprocess scraper bound to one command vector.
    SlurmByteScraper: Protocol implemented by scrapers and test doubles.
    ScrapeError: Raised when a command cannot be run.
    types: Module containing Pydantic models for JSON responses.
    DEFAULT_TIMEOUT: Default command timeout.
"""

from . import types
from .scraper import DEFAULT_TIMEOUT, CliScraper, ScrapeError, SlurmByteScraper

__all__ = [
    "DEFAULT_TIMEOUT",
    "CliScraper",
    "ScrapeError",
    "SlurmByteScraper",
    "types",
]
