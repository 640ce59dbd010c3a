"""Collectors package for Slurm metrics.

Contains one module per Slurm resource domain. Each module provides a JSON
and a CLI-fallback fetcher, describe_metrics and generate_metrics
functions, and a factory composing them into a SlurmCollector.
"""
