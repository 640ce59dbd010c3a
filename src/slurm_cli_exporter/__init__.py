"""Slurm CLI Exporter.

Prometheus exporter for the Slurm workload manager that runs the Slurm
command-line tools (or their ``--json`` variants) and exports metrics for
nodes, jobs and GPUs.
"""

__version__ = "0.1.0"
