"""Configuration for the Slurm CLI exporter.

Settings come from an optional JSON file; ``POLL_LIMIT`` and ``LOGLEVEL``
environment variables fill in values the file leaves unset.
"""

import json
import os
import pathlib
import re
from dataclasses import dataclass

import pydantic
import structlog

from .slurmcli import DEFAULT_TIMEOUT

CONFIG_ENV_VAR = "SLURM_EXPORTER_CONFIG_PATH"

# Environment variables that fill in config keys absent from the file.
ENV_OVERRIDES = {
    "POLL_LIMIT": "poll_limit",
    "LOGLEVEL": "log_level",
}

SQUEUE_FALLBACK_FORMAT = (
    '{"a": "%a", "id": %A, "end_time": "%e", "u": "%u", "state": "%T", '
    '"p": "%P", "cpu": %C, "mem": "%m", "array_id": "%K", "r": "%R"}'
)

JSON_COMMANDS = {
    "sinfo": ["sinfo", "--json"],
    "squeue": ["squeue", "--json"],
    "sinfo_gpu": ["sinfo", "--json"],
    "sacct_gpu": [
        "sacct",
        "-a",
        "-X",
        "--format=AllocGRES",
        "--state=RUNNING",
        "--json",
    ],
    "lic": ["scontrol", "show", "lic", "--json"],
    "sdiag": ["sdiag", "--json"],
}

FALLBACK_COMMANDS = {
    # Field widths are wide enough to avoid truncation.
    "sinfo": [
        "sinfo",
        "-h",
        "-O",
        "StateCompact:12|,Memory:15|,NodeHost:30|,CPUsLoad:12|,Partition:15|,"
        "FreeMem:15|,CPUsState:15|,Weight:10|,AllocMem:15",
    ],
    "squeue": ["squeue", "--states=all", "-h", "-r", "-o", SQUEUE_FALLBACK_FORMAT],
    "sinfo_gpu": ["sinfo", "-h", "-O", "Gres:30|"],
    "sacct_gpu": [
        "sacct",
        "-a",
        "-X",
        "--format=AllocGRES",
        "--state=RUNNING",
        "--noheader",
        "--parsable2",
    ],
    "lic": ["scontrol", "show", "lic", "--oneliner"],
    "sdiag": ["sdiag"],
}

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CliOpts:
    """Resolved command vectors and mode for every domain."""

    sinfo: list[str]
    squeue: list[str]
    sinfo_gpu: list[str]
    sacct_gpu: list[str]
    lic: list[str]
    sdiag: list[str]
    fallback: bool
    timeout: float


class ExporterConfig(pydantic.BaseModel):
    """Configuration for the Slurm CLI exporter."""

    metrics_path: str = pydantic.Field(
        "/metrics",
        description="URL path for metrics endpoint",
    )
    poll_limit: float = pydantic.Field(
        10.0,
        description="Minimum seconds between cache refreshes",
        gt=0,
    )
    log_level: str = pydantic.Field("INFO", description="Logging level")
    cli_fallback: bool = pydantic.Field(
        False,
        description="Parse legacy text output instead of --json output",
    )
    gpus_enabled: bool = pydantic.Field(False, description="Collect GPU metrics")
    nodes_enabled: bool = pydantic.Field(True, description="Collect node metrics")
    jobs_enabled: bool = pydantic.Field(True, description="Collect job metrics")
    licenses_enabled: bool = pydantic.Field(
        False,
        description="Collect license metrics",
    )
    diags_enabled: bool = pydantic.Field(
        False,
        description="Collect scheduler diagnostics",
    )
    sinfo_override: str = pydantic.Field("", description="Custom sinfo command")
    squeue_override: str = pydantic.Field("", description="Custom squeue command")
    sinfo_gpu_override: str = pydantic.Field(
        "",
        description="Custom sinfo command for GPU totals",
    )
    sacct_gpu_override: str = pydantic.Field(
        "",
        description="Custom sacct command for allocated GPUs",
    )
    lic_override: str = pydantic.Field(
        "",
        description="Custom scontrol command for licenses",
    )
    sdiag_override: str = pydantic.Field("", description="Custom sdiag command")
    command_timeout: float = pydantic.Field(
        DEFAULT_TIMEOUT,
        description="Slurm command timeout in seconds",
        gt=0,
    )
    metrics_exclude_filter: str = pydantic.Field(
        "",
        description="Regex of metric names to drop from the endpoint",
    )

    @pydantic.field_validator("metrics_exclude_filter")
    @classmethod
    def _check_regex(cls, value: str) -> str:
        try:
            re.compile(value)
        except re.error as e:
            msg = f"invalid metrics_exclude_filter: {e}"
            raise ValueError(msg) from e
        return value

    def cli_opts(self) -> CliOpts:
        """Resolve the command vector of every domain.

        Overrides always win; otherwise the legacy text commands are used in
        fallback mode and the ``--json`` commands elsewhere.
        """
        defaults = FALLBACK_COMMANDS if self.cli_fallback else JSON_COMMANDS
        overrides = {
            "sinfo": self.sinfo_override,
            "squeue": self.squeue_override,
            "sinfo_gpu": self.sinfo_gpu_override,
            "sacct_gpu": self.sacct_gpu_override,
            "lic": self.lic_override,
            "sdiag": self.sdiag_override,
        }
        commands = {
            name: override.split() if override else list(defaults[name])
            for name, override in overrides.items()
        }
        return CliOpts(
            **commands,
            fallback=self.cli_fallback,
            timeout=self.command_timeout,
        )


def load_config(config_path: str | None = None) -> ExporterConfig:
    """Load configuration from a JSON file and the environment.

    Args:
        config_path: JSON file to read. Defaults are used when None.

    Raises:
        FileNotFoundError: If config_path does not exist.
        pydantic.ValidationError: If a value is invalid, including a
            non-numeric POLL_LIMIT.
    """
    data: dict = {}
    if config_path is not None:
        path = pathlib.Path(config_path)
        if not path.exists():
            msg = f"Configuration file not found: {config_path}"
            raise FileNotFoundError(msg)
        with path.open("r") as f:
            data = json.load(f)

    for env_var, key in ENV_OVERRIDES.items():
        if key not in data and env_var in os.environ:
            data[key] = os.environ[env_var]

    config = ExporterConfig(**data)
    logger.info("Loaded configuration", config_path=config_path or "defaults")
    return config
