"""Raw response types for Slurm ``--json`` command output.

Pydantic models for the envelopes emitted by sinfo, squeue, sacct, scontrol
and sdiag when run with ``--json``. Only the fields the collectors read are
modelled; everything else is ignored.
"""

from typing import Annotated, Any

from pydantic import AliasChoices, BaseModel, BeforeValidator, Field, field_validator


def _unwrap_number(value: Any) -> Any:
    """Unwrap Slurm's ``{"set": ..., "infinite": ..., "number": N}`` objects."""
    if isinstance(value, dict):
        if not value.get("set", True) or value.get("infinite", False):
            return None
        return value.get("number")
    return value


def _first_state(value: Any) -> Any:
    """Newer Slurm releases report state as a list of flags."""
    if isinstance(value, list):
        return value[0] if value else ""
    return value


SlurmNumber = Annotated[float | None, BeforeValidator(_unwrap_number)]
SlurmInt = Annotated[int | None, BeforeValidator(_unwrap_number)]
SlurmState = Annotated[str, BeforeValidator(_first_state)]


class SlurmVersion(BaseModel):
    major: int | str = 0
    minor: int | str = 0
    micro: int | str = 0


class SlurmRelease(BaseModel):
    version: SlurmVersion = SlurmVersion()
    release: str = ""


class ResponseMeta(BaseModel):
    """Metadata block present in every ``--json`` response."""

    slurm: SlurmRelease | None = None

    @field_validator("slurm", mode="before")
    @classmethod
    def _ignore_unknown(cls, value: Any) -> Any:
        return value if isinstance(value, dict) else None


class SlurmResponse(BaseModel):
    """Common envelope: metadata plus the list of upstream errors.

    Errors may be bare strings or objects with ``error``/``description``
    keys depending on the Slurm release; both are normalized to strings.
    """

    meta: ResponseMeta = ResponseMeta()
    errors: list[str] = []

    @field_validator("meta", mode="before")
    @classmethod
    def _lift_slurm_key(cls, value: Any) -> Any:
        if isinstance(value, dict) and "Slurm" in value and "slurm" not in value:
            return {**value, "slurm": value["Slurm"]}
        return value

    @field_validator("errors", mode="before")
    @classmethod
    def _normalize_errors(cls, value: Any) -> Any:
        if value is None:
            return []
        normalized = []
        for error in value:
            if isinstance(error, dict):
                message = error.get("error") or error.get("description")
                normalized.append(message or str(error))
            else:
                normalized.append(str(error))
        return normalized


class RawGpuNodeData(BaseModel):
    gres: str = ""


class RawGpuJobData(BaseModel):
    allocated_gres: str = ""


class SinfoGpuResponse(SlurmResponse):
    """sinfo --json output as read by the GPU collector."""

    nodes: list[RawGpuNodeData] = []


class SacctGpuResponse(SlurmResponse):
    """sacct --json output as read by the GPU collector."""

    jobs: list[RawGpuJobData] = []


class RawNodeData(BaseModel):
    """Raw node record from sinfo --json.

    Memory values are in MB, cpu_load is scaled by 100.
    """

    name: str = ""
    hostname: str = ""
    state: SlurmState = ""
    cpus: SlurmInt = 0
    alloc_cpus: SlurmInt = 0
    cpu_load: SlurmNumber = 0
    real_memory: SlurmInt = 0
    free_mem: SlurmInt = 0
    alloc_memory: SlurmInt = 0
    partitions: list[str] | None = None


class SinfoNodeResponse(SlurmResponse):
    nodes: list[RawNodeData] = []


class RawJobData(BaseModel):
    """Raw job record from squeue --json.

    Memory values are in MiB.
    """

    job_id: SlurmInt = 0
    account: str = ""
    partition: str = ""
    user_name: str = ""
    job_state: SlurmState = ""
    cpus: SlurmInt = None
    memory_per_node: SlurmInt = None
    memory_per_cpu: SlurmInt = None


class SqueueResponse(SlurmResponse):
    jobs: list[RawJobData] = []


class RawJobLine(BaseModel):
    """One line of squeue output in the exporter's fallback format.

    Keys are the short names used in the squeue ``-o`` format string.
    Memory is Slurm's min-memory field with a unit suffix (e.g. "4G").
    """

    job_id: int = Field(0, alias="id")
    account: str = Field("", alias="a")
    user_name: str = Field("", alias="u")
    partition: str = Field("", alias="p")
    job_state: str = Field("", alias="state")
    cpus: int | None = Field(None, alias="cpu")
    mem: str = ""
    end_time: str = ""
    array_id: str = ""
    reason: str = Field("", alias="r")


class RawLicenseData(BaseModel):
    """License record from scontrol show lic --json.

    Older releases use CamelCase keys, newer ones snake_case.
    """

    name: str = Field("", validation_alias=AliasChoices("LicenseName", "name"))
    total: SlurmInt = Field(0, validation_alias=AliasChoices("Total", "total"))
    used: SlurmInt = Field(0, validation_alias=AliasChoices("Used", "used"))
    free: SlurmInt = Field(0, validation_alias=AliasChoices("Free", "free"))
    reserved: SlurmInt = Field(
        0,
        validation_alias=AliasChoices("Reserved", "reserved"),
    )
    remote: bool = Field(False, validation_alias=AliasChoices("Remote", "remote"))


class LicenseResponse(SlurmResponse):
    licenses: list[RawLicenseData] = []


class RawRpcStat(BaseModel):
    """Per message type or per user RPC statistics from sdiag --json.

    Times are in microseconds.
    """

    message_type: str = ""
    user: str = ""
    count: SlurmNumber = 0
    average_time: SlurmNumber = 0
    total_time: SlurmNumber = 0


class RawDiagStatistics(BaseModel):
    """The ``statistics`` object of sdiag --json. Cycle times are in microseconds."""

    server_thread_count: SlurmNumber = 0
    agent_queue_size: SlurmNumber = 0
    dbd_agent_queue_size: SlurmNumber = 0
    jobs_submitted: SlurmNumber = 0
    jobs_started: SlurmNumber = 0
    jobs_completed: SlurmNumber = 0
    jobs_canceled: SlurmNumber = 0
    jobs_failed: SlurmNumber = 0
    schedule_cycle_last: SlurmNumber = 0
    schedule_cycle_mean: SlurmNumber = 0
    bf_backfilled_jobs: SlurmNumber = 0
    bf_cycle_last: SlurmNumber = 0
    bf_cycle_mean: SlurmNumber = 0
    rpcs_by_message_type: list[RawRpcStat] = []
    rpcs_by_user: list[RawRpcStat] = []


class SdiagResponse(SlurmResponse):
    statistics: RawDiagStatistics = RawDiagStatistics()
