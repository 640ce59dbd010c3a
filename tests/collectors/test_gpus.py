"""Tests for the GPU collector module."""

import math
import threading

import pydantic
import pytest

from slurm_cli_exporter import cache, config
from slurm_cli_exporter.collectors import gpus
from slurm_cli_exporter.fetcher import MalformedOutputError, UpstreamError

EXPECTED_SNAPSHOT = gpus.GpuMetrics(alloc=8.0, idle=8.0, total=16.0, utilization=0.5)


def new_json_fetcher(scraper, error_counter, limit=0.0) -> gpus.GpuJsonFetcher:
    return gpus.GpuJsonFetcher(
        sinfo_scraper=scraper("sinfo_gpu_out.json"),
        sacct_scraper=scraper("sacct_gpu_out.json"),
        cache=cache.AtomicThrottledCache(limit),
        error_counter=error_counter,
    )


def new_fallback_fetcher(
    scraper,
    error_counter,
    limit=0.0,
) -> gpus.GpuCliFallbackFetcher:
    return gpus.GpuCliFallbackFetcher(
        sinfo_scraper=scraper("sinfo_gpu_fallback.txt"),
        sacct_scraper=scraper("sacct_gpu_fallback.txt"),
        cache=cache.AtomicThrottledCache(limit),
        error_counter=error_counter,
    )


# ---------------------------------------------------------------------------
# parse_gres_gpu_count
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("gres", "expected"),
    [
        ("", 0.0),
        ("N/A", 0.0),
        ("(null)", 0.0),
        ("gpu:2", 2.0),
        ("gpu:tesla:4", 4.0),
        ("GPU:3", 3.0),
        ("Gpu:a100:2", 2.0),
        ("gpu:1(IDX:0)", 1.0),
        ("gpu:a100:8(IDX:0-7)", 8.0),
        ("gpu:2,gpu:tesla:1", 3.0),
        ("gpu:tesla:1,gpu:2", 3.0),
        ("gpu:2, gpu:v100:2", 4.0),
        ("gpu:2,mps:100", 2.0),
        ("cpu=4,mem=1024M,gres/gpu=2", 2.0),
        ("billing=8,cpu=8,gres/gpu:tesla=1,mem=32G", 1.0),
        ("gres/gpu=2,gres/gpu:a100=2", 2.0),
        ("cpu=8", 0.0),
        ("cpu=8,gres/gpu=", 0.0),
        ("mps:100", 0.0),
        ("gpu", 0.0),
        ("gpu:many", 0.0),
        ("gpu:1.5", 1.5),
    ],
)
def test_parse_gres_gpu_count(gres: str, expected: float):
    assert gpus.parse_gres_gpu_count(gres) == pytest.approx(expected)


def test_parse_tres_skips_unparseable_gpu_value():
    """A malformed gres/gpu value is skipped in favour of the next one."""
    assert gpus.parse_gres_gpu_count("gres/gpu=x,gres/gpu:a100=2") == 2.0


def test_parse_ignores_case_only_for_gpu_marker():
    assert gpus.parse_gres_gpu_count("GPU:TESLA:2") == 2.0
    assert gpus.parse_gres_gpu_count("GPU:2e") == 0.0


@pytest.mark.parametrize(
    "gres",
    [
        "gpu:",
        "::",
        "gpu:(IDX:0)",
        "gpu:a100:8(",
        ",,,",
        "=",
        "gres/gpu=nan-ish",
        "gpu:-2",
        "gpu:nan",
        "gpu:inf",
        "gpu:tesla:-Infinity",
        "gres/gpu=-4",
        "gres/gpu=NaN",
    ],
)
def test_parse_never_raises(gres: str):
    count = gpus.parse_gres_gpu_count(gres)
    assert math.isfinite(count)
    assert count >= 0.0


@pytest.mark.parametrize(
    ("gres", "expected"),
    [
        ("gpu:-2,gpu:4", 4.0),
        ("gpu:nan,gpu:tesla:1", 1.0),
        ("gres/gpu=-4,gres/gpu:a100=2", 2.0),
        ("gres/gpu=inf,gres/gpu:a100=3", 3.0),
    ],
)
def test_parse_rejected_count_does_not_hide_others(gres: str, expected: float):
    assert gpus.parse_gres_gpu_count(gres) == expected


# ---------------------------------------------------------------------------
# GpuMetrics
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("total", "alloc"),
    [(16.0, 8.0), (4.0, 4.0), (10.0, 0.0), (0.0, 0.0), (0.0, 2.0)],
)
def test_snapshot_invariants(total: float, alloc: float):
    metrics = gpus.GpuMetrics.from_counts(total=total, alloc=alloc)
    assert metrics.idle == total - alloc
    if total > 0:
        assert metrics.utilization == pytest.approx(alloc / total)
    else:
        assert metrics.utilization == 0.0


def test_snapshot_zero_total_has_zero_utilization():
    assert gpus.GpuMetrics.from_counts(total=0.0, alloc=0.0) == gpus.GpuMetrics()


# ---------------------------------------------------------------------------
# GpuJsonFetcher
# ---------------------------------------------------------------------------


def test_json_fetcher_reads_totals_and_allocations(
    scraper,
    error_counter,
    read_counter,
):
    fetcher = new_json_fetcher(scraper, error_counter)
    assert fetcher.fetch_metrics() == EXPECTED_SNAPSHOT
    assert read_counter(error_counter) == 0


def test_json_fetcher_upstream_errors(scraper, error_counter, read_counter):
    """Errors in the sinfo response fail the fetch and are counted."""
    fetcher = gpus.GpuJsonFetcher(
        sinfo_scraper=scraper("sinfo_gpu_errors.json"),
        sacct_scraper=scraper("sacct_gpu_out.json"),
        cache=cache.AtomicThrottledCache(0.0),
        error_counter=error_counter,
    )
    with pytest.raises(UpstreamError, match="Unable to contact slurm controller"):
        fetcher.fetch_metrics()
    assert read_counter(error_counter) == 2


def test_json_fetcher_invalid_json(scraper, error_counter, read_counter):
    """Undecodable output fails the fetch without counting an upstream error."""
    fetcher = gpus.GpuJsonFetcher(
        sinfo_scraper=scraper(content=b"sinfo: error: invalid option --json"),
        sacct_scraper=scraper("sacct_gpu_out.json"),
        cache=cache.AtomicThrottledCache(0.0),
        error_counter=error_counter,
    )
    with pytest.raises(pydantic.ValidationError):
        fetcher.fetch_metrics()
    assert read_counter(error_counter) == 0


def test_json_fetcher_sacct_not_run_when_sinfo_fails(scraper, error_counter):
    sacct = scraper("sacct_gpu_out.json")
    fetcher = gpus.GpuJsonFetcher(
        sinfo_scraper=scraper(error=RuntimeError("sinfo timed out")),
        sacct_scraper=sacct,
        cache=cache.AtomicThrottledCache(0.0),
        error_counter=error_counter,
    )
    with pytest.raises(RuntimeError, match="sinfo timed out"):
        fetcher.fetch_metrics()
    assert sacct.call_count == 0


def test_json_fetcher_no_gpus(scraper, error_counter):
    fetcher = gpus.GpuJsonFetcher(
        sinfo_scraper=scraper(content=b'{"nodes": [{"gres": ""}]}'),
        sacct_scraper=scraper(content=b'{"jobs": []}'),
        cache=cache.AtomicThrottledCache(0.0),
        error_counter=error_counter,
    )
    assert fetcher.fetch_metrics() == gpus.GpuMetrics()


# ---------------------------------------------------------------------------
# GpuCliFallbackFetcher
# ---------------------------------------------------------------------------


def test_fallback_fetcher_reads_totals_and_allocations(scraper, error_counter):
    fetcher = new_fallback_fetcher(scraper, error_counter)
    assert fetcher.fetch_metrics() == EXPECTED_SNAPSHOT


def test_fallback_fetcher_empty_output(scraper, error_counter, read_counter):
    """Empty command output means no GPUs, not an error."""
    fetcher = gpus.GpuCliFallbackFetcher(
        sinfo_scraper=scraper(content=b""),
        sacct_scraper=scraper(content=b"\n"),
        cache=cache.AtomicThrottledCache(0.0),
        error_counter=error_counter,
    )
    assert fetcher.fetch_metrics() == gpus.GpuMetrics()
    assert read_counter(error_counter) == 0


def test_fallback_fetcher_malformed_sinfo(scraper, error_counter, read_counter):
    fetcher = gpus.GpuCliFallbackFetcher(
        sinfo_scraper=scraper(content=b"gpu:2|\ngpu:4|x|y\n"),
        sacct_scraper=scraper("sacct_gpu_fallback.txt"),
        cache=cache.AtomicThrottledCache(0.0),
        error_counter=error_counter,
    )
    with pytest.raises(MalformedOutputError):
        fetcher.fetch_metrics()
    assert read_counter(error_counter) == 1


def test_fallback_fetcher_custom_delimiter(scraper, error_counter):
    fetcher = gpus.GpuCliFallbackFetcher(
        sinfo_scraper=scraper(content=b"gpu:4;\ngpu:tesla:2;\n"),
        sacct_scraper=scraper(content=b"gpu:3\n"),
        cache=cache.AtomicThrottledCache(0.0),
        error_counter=error_counter,
        delimiter=";",
    )
    expected = gpus.GpuMetrics.from_counts(total=6.0, alloc=3.0)
    assert fetcher.fetch_metrics() == expected


# ---------------------------------------------------------------------------
# Shared fetcher contract
# ---------------------------------------------------------------------------


@pytest.fixture(params=[new_json_fetcher, new_fallback_fetcher], ids=["json", "cli"])
def new_fetcher(request):
    return request.param


def test_variants_agree_on_snapshot(new_fetcher, scraper, error_counter):
    """Both variants read equivalent recorded output to the same snapshot."""
    metrics = new_fetcher(scraper, error_counter).fetch_metrics()
    assert metrics == EXPECTED_SNAPSHOT
    assert metrics.idle == metrics.total - metrics.alloc
    assert metrics.utilization == pytest.approx(metrics.alloc / metrics.total)


def test_variants_cache_within_window(new_fetcher, scraper, error_counter):
    fetcher = new_fetcher(scraper, error_counter, limit=9999.0)
    first = fetcher.fetch_metrics()
    second = fetcher.fetch_metrics()
    assert first is second
    assert fetcher._sinfo_scraper.call_count == 1
    assert fetcher._sacct_scraper.call_count == 1


def test_variants_refetch_after_window(new_fetcher, scraper, error_counter):
    fetcher = new_fetcher(scraper, error_counter, limit=0.0)
    fetcher.fetch_metrics()
    fetcher.fetch_metrics()
    assert fetcher._sinfo_scraper.call_count == 2


def test_variants_single_flight(new_fetcher, scraper, error_counter):
    """Concurrent callers on an empty cache trigger one scrape."""
    fetcher = new_fetcher(scraper, error_counter, limit=9999.0)
    fetcher._sinfo_scraper.delay = 0.1
    thread_count = 8
    barrier = threading.Barrier(thread_count)
    results = []

    def worker():
        barrier.wait()
        results.append(fetcher.fetch_metrics())

    threads = [threading.Thread(target=worker) for _ in range(thread_count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert fetcher._sinfo_scraper.call_count == 1
    assert fetcher._sacct_scraper.call_count == 1
    assert results == [EXPECTED_SNAPSHOT] * thread_count


def test_variants_report_sinfo_duration(new_fetcher, scraper, error_counter):
    assert new_fetcher(scraper, error_counter).scrape_duration() == 0.0


# ---------------------------------------------------------------------------
# Metric generation and mode selection
# ---------------------------------------------------------------------------


def test_generate_metrics():
    metrics = {m.name: m for m in gpus.generate_metrics(EXPECTED_SNAPSHOT)}
    assert set(metrics) == {name for name, _, _ in gpus.GPU_GAUGES}
    assert metrics["slurm_gpus_total"].samples[0].value == 16.0
    assert metrics["slurm_gpus_utilization"].samples[0].value == 0.5
    assert metrics["slurm_gpus_idle"].documentation == "Idle GPUs"


@pytest.mark.parametrize(
    ("cli_fallback", "expected"),
    [(False, gpus.GpuJsonFetcher), (True, gpus.GpuCliFallbackFetcher)],
)
def test_new_gpu_collector_selects_fetcher(cli_fallback: bool, expected: type):
    c = gpus.new_gpu_collector(config.ExporterConfig(cli_fallback=cli_fallback))
    assert type(c.fetcher) is expected
    assert c.domain == "gpu"


def test_new_gpu_fetcher_uses_config():
    exporter_config = config.ExporterConfig(
        poll_limit=30.0,
        command_timeout=5.0,
        sinfo_gpu_override="/opt/slurm/bin/sinfo --json",
    )
    fetcher = gpus.new_gpu_fetcher(exporter_config)
    assert fetcher.cache.limit == 30.0
    assert fetcher._sinfo_scraper.args == ["/opt/slurm/bin/sinfo", "--json"]
    assert fetcher._sinfo_scraper._timeout == 5.0
    assert fetcher._sacct_scraper.args[0] == "sacct"


def test_fallback_fetcher_non_finite_row_counts_as_zero(scraper, error_counter):
    """A corrupt GRES row does not poison the whole snapshot."""
    fetcher = gpus.GpuCliFallbackFetcher(
        sinfo_scraper=scraper(content=b"gpu:8|\ngpu:nan|\ngpu:-4|\n"),
        sacct_scraper=scraper(content=b"gpu:2\ngres/gpu=inf\n"),
        cache=cache.AtomicThrottledCache(0.0),
        error_counter=error_counter,
    )
    metrics = fetcher.fetch_metrics()
    assert metrics == gpus.GpuMetrics.from_counts(total=8.0, alloc=2.0)
    assert all(
        math.isfinite(v)
        for v in (metrics.total, metrics.idle, metrics.alloc, metrics.utilization)
    )


def test_json_fetcher_non_finite_record_counts_as_zero(scraper, error_counter):
    fetcher = gpus.GpuJsonFetcher(
        sinfo_scraper=scraper(
            content=b'{"nodes": [{"gres": "gpu:4"}, {"gres": "gpu:infinity"}]}',
        ),
        sacct_scraper=scraper(content=b'{"jobs": [{"allocated_gres": "gpu:-1"}]}'),
        cache=cache.AtomicThrottledCache(0.0),
        error_counter=error_counter,
    )
    assert fetcher.fetch_metrics() == gpus.GpuMetrics.from_counts(total=4.0, alloc=0.0)
