"""Tests for procfs sampling and delta arithmetic."""

import asyncio
from itertools import count
from pathlib import Path

import pytest

from ags_stats.sampler import (
    CounterBaseline,
    CpuTimes,
    MemoryStats,
    NetCounters,
    RawReadings,
    Sample,
    Sampler,
    compute_sample,
    cpu_percentages,
    net_rates,
    parse_cpu_line,
    parse_meminfo,
    parse_net_dev,
    parse_proc_stat,
)
from tests.conftest import PROC_MEMINFO, PROC_NET_DEV, cpu_line, write_proc


def make_readings(
    cpu: CpuTimes | None = None,
    cores: tuple[CpuTimes, ...] = (),
    net: NetCounters | None = None,
    memory: MemoryStats | None = None,
    timestamp: int = 1_700_000_000_000,
) -> RawReadings:
    return RawReadings(
        cpu=cpu,
        cores=cores,
        memory=memory or MemoryStats(),
        net=net,
        timestamp=timestamp,
    )


class TestParsing:
    """Tests for the procfs parsers."""

    def test_parse_cpu_line_sums_non_idle(self) -> None:
        """user+nice+system+irq+softirq is busy time; total adds idle and iowait."""
        times = parse_cpu_line("cpu  100 10 50 800 40 5 5 99 0 0")
        assert times == CpuTimes(total=1010.0, idle=800.0, iowait=40.0)

    def test_parse_cpu_line_too_short(self) -> None:
        """Lines without all seven counters are rejected."""
        assert parse_cpu_line("cpu 1 2 3") is None

    def test_parse_cpu_line_garbage_counts_as_zero(self) -> None:
        """Unparsable numbers count as 0 rather than failing."""
        times = parse_cpu_line("cpu x 0 0 100 0 0 0")
        assert times == CpuTimes(total=100.0, idle=100.0, iowait=0.0)

    def test_parse_proc_stat(self) -> None:
        """Aggregate line and per-core lines are separated; other lines ignored."""
        text = "\n".join(
            [
                cpu_line("cpu ", user=200, idle=1000, iowait=20),
                cpu_line("cpu0", user=100, idle=500, iowait=10),
                cpu_line("cpu1", user=100, idle=500, iowait=10),
                "intr 12345 0 0",
                "ctxt 999",
            ]
        )
        overall, cores = parse_proc_stat(text)
        assert overall == CpuTimes(total=1220.0, idle=1000.0, iowait=20.0)
        assert len(cores) == 2
        assert cores[0] == CpuTimes(total=610.0, idle=500.0, iowait=10.0)

    def test_parse_proc_stat_empty(self) -> None:
        """Empty input yields no readings."""
        assert parse_proc_stat("") == (None, ())

    def test_parse_meminfo(self) -> None:
        """Memory fields map directly; apps is active + inactive anonymous."""
        mem = parse_meminfo(PROC_MEMINFO)
        assert mem.total == 16_000_000
        assert mem.available == 8_000_000
        assert mem.used_percentage == pytest.approx(50.0)
        assert mem.apps == 4_000_000
        assert mem.cached == 4_000_000
        assert mem.buffers == 300_000
        assert mem.slab == 500_000
        assert mem.shmem == 200_000

    def test_parse_meminfo_zero_total(self) -> None:
        """total=0 gives used_percentage 0 instead of dividing by zero."""
        mem = parse_meminfo("MemTotal: 0 kB\nMemAvailable: 0 kB\n")
        assert mem.used_percentage == 0.0

    def test_parse_meminfo_missing_fields_default_to_zero(self) -> None:
        """Fields the kernel does not report are 0."""
        mem = parse_meminfo("MemTotal: 1000 kB\n")
        assert mem.available == 0.0
        assert mem.used_percentage == pytest.approx(100.0)
        assert mem.apps == 0.0
        assert mem.slab == 0.0

    def test_parse_net_dev_excludes_loopback(self) -> None:
        """Loopback bytes are not counted; every other interface is summed."""
        rx, tx = parse_net_dev(PROC_NET_DEV)
        assert rx == 2 * 1_048_576
        assert tx == 2 * 524_288

    def test_parse_net_dev_keeps_interfaces_containing_lo(self) -> None:
        """Only the interface named exactly 'lo' is skipped."""
        text = "  wlo1: 2048 1 0 0 0 0 0 0 1024 1 0 0 0 0 0 0\n"
        assert parse_net_dev(text) == (2048, 1024)


class TestCpuPercentages:
    """Tests for cpu_percentages()."""

    def test_usage_and_iowait(self) -> None:
        """Δtotal=1000, Δidle=700, Δiowait=50 gives 25% usage and 5% iowait."""
        prev = CpuTimes(total=8700, idle=7000, iowait=200)
        cur = CpuTimes(total=9700, idle=7700, iowait=250)
        usage, iowait = cpu_percentages(prev, cur)
        assert usage == pytest.approx(25.0)
        assert iowait == pytest.approx(5.0)

    def test_no_baseline_is_zero(self) -> None:
        """First reading has nothing to diff against."""
        assert cpu_percentages(None, CpuTimes(100, 50, 5)) == (0.0, 0.0)

    def test_zero_total_delta_is_zero(self) -> None:
        """Δtotal == 0 reports 0 rather than dividing by zero."""
        t = CpuTimes(100, 50, 5)
        assert cpu_percentages(t, t) == (0.0, 0.0)

    def test_negative_total_delta_is_zero(self) -> None:
        """A counter that went backwards overall reports 0."""
        assert cpu_percentages(CpuTimes(200, 100, 10), CpuTimes(100, 50, 5)) == (0.0, 0.0)

    def test_negative_component_preserved_by_default(self) -> None:
        """An idle counter reset shows up as an out-of-range percentage."""
        prev = CpuTimes(total=1000, idle=900, iowait=0)
        cur = CpuTimes(total=1100, idle=0, iowait=0)
        usage, _ = cpu_percentages(prev, cur)
        assert usage > 100.0

    def test_negative_component_clamped(self) -> None:
        """With clamping enabled the anomaly reports 0."""
        prev = CpuTimes(total=1000, idle=900, iowait=0)
        cur = CpuTimes(total=1100, idle=0, iowait=0)
        assert cpu_percentages(prev, cur, clamp_negative=True) == (0.0, 0.0)


class TestNetRates:
    """Tests for net_rates()."""

    def test_rates_in_kb_per_second(self) -> None:
        """Δbytes / 1024 / Δseconds."""
        prev = NetCounters(rx_bytes=0, tx_bytes=0, time=10.0)
        cur = NetCounters(rx_bytes=4096, tx_bytes=2048, time=12.0)
        assert net_rates(prev, cur) == (pytest.approx(2.0), pytest.approx(1.0))

    def test_no_baseline_is_zero(self) -> None:
        """First reading yields 0."""
        assert net_rates(None, NetCounters(100, 100, 1.0)) == (0.0, 0.0)

    def test_zero_elapsed_is_zero(self) -> None:
        """Two readings at the same instant yield 0."""
        t = NetCounters(100, 100, 1.0)
        assert net_rates(t, NetCounters(200, 200, 1.0)) == (0.0, 0.0)

    def test_counter_reset_negative_by_default(self) -> None:
        """A reset counter produces a visible negative rate."""
        prev = NetCounters(rx_bytes=10_240, tx_bytes=0, time=0.0)
        cur = NetCounters(rx_bytes=0, tx_bytes=0, time=1.0)
        download, _ = net_rates(prev, cur)
        assert download == pytest.approx(-10.0)

    def test_counter_reset_clamped(self) -> None:
        """With clamping enabled a reset reports 0."""
        prev = NetCounters(rx_bytes=10_240, tx_bytes=0, time=0.0)
        cur = NetCounters(rx_bytes=0, tx_bytes=0, time=1.0)
        assert net_rates(prev, cur, clamp_negative=True) == (0.0, 0.0)


class TestComputeSample:
    """Tests for compute_sample() with synthetic baselines."""

    def test_first_tick_is_zero(self) -> None:
        """Empty baseline gives zero CPU and network regardless of raw values."""
        readings = make_readings(
            cpu=CpuTimes(9999, 10, 10),
            cores=(CpuTimes(5000, 5, 5), CpuTimes(4999, 5, 5)),
            net=NetCounters(10**9, 10**9, 100.0),
        )
        sample, baseline = compute_sample(readings, CounterBaseline())

        assert sample.cpu_usage == 0.0
        assert sample.cpu_iowait == 0.0
        assert sample.cpu_cores == (0.0, 0.0)
        assert sample.network_download == 0.0
        assert sample.network_upload == 0.0
        assert baseline.cpu == readings.cpu
        assert baseline.cores == readings.cores
        assert baseline.net == readings.net

    def test_second_tick_uses_baseline(self) -> None:
        """Deltas are taken against the supplied baseline."""
        baseline = CounterBaseline(
            cpu=CpuTimes(8700, 7000, 200),
            cores=(CpuTimes(1000, 800, 0), CpuTimes(1000, 500, 0)),
            net=NetCounters(0, 0, 0.0),
        )
        readings = make_readings(
            cpu=CpuTimes(9700, 7700, 250),
            cores=(CpuTimes(1100, 850, 0), CpuTimes(1100, 600, 0)),
            net=NetCounters(1024, 512, 1.0),
        )
        sample, _ = compute_sample(readings, baseline)

        assert sample.cpu_usage == pytest.approx(25.0)
        assert sample.cpu_iowait == pytest.approx(5.0)
        assert sample.cpu_cores == (pytest.approx(50.0), pytest.approx(0.0))
        assert sample.network_download == pytest.approx(1.0)
        assert sample.network_upload == pytest.approx(0.5)

    def test_core_count_mismatch_zeroes_cores(self) -> None:
        """A changed core count reports zeros but still records the new baseline."""
        baseline = CounterBaseline(
            cpu=CpuTimes(100, 50, 0),
            cores=(CpuTimes(50, 25, 0), CpuTimes(50, 25, 0)),
        )
        new_cores = (CpuTimes(80, 30, 0), CpuTimes(80, 30, 0), CpuTimes(80, 30, 0))
        readings = make_readings(cpu=CpuTimes(240, 90, 0), cores=new_cores)

        sample, next_baseline = compute_sample(readings, baseline)

        assert sample.cpu_cores == (0.0, 0.0, 0.0)
        assert sample.cpu_usage > 0
        assert next_baseline.cores == new_cores

    def test_degenerate_delta_still_updates_baseline(self) -> None:
        """Even when Δtotal <= 0 the baseline moves to the latest reading."""
        baseline = CounterBaseline(cpu=CpuTimes(500, 100, 0))
        readings = make_readings(cpu=CpuTimes(400, 80, 0))

        sample, next_baseline = compute_sample(readings, baseline)

        assert sample.cpu_usage == 0.0
        assert next_baseline.cpu == CpuTimes(400, 80, 0)

    def test_unavailable_source_keeps_old_baseline(self) -> None:
        """A missing source degrades to zeros and keeps the previous baseline."""
        baseline = CounterBaseline(
            cpu=CpuTimes(100, 50, 0),
            cores=(CpuTimes(100, 50, 0),),
            net=NetCounters(10, 10, 1.0),
        )
        sample, next_baseline = compute_sample(make_readings(), baseline)

        assert sample.cpu_usage == 0.0
        assert sample.cpu_cores == ()
        assert sample.network_download == 0.0
        assert next_baseline == baseline

    def test_core_baseline_follows_core_readings(self) -> None:
        """Per-core counters move on even when the aggregate cpu line is missing."""
        baseline = CounterBaseline(
            cpu=CpuTimes(100, 50, 0),
            cores=(CpuTimes(100, 50, 0),),
        )
        new_cores = (CpuTimes(200, 60, 0),)
        readings = make_readings(cores=new_cores)

        sample, next_baseline = compute_sample(readings, baseline)

        assert sample.cpu_usage == 0.0
        assert sample.cpu_cores == (pytest.approx(90.0),)
        assert next_baseline.cpu == baseline.cpu
        assert next_baseline.cores == new_cores

    def test_memory_passes_through(self) -> None:
        """Memory is point-in-time and copied as read."""
        mem = MemoryStats(total=100, available=25, used_percentage=75.0)
        sample, _ = compute_sample(make_readings(memory=mem), CounterBaseline())
        assert sample.memory is mem


class TestSampler:
    """Tests for Sampler reading a fake proc root."""

    def test_first_tick_zero_rates(self, proc_root: Path) -> None:
        """First tick after start reports zero CPU and network but real memory."""
        sampler = Sampler(proc_root)
        sample = sampler.tick()

        assert sample.cpu_usage == 0.0
        assert sample.cpu_cores == (0.0, 0.0)
        assert sample.network_download == 0.0
        assert sample.network_upload == 0.0
        assert sample.memory.used_percentage == pytest.approx(50.0)
        assert sample.timestamp > 0

    def test_second_tick_computes_deltas(self, proc_root: Path) -> None:
        """Second tick diffs against the first."""
        clock = count(start=100.0, step=2.0)
        sampler = Sampler(proc_root, clock=lambda: next(clock))
        sampler.tick()

        # cpu: +250 busy (user), +700 idle, +50 iowait => 25% / 5%
        write_proc(
            proc_root,
            stat="\n".join(
                [
                    "cpu  1250 0 500 7700 250 0 0 0 0 0",
                    "cpu0 625 0 250 3850 125 0 0 0 0 0",
                    "cpu1 625 0 250 3850 125 0 0 0 0 0",
                ]
            ),
            net_dev=PROC_NET_DEV.replace("1048576", "2097152"),
        )
        sample = sampler.tick()

        assert sample.cpu_usage == pytest.approx(25.0)
        assert sample.cpu_iowait == pytest.approx(5.0)
        assert sample.cpu_cores == (pytest.approx(25.0), pytest.approx(25.0))
        # 2 interfaces x 1 MiB more received over 2 seconds = 1024 KB/s
        assert sample.network_download == pytest.approx(1024.0)
        assert sample.network_upload == pytest.approx(0.0)

    def test_missing_sources_degrade_to_zero(self, tmp_path: Path) -> None:
        """A proc root with nothing in it still produces a sample."""
        sampler = Sampler(tmp_path / "empty")
        sample = sampler.tick()

        assert sample.cpu_usage == 0.0
        assert sample.cpu_cores == ()
        assert sample.memory == MemoryStats()
        assert sample.network_download == 0.0

    def test_missing_source_logged_once(self, tmp_path: Path) -> None:
        """Repeated failures on the same source log a single warning."""
        from structlog.testing import capture_logs

        root = write_proc(tmp_path / "proc", meminfo=None)
        sampler = Sampler(root)

        with capture_logs() as logs:
            sampler.tick()
            sampler.tick()

        warnings = [e for e in logs if e["event"] == "source_unavailable"]
        assert len(warnings) == 1
        assert warnings[0]["source"].endswith("meminfo")

    def test_source_recovery_logged(self, tmp_path: Path) -> None:
        """A source that comes back is logged as recovered."""
        from structlog.testing import capture_logs

        root = write_proc(tmp_path / "proc", meminfo=None)
        sampler = Sampler(root)

        with capture_logs() as logs:
            sampler.tick()
            write_proc(root)
            sample = sampler.tick()

        assert any(e["event"] == "source_recovered" for e in logs)
        assert sample.memory.used_percentage == pytest.approx(50.0)

    def test_baseline_advances_each_tick(self, proc_root: Path) -> None:
        """The sampler's baseline reflects the latest reading."""
        sampler = Sampler(proc_root)
        assert sampler.baseline == CounterBaseline()

        sampler.tick()
        assert sampler.baseline.cpu is not None
        assert len(sampler.baseline.cores) == 2

    @pytest.mark.asyncio
    async def test_sample_runs_in_executor(self, proc_root: Path) -> None:
        """sample() returns a Sample without blocking the loop."""
        sampler = Sampler(proc_root)
        sample = await asyncio.wait_for(sampler.sample(), timeout=5.0)
        assert isinstance(sample, Sample)


class TestSampleSerialization:
    """Tests for Sample JSON shape."""

    def test_to_dict_field_names(self) -> None:
        """Latest-sample file keeps the field names widgets expect."""
        sample, _ = compute_sample(
            make_readings(cores=(CpuTimes(1, 1, 0),)), CounterBaseline()
        )
        data = sample.to_dict()

        assert set(data) == {
            "timestamp",
            "cpu_usage",
            "cpu_cores",
            "cpu_iowait",
            "memory",
            "network_download",
            "network_upload",
        }
        assert set(data["memory"]) == {
            "total",
            "available",
            "used_percentage",
            "apps",
            "cached",
            "buffers",
            "slab",
            "shmem",
        }
        assert data["cpu_cores"] == [0.0]

    def test_from_dict_tolerates_missing_memory_fields(self) -> None:
        """Older files without some memory fields still load."""
        sample = Sample.from_dict(
            {"timestamp": 1, "cpu_usage": 3.5, "memory": {"total": 10, "used_percentage": 20}}
        )
        assert sample.cpu_cores == ()
        assert sample.memory.total == 10.0
        assert sample.memory.slab == 0.0
