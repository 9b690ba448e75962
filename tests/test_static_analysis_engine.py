"""
Tests for the static analysis engine: orchestration, caching and degradation.
"""

import asyncio
import threading
import time

import pytest

from core.analysis_cache import (
    CacheBackend,
    FileCacheBackend,
    MemoryCacheBackend,
    ResultCache,
    SQLiteCacheBackend,
)
from core.analysis_models import Confidence, Finding, RiskLevel, Severity
from core.config_manager import AnalyzerConfig, ScanConfig
from core.consensus_builder import compute_overall_score
from core.exceptions import CacheUnavailableError, InputTooLargeError
from core.static_analysis_engine import (
    StaticAnalysisEngine,
    get_pattern_catalog,
    run_analysis,
)
from core.static_analyzers import BaseAnalyzer, available_analyzers
from conftest import (
    REENTRANCY_CALL_LINE,
    REENTRANCY_SOLIDITY,
    SAFE_TOKEN_SOLIDITY,
    SELFDESTRUCT_LINE,
    SELFDESTRUCT_SOLIDITY,
    SKELETON_SOLIDITY,
)


class SteadyAnalyzer(BaseAnalyzer):
    name = "steady"

    def detect(self, text):
        return [self._finding(
            id="steady_1",
            title="Steady Finding",
            category="Testing",
            description="always reported",
            severity=Severity.LOW,
            line_numbers=[1],
            recommendation="none",
            confidence=Confidence.HIGH,
        )]


class CrashingAnalyzer(BaseAnalyzer):
    name = "crashing"

    def detect(self, text):
        raise RuntimeError("boom")


class SlowAnalyzer(BaseAnalyzer):
    name = "slow"

    def detect(self, text):
        time.sleep(0.5)
        return []


class HangingAnalyzer(BaseAnalyzer):
    """Blocks until released, far longer than its timeout."""
    name = "hanging"

    def __init__(self):
        self.release = threading.Event()

    def detect(self, text):
        self.release.wait(10)
        return []


class OfflineBackend(CacheBackend):

    def get(self, key):
        raise CacheUnavailableError("offline")

    def set(self, key, value, ttl_seconds):
        raise CacheUnavailableError("offline")

    def delete(self, key):
        raise CacheUnavailableError("offline")

    def clear(self):
        raise CacheUnavailableError("offline")


def degraded_engine(cache=None):
    config = ScanConfig(
        analyzer_timeout=5.0,
        analyzers={"slow": AnalyzerConfig("slow", timeout=0.05)},
    )
    return StaticAnalysisEngine(
        config,
        cache=cache,
        analyzers=[SteadyAnalyzer(), CrashingAnalyzer(), SlowAnalyzer()],
    )


class TestRunAnalysis:

    def test_reentrancy_reported(self, uncached_engine):
        result = uncached_engine.run_analysis_sync(REENTRANCY_SOLIDITY)
        reentrancy = [
            f for f in result.vulnerabilities
            if f.category == "Reentrancy" and f.severity is Severity.HIGH
        ]
        assert reentrancy
        assert any(REENTRANCY_CALL_LINE in f.line_numbers for f in reentrancy)
        assert result.summary.overall_score < 100
        assert result.summary.risk_level in (RiskLevel.HIGH, RiskLevel.CRITICAL)

    def test_selfdestruct_reported(self, uncached_engine):
        result = uncached_engine.run_analysis_sync(SELFDESTRUCT_SOLIDITY)
        dos = [
            f for f in result.vulnerabilities
            if f.category == "Denial of Service" and f.title == "Selfdestruct Usage Detected"
        ]
        assert dos
        assert dos[0].severity is Severity.CRITICAL
        assert SELFDESTRUCT_LINE in dos[0].line_numbers
        assert result.summary.risk_level is RiskLevel.CRITICAL
        assert result.summary.overall_score <= 75

    def test_empty_source(self, uncached_engine):
        result = uncached_engine.run_analysis_sync("")
        assert result.vulnerabilities == []
        assert result.summary.overall_score == 100
        assert result.summary.risk_level is RiskLevel.LOW
        assert result.summary.tools_used == available_analyzers()
        assert result.metrics.total_lines == 0

    def test_skeleton_and_safe_contract_are_clean(self, uncached_engine):
        for source in (SKELETON_SOLIDITY, SAFE_TOKEN_SOLIDITY):
            result = uncached_engine.run_analysis_sync(source)
            assert result.vulnerabilities == []
            assert result.summary.overall_score == 100

    def test_severity_counts_match_findings(self, uncached_engine):
        for source in (REENTRANCY_SOLIDITY, SELFDESTRUCT_SOLIDITY):
            result = uncached_engine.run_analysis_sync(source)
            counts = result.summary.severity_counts
            assert sum(counts.values()) == result.summary.total_vulnerabilities == len(result.vulnerabilities)
            assert result.summary.overall_score == compute_overall_score(counts)
            assert 0 <= result.summary.overall_score <= 100

    def test_no_duplicate_findings(self, uncached_engine):
        source = REENTRANCY_SOLIDITY + "\n" + SELFDESTRUCT_SOLIDITY
        result = uncached_engine.run_analysis_sync(source)
        keys = [f.dedup_key for f in result.vulnerabilities]
        assert len(keys) == len(set(keys))

    def test_deterministic(self, uncached_engine):
        first = uncached_engine.run_analysis_sync(REENTRANCY_SOLIDITY)
        second = uncached_engine.run_analysis_sync(REENTRANCY_SOLIDITY)
        assert first == second

    def test_line_endings_do_not_change_result(self, uncached_engine):
        lf = uncached_engine.run_analysis_sync(SELFDESTRUCT_SOLIDITY)
        crlf = uncached_engine.run_analysis_sync(SELFDESTRUCT_SOLIDITY.replace("\n", "\r\n"))
        assert lf == crlf

    def test_bytes_input(self, uncached_engine):
        as_text = uncached_engine.run_analysis_sync(SELFDESTRUCT_SOLIDITY)
        as_bytes = uncached_engine.run_analysis_sync(SELFDESTRUCT_SOLIDITY.encode("utf-8"))
        assert as_text == as_bytes

    def test_gas_estimate_reported(self, uncached_engine):
        result = uncached_engine.run_analysis_sync(REENTRANCY_SOLIDITY)
        assert result.metrics.gas_estimate is not None
        assert result.metrics.gas_estimate > 0


class TestInputLimits:

    def test_oversize_rejected(self, engine):
        with pytest.raises(InputTooLargeError):
            engine.run_analysis_sync("a" * 200_000)
        assert engine.cache.get_stats()['total_requests'] == 0

    def test_configured_limit(self):
        engine = StaticAnalysisEngine(ScanConfig(max_source_bytes=100, cache_enabled=False))
        engine.run_analysis_sync("a" * 100)
        with pytest.raises(InputTooLargeError) as exc_info:
            engine.run_analysis_sync("a" * 101)
        assert exc_info.value.limit == 100


class TestCaching:

    def test_second_run_served_from_cache(self, engine):
        first = engine.run_analysis_sync(REENTRANCY_SOLIDITY, {"network": "mainnet"})
        run = asyncio.run(engine.execute(REENTRANCY_SOLIDITY, {"network": "mainnet"}))
        assert run.cache_hit
        assert run.result == first
        assert engine.cache.cache_hits == 1

    def test_context_change_is_a_miss(self, engine):
        engine.run_analysis_sync(REENTRANCY_SOLIDITY, {"network": "mainnet"})
        run = asyncio.run(engine.execute(REENTRANCY_SOLIDITY, {"network": "base"}))
        assert not run.cache_hit

    def test_analyzer_selection_is_part_of_key(self, engine):
        engine.run_analysis_sync(SELFDESTRUCT_SOLIDITY)
        run = asyncio.run(engine.execute(SELFDESTRUCT_SOLIDITY, analyzers=["construct"]))
        assert not run.cache_hit
        assert run.result.summary.tools_used == ["construct"]

    def test_cache_disabled(self, uncached_engine):
        assert uncached_engine.cache is None
        uncached_engine.run_analysis_sync(SELFDESTRUCT_SOLIDITY)
        run = asyncio.run(uncached_engine.execute(SELFDESTRUCT_SOLIDITY))
        assert not run.cache_hit

    def test_broken_cache_does_not_fail_run(self):
        engine = StaticAnalysisEngine(ScanConfig(), cache=ResultCache(OfflineBackend()))
        result = engine.run_analysis_sync(SELFDESTRUCT_SOLIDITY)
        assert result.summary.risk_level is RiskLevel.CRITICAL
        assert engine.cache.cache_errors == 2

    def test_default_backend_is_memory(self):
        engine = StaticAnalysisEngine(ScanConfig())
        assert isinstance(engine.cache.backend, MemoryCacheBackend)

    def test_configured_sqlite_backend_used(self, tmp_path):
        config = ScanConfig(cache_backend="sqlite", cache_dir=str(tmp_path), cache_ttl_seconds=120)
        engine = StaticAnalysisEngine(config)
        assert isinstance(engine.cache.backend, SQLiteCacheBackend)
        assert engine.cache.ttl_seconds == 120

        first = engine.run_analysis_sync(SELFDESTRUCT_SOLIDITY)
        assert (tmp_path / "analysis_cache.db").exists()

        # A second engine over the same directory sees the stored result
        run = asyncio.run(StaticAnalysisEngine(config).execute(SELFDESTRUCT_SOLIDITY))
        assert run.cache_hit
        assert run.result == first

    def test_configured_file_backend_used(self, tmp_path):
        engine = StaticAnalysisEngine(ScanConfig(cache_backend="file", cache_dir=str(tmp_path)))
        assert isinstance(engine.cache.backend, FileCacheBackend)
        engine.run_analysis_sync(SELFDESTRUCT_SOLIDITY)
        assert [p.suffix for p in tmp_path.iterdir()] == [".json"]

    def test_unusable_cache_dir_runs_uncached(self, tmp_path):
        blocker = tmp_path / "not_a_dir"
        blocker.write_text("x")
        engine = StaticAnalysisEngine(ScanConfig(cache_backend="sqlite", cache_dir=str(blocker / "cache")))
        assert engine.cache is None
        result = engine.run_analysis_sync(SELFDESTRUCT_SOLIDITY)
        assert result.summary.risk_level is RiskLevel.CRITICAL


class TestDegradation:

    def test_failing_analyzers_are_skipped(self):
        run = asyncio.run(degraded_engine().execute(SELFDESTRUCT_SOLIDITY))

        assert run.result.summary.tools_used == ["steady"]
        assert [f.title for f in run.result.vulnerabilities] == ["Steady Finding"]

        failures = {f.analyzer: f for f in run.failures}
        assert set(failures) == {"crashing", "slow"}
        assert failures["slow"].timed_out
        assert not failures["crashing"].timed_out
        assert "boom" in failures["crashing"].reason

    def test_hung_analyzer_does_not_block_caller(self):
        hanging = HangingAnalyzer()
        config = ScanConfig(cache_enabled=False, analyzers={"hanging": AnalyzerConfig("hanging", timeout=0.1)})
        engine = StaticAnalysisEngine(config, analyzers=[SteadyAnalyzer(), hanging])
        try:
            start = time.perf_counter()
            run = asyncio.run(engine.execute(SELFDESTRUCT_SOLIDITY))
            elapsed = time.perf_counter() - start
        finally:
            hanging.release.set()

        assert elapsed < 2.0
        assert run.result.summary.tools_used == ["steady"]
        assert [(f.analyzer, f.timed_out) for f in run.failures] == [("hanging", True)]

    def test_hung_analyzer_does_not_block_sync_caller(self):
        hanging = HangingAnalyzer()
        config = ScanConfig(cache_enabled=False, analyzers={"hanging": AnalyzerConfig("hanging", timeout=0.1)})
        engine = StaticAnalysisEngine(config, analyzers=[hanging])
        try:
            start = time.perf_counter()
            result = engine.run_analysis_sync(SELFDESTRUCT_SOLIDITY)
            elapsed = time.perf_counter() - start
        finally:
            hanging.release.set()

        assert elapsed < 2.0
        assert result.vulnerabilities == []

    def test_partial_results_not_cached(self):
        cache = ResultCache()
        engine = degraded_engine(cache)
        asyncio.run(engine.execute(SELFDESTRUCT_SOLIDITY))
        assert cache.cache_writes == 0

    def test_all_analyzers_failing_gives_empty_consensus(self):
        engine = StaticAnalysisEngine(
            ScanConfig(cache_enabled=False),
            analyzers=[CrashingAnalyzer()],
        )
        run = asyncio.run(engine.execute(SELFDESTRUCT_SOLIDITY))
        assert run.result.vulnerabilities == []
        assert run.result.summary.overall_score == 100
        assert run.result.summary.tools_used == []
        assert [f.analyzer for f in run.failures] == ["crashing"]

    def test_unknown_analyzer_recorded(self, engine):
        run = asyncio.run(engine.execute(SELFDESTRUCT_SOLIDITY, analyzers=["construct", "mystery"]))
        assert run.result.summary.tools_used == ["construct"]
        assert [(f.analyzer, f.reason) for f in run.failures] == [("mystery", "unknown analyzer")]
        assert engine.cache.cache_writes == 1

    def test_disabled_analyzer_not_run(self):
        config = ScanConfig(cache_enabled=False)
        config.analyzers["quality"].enabled = False
        result = StaticAnalysisEngine(config).run_analysis_sync(REENTRANCY_SOLIDITY)
        assert "quality" not in result.summary.tools_used
        assert all(f.analyzer != "quality" for f in result.vulnerabilities)


class TestModuleLevelApi:

    def test_run_analysis(self):
        result = asyncio.run(run_analysis(SELFDESTRUCT_SOLIDITY))
        assert any(f.severity is Severity.CRITICAL for f in result.vulnerabilities)

    def test_pattern_catalog(self, uncached_engine):
        catalog = get_pattern_catalog()
        assert catalog
        assert [p.id for p in catalog] == [p.id for p in uncached_engine.get_pattern_catalog()]
        assert all(isinstance(p.severity, Severity) for p in catalog)

    def test_findings_are_plain_values(self, uncached_engine):
        result = uncached_engine.run_analysis_sync(REENTRANCY_SOLIDITY)
        assert all(isinstance(f, Finding) for f in result.vulnerabilities)
        assert all(f.analyzer in available_analyzers() for f in result.vulnerabilities)


def fill_to(chunk, size=99_000):
    """Repeat ``chunk`` up to ``size`` characters, staying under the size cap."""
    return (chunk * (size // len(chunk) + 1))[:size]


ADVERSARIAL_SOURCES = {
    "unclosed loop headers": fill_to("for ("),
    "empty loop bodies": fill_to("for (i) {"),
    "open abi.encode calls": fill_to("keccak256(abi.encode(x "),
    "open index brackets": fill_to("a["),
    "open call options": fill_to(".call{"),
    "open conditions": fill_to("if ("),
    "unterminated comments": fill_to("/* a"),
    "initializers without body": fill_to("function initialize() public "),
    "function headers": fill_to("function f("),
    "divisions": fill_to("a / b "),
    "selfdestructs on one line": fill_to("selfdestruct(x);"),
    "state writes outside functions": fill_to("balances[a] = 1;\n"),
    "transfers with arguments": fill_to("x.transfer(a,"),
    "call then whitespace": "x.call" + " " * 98_000,
    "pragma then whitespace": "pragma solidity" + " " * 98_000,
    "delegatecall after whitespace": "a" + " " * 98_000 + ".delegatecall(x)",
}


class TestAdversarialInput:
    """Inputs near the size cap finish in time proportional to their length."""

    @pytest.mark.parametrize("label", sorted(ADVERSARIAL_SOURCES))
    def test_scan_time_is_bounded(self, label, uncached_engine):
        source = ADVERSARIAL_SOURCES[label]
        start = time.perf_counter()
        run = asyncio.run(uncached_engine.execute(source))
        elapsed = time.perf_counter() - start

        assert run.failures == []
        assert elapsed < 5.0, f"{label} took {elapsed:.1f}s"
