#!/usr/bin/env python3
"""
Static Analysis Engine

Single entry point of the scanning core. A run checks the size cap, consults
the result cache, fans the selected analyzers out as concurrent tasks (each
bounded by its own timeout), joins them, builds the consensus and writes it
back to the cache.

Only InputTooLargeError ever reaches the caller. Analyzer crashes and
timeouts are recorded as AnalyzerFailure entries and cache problems count as
misses, so a run always produces a usable ConsensusResult.
"""

import asyncio
import logging
import sqlite3
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from core.analysis_cache import ResultCache
from core.analysis_models import (
    AnalysisContext,
    AnalysisResult,
    AnalyzerFailure,
    ConsensusResult,
)
from core.config_manager import ScanConfig
from core.consensus_builder import ConsensusBuilder
from core.source_utils import canonicalize_source
from core.static_analyzers import (
    BaseAnalyzer,
    ContextualAnalyzer,
    PatternAnalyzer,
    available_analyzers,
    create_analyzer,
)
from core.vulnerability_patterns import (
    VulnerabilityDatabase,
    VulnerabilityPattern,
    check_source_size,
)

logger = logging.getLogger(__name__)


@dataclass
class AnalysisRun:
    """Outcome of one engine run, including soft failures."""
    result: ConsensusResult
    failures: List[AnalyzerFailure] = field(default_factory=list)
    cache_hit: bool = False
    duration: float = 0.0


class StaticAnalysisEngine:
    """Runs analyzer strategies concurrently and merges their findings."""

    def __init__(self, config: Optional[ScanConfig] = None,
                 cache: Optional[ResultCache] = None,
                 analyzers: Optional[Sequence[BaseAnalyzer]] = None,
                 consensus_builder: Optional[ConsensusBuilder] = None):
        """
        Args:
            config: Engine settings (defaults when omitted)
            cache: Result cache; when omitted and caching is enabled, one is
                built from the backend, directory and TTL in ``config``
            analyzers: Analyzer instances to use instead of the registry
            consensus_builder: Aggregator instance
        """
        self.config = config or ScanConfig()
        if cache is None and self.config.cache_enabled:
            cache = self._build_cache()
        self.cache = cache if self.config.cache_enabled else None
        self.consensus_builder = consensus_builder or ConsensusBuilder()
        self.database = VulnerabilityDatabase(max_source_bytes=self.config.max_source_bytes)

        if analyzers is None:
            analyzers = [self._build_analyzer(name) for name in available_analyzers()]
        self.analyzers: Dict[str, BaseAnalyzer] = {a.name: a for a in analyzers}

    def _build_cache(self) -> Optional[ResultCache]:
        try:
            return self.config.build_cache()
        except (OSError, sqlite3.Error) as e:
            logger.warning("Result cache unavailable, running without it: %s", e)
            return None

    def _build_analyzer(self, name: str) -> BaseAnalyzer:
        if name == PatternAnalyzer.name:
            return create_analyzer(name, database=self.database)
        if name == ContextualAnalyzer.name:
            return create_analyzer(name, window=self.config.context_window)
        return create_analyzer(name)

    def get_pattern_catalog(self) -> List[VulnerabilityPattern]:
        return self.database.get_all_patterns()

    def _resolve_selection(self, selection: Optional[Iterable[str]]) -> Tuple[List[str], List[AnalyzerFailure]]:
        if selection is None:
            enabled = self.config.enabled_analyzers()
            names = [name for name in self.analyzers if name in enabled or name not in self.config.analyzers]
            return names, []

        names: List[str] = []
        failures: List[AnalyzerFailure] = []
        for name in selection:
            if name in names or any(f.analyzer == name for f in failures):
                continue
            if name in self.analyzers:
                names.append(name)
            else:
                logger.warning("Unknown analyzer requested: %s", name)
                failures.append(AnalyzerFailure(name, "unknown analyzer"))
        return names, failures

    async def run_analysis(self, source_text: Union[str, bytes, None],
                           context: Any = None,
                           analyzers: Optional[Iterable[str]] = None) -> ConsensusResult:
        """
        Analyze a source text and return the consensus result.

        Args:
            source_text: Contract source
            context: AnalysisContext or dict (compiler_version, optimization_enabled,
                network, contract_address)
            analyzers: Analyzer tags to run; every enabled analyzer when omitted

        Raises:
            InputTooLargeError: source exceeds the configured size cap
        """
        run = await self.execute(source_text, context, analyzers)
        return run.result

    def run_analysis_sync(self, source_text: Union[str, bytes, None],
                          context: Any = None,
                          analyzers: Optional[Iterable[str]] = None) -> ConsensusResult:
        return asyncio.run(self.run_analysis(source_text, context, analyzers))

    async def execute(self, source_text: Union[str, bytes, None],
                      context: Any = None,
                      analyzers: Optional[Iterable[str]] = None) -> AnalysisRun:
        """Same as run_analysis but also reports failures and cache usage."""
        start = time.perf_counter()

        size = check_source_size(source_text, self.config.max_source_bytes)
        text = canonicalize_source(source_text)
        analysis_context = AnalysisContext.from_value(context)
        names, failures = self._resolve_selection(analyzers)
        key_analyzers = names + [f.analyzer for f in failures]

        if self.cache is not None:
            cached = await asyncio.to_thread(self.cache.get, text, analysis_context, key_analyzers)
            if cached is not None:
                logger.debug("Serving analysis of %d bytes from cache", size)
                return AnalysisRun(cached, failures, True, time.perf_counter() - start)

        # Run-owned workers: a timed-out analyzer is abandoned, never joined
        executor = ThreadPoolExecutor(max_workers=max(1, len(names)), thread_name_prefix="scancore-analyzer")
        try:
            tasks = [
                self._run_analyzer(executor, self.analyzers[name], text, self.config.timeout_for(name))
                for name in names
            ]
            outcomes = await asyncio.gather(*tasks, return_exceptions=True)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        results: List[AnalysisResult] = []
        runtime_failures: List[AnalyzerFailure] = []
        for name, outcome in zip(names, outcomes):
            if isinstance(outcome, AnalysisResult):
                results.append(outcome)
            elif isinstance(outcome, AnalyzerFailure):
                runtime_failures.append(outcome)
            else:
                logger.warning("Analyzer %s failed: %s", name, outcome)
                runtime_failures.append(AnalyzerFailure(name, str(outcome)))

        consensus = self.consensus_builder.build_consensus(results)
        failures.extend(runtime_failures)

        # Partial results are not cached
        if self.cache is not None and not runtime_failures:
            await asyncio.to_thread(
                self.cache.put, text, analysis_context, consensus,
                self.config.cache_ttl_seconds, key_analyzers,
            )

        duration = time.perf_counter() - start
        logger.debug(
            "Analysis finished in %.3fs: %d findings, %d failures",
            duration, len(consensus.vulnerabilities), len(failures),
        )
        return AnalysisRun(consensus, failures, False, duration)

    async def _run_analyzer(self, executor: ThreadPoolExecutor, analyzer: BaseAnalyzer, text: str,
                            timeout: float) -> Union[AnalysisResult, AnalyzerFailure]:
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(loop.run_in_executor(executor, analyzer.analyze, text), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Analyzer %s timed out after %.1fs", analyzer.name, timeout)
            return AnalyzerFailure(analyzer.name, f"timed out after {timeout}s", timed_out=True)
        except Exception as e:
            logger.warning("Analyzer %s failed: %s", analyzer.name, e)
            return AnalyzerFailure(analyzer.name, str(e))


_default_engine: Optional[StaticAnalysisEngine] = None
_default_engine_lock = threading.Lock()


def get_default_engine() -> StaticAnalysisEngine:
    global _default_engine
    if _default_engine is None:
        with _default_engine_lock:
            if _default_engine is None:
                _default_engine = StaticAnalysisEngine()
    return _default_engine


async def run_analysis(source_text: Union[str, bytes, None], context: Any = None,
                       analyzers: Optional[Iterable[str]] = None) -> ConsensusResult:
    """Analyze ``source_text`` with the shared default engine."""
    return await get_default_engine().run_analysis(source_text, context, analyzers)


def get_pattern_catalog() -> List[VulnerabilityPattern]:
    return VulnerabilityDatabase.get_instance().get_all_patterns()
