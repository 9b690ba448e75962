"""
Consensus Builder

Fans in the results of every analyzer that ran, consolidates duplicate
findings, merges confidence and recommendations, and derives the overall
score and risk level.
"""

import logging
from dataclasses import replace
from typing import Dict, Iterable, List, Optional

from core.analysis_models import (
    AnalysisMetrics,
    AnalysisResult,
    ConsensusResult,
    ConsensusSummary,
    Finding,
    RiskLevel,
    Severity,
    promote,
)

logger = logging.getLogger(__name__)

# Points deducted from 100 per finding of each severity. INFO costs nothing.
SEVERITY_WEIGHTS: Dict[Severity, int] = {
    Severity.CRITICAL: 25,
    Severity.HIGH: 15,
    Severity.MEDIUM: 10,
    Severity.LOW: 5,
    Severity.INFO: 0,
}

RECOMMENDATION_DELIMITER = "\n\nAdditional recommendation: "


def count_by_severity(findings: Iterable[Finding]) -> Dict[str, int]:
    """Number of findings per severity, every level present, most severe first."""
    counts = {severity.value: 0 for severity in sorted(Severity, key=lambda s: -s.rank)}
    for finding in findings:
        counts[finding.severity.value] += 1
    return counts


def compute_overall_score(severity_counts: Dict[str, int]) -> int:
    """100 minus the weighted severity counts, clamped to [0, 100]."""
    penalty = sum(
        weight * int(severity_counts.get(severity.value, 0))
        for severity, weight in SEVERITY_WEIGHTS.items()
    )
    return max(0, min(100, 100 - penalty))


def determine_risk_level(severity_counts: Dict[str, int]) -> RiskLevel:
    critical = severity_counts.get(Severity.CRITICAL.value, 0)
    high = severity_counts.get(Severity.HIGH.value, 0)
    medium = severity_counts.get(Severity.MEDIUM.value, 0)
    low = severity_counts.get(Severity.LOW.value, 0)

    if critical > 0:
        return RiskLevel.CRITICAL
    if high >= 1 or medium > 2:
        return RiskLevel.HIGH
    if medium >= 1 or low > 3:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def _canonical_order(finding: Finding):
    return (
        finding.title,
        finding.category,
        tuple(sorted(finding.line_numbers)),
        -finding.severity.rank,
        -finding.confidence.rank,
        finding.recommendation,
        finding.id,
        finding.description,
        finding.code_snippet,
        finding.analyzer,
    )


def _report_order(finding: Finding):
    first_line = min(finding.line_numbers) if finding.line_numbers else 0
    return (-finding.severity.rank, first_line, finding.title, finding.category)


class ConsensusBuilder:
    """Merges per-analyzer results into one ConsensusResult."""

    def __init__(self, delimiter: str = RECOMMENDATION_DELIMITER):
        self.delimiter = delimiter

    def build_consensus(self, results: List[AnalysisResult]) -> ConsensusResult:
        """
        Aggregate analyzer results.

        An empty list yields the empty consensus: no findings, score 100,
        LOW risk and confidence 1.0.
        """
        if not results:
            logger.debug("No analyzer results to aggregate")
            return ConsensusResult(summary=ConsensusSummary(severity_counts=count_by_severity([])))

        raw = [finding for result in results for finding in result.findings]
        vulnerabilities = self.deduplicate(raw)

        severity_counts = count_by_severity(vulnerabilities)
        summary = ConsensusSummary(
            overall_score=compute_overall_score(severity_counts),
            risk_level=determine_risk_level(severity_counts),
            total_vulnerabilities=len(vulnerabilities),
            tools_used=self._tools_used(results),
            severity_counts=severity_counts,
        )

        confidence = len(vulnerabilities) / len(raw) if raw else 1.0
        logger.debug(
            "Consensus: %d raw findings -> %d unique from %s",
            len(raw), len(vulnerabilities), summary.tools_used,
        )
        return ConsensusResult(
            vulnerabilities=vulnerabilities,
            confidence=confidence,
            metrics=self.aggregate_metrics(results),
            summary=summary,
        )

    def deduplicate(self, findings: List[Finding]) -> List[Finding]:
        """
        Collapse findings sharing title, category and line numbers.

        Findings are folded in a canonical order so the outcome does not
        depend on the order analyzers returned them. Input findings are not
        modified.
        """
        merged: Dict[str, Finding] = {}
        for finding in sorted(findings, key=_canonical_order):
            if not finding.title:
                logger.debug("Discarding finding without title from %s", finding.analyzer or "unknown")
                continue
            key = finding.dedup_key
            existing = merged.get(key)
            if existing is None:
                merged[key] = replace(
                    finding, line_numbers=sorted(finding.line_numbers)
                )
                continue
            merged[key] = self._merge(existing, finding)

        return sorted(merged.values(), key=_report_order)

    def _merge(self, existing: Finding, incoming: Finding) -> Finding:
        return replace(
            existing,
            confidence=promote(existing.confidence, incoming.confidence),
            recommendation=self._merge_recommendations(existing.recommendation, incoming.recommendation),
        )

    def _merge_recommendations(self, existing: str, incoming: str) -> str:
        incoming = (incoming or "").strip()
        if not incoming or incoming in existing:
            return existing
        if not existing:
            return incoming
        return f"{existing}{self.delimiter}{incoming}"

    @staticmethod
    def aggregate_metrics(results: List[AnalysisResult]) -> AnalysisMetrics:
        """Element-wise maximum; gas estimate from the first result reporting one."""
        if not results:
            return AnalysisMetrics()
        gas_estimate: Optional[int] = next(
            (r.metrics.gas_estimate for r in results if r.metrics.gas_estimate is not None),
            None,
        )
        return AnalysisMetrics(
            total_lines=max(r.metrics.total_lines for r in results),
            complexity_score=max(r.metrics.complexity_score for r in results),
            function_count=max(r.metrics.function_count for r in results),
            contract_count=max(r.metrics.contract_count for r in results),
            gas_estimate=gas_estimate,
        )

    @staticmethod
    def _tools_used(results: List[AnalysisResult]) -> List[str]:
        tools: List[str] = []
        for result in results:
            if result.analyzer not in tools:
                tools.append(result.analyzer)
        return tools
