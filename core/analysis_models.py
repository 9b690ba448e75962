"""
Data model for static analysis results.

Findings, per-analyzer results and the merged consensus all serialize to plain
dicts so the result cache can store them and hand back an equal object.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class Severity(Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    INFO = "INFO"

    @property
    def rank(self) -> int:
        """Ordinal where a larger number is more severe."""
        return _SEVERITY_RANK[self]

    @classmethod
    def parse(cls, value: Any) -> "Severity":
        if isinstance(value, Severity):
            return value
        normalized = str(value or "").strip().upper()
        if normalized in ("INFORMATIONAL", "INFORMATION"):
            normalized = "INFO"
        return cls(normalized)


_SEVERITY_RANK = {
    Severity.INFO: 0,
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


class Confidence(Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"

    @property
    def rank(self) -> int:
        return _CONFIDENCE_RANK[self]

    @classmethod
    def parse(cls, value: Any) -> "Confidence":
        if isinstance(value, Confidence):
            return value
        return cls(str(value or "").strip().upper())

    @classmethod
    def from_score(cls, score: float) -> "Confidence":
        """Bucket a 0..1 heuristic score: HIGH above 0.8, MEDIUM above 0.5."""
        if score > 0.8:
            return cls.HIGH
        if score > 0.5:
            return cls.MEDIUM
        return cls.LOW


_CONFIDENCE_RANK = {
    Confidence.LOW: 0,
    Confidence.MEDIUM: 1,
    Confidence.HIGH: 2,
}


def promote(current: Confidence, incoming: Confidence) -> Confidence:
    """Merge two confidences; the result is never lower than either input."""
    return current if current.rank >= incoming.rank else incoming


class RiskLevel(Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


@dataclass
class Finding:
    """A single reported vulnerability instance."""
    id: str
    title: str
    category: str
    description: str
    severity: Severity
    line_numbers: List[int]
    recommendation: str
    confidence: Confidence
    code_snippet: str = ""
    cwe_id: Optional[str] = None
    swc_id: Optional[str] = None
    analyzer: str = ""

    @property
    def dedup_key(self) -> str:
        lines = '_'.join(str(n) for n in sorted(self.line_numbers))
        return f"{self.title}|{self.category}|{lines}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'title': self.title,
            'category': self.category,
            'description': self.description,
            'severity': self.severity.value,
            'line_numbers': list(self.line_numbers),
            'code_snippet': self.code_snippet,
            'recommendation': self.recommendation,
            'cwe_id': self.cwe_id,
            'swc_id': self.swc_id,
            'confidence': self.confidence.value,
            'analyzer': self.analyzer,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Finding":
        return cls(
            id=data.get('id', ''),
            title=data.get('title', ''),
            category=data.get('category', ''),
            description=data.get('description', ''),
            severity=Severity.parse(data.get('severity', 'INFO')),
            line_numbers=[int(n) for n in data.get('line_numbers', [])],
            recommendation=data.get('recommendation', ''),
            confidence=Confidence.parse(data.get('confidence', 'LOW')),
            code_snippet=data.get('code_snippet', ''),
            cwe_id=data.get('cwe_id'),
            swc_id=data.get('swc_id'),
            analyzer=data.get('analyzer', ''),
        )


@dataclass
class AnalysisMetrics:
    total_lines: int = 0
    complexity_score: int = 0
    function_count: int = 0
    contract_count: int = 0
    gas_estimate: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total_lines': self.total_lines,
            'complexity_score': self.complexity_score,
            'function_count': self.function_count,
            'contract_count': self.contract_count,
            'gas_estimate': self.gas_estimate,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalysisMetrics":
        gas = data.get('gas_estimate')
        return cls(
            total_lines=int(data.get('total_lines', 0)),
            complexity_score=int(data.get('complexity_score', 0)),
            function_count=int(data.get('function_count', 0)),
            contract_count=int(data.get('contract_count', 0)),
            gas_estimate=int(gas) if gas is not None else None,
        )


@dataclass
class AnalysisResult:
    """Output of one analyzer strategy over one source text."""
    analyzer: str
    findings: List[Finding] = field(default_factory=list)
    metrics: AnalysisMetrics = field(default_factory=AnalysisMetrics)
    execution_time: float = 0.0


@dataclass
class AnalyzerFailure:
    """Soft failure of a single analyzer during an engine run."""
    analyzer: str
    reason: str
    timed_out: bool = False


@dataclass
class AnalysisContext:
    """Build / deployment facts about the submitted contract."""
    compiler_version: Optional[str] = None
    optimization_enabled: Optional[bool] = None
    network: Optional[str] = None
    contract_address: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'compiler_version': self.compiler_version,
            'optimization_enabled': self.optimization_enabled,
            'network': self.network,
            'contract_address': self.contract_address,
        }
        return {k: v for k, v in data.items() if v is not None}

    @classmethod
    def from_value(cls, value: Any) -> "AnalysisContext":
        """Accept an AnalysisContext, a dict (snake or camel case keys) or None."""
        if value is None:
            return cls()
        if isinstance(value, AnalysisContext):
            return value
        aliases = {
            'compilerVersion': 'compiler_version',
            'optimizationEnabled': 'optimization_enabled',
            'contractAddress': 'contract_address',
        }
        kwargs = {}
        for key, val in dict(value).items():
            name = aliases.get(key, key)
            if name in cls.__dataclass_fields__:
                kwargs[name] = val
        return cls(**kwargs)


@dataclass
class ConsensusSummary:
    overall_score: int = 100
    risk_level: RiskLevel = RiskLevel.LOW
    total_vulnerabilities: int = 0
    tools_used: List[str] = field(default_factory=list)
    severity_counts: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'overall_score': self.overall_score,
            'risk_level': self.risk_level.value,
            'total_vulnerabilities': self.total_vulnerabilities,
            'tools_used': list(self.tools_used),
            'severity_counts': dict(self.severity_counts),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConsensusSummary":
        return cls(
            overall_score=int(data.get('overall_score', 100)),
            risk_level=RiskLevel(data.get('risk_level', 'LOW')),
            total_vulnerabilities=int(data.get('total_vulnerabilities', 0)),
            tools_used=list(data.get('tools_used', [])),
            severity_counts={k: int(v) for k, v in data.get('severity_counts', {}).items()},
        )


@dataclass
class ConsensusResult:
    """Deduplicated, confidence-merged union of all analyzer findings."""
    vulnerabilities: List[Finding] = field(default_factory=list)
    confidence: float = 1.0
    metrics: AnalysisMetrics = field(default_factory=AnalysisMetrics)
    summary: ConsensusSummary = field(default_factory=ConsensusSummary)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'vulnerabilities': [v.to_dict() for v in self.vulnerabilities],
            'confidence': self.confidence,
            'metrics': self.metrics.to_dict(),
            'summary': self.summary.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConsensusResult":
        return cls(
            vulnerabilities=[Finding.from_dict(v) for v in data.get('vulnerabilities', [])],
            confidence=float(data.get('confidence', 1.0)),
            metrics=AnalysisMetrics.from_dict(data.get('metrics', {})),
            summary=ConsensusSummary.from_dict(data.get('summary', {})),
        )
