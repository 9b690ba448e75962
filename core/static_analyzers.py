"""
Analyzer Strategies

Independent implementations of one contract: take a source text, return an
AnalysisResult with findings and metrics. Every strategy works on the
canonical text so reported line numbers agree across strategies, and keeps no
state between calls.

Strategies:
- pattern: wraps the vulnerability pattern library
- contextual: multi-line sequences (reentrancy, block.number races, oracle reads)
- construct: fixed dangerous constructs (selfdestruct, delegatecall, timestamp branching)
- quality: gas and code-quality issues, reports the gas estimate
"""

import logging
import re
import time
from abc import ABC, abstractmethod
from typing import Dict, Iterator, List, Optional, Set, Tuple, Type

from core.analysis_models import AnalysisResult, Confidence, Finding, Severity
from core.exceptions import AnalyzerError, ScanEngineError
from core.source_metrics import compute_metrics
from core.source_utils import SourceView, canonicalize_source, get_line, get_snippet
from core.vulnerability_patterns import VulnerabilityDatabase

logger = logging.getLogger(__name__)

DEFAULT_CONTEXT_WINDOW = 4

EXTERNAL_CALL_RE = re.compile(
    r'\.\s*(?:call|send|transfer)\s*(?:\{[^}\n]{0,200}\}\s*)?\(|\.call\.value\s*\('
)
STORAGE_WRITE_RE = re.compile(r'\b\w+(?:\[[^\]\n]{0,200}\])+\s*(?:[-+*/%]?=)(?![=>])')
INDEX_EXPR_RE = re.compile(r'\b\w+\[[^\[\]\n]{1,200}\]')
INDEX_WRITE_RE = re.compile(r'\s*[-+*/%]?=(?![=>])')


def _first_hit_per_line(regex: 're.Pattern', view: SourceView) -> Iterator[Tuple['re.Match', int]]:
    """Yield (match, line) for the first match of ``regex`` on each line."""
    seen: Set[int] = set()
    for match in regex.finditer(view.masked):
        line = view.line_at(match.start())
        if line not in seen:
            seen.add(line)
            yield match, line


class BaseAnalyzer(ABC):
    """Common base for analyzer strategies."""

    name: str = ""
    reports_gas: bool = False

    def analyze(self, source_text) -> AnalysisResult:
        """
        Scan ``source_text`` and return findings plus metrics.

        Empty or whitespace-only input yields no findings and zero metrics.

        Raises:
            AnalyzerError: the strategy failed internally
        """
        start = time.perf_counter()
        text = canonicalize_source(source_text)

        findings: List[Finding] = []
        if text.strip():
            try:
                findings = self.detect(text)
            except ScanEngineError:
                raise
            except Exception as e:
                raise AnalyzerError(self.name, str(e)) from e

        metrics = compute_metrics(text, include_gas=self.reports_gas)
        elapsed = time.perf_counter() - start
        logger.debug("%s analyzer: %d findings in %.3fs", self.name, len(findings), elapsed)
        return AnalysisResult(
            analyzer=self.name,
            findings=findings,
            metrics=metrics,
            execution_time=elapsed,
        )

    @abstractmethod
    def detect(self, text: str) -> List[Finding]:
        """Return findings for a non-empty canonical source text."""

    def _finding(self, **kwargs) -> Finding:
        kwargs.setdefault('analyzer', self.name)
        return Finding(**kwargs)


class PatternAnalyzer(BaseAnalyzer):
    """Converts pattern library hits into findings."""

    name = "pattern"

    def __init__(self, database: Optional[VulnerabilityDatabase] = None):
        self.database = database or VulnerabilityDatabase.get_instance()

    def detect(self, text: str) -> List[Finding]:
        findings = []
        for detection in self.database.enhance_vulnerability_detection(text):
            pattern = detection.pattern
            for match in detection.matches:
                findings.append(self._finding(
                    id=f"{pattern.id}_{match.line}",
                    title=pattern.title,
                    category=pattern.category,
                    description=pattern.description,
                    severity=pattern.severity,
                    line_numbers=[match.line],
                    code_snippet=match.snippet,
                    recommendation='. '.join(pattern.recommendations),
                    cwe_id=pattern.cwe_id,
                    swc_id=pattern.swc_id,
                    confidence=Confidence.from_score(match.confidence),
                ))
        return findings


class ContextualAnalyzer(BaseAnalyzer):
    """Detects vulnerability signatures that span several lines."""

    name = "contextual"

    RACE_CONDITION_RE = re.compile(r'\b(?:require|if)\s*\([^;\n]{0,300}?\bblock\.number\b')
    ORACLE_READ_RE = re.compile(
        r'\b(?:latestRoundData|latestAnswer|getReserves|slot0|getPrice|consult)\s*\('
        r'|\buint(?:256)?\s+\w*[pP]rice\w*\s*=',
    )
    TIME_WEIGHTING_RE = re.compile(r'(?i)twap|delay|time_?weighted|cumulative|\bobserve\s*\(')
    REENTRANCY_GUARD_RE = re.compile(r'\bnonReentrant\b')

    def __init__(self, window: int = DEFAULT_CONTEXT_WINDOW):
        self.window = window

    def detect(self, text: str) -> List[Finding]:
        view = SourceView(text)
        findings = []
        findings.extend(self._detect_reentrancy(view))
        findings.extend(self._detect_race_conditions(view))
        findings.extend(self._detect_oracle_reads(view))
        return findings

    def _detect_reentrancy(self, view: SourceView) -> List[Finding]:
        findings = []
        guarded_scopes: Dict[Tuple[int, int], bool] = {}
        for match, call_line in _first_hit_per_line(EXTERNAL_CALL_RE, view):
            scope = view.scope_of(call_line)
            write_line = self._state_write_after(view, match.end(), call_line, scope)
            if write_line is None:
                continue

            guarded = False
            if scope is not None:
                if scope not in guarded_scopes:
                    guarded_scopes[scope] = bool(self.REENTRANCY_GUARD_RE.search(view.scope_text(scope)))
                guarded = guarded_scopes[scope]

            findings.append(self._finding(
                id=f"reentrancy_{call_line}",
                title="Reentrancy Vulnerability",
                category="Reentrancy",
                description=(
                    "External call is followed by a state change; the callee can re-enter "
                    "before the state is updated"
                ),
                severity=Severity.HIGH,
                line_numbers=sorted({call_line, write_line}),
                code_snippet=get_snippet(view.lines, call_line, before=1, after=write_line - call_line + 1),
                recommendation=(
                    "Apply the checks-effects-interactions pattern and update state before "
                    "external calls. Use OpenZeppelin's ReentrancyGuard"
                ),
                cwe_id="CWE-841",
                swc_id="SWC-107",
                confidence=Confidence.MEDIUM if guarded else Confidence.HIGH,
            ))
        return findings

    def _state_write_after(self, view: SourceView, offset: int, call_line: int,
                           scope: Optional[Tuple[int, int]]) -> Optional[int]:
        """
        Line of the first indexed state write following a call that ends at
        ``offset``: the rest of the call's own line first, then up to
        ``window`` lines below it inside the enclosing function.
        """
        line_end = view.masked.find('\n', offset)
        if line_end < 0:
            line_end = len(view.masked)
        if STORAGE_WRITE_RE.search(view.masked, offset, line_end):
            return call_line

        last_line = min(len(view.lines), call_line + self.window)
        if scope is not None:
            last_line = min(last_line, scope[1])
        for candidate in range(call_line + 1, last_line + 1):
            if STORAGE_WRITE_RE.search(get_line(view.masked_lines, candidate)):
                return candidate
        return None

    def _detect_race_conditions(self, view: SourceView) -> List[Finding]:
        findings = []
        for _, line in _first_hit_per_line(self.RACE_CONDITION_RE, view):
            findings.append(self._finding(
                id=f"race_condition_{line}",
                title="Block Number Race Condition",
                category="Front-Running",
                description="Using block.number for timing can create race conditions in block propagation",
                severity=Severity.MEDIUM,
                line_numbers=[line],
                code_snippet=view.line_text(line),
                recommendation="Use commit-reveal schemes or explicit time-based delays",
                cwe_id="CWE-664",
                swc_id="SWC-114",
                confidence=Confidence.MEDIUM,
            ))
        return findings

    def _detect_oracle_reads(self, view: SourceView) -> List[Finding]:
        findings = []
        weighted_scopes: Dict[Tuple[int, int], bool] = {}
        for _, line in _first_hit_per_line(self.ORACLE_READ_RE, view):
            scope = view.scope_of(line)
            if scope is not None:
                if scope not in weighted_scopes:
                    weighted_scopes[scope] = bool(self.TIME_WEIGHTING_RE.search(view.scope_text(scope)))
                if weighted_scopes[scope]:
                    continue
            elif self.TIME_WEIGHTING_RE.search(
                get_snippet(view.masked_lines, line, before=self.window, after=self.window)
            ):
                continue

            findings.append(self._finding(
                id=f"oracle_manipulation_{line}",
                title="Potential Oracle Manipulation",
                category="Oracle Manipulation",
                description="Oracle price is used without a delay or TWAP mechanism and can be manipulated",
                severity=Severity.HIGH,
                line_numbers=[line],
                code_snippet=view.line_text(line),
                recommendation="Use a time-weighted average price (TWAP) or add a delay before acting on oracle prices",
                cwe_id="CWE-682",
                confidence=Confidence.MEDIUM,
            ))
        return findings


class ConstructAnalyzer(BaseAnalyzer):
    """Flags dangerous constructs with fixed severities."""

    name = "construct"

    SELFDESTRUCT_RE = re.compile(r'\b(?:selfdestruct|suicide)\s*\(')
    DELEGATECALL_RE = re.compile(r'(?:\b(\w+)\s*(?:\)\s*)?)?\.\s*delegatecall\b')
    CALLCODE_RE = re.compile(r'\.\s*callcode\b')
    TIMESTAMP_BRANCH_RE = re.compile(
        r'\b(?:if|require|while)\s*\([^;{]{0,300}?\b(?:block\.timestamp|now)\b'
    )
    # Name declared constant / immutable on a state variable line
    FIXED_DECLARATION_RE = re.compile(
        r'^[^;\n(]{0,200}\b(?:constant|immutable)\b[^;=\n(]{0,200}?\b(\w+)\s*[;=]',
        re.MULTILINE,
    )

    def detect(self, text: str) -> List[Finding]:
        view = SourceView(text)

        findings = []
        for _, line in _first_hit_per_line(self.SELFDESTRUCT_RE, view):
            findings.append(self._finding(
                id=f"selfdestruct_{line}",
                title="Selfdestruct Usage Detected",
                category="Denial of Service",
                description="Selfdestruct can be used maliciously to destroy the contract and drain its funds",
                severity=Severity.CRITICAL,
                line_numbers=[line],
                code_snippet=view.line_text(line),
                recommendation="Avoid selfdestruct. Consider upgrade patterns or pausable contracts instead",
                cwe_id="CWE-755",
                swc_id="SWC-106",
                confidence=Confidence.HIGH,
            ))

        fixed_targets = set(self.FIXED_DECLARATION_RE.findall(view.masked))
        reported: Set[int] = set()
        for match in self.DELEGATECALL_RE.finditer(view.masked):
            target = match.group(1)
            if target and target in fixed_targets:
                continue
            line = view.line_at(match.start())
            if line in reported:
                continue
            reported.add(line)
            findings.append(self._finding(
                id=f"delegatecall_{line}",
                title="Dangerous Delegatecall",
                category="Delegatecall",
                description="Delegatecall to an address that is not fixed at deployment can lead to code injection",
                severity=Severity.CRITICAL,
                line_numbers=[line],
                code_snippet=view.line_text(line),
                recommendation="Only delegatecall into constant or immutable implementation addresses",
                cwe_id="CWE-94",
                swc_id="SWC-112",
                confidence=Confidence.HIGH,
            ))

        for _, line in _first_hit_per_line(self.CALLCODE_RE, view):
            findings.append(self._finding(
                id=f"callcode_{line}",
                title="Callcode Usage",
                category="Delegatecall",
                description="callcode is deprecated and runs foreign code against this contract's storage",
                severity=Severity.HIGH,
                line_numbers=[line],
                code_snippet=view.line_text(line),
                recommendation="Replace callcode with delegatecall to a trusted implementation",
                cwe_id="CWE-477",
                swc_id="SWC-111",
                confidence=Confidence.HIGH,
            ))

        for _, line in _first_hit_per_line(self.TIMESTAMP_BRANCH_RE, view):
            findings.append(self._finding(
                id=f"timestamp_{line}",
                title="Timestamp Dependence",
                category="Time Manipulation",
                description="Branching on block.timestamp can be influenced by block producers",
                severity=Severity.LOW,
                line_numbers=[line],
                code_snippet=view.line_text(line),
                recommendation="Avoid block.timestamp for critical decisions and tolerate a drift of several seconds",
                cwe_id="CWE-829",
                swc_id="SWC-116",
                confidence=Confidence.MEDIUM,
            ))
        return findings


class CodeQualityAnalyzer(BaseAnalyzer):
    """Gas and code-quality checks; the only strategy reporting a gas estimate."""

    name = "quality"
    reports_gas = True

    LOOP_STORAGE_RE = re.compile(r'\bfor\s*\([^)]{0,200}\)\s*\{[^}]{0,2000}?\b\w+\[[^\]\n]{0,200}\]')
    DIVISION_RE = re.compile(r'(?<![/*])/(?![/*=])\s*([A-Za-z_]\w*)\b')
    ZERO_GUARD_RE = re.compile(r'\b(\w+)\s*(?:>|!=)\s*0\b|\b0\s*(?:<|!=)\s*(\w+)\b')
    DIRECTIVE_RE = re.compile(r'\s*(?:pragma|import)')
    STATE_CHANGE_RE = STORAGE_WRITE_RE
    EMIT_RE = re.compile(r'\bemit\s+\w+')
    CONSTRUCTOR_RE = re.compile(r'\bconstructor\b')
    CONSTANT_NAME_RE = re.compile(r'^[A-Z][A-Z0-9_]*$')

    def detect(self, text: str) -> List[Finding]:
        view = SourceView(text)

        findings = []
        findings.extend(self._detect_storage_loops(view))
        findings.extend(self._detect_duplicate_reads(view))
        findings.extend(self._detect_division_by_zero(view))
        findings.extend(self._detect_missing_events(view))
        return findings

    def _detect_storage_loops(self, view: SourceView) -> List[Finding]:
        findings = []
        for _, line in _first_hit_per_line(self.LOOP_STORAGE_RE, view):
            findings.append(self._finding(
                id=f"gas_loop_{line}",
                title="Gas-Intensive Loop with Storage Operations",
                category="Gas Optimization",
                description="Loop that performs storage operations can cause high gas costs",
                severity=Severity.MEDIUM,
                line_numbers=[line],
                code_snippet=get_snippet(view.lines, line, before=1, after=3),
                recommendation="Consider using mappings or batch operations to reduce gas costs",
                confidence=Confidence.MEDIUM,
            ))
        return findings

    def _detect_duplicate_reads(self, view: SourceView) -> List[Finding]:
        findings = []
        accesses = [self._index_accesses(line) for line in view.masked_lines]
        for idx in range(len(accesses) - 1):
            current, written = accesses[idx]
            if not current:
                continue
            repeated = (current & accesses[idx + 1][0]) - written
            if not repeated:
                continue
            line = idx + 1
            findings.append(self._finding(
                id=f"gas_storage_{line}",
                title="Duplicate Storage Read",
                category="Gas Optimization",
                description=f"{sorted(repeated)[0]} is read again on the next line without modification",
                severity=Severity.LOW,
                line_numbers=[line, line + 1],
                code_snippet=get_snippet(view.lines, line, after=1),
                recommendation="Cache storage reads in local variables to reduce gas costs",
                confidence=Confidence.MEDIUM,
            ))
        return findings

    @staticmethod
    def _index_accesses(line: str) -> Tuple[Set[str], Set[str]]:
        """Indexed expressions on one line, split into (reads, writes)."""
        reads, writes = set(), set()
        for match in INDEX_EXPR_RE.finditer(line):
            expr = re.sub(r'\s+', '', match.group(0))
            if INDEX_WRITE_RE.match(line, match.end()):
                writes.add(expr)
            else:
                reads.add(expr)
        return reads, writes

    def _detect_division_by_zero(self, view: SourceView) -> List[Finding]:
        findings = []
        seen: Set[int] = set()
        directives: Dict[int, bool] = {}
        guarded: Dict[Optional[Tuple[int, int]], Set[str]] = {}
        for match in self.DIVISION_RE.finditer(view.masked):
            divisor = match.group(1)
            if self.CONSTANT_NAME_RE.match(divisor):
                continue
            line = view.line_at(match.start())
            if line in seen:
                continue
            if line not in directives:
                directives[line] = bool(self.DIRECTIVE_RE.match(view.masked_lines[line - 1]))
            if directives[line]:
                continue

            # Divisors checked against zero anywhere in the function, or the file outside one
            scope = view.scope_of(line)
            if scope not in guarded:
                region = view.scope_text(scope) if scope is not None else view.masked
                guarded[scope] = {a or b for a, b in self.ZERO_GUARD_RE.findall(region)}
            if divisor in guarded[scope]:
                continue

            seen.add(line)
            findings.append(self._finding(
                id=f"division_{line}",
                title="Potential Division by Zero",
                category="Logic Error",
                description=f"Division by {divisor} without a zero check reverts when it is zero",
                severity=Severity.MEDIUM,
                line_numbers=[line],
                code_snippet=view.line_text(line),
                recommendation="Add a zero check before division operations",
                confidence=Confidence.LOW,
            ))
        return findings

    def _detect_missing_events(self, view: SourceView) -> List[Finding]:
        findings = []
        silent: Dict[Tuple[int, int], bool] = {}
        for _, line in _first_hit_per_line(self.STATE_CHANGE_RE, view):
            scope = view.scope_of(line)
            if scope is None:
                continue
            if scope not in silent:
                header = view.masked_lines[scope[0] - 1]
                silent[scope] = not (
                    self.CONSTRUCTOR_RE.search(header) or self.EMIT_RE.search(view.scope_text(scope))
                )
            if not silent[scope]:
                continue

            findings.append(self._finding(
                id=f"event_{line}",
                title="Missing Event for State Change",
                category="Event Logging",
                description="State change without a corresponding event emission",
                severity=Severity.LOW,
                line_numbers=[line],
                code_snippet=view.line_text(line),
                recommendation="Emit events for important state changes to improve transparency",
                confidence=Confidence.MEDIUM,
            ))
        return findings


ANALYZER_REGISTRY: Dict[str, Type[BaseAnalyzer]] = {
    cls.name: cls
    for cls in (PatternAnalyzer, ContextualAnalyzer, ConstructAnalyzer, CodeQualityAnalyzer)
}


def available_analyzers() -> List[str]:
    return list(ANALYZER_REGISTRY)


def create_analyzer(name: str, **kwargs) -> BaseAnalyzer:
    """Instantiate a registered analyzer by tag."""
    try:
        analyzer_cls = ANALYZER_REGISTRY[name]
    except KeyError:
        raise ValueError(f"Unknown analyzer: {name}") from None
    return analyzer_cls(**kwargs)
