"""
Vulnerability Pattern Library

Immutable catalog of known smart-contract weakness patterns (SWC / CWE
cross-referenced) and a pure matcher that evaluates every pattern against a
source text. The catalog is built once per process; there is no API to
change it at runtime.
"""

import logging
import re
import threading
from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, List, Optional, Tuple

from core.analysis_models import Severity
from core.exceptions import InputTooLargeError
from core.source_utils import (
    canonicalize_source,
    line_locator,
    mask_comments,
    source_size,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_SOURCE_BYTES = 100_000

# Multiplier applied to a hit's confidence when a mitigating keyword is nearby
MITIGATION_FACTOR = 0.5

# Window value meaning "anywhere in the text"
WHOLE_TEXT = -1

_OLD_PRAGMA = r'pragma\s+solidity[\s^~>=<]{0,20}0\.[4-7]\.'
_PRAGMA_04 = r'pragma\s+solidity[\s^~>=<]{0,20}0\.4\.'


@dataclass(frozen=True)
class MatchRule:
    """One regex that signals a pattern, with its heuristic confidence."""
    pattern: str
    confidence: float = 0.8
    mitigations: Tuple[str, ...] = ()
    window: int = 5  # lines either side searched for mitigations
    requires: Optional[str] = None  # must occur somewhere for the rule to apply


@dataclass(frozen=True)
class VulnerabilityPattern:
    id: str
    title: str
    description: str
    category: str
    severity: Severity
    cwe_id: Optional[str]
    swc_id: Optional[str]
    recommendations: Tuple[str, ...]
    rules: Tuple[MatchRule, ...]


@dataclass(frozen=True)
class PatternMatch:
    line: int
    snippet: str
    confidence: float


@dataclass(frozen=True)
class PatternDetection:
    """All hits of one pattern in one source text."""
    pattern: VulnerabilityPattern
    matches: Tuple[PatternMatch, ...]


def _pattern(id, title, description, category, severity, cwe_id, swc_id, recommendations, *rules):
    return VulnerabilityPattern(
        id=id,
        title=title,
        description=description,
        category=category,
        severity=severity,
        cwe_id=cwe_id,
        swc_id=swc_id,
        recommendations=tuple(recommendations),
        rules=tuple(rules),
    )


@lru_cache(maxsize=1)
def _catalog() -> Tuple[VulnerabilityPattern, ...]:
    return (
        _pattern(
            'REENTRANCY-001', 'Reentrancy via Low-Level Call',
            'Ether is sent with a low-level call that hands control to the recipient before the function finishes',
            'Reentrancy', Severity.HIGH, 'CWE-841', 'SWC-107',
            ['Apply the checks-effects-interactions pattern',
             "Protect the function with OpenZeppelin's ReentrancyGuard (nonReentrant)"],
            MatchRule(r'\.call\s*\{\s*value\s*:', 0.85,
                      (r'\bnonReentrant\b', r'\bReentrancyGuard\b'), WHOLE_TEXT),
            MatchRule(r'\.call\.value\s*\(', 0.85,
                      (r'\bnonReentrant\b', r'\bReentrancyGuard\b'), WHOLE_TEXT),
        ),
        _pattern(
            'UNCHECKED-CALL-001', 'Unchecked Low-Level Call Return Value',
            'The boolean returned by a low-level call is discarded, so a failed call goes unnoticed',
            'Unchecked External Call', Severity.MEDIUM, 'CWE-252', 'SWC-104',
            ['Check the success flag returned by call, send and delegatecall',
             'Revert when the call fails or handle the failure explicitly'],
            MatchRule(r'^[ \t]*[\w.\[\]()]+\.(?:call|send|delegatecall|staticcall)\b\s*(?:\{[^}\n]{0,200}\}\s*)?\(',
                      0.75),
        ),
        _pattern(
            'TX-ORIGIN-001', 'Authorization Through tx.origin',
            'tx.origin is used for authorization and can be abused by a malicious intermediate contract',
            'Access Control', Severity.HIGH, 'CWE-477', 'SWC-115',
            ['Use msg.sender for authorization checks'],
            MatchRule(r'tx\.origin\s*[!=]=|[!=]=\s*tx\.origin', 0.9),
        ),
        _pattern(
            'SELFDESTRUCT-001', 'Unprotected Selfdestruct',
            'The contract can be destroyed and its balance forwarded; without strict access control anyone may trigger it',
            'Access Control', Severity.CRITICAL, 'CWE-284', 'SWC-106',
            ['Remove selfdestruct or restrict it to a multisig-controlled owner',
             'Prefer pausable or upgradeable patterns over contract destruction'],
            MatchRule(r'\b(?:selfdestruct|suicide)\s*\(', 0.85,
                      (r'\bonlyOwner\b', r'msg\.sender\s*==\s*owner\b', r'\bonlyRole\s*\('), 6),
        ),
        _pattern(
            'DELEGATECALL-001', 'Delegatecall to Untrusted Callee',
            'delegatecall executes foreign code in the storage context of this contract',
            'Delegatecall', Severity.HIGH, 'CWE-829', 'SWC-112',
            ['Only delegatecall into trusted, immutable implementation contracts',
             'Never let callers choose the delegatecall target'],
            MatchRule(r'\.delegatecall\s*\(', 0.8,
                      (r'\bimmutable\b', r'\bconstant\b', r'\bonlyOwner\b'), 10),
        ),
        _pattern(
            'ARITHMETIC-001', 'Integer Overflow and Underflow',
            'Arithmetic on a compiler without built-in overflow checks can wrap around silently',
            'Arithmetic', Severity.HIGH, 'CWE-190', 'SWC-101',
            ['Upgrade to Solidity 0.8 or later', 'Use SafeMath for all arithmetic on older compilers'],
            MatchRule(r'\b\w+(?:\[[^\]\n]{0,200}\])?\s*(?:\+=|-=|\*=)', 0.7,
                      (r'\bSafeMath\b',), WHOLE_TEXT, _OLD_PRAGMA),
            MatchRule(r'\bunchecked\s*\{', 0.45),
        ),
        _pattern(
            'RANDOMNESS-001', 'Weak Source of Randomness',
            'Block attributes are predictable and can be influenced by block producers',
            'Bad Randomness', Severity.HIGH, 'CWE-330', 'SWC-120',
            ['Use a verifiable randomness source such as Chainlink VRF',
             'Consider a commit-reveal scheme'],
            MatchRule(r'keccak256\s*\(\s*abi\.encode(?:Packed)?\s*\([^;]{0,500}?\b(?:block\.(?:timestamp|difficulty|prevrandao|number)|blockhash)\b',
                      0.85),
            MatchRule(r'\b(?:block\.(?:difficulty|prevrandao)|blockhash\s*\([^)\n]{0,200}\))[^;\n]{0,200}%', 0.8),
        ),
        _pattern(
            'TIMESTAMP-001', 'Block Timestamp Manipulation',
            'block.timestamp is used as a source of variation and can be skewed by the block producer',
            'Time Manipulation', Severity.MEDIUM, 'CWE-829', 'SWC-116',
            ['Do not derive critical values from block.timestamp',
             'Tolerate at least a 15 second drift in time-based logic'],
            MatchRule(r'block\.timestamp\s*%|\bnow\s*%', 0.75),
        ),
        _pattern(
            'DOS-LOOP-001', 'Unbounded Loop Over Dynamic Array',
            'A loop bound by a growing array length can exceed the block gas limit',
            'Denial of Service', Severity.MEDIUM, 'CWE-400', 'SWC-128',
            ['Bound the number of iterations', 'Process large collections in batches'],
            MatchRule(r'\bfor\s*\([^;\n]{0,200};\s*\w+\s*<=?\s*[\w.\[\]]+\.length\s*;', 0.6,
                      (r'\bMAX_\w+', r'(?i)\bbatch\w*'), 5),
        ),
        _pattern(
            'DOS-CALL-LOOP-001', 'External Call Inside Loop',
            'A single failing transfer inside a loop reverts the whole batch',
            'Denial of Service', Severity.MEDIUM, 'CWE-703', 'SWC-113',
            ['Favor pull over push payments', 'Isolate each external call so one failure cannot block the rest'],
            MatchRule(r'\b(?:for|while)\s*\([^)]{0,200}\)\s*\{[^}]{0,2000}?\.(?:transfer|send)\s*\(', 0.7),
        ),
        _pattern(
            'VISIBILITY-001', 'Function Default Visibility',
            'Functions without an explicit visibility default to public on this compiler version',
            'Access Control', Severity.MEDIUM, 'CWE-710', 'SWC-100',
            ['Declare visibility explicitly on every function'],
            MatchRule(r'\bfunction\s+\w+\s*\([^)]{0,500}\)\s*(?:returns\s*\([^)]{0,500}\)\s*)?\{', 0.6,
                      requires=_PRAGMA_04),
        ),
        _pattern(
            'STORAGE-PTR-001', 'Uninitialized Storage Pointer',
            'A local storage variable without initializer points at slot zero and may overwrite state',
            'Storage', Severity.HIGH, 'CWE-824', 'SWC-109',
            ['Initialize local storage pointers or use memory'],
            MatchRule(r'^[ \t]*\w+(?:\[\])?\s+storage\s+\w+\s*;', 0.8),
        ),
        _pattern(
            'UNCHECKED-TRANSFER-001', 'Unchecked ERC20 Transfer',
            'The return value of an ERC20 transfer is ignored; non-reverting tokens fail silently',
            'Unchecked External Call', Severity.MEDIUM, 'CWE-252', 'SWC-104',
            ["Use OpenZeppelin's SafeERC20 safeTransfer / safeTransferFrom",
             'Require the returned boolean to be true'],
            MatchRule(r'^[ \t]*\w+\s*(?:\([^)\n]{0,200}\))?\.transfer(?:From)?\s*\([^;\n]{0,300}?,[^;\n]{0,300}\)\s*;', 0.6,
                      (r'\bsafeTransfer', r'\bSafeERC20\b'), WHOLE_TEXT),
        ),
        _pattern(
            'ORACLE-001', 'Spot Price Oracle Dependency',
            'Prices read from instantaneous pool reserves can be moved within a single transaction',
            'Oracle Manipulation', Severity.HIGH, 'CWE-682', None,
            ['Use a time-weighted average price (TWAP)', 'Cross-check against an independent oracle'],
            MatchRule(r'\bgetReserves\s*\(', 0.7,
                      (r'(?i)twap', r'\bobserve\s*\(', r'(?i)cumulative', r'(?i)timeweighted'), WHOLE_TEXT),
            MatchRule(r'\bslot0\s*\(', 0.7,
                      (r'(?i)twap', r'\bobserve\s*\(', r'(?i)cumulative', r'(?i)timeweighted'), WHOLE_TEXT),
            MatchRule(r'\blatestAnswer\s*\(', 0.65),
        ),
        _pattern(
            'STALE-PRICE-001', 'Stale Oracle Price',
            'Oracle round data is consumed without checking when it was last updated',
            'Oracle Manipulation', Severity.MEDIUM, 'CWE-672', None,
            ['Validate updatedAt against a staleness threshold', 'Check answeredInRound >= roundId'],
            MatchRule(r'\blatestRoundData\s*\(', 0.75,
                      (r'\bupdatedAt\b', r'(?i)stale', r'\bansweredInRound\b'), 6),
        ),
        _pattern(
            'SIGNATURE-001', 'Signature Malleability',
            'Raw ecrecover accepts both s-values of a signature, allowing a second valid signature',
            'Signature Verification', Severity.MEDIUM, 'CWE-347', 'SWC-117',
            ["Use OpenZeppelin's ECDSA library", 'Restrict s to the lower half order'],
            MatchRule(r'\becrecover\s*\(', 0.7,
                      (r'\bECDSA\b', r'(?i)0x7fffffffffffffffffffffffffffffff5d576e7357a4501ddfe92f46681b20a0'),
                      WHOLE_TEXT),
        ),
        _pattern(
            'REPLAY-001', 'Missing Protection Against Signature Replay',
            'A recovered signature is not bound to a nonce or chain, so it can be submitted again',
            'Signature Verification', Severity.MEDIUM, 'CWE-294', 'SWC-121',
            ['Include a nonce and the chain id in the signed message', 'Track processed message hashes'],
            MatchRule(r'\becrecover\s*\(', 0.6,
                      (r'(?i)\bnonces?\b', r'(?i)chainid', r'(?i)\busedSignatures?\b'), WHOLE_TEXT),
        ),
        _pattern(
            'INITIALIZER-001', 'Unprotected Initializer',
            'A public initialize function can be called by anyone to take over the contract',
            'Access Control', Severity.HIGH, 'CWE-665', None,
            ['Protect initialize with the initializer modifier',
             'Disable initializers in the implementation constructor'],
            MatchRule(r'\bfunction\s+initialize\s*\([^)]{0,500}\)\s*(?:public|external)\b(?![^{]{0,500}\binitializer\b)', 0.75,
                      (r'\binitialized\s*=\s*true', r'require\s*\(\s*!\s*initialized'), 8),
        ),
        _pattern(
            'APPROVE-RACE-001', 'ERC20 Approve Race Condition',
            'Changing an allowance with approve lets the spender front-run and use both the old and new value',
            'Front-Running', Severity.LOW, 'CWE-362', 'SWC-114',
            ['Provide increaseAllowance / decreaseAllowance', 'Require the allowance to be reset to zero first'],
            MatchRule(r'\bfunction\s+approve\s*\(', 0.55,
                      (r'\bincreaseAllowance\b', r'\bdecreaseAllowance\b'), WHOLE_TEXT),
        ),
        _pattern(
            'DEPRECATED-001', 'Use of Deprecated Solidity Functions',
            'Deprecated built-ins are removed or behave differently in current compilers',
            'Best Practices', Severity.LOW, 'CWE-477', 'SWC-111',
            ['Replace sha3 with keccak256, throw with revert, callcode with delegatecall and msg.gas with gasleft()'],
            MatchRule(r'\b(?:sha3|callcode|block\.blockhash)\s*\(|\bthrow\s*;|\bmsg\.gas\b', 0.9),
        ),
        _pattern(
            'ASSERT-001', 'Assert Violation',
            'assert should only guard invariants; reachable asserts indicate a logic flaw',
            'Logic Error', Severity.LOW, 'CWE-670', 'SWC-110',
            ['Use require for input validation and keep assert for true invariants'],
            MatchRule(r'\bassert\s*\(', 0.5),
        ),
        _pattern(
            'HARDCODED-GAS-001', 'Hardcoded Gas Amount',
            'Forwarding a fixed amount of gas breaks when opcode prices change',
            'Best Practices', Severity.LOW, 'CWE-655', 'SWC-134',
            ['Avoid hardcoded gas stipends on calls'],
            MatchRule(r'\.call\s*\{[^}\n]{0,200}\bgas\s*:|\.gas\s*\(\s*\d+', 0.7),
        ),
        _pattern(
            'DIVIDE-BEFORE-MULTIPLY-001', 'Divide Before Multiply',
            'Integer division before multiplication truncates and loses precision',
            'Arithmetic', Severity.MEDIUM, 'CWE-682', None,
            ['Multiply before dividing', 'Use a fixed-point math library for ratios'],
            MatchRule(r'\b\w+\s*/\s*\w+\s*\*\s*\w+', 0.6),
        ),
        _pattern(
            'ASSEMBLY-001', 'Inline Assembly Usage',
            'Inline assembly bypasses compiler safety checks and needs careful review',
            'Best Practices', Severity.INFO, 'CWE-695', None,
            ['Keep assembly blocks minimal and well documented'],
            MatchRule(r'\bassembly\s*(?:\("memory-safe"\)\s*)?\{', 0.9),
        ),
    )


@lru_cache(maxsize=None)
def _compile(pattern: str) -> 're.Pattern':
    return re.compile(pattern, re.MULTILINE)


def check_source_size(source_text, limit: int = DEFAULT_MAX_SOURCE_BYTES) -> int:
    """Raise InputTooLargeError when the source exceeds ``limit`` bytes."""
    size = source_size(source_text)
    if size > limit:
        raise InputTooLargeError(size, limit)
    return size


class VulnerabilityDatabase:
    """Read-only access to the pattern catalog plus the text matcher."""

    _instance: Optional["VulnerabilityDatabase"] = None
    _instance_lock = threading.Lock()

    @classmethod
    def get_instance(cls) -> "VulnerabilityDatabase":
        if cls._instance is None:
            with cls._instance_lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Drop the shared instance. Intended for tests."""
        with cls._instance_lock:
            cls._instance = None

    def __init__(self, max_source_bytes: int = DEFAULT_MAX_SOURCE_BYTES,
                 mitigation_factor: float = MITIGATION_FACTOR):
        self.max_source_bytes = max_source_bytes
        self.mitigation_factor = mitigation_factor
        self._patterns = _catalog()
        self._by_id = {p.id: p for p in self._patterns}

    def get_all_patterns(self) -> List[VulnerabilityPattern]:
        return list(self._patterns)

    def get_pattern(self, pattern_id: str) -> Optional[VulnerabilityPattern]:
        return self._by_id.get(pattern_id)

    def get_patterns_by_category(self, category: str) -> List[VulnerabilityPattern]:
        return [p for p in self._patterns if p.category == category]

    def get_category_coverage(self) -> Dict[str, int]:
        """Pattern count per category, in catalog order."""
        coverage: Dict[str, int] = {}
        for pattern in self._patterns:
            coverage[pattern.category] = coverage.get(pattern.category, 0) + 1
        return coverage

    def enhance_vulnerability_detection(self, source_text) -> List[PatternDetection]:
        """
        Evaluate every pattern against ``source_text``.

        Returns one PatternDetection per pattern with at least one hit, in
        catalog order. Hits inside comments are ignored and each line is
        reported once per pattern with the best confidence among its rules.

        Raises:
            InputTooLargeError: source exceeds ``max_source_bytes``
        """
        check_source_size(source_text, self.max_source_bytes)
        text = canonicalize_source(source_text)
        if not text.strip():
            return []

        masked = mask_comments(text)
        lines = text.split('\n')
        masked_lines = masked.split('\n')
        locate = line_locator(masked)
        detections: List[PatternDetection] = []

        for pattern in self._patterns:
            hits: Dict[int, PatternMatch] = {}
            for rule in pattern.rules:
                if rule.requires and not _compile(rule.requires).search(masked):
                    continue
                mitigated: Dict[int, bool] = {}
                for match in _compile(rule.pattern).finditer(masked):
                    line = locate(match.start())
                    if line in hits and hits[line].confidence >= rule.confidence:
                        continue
                    confidence = rule.confidence
                    if rule.mitigations:
                        key = WHOLE_TEXT if rule.window == WHOLE_TEXT else line
                        if key not in mitigated:
                            mitigated[key] = self._is_mitigated(masked, masked_lines, line, rule)
                        if mitigated[key]:
                            confidence *= self.mitigation_factor
                    confidence = round(min(1.0, max(0.0, confidence)), 4)
                    existing = hits.get(line)
                    if existing is None or existing.confidence < confidence:
                        hits[line] = PatternMatch(line, lines[line - 1].strip(), confidence)
            if hits:
                matches = tuple(hits[line] for line in sorted(hits))
                detections.append(PatternDetection(pattern, matches))

        logger.debug("Pattern scan matched %d of %d patterns", len(detections), len(self._patterns))
        return detections

    def _is_mitigated(self, masked: str, masked_lines: List[str], line: int, rule: MatchRule) -> bool:
        if rule.window == WHOLE_TEXT:
            region = masked
        else:
            start = max(0, line - 1 - rule.window)
            region = '\n'.join(masked_lines[start:line + rule.window])
        return any(_compile(keyword).search(region) for keyword in rule.mitigations)
