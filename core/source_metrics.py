"""
Size and complexity metrics shared by every analyzer strategy.
"""

import re

from core.analysis_models import AnalysisMetrics
from core.source_utils import canonicalize_source, count_lines, mask_comments

CONTROL_FLOW_KEYWORDS = ('if', 'else', 'for', 'while', 'require', 'assert', 'revert')

CONTRACT_RE = re.compile(r'\b(?:contract|library|interface)\s+\w+')
FUNCTION_RE = re.compile(r'\bfunction\s+\w+')
CONTROL_FLOW_RE = re.compile(r'\b(?:%s)\b' % '|'.join(CONTROL_FLOW_KEYWORDS))
STORAGE_ACCESS_RE = re.compile(r'\b\w+(?:\[[^\]\n]{0,200}\])+')
STORAGE_WRITE_RE = re.compile(r'\b\w+(?:\[[^\]\n]{0,200}\])+\s*(?:[-+*/%]?=)(?![=>])')
EXTERNAL_CALL_RE = re.compile(r'\.\s*(?:call|delegatecall|staticcall|transfer|send)\b\s*[({]')

# Weights of the complexity score
CONTROL_FLOW_WEIGHT = 1
STORAGE_WEIGHT = 2
EXTERNAL_CALL_WEIGHT = 3

# Rough gas costs used by the estimate
STORAGE_WRITE_GAS = 20000
EXTERNAL_CALL_GAS = 5000
FUNCTION_GAS = 1000


def compute_metrics(source_text, include_gas: bool = False) -> AnalysisMetrics:
    """
    Compute AnalysisMetrics for a source text.

    Keyword counts ignore comments and string literals. ``total_lines`` is
    taken from the canonical text so it agrees with reported line numbers.
    The gas estimate is only filled in when ``include_gas`` is set.
    """
    text = canonicalize_source(source_text)
    if not text.strip():
        return AnalysisMetrics(gas_estimate=0 if include_gas else None)

    code = mask_comments(text, mask_strings=True)

    contracts = len(CONTRACT_RE.findall(code))
    functions = len(FUNCTION_RE.findall(code))
    control_flow = len(CONTROL_FLOW_RE.findall(code))
    storage_accesses = len(STORAGE_ACCESS_RE.findall(code))
    external_calls = len(EXTERNAL_CALL_RE.findall(code))

    complexity = (
        CONTROL_FLOW_WEIGHT * control_flow
        + STORAGE_WEIGHT * storage_accesses
        + EXTERNAL_CALL_WEIGHT * external_calls
    )

    gas_estimate = None
    if include_gas:
        storage_writes = len(STORAGE_WRITE_RE.findall(code))
        gas_estimate = (
            STORAGE_WRITE_GAS * storage_writes
            + EXTERNAL_CALL_GAS * external_calls
            + FUNCTION_GAS * functions
        )

    return AnalysisMetrics(
        total_lines=count_lines(text),
        complexity_score=complexity,
        function_count=functions,
        contract_count=contracts,
        gas_estimate=gas_estimate,
    )
