#!/usr/bin/env python3
"""
Audit Result Formatter

Formats a ConsensusResult for display, JSON, and markdown reports.
"""

import json
from typing import Any, Dict, List, Optional

from core.analysis_models import ConsensusResult, Finding


class AuditResultFormatter:
    def format_for_display(self, result: ConsensusResult) -> str:
        """
        Plain text listing, one block per finding:

        [1] HIGH: Reentrancy Vulnerability (lines 12, 14) - contextual
            Reentrancy | SWC-107 | confidence HIGH
            External call is followed by a state change...
        """
        lines: List[str] = []
        summary = result.summary
        lines.append(
            f"Score: {summary.overall_score}/100  Risk: {summary.risk_level.value}  "
            f"Findings: {summary.total_vulnerabilities}  "
            f"Tools: {', '.join(summary.tools_used) or 'none'}"
        )

        if not result.vulnerabilities:
            lines.append("No findings to display")
            return "\n".join(lines)

        for finding_num, vuln in enumerate(result.vulnerabilities, 1):
            line_display = (
                f"[{finding_num}] {vuln.severity.value}: {vuln.title} "
                f"({self._format_lines(vuln)})"
            )
            if vuln.analyzer:
                line_display += f" - {vuln.analyzer}"

            refs = [vuln.category] + [ref for ref in (vuln.cwe_id, vuln.swc_id) if ref]
            line_display += f"\n    {' | '.join(refs)} | confidence {vuln.confidence.value}"
            if vuln.description:
                line_display += f"\n    {vuln.description[:100]}"  # Truncate long descriptions
            lines.append(line_display)

        return "\n".join(lines)

    def format_for_json(self, result: ConsensusResult, indent: Optional[int] = None) -> str:
        payload = result.to_dict()
        payload['by_category'] = self._group_by(result.vulnerabilities, key='category')
        payload['by_severity'] = self._group_by(result.vulnerabilities, key='severity')
        return json.dumps(payload, indent=indent)

    def format_for_markdown(self, result: ConsensusResult, project_info: Optional[Dict[str, Any]] = None) -> str:
        project_info = project_info or {}
        summary = result.summary
        out: List[str] = []
        out.append("# Static Analysis Report\n")
        if project_info.get('contract_name'):
            out.append(f"Contract: {project_info['contract_name']}\n")
        if project_info.get('contract_address'):
            out.append(f"Address: {project_info['contract_address']}\n")
        out.append(f"Overall score: {summary.overall_score}/100\n")
        out.append(f"Risk level: {summary.risk_level.value}\n")
        out.append(f"Tools: {', '.join(summary.tools_used) or 'none'}\n")
        out.append("\n## Vulnerabilities Found\n")
        if not result.vulnerabilities:
            out.append("None.\n")
        for i, vuln in enumerate(result.vulnerabilities, 1):
            out.append(f"### {i}. {vuln.title}\n")
            out.append(f"- Severity: {vuln.severity.value}\n")
            out.append(f"- Category: {vuln.category}\n")
            out.append(f"- Location: {self._format_lines(vuln)}\n")
            if vuln.swc_id or vuln.cwe_id:
                out.append(f"- References: {', '.join(r for r in (vuln.swc_id, vuln.cwe_id) if r)}\n")
            out.append(f"- Description: {vuln.description}\n")
            if vuln.code_snippet:
                out.append(f"\n```solidity\n{vuln.code_snippet}\n```\n")
            out.append(f"- Recommendation: {vuln.recommendation}\n")
            out.append("")
        return "\n".join(out)

    def _format_lines(self, vuln: Finding) -> str:
        if not vuln.line_numbers:
            return "line ?"
        if len(vuln.line_numbers) == 1:
            return f"line {vuln.line_numbers[0]}"
        return "lines " + ", ".join(str(n) for n in vuln.line_numbers)

    def _group_by(self, findings: List[Finding], key: str) -> Dict[str, List[str]]:
        g: Dict[str, List[str]] = {}
        for f in findings:
            value = getattr(f, key, 'unknown')
            k = str(getattr(value, 'value', value))
            g.setdefault(k, []).append(f.id)
        return g
