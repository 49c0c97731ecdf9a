"""Tests for reviewer output parsing."""

from __future__ import annotations

import json

import pytest

from claude_workflow.models import ReviewFinding, ReviewFindings, ReviewVerdict, Severity
from claude_workflow.review_parser import format_findings, has_critical_findings, parse_review_output


def fenced(body: str) -> str:
    return f"Here is my review.\n\n```workflow-review\n{body}\n```\n\nThanks!"


class TestVerdicts:
    def test_fenced_pass_surrounded_by_prose(self):
        raw = fenced('{"passed": true, "findings": [], "mustFix": [], "summary": "ok"}')

        result = parse_review_output(raw)

        assert result.verdict == ReviewVerdict.PASS
        assert result.findings.summary == "ok"
        assert result.parse_error is None
        assert result.raw_output == raw

    def test_fail_with_findings(self):
        raw = fenced(json.dumps({
            "passed": False,
            "findings": [{"severity": "high", "file": "app.py", "line": 3, "issue": "No tests"}],
            "mustFix": ["app.py:3"],
            "summary": "needs work",
        }))

        result = parse_review_output(raw)

        assert result.verdict == ReviewVerdict.FAIL
        finding = result.findings.findings[0]
        assert finding.severity == Severity.HIGH
        assert finding.file == "app.py"
        assert finding.line == 3
        assert result.findings.must_fix == ["app.py:3"]

    def test_no_structured_output_is_inconclusive(self):
        result = parse_review_output("Looks good to me, ship it.")

        assert result.verdict == ReviewVerdict.INCONCLUSIVE
        assert result.findings is None
        assert result.parse_error

    def test_missing_passed_is_inconclusive(self):
        result = parse_review_output(fenced('{"findings": [], "summary": "ok"}'))
        assert result.verdict == ReviewVerdict.INCONCLUSIVE
        assert "passed" in result.parse_error

    def test_non_boolean_passed_is_inconclusive(self):
        result = parse_review_output(fenced('{"passed": "true"}'))
        assert result.verdict == ReviewVerdict.INCONCLUSIVE

    def test_invalid_json_is_inconclusive(self):
        result = parse_review_output(fenced('{"passed": true,, }'))
        assert result.verdict == ReviewVerdict.INCONCLUSIVE
        assert "Invalid JSON" in result.parse_error

    def test_array_payload_is_inconclusive(self):
        result = parse_review_output(fenced('[{"passed": true}]'))
        assert result.verdict == ReviewVerdict.INCONCLUSIVE
        assert "expected object" in result.parse_error

    def test_deep_nesting_never_raises(self):
        body = '{"passed": true, "x": ' + "[" * 100_000 + "]" * 100_000 + "}"
        result = parse_review_output(fenced(body))
        assert result.verdict == ReviewVerdict.INCONCLUSIVE

    def test_unbalanced_braces_are_inconclusive(self):
        result = parse_review_output('Result: {"passed": true, "summary": "ok"')
        assert result.verdict == ReviewVerdict.INCONCLUSIVE


class TestExtraction:
    def test_falls_back_to_last_brace_object(self):
        raw = (
            'Draft: {"passed": false, "summary": "first"}\n'
            'Final: {"passed": true, "summary": "second"}\n'
        )
        result = parse_review_output(raw)
        assert result.verdict == ReviewVerdict.PASS
        assert result.findings.summary == "second"

    def test_fenced_block_wins_over_later_object(self):
        raw = fenced('{"passed": true, "summary": "fenced"}') + '\n{"passed": false}'
        result = parse_review_output(raw)
        assert result.verdict == ReviewVerdict.PASS
        assert result.findings.summary == "fenced"

    def test_empty_fenced_block_falls_back_to_brace_scan(self):
        raw = '```workflow-review\n```\n{"passed": true, "summary": "after"}'
        result = parse_review_output(raw)
        assert result.verdict == ReviewVerdict.PASS
        assert result.findings.summary == "after"

    def test_braces_inside_strings(self):
        raw = 'Verdict {"passed": false, "summary": "close } and open {", "findings": [{"issue": "use {}"}]} end'
        result = parse_review_output(raw)
        assert result.verdict == ReviewVerdict.FAIL
        assert result.findings.summary == "close } and open {"
        assert result.findings.findings[0].issue == "use {}"

    def test_fence_inside_string_value(self):
        body = '{"passed": false, "summary": "Example:\n```\ncode\n```\ndone", "findings": []}'
        result = parse_review_output(fenced(body))
        assert result.verdict == ReviewVerdict.FAIL
        assert result.findings.summary == "Example:\n```\ncode\n```\ndone"

    def test_literal_newlines_in_strings(self):
        body = '{"passed": false, "summary": "line one\nline two", "findings": []}'
        result = parse_review_output(fenced(body))
        assert result.verdict == ReviewVerdict.FAIL
        assert result.findings.summary == "line one\nline two"

    def test_escaped_sequences_are_kept(self):
        body = r'{"passed": true, "summary": "tab\there \"quoted\" a\\nb"}'
        result = parse_review_output(fenced(body))
        assert result.findings.summary == 'tab\there "quoted" a\\nb'


class TestTolerantValidation:
    def test_missing_lists_default_empty(self):
        result = parse_review_output(fenced('{"passed": true}'))
        assert result.verdict == ReviewVerdict.PASS
        assert result.findings.findings == []
        assert result.findings.must_fix == []
        assert result.findings.summary == ""

    @pytest.mark.parametrize("raw_severity, expected", [
        ("critical", Severity.CRITICAL),
        ("HIGH", Severity.HIGH),
        ("Low", Severity.LOW),
        ("blocker", Severity.MEDIUM),
        (3, Severity.MEDIUM),
        (None, Severity.MEDIUM),
    ])
    def test_severity_coercion(self, raw_severity, expected):
        payload = {"passed": False, "findings": [{"severity": raw_severity, "issue": "x"}]}
        result = parse_review_output(fenced(json.dumps(payload)))
        assert result.findings.findings[0].severity == expected

    def test_missing_location_fields(self):
        payload = {"passed": False, "findings": [{"issue": "Unclear naming"}]}
        finding = parse_review_output(fenced(json.dumps(payload))).findings.findings[0]
        assert finding.file == "unknown"
        assert finding.line is None
        assert finding.suggestion is None

    @pytest.mark.parametrize("raw_line, expected", [
        (12, 12),
        (12.0, 12),
        (12.5, None),
        ("12", None),
        (True, None),
    ])
    def test_line_coercion(self, raw_line, expected):
        payload = {"passed": False, "findings": [{"issue": "x", "line": raw_line}]}
        finding = parse_review_output(fenced(json.dumps(payload))).findings.findings[0]
        assert finding.line == expected

    def test_malformed_entries_are_dropped(self):
        payload = {
            "passed": False,
            "findings": ["just text", {"severity": "high"}, {"issue": "kept"}],
            "must_fix": ["a.py:1", 7, None],
            "summary": ["not", "a", "string"],
        }
        findings = parse_review_output(fenced(json.dumps(payload))).findings
        assert [f.issue for f in findings.findings] == ["kept"]
        assert findings.must_fix == ["a.py:1"]
        assert findings.summary == ""

    def test_non_list_findings_default_empty(self):
        payload = {"passed": False, "findings": "none", "mustFix": "all"}
        findings = parse_review_output(fenced(json.dumps(payload))).findings
        assert findings.findings == []
        assert findings.must_fix == []


class TestFormatting:
    def test_format_findings(self):
        findings = ReviewFindings(
            passed=False,
            summary="Two problems",
            findings=[
                ReviewFinding(severity=Severity.HIGH, file="app.py", line=3, issue="No tests"),
                ReviewFinding(issue="Vague names", suggestion="Rename x to total"),
            ],
            must_fix=["app.py:3"],
        )

        assert format_findings(findings) == (
            "Two problems\n"
            "- [HIGH] app.py:3: No tests\n"
            "- [MEDIUM] unknown: Vague names\n"
            "  Suggestion: Rename x to total\n"
            "Must fix: app.py:3"
        )

    def test_has_critical_findings(self):
        minor = ReviewFindings(passed=False, findings=[ReviewFinding(issue="x", severity=Severity.LOW)])
        critical = ReviewFindings(passed=False, findings=[ReviewFinding(issue="x", severity=Severity.CRITICAL)])
        assert has_critical_findings(minor) is False
        assert has_critical_findings(critical) is True
