"""
core/junit.py -- JUnit XML result aggregation.

Pure functions: no state, no network. Accepts both a <testsuites> root and a
bare <testsuite> root. Every <testcase> is classified as failed (a <failure>
child), error (an <error> child, counted as failed), skipped, or passed.
Suite durations are summed from the suite-level time attribute.

Usage:
    summary = parse(xml_bytes)
    merged = merge_results(summary_a, summary_b)
"""

import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Union

from core.models import TestCase, TestSummary


class JUnitParseError(ValueError):
    """Raised when a document is not a recognizable JUnit report."""


def _float_attr(elem: ET.Element, name: str) -> float:
    try:
        return float(elem.get(name) or 0)
    except ValueError:
        return 0.0


def _classify(tc: ET.Element) -> TestCase:
    case = TestCase(
        name=tc.get("name", ""),
        class_name=tc.get("classname", ""),
        duration_sec=_float_attr(tc, "time"),
    )
    failure = tc.find("failure")
    error = tc.find("error")
    if failure is not None:
        case.status = "failed"
        case.failure_msg = failure.get("message", "")
        case.failure_text = failure.text or ""
    elif error is not None:
        case.status = "error"
        case.failure_msg = error.get("message", "")
        case.failure_text = error.text or ""
    elif tc.find("skipped") is not None:
        case.status = "skipped"
    return case


def _aggregate(suites: list[ET.Element]) -> TestSummary:
    summary = TestSummary()
    for suite in suites:
        summary.duration_sec += _float_attr(suite, "time")
        for tc in suite.findall("testcase"):
            case = _classify(tc)
            if case.status in ("failed", "error"):
                summary.failed += 1
            elif case.status == "skipped":
                summary.skipped += 1
            else:
                summary.passed += 1
            summary.total += 1
            summary.test_cases.append(case)
    return summary


def parse(data: bytes) -> TestSummary:
    """Parse a JUnit XML document into a TestSummary.

    Raises JUnitParseError if the bytes are not XML or the root element is
    neither <testsuites> nor <testsuite>.
    """
    try:
        root = ET.fromstring(data)
    except ET.ParseError as e:
        raise JUnitParseError(f"invalid XML: {e}") from e

    if root.tag == "testsuites":
        suites = root.findall("testsuite")
        if not suites:
            raise JUnitParseError("empty <testsuites> document")
        return _aggregate(suites)
    if root.tag == "testsuite":
        return _aggregate([root])
    raise JUnitParseError(f"unrecognized JUnit XML root <{root.tag}>")


def parse_file(path: Union[str, Path]) -> TestSummary:
    """Read and parse a JUnit XML file from disk."""
    return parse(Path(path).read_bytes())


def merge_results(*results: TestSummary) -> TestSummary:
    """Sum counts, durations, and test cases across several summaries."""
    merged = TestSummary()
    for r in results:
        merged.total += r.total
        merged.passed += r.passed
        merged.failed += r.failed
        merged.skipped += r.skipped
        merged.duration_sec += r.duration_sec
        merged.test_cases.extend(r.test_cases)
    return merged
