"""Filter and merge JUnit test reports by test name."""

from __future__ import annotations

import argparse
import re
import sys
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Sequence

_ESCAPES = {
    '"': "&#34;",
    "'": "&#39;",
    "&": "&amp;",
    "<": "&lt;",
    ">": "&gt;",
    "\t": "&#x9;",
    "\n": "&#xA;",
    "\r": "&#xD;",
}
_ESCAPE_RE = re.compile("[\"'&<>\t\n\r]")


def _escape(text: str) -> str:
    return _ESCAPE_RE.sub(lambda match: _ESCAPES[match.group()], text)


@dataclass
class TestCase:
    """One test case of a report.

    ``skipped`` is None when the case has no <skipped> element and the
    element's text (possibly empty) when it has one.
    """

    __test__ = False

    name: str = ""
    time: str = ""
    system_out: str = ""
    failure: str = ""
    skipped: str | None = None


@dataclass
class TestSuite:
    """A JUnit report: the test cases that are passed through."""

    __test__ = False

    test_cases: list[TestCase] = field(default_factory=list)


def _text(element: ET.Element | None) -> str:
    if element is None:
        return ""
    return "".join(element.itertext())


def _parse_case(element: ET.Element) -> TestCase:
    skipped = element.find("skipped")
    return TestCase(
        name=element.get("name", ""),
        time=element.get("time", ""),
        system_out=_text(element.find("system-out")),
        failure=_text(element.find("failure")),
        skipped=None if skipped is None else _text(skipped),
    )


def parse_suite(data: bytes | str) -> TestSuite:
    """Parse one JUnit document; raises ValueError if it is not a <testsuite>."""
    try:
        root = ET.fromstring(data)
    except ET.ParseError as exc:
        raise ValueError(f"invalid JUnit document: {exc}") from exc
    if root.tag != "testsuite":
        raise ValueError(
            f"expected element type <testsuite> but have <{root.tag}>"
        )
    return TestSuite([_parse_case(element) for element in root.findall("testcase")])


def merge_suites(documents: Iterable[bytes | str]) -> TestSuite:
    """Parse several documents and concatenate their test cases in order."""
    merged = TestSuite()
    for document in documents:
        merged.test_cases.extend(parse_suite(document).test_cases)
    return merged


def filter_test_cases(
    test_cases: Iterable[TestCase], pattern: str | re.Pattern[str]
) -> list[TestCase]:
    """Keep cases whose name matches ``pattern``, one per name.

    The first case of a name is kept unless it was skipped and a later run of
    the same name was not; then the real run replaces it.
    """
    regex = re.compile(pattern) if isinstance(pattern, str) else pattern
    kept: dict[str, TestCase] = {}
    for case in test_cases:
        if not regex.search(case.name):
            continue
        entry = kept.get(case.name)
        if entry is None or (entry.skipped is not None and case.skipped is None):
            kept[case.name] = case
    return list(kept.values())


def _render_case(case: TestCase) -> list[str]:
    attrs = f'name="{_escape(case.name)}" time="{_escape(case.time)}"'
    children = []
    if case.system_out:
        children.append(f"<system-out>{_escape(case.system_out)}</system-out>")
    if case.failure:
        children.append(f"<failure>{_escape(case.failure)}</failure>")
    if case.skipped is not None:
        children.append(f"<skipped>{_escape(case.skipped)}</skipped>")
    if not children:
        return [f"  <testcase {attrs}></testcase>"]
    return [f"  <testcase {attrs}>", *(f"    {child}" for child in children), "  </testcase>"]


def render_suite(suite: TestSuite) -> bytes:
    """Encode a suite as indented XML, without a trailing newline."""
    if not suite.test_cases:
        return b"<testsuite></testsuite>"
    lines = ["<testsuite>"]
    for case in suite.test_cases:
        lines.extend(_render_case(case))
    lines.append("</testsuite>")
    return "\n".join(lines).encode("utf-8")


def _read(path: str) -> bytes:
    if path == "-":
        return sys.stdin.buffer.read()
    return Path(path).read_bytes()


def _write(path: str, data: bytes) -> None:
    if path == "-":
        sys.stdout.buffer.write(data)
        sys.stdout.buffer.flush()
    else:
        Path(path).write_bytes(data)


def main(argv: Sequence[str] | None = None) -> int:
    """Merge the given JUnit files and keep only the tests matching -t."""
    parser = argparse.ArgumentParser(
        prog="filter-junit",
        description="Pass through only the JUnit test cases whose names match.",
    )
    parser.add_argument("-o", dest="output", default="-",
                        help="junit file to write, - for stdout")
    parser.add_argument("-t", dest="tests", default="",
                        help="regular expression matching the test names that are "
                             "to be included in the output")
    parser.add_argument("inputs", nargs="*", help="junit files to read, - for stdin")
    args = parser.parse_args(argv)

    try:
        pattern = re.compile(args.tests)
        suite = merge_suites(_read(path) for path in args.inputs)
        filtered = TestSuite(filter_test_cases(suite.test_cases, pattern))
        _write(args.output, render_suite(filtered))
    except (OSError, ValueError, re.error) as exc:
        print(f"filter-junit: {exc}", file=sys.stderr)
        return 1
    return 0