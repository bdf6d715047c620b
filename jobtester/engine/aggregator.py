"""
Failure Aggregator.

Reduces a complete ResultTree into a FailureSummary. Pure and
deterministic: no I/O, no mutation of the tree, run once per pass.
"""

import re
from typing import Callable, Literal

from .entities import FailedExpectation, FailureSummary, ResultTree

LinkFormat = Literal["markdown", "html"]

_URL_PATTERN = re.compile(r"https://\S+")


def link_label(url: str) -> str:
    """Final non-empty path segment of a URL, used as its link text."""
    segments = [segment for segment in url.split("/") if segment]
    return segments[-1] if segments else url


def _markdown_link(url: str) -> str:
    return f"<{url}|{link_label(url)}>"


def _html_link(url: str) -> str:
    return f'<a href="{url}">{link_label(url)}</a>'


_FORMATTERS: dict[str, Callable[[str], str]] = {
    "markdown": _markdown_link,
    "html": _html_link,
}


def linkify(text: str, fmt: LinkFormat = "markdown") -> str:
    """
    Rewrite every https URL in text into the target link syntax.

    Surrounding text is left unchanged.

    Example:
        >>> linkify("check https://x/y/z here")
        'check <https://x/y/z|z> here'
    """
    formatter = _FORMATTERS[fmt]
    return _URL_PATTERN.sub(lambda match: formatter(match.group(0)), text or "")


def reduce_results(tree: ResultTree) -> FailureSummary:
    """
    Reduce a ResultTree to failures and counts.

    Per suite: a suite with no failing spec counts as passing; otherwise
    every failed expectation of every failing spec yields one entry named
    "<suite> <spec>". Expectation and spec counts cover all suites.
    """
    summary = FailureSummary()

    for suite in tree.suites:
        summary.total_spec_count += len(suite.specs)

        for spec in suite.specs:
            summary.passed_expectation_count += len(spec.passed_expectations)
            summary.total_expectation_count += (
                len(spec.passed_expectations) + len(spec.failed_expectations)
            )

        failing_specs = [spec for spec in suite.specs if spec.failed_expectations]

        if not failing_specs:
            summary.passing_suite_count += 1
            continue

        for spec in failing_specs:
            summary.failing_spec_count += 1
            summary.failing_spec_names.append(spec.full_name)

            for expectation in spec.failed_expectations:
                summary.failed_expectations.append(FailedExpectation(
                    name=f"{suite.description} {spec.description}",
                    markdown=linkify(expectation.message, "markdown"),
                    html=linkify(expectation.message, "html"),
                ))

    return summary
