"""
Console spec reporter.

Logs one line per finished spec and a summary at the end of the run.
With verbose output, passing specs are listed too; failures always are,
with their messages.
"""

import logging

from jobtester.engine.aggregator import reduce_results
from jobtester.engine.entities import ResultTree, SpecResult, SuiteResult

logger = logging.getLogger(__name__)


class ConsoleReporter:
    """Reporter writing spec progress to the jobtester logger."""

    def __init__(self, verbose: bool = True):
        self.verbose = verbose
        self._failures: list[SpecResult] = []

    def suite_started(self, suite) -> None:
        if self.verbose:
            logger.info(f"[Runner] {suite.full_name}")

    def spec_done(self, result: SpecResult) -> None:
        if result.failed_expectations:
            self._failures.append(result)
            logger.info(f"[Runner]   FAILED {result.description} ({result.duration_ms}ms)")
        elif self.verbose:
            logger.info(f"[Runner]   ok {result.description} ({result.duration_ms}ms)")

    def suite_done(self, result: SuiteResult) -> None:
        pass

    def run_done(self, tree: ResultTree) -> None:
        summary = reduce_results(tree)

        for index, spec in enumerate(self._failures, start=1):
            logger.error(f"[Runner] {index}) {spec.full_name}")
            for expectation in spec.failed_expectations:
                for line in expectation.message.splitlines() or [""]:
                    logger.error(f"[Runner]      {line}")

        logger.info(
            f"[Runner] Executed {summary.total_spec_count} specs, "
            f"{summary.failing_spec_count} failing, "
            f"{summary.passed_expectation_count}/{summary.total_expectation_count} expectations passed"
        )
