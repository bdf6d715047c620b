"""
Retry Controller.

Decides what happens once a test pass has completed:

    RUNNING -> EVALUATING -> TERMINAL_SUCCESS
                          -> TERMINAL_FAILURE  (AggregateFailure)
                          -> RELAUNCH          (fresh process, failing specs only)

A relaunched pass always has retry mode disabled, so a test run is
retried at most once. OUTPUT is written on every pass before the
outcome is acted upon.

What RetryController MUST NOT do:
- Run specs or invoke jobs
- Notify on a pass that is about to be relaunched
"""

import json
import logging
import os
import re
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from .aggregator import reduce_results
from .entities import FailureSummary, ResultTree
from .errors import AggregateFailure
from jobtester.config import TesterInput
from jobtester.infra.notifier import Notifier, build_failure_notification
from jobtester.infra.storage import KeyValueStore
from jobtester.platform.client import PlatformClient

logger = logging.getLogger(__name__)

OUTPUT_KEY = "OUTPUT"


def exact_name_pattern(full_name: str) -> str:
    """Filter pattern selecting exactly one spec by its full name."""
    return f"^{re.escape(full_name)}$"


class RetryState(str, Enum):
    """Lifecycle of one test pass."""

    RUNNING = "running"
    EVALUATING = "evaluating"
    TERMINAL_SUCCESS = "terminal_success"
    TERMINAL_FAILURE = "terminal_failure"
    RELAUNCH = "relaunch"


@dataclass
class RetryDecision:
    """Outcome of evaluating one pass."""

    state: RetryState
    summary: FailureSummary
    relaunch_input: Optional[dict] = None


class Relauncher(ABC):
    """Starts a fresh tester process with a new input."""

    @abstractmethod
    async def relaunch(self, run_input: dict) -> None:
        ...


class ExecRelauncher(Relauncher):
    """
    Replace the current process with a new interpreter.

    The new input is written to input_path and passed via --input.
    global_args (e.g. ["--verbose", "--log-dir", "logs"]) go before the
    subcommand so the retry pass logs like the current one.
    """

    def __init__(
        self,
        input_path: Path | str,
        execv: Callable[[str, list[str]], None] = os.execv,
        executable: str = sys.executable,
        global_args: Optional[list[str]] = None,
    ):
        self.input_path = Path(input_path)
        self._execv = execv
        self.executable = executable
        self.global_args = list(global_args or [])

    async def relaunch(self, run_input: dict) -> None:
        self.input_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.input_path, "w", encoding="utf-8") as f:
            json.dump(run_input, f, ensure_ascii=False, indent=2)

        argv = [
            self.executable, "-m", "jobtester",
            *self.global_args,
            "run", "--input", str(self.input_path),
        ]
        logger.info(f"[RetryController] Re-executing: {' '.join(argv)}")

        sys.stdout.flush()
        sys.stderr.flush()
        self._execv(argv[0], argv)


class PlatformRelauncher(Relauncher):
    """Metamorph the current platform run into a new run of the same actor."""

    def __init__(self, client: PlatformClient, run_id: str, actor_id: str):
        self.client = client
        self.run_id = run_id
        self.actor_id = actor_id

    async def relaunch(self, run_input: dict) -> None:
        logger.info(f"[RetryController] Metamorphing run {self.run_id} into {self.actor_id}")
        await self.client.metamorph_run(self.run_id, self.actor_id, run_input)


class RetryController:
    """
    Evaluates a completed ResultTree and acts on the outcome.

    Usage:
        controller = RetryController(tester_input, store, notifier, relauncher, "My tests")
        decision = await controller.finish(tree)   # may raise AggregateFailure
    """

    def __init__(
        self,
        tester_input: TesterInput,
        output_store: KeyValueStore,
        notifier: Optional[Notifier] = None,
        relauncher: Optional[Relauncher] = None,
        test_name: str = "Actor tests",
        run_url: Optional[str] = None,
        output_url: Optional[str] = None,
    ):
        self.tester_input = tester_input
        self.output_store = output_store
        self.notifier = notifier
        self.relauncher = relauncher
        self.test_name = test_name
        self.run_url = run_url
        self.output_url = output_url
        self.state = RetryState.RUNNING

    def evaluate(self, tree: ResultTree) -> RetryDecision:
        """Reduce the tree and pick the terminal state. No side effects."""
        self.state = RetryState.EVALUATING
        summary = reduce_results(tree)

        if not summary.has_failures:
            state = RetryState.TERMINAL_SUCCESS
        elif not self.tester_input.retry_failed_tests:
            state = RetryState.TERMINAL_FAILURE
        elif self.relauncher is None:
            logger.warning("[RetryController] Retry requested but no relauncher available")
            state = RetryState.TERMINAL_FAILURE
        else:
            state = RetryState.RELAUNCH

        relaunch_input = self.build_relaunch_input(summary) if state is RetryState.RELAUNCH else None

        logger.info(
            f"[RetryController] {summary.failing_spec_count}/{summary.total_spec_count} specs failing, "
            f"{summary.passed_expectation_count}/{summary.total_expectation_count} expectations passed "
            f"-> {state.value}"
        )

        return RetryDecision(state=state, summary=summary, relaunch_input=relaunch_input)

    def build_relaunch_input(self, summary: FailureSummary) -> dict:
        """
        Input for the retry pass.

        Retry mode off, retry epoch advanced so every job is invoked afresh.
        The filter holds one anchored pattern per failing spec, so a spec
        whose name extends a failing one ("T1" vs "T10") is not selected.
        """
        retry_input = self.tester_input.model_copy(update={
            "retry_failed_tests": False,
            "filter": [exact_name_pattern(name) for name in summary.failing_spec_names],
            "retry_epoch": self.tester_input.retry_epoch + 1,
        })
        return retry_input.to_payload()

    async def finish(self, tree: ResultTree) -> RetryDecision:
        """
        Persist OUTPUT, then notify / relaunch / fail.

        Raises:
            AggregateFailure: the pass failed and will not be retried
        """
        decision = self.evaluate(tree)

        await self.output_store.set_value(OUTPUT_KEY, tree.to_dict())

        self.state = decision.state

        if decision.state is RetryState.RELAUNCH:
            logger.info(
                f"[RetryController] Relaunching with {len(decision.summary.failing_spec_names)} failing specs"
            )
            await self.relauncher.relaunch(decision.relaunch_input)
            return decision

        if decision.state is RetryState.TERMINAL_FAILURE:
            if self.notifier is not None:
                await self.notifier.notify(build_failure_notification(
                    self.test_name,
                    decision.summary,
                    run_url=self.run_url,
                    output_url=self.output_url,
                ))
            raise AggregateFailure(decision.summary)

        return decision
