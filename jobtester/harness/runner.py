"""
Minimal BDD runner for test programs.

A test program registers suites and specs through decorators:

    @ctx.describe("Google search")
    def _():
        @ctx.it("returns results")
        async def _():
            run = await ctx.invoke(actor_id="apify/google-search-scraper", input={...})
            await ctx.expect_async(run).to_have_status("SUCCEEDED")

Specs run sequentially in declaration order. Expectations never raise:
every matcher outcome is recorded on the running spec, and a spec keeps
going after a failed expectation. Exceptions (including a plain `assert`)
end the spec and are recorded as one failed expectation.
"""

import asyncio
import inspect
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol, Union

from jobtester.engine.entities import ExpectationResult, ResultTree, SpecResult, SuiteResult
from jobtester.engine.errors import UsageError
from jobtester.engine.matchers import MatcherRegistry, Verdict, describe_exception

logger = logging.getLogger(__name__)

DEFAULT_SPEC_TIMEOUT_MS = 600000

SpecFn = Callable[[], Any]


@dataclass
class Spec:
    """One `it` block."""

    id: str
    description: str
    fn: SpecFn
    suite: "Suite"

    @property
    def full_name(self) -> str:
        return f"{self.suite.full_name} {self.description}".strip()


@dataclass
class Suite:
    """One `describe` block; children keep declaration order."""

    id: str
    description: str
    parent: Optional["Suite"] = None
    children: list[Union["Suite", Spec]] = field(default_factory=list)
    before_all: list[SpecFn] = field(default_factory=list)
    after_all: list[SpecFn] = field(default_factory=list)

    @property
    def full_name(self) -> str:
        if self.parent is None:
            return self.description
        return f"{self.parent.full_name} {self.description}".strip()

    def specs(self) -> list[Spec]:
        return [child for child in self.children if isinstance(child, Spec)]

    def all_specs(self) -> list[Spec]:
        found = []
        for child in self.children:
            if isinstance(child, Spec):
                found.append(child)
            else:
                found.extend(child.all_specs())
        return found


class Reporter(Protocol):
    """Receives progress events from SpecRunner."""

    def suite_started(self, suite: Suite) -> None: ...

    def spec_done(self, result: SpecResult) -> None: ...

    def suite_done(self, result: SuiteResult) -> None: ...

    def run_done(self, tree: ResultTree) -> None: ...


def compile_filter(patterns: Optional[list[str]]) -> Optional[re.Pattern]:
    """Join spec name patterns into one regular expression; None matches all."""
    joined = "|".join(pattern for pattern in (patterns or []) if pattern)
    if not joined:
        return None
    try:
        return re.compile(joined)
    except re.error as e:
        raise UsageError(f"Invalid filter {joined!r}: {e}") from e


async def _call(fn: SpecFn) -> None:
    result = fn()
    if inspect.isawaitable(result):
        await result


class AsyncExpectation:
    """
    Non-throwing matcher front end: `await expect_async(run).with_output(cb)`.

    Attribute access resolves matcher names in the registry.
    """

    def __init__(self, runner: "SpecRunner", actual: Any):
        self._runner = runner
        self._actual = actual

    def __getattr__(self, name: str):
        if name.startswith("_") or name not in self._runner.registry:
            raise AttributeError(f"Unknown matcher: {name}")

        async def matcher(expected: Any = None, *args) -> Verdict:
            verdict = await self._runner.registry.match(name, self._actual, expected, *args)
            self._runner.record(ExpectationResult(
                matcher_name=name,
                passed=verdict.passed,
                message="" if verdict.passed else verdict.message,
            ))
            return verdict

        matcher.__name__ = name
        return matcher


class SpecRunner:
    """
    Collects suites/specs and runs them against reporters.

    The root suite is the test name; everything the program declares
    is nested under it.
    """

    def __init__(
        self,
        registry: Optional[MatcherRegistry] = None,
        test_name: str = "Actor tests",
        default_timeout_ms: int = DEFAULT_SPEC_TIMEOUT_MS,
        filter_patterns: Optional[list[str]] = None,
        reporters: Optional[list[Reporter]] = None,
    ):
        self.registry = registry
        self.default_timeout_ms = default_timeout_ms
        self.filter = compile_filter(filter_patterns)
        self.reporters = list(reporters or [])

        self._suite_seq = 0
        self._spec_seq = 0
        self.root = self._new_suite(test_name, None)
        self._stack = [self.root]
        self._current: Optional[SpecResult] = None

    def _new_suite(self, description: str, parent: Optional[Suite]) -> Suite:
        self._suite_seq += 1
        return Suite(id=f"suite{self._suite_seq}", description=description, parent=parent)

    # =========================================================================
    # Declaration API
    # =========================================================================

    def describe(self, description: str) -> Callable[[SpecFn], SpecFn]:
        """Declare a suite; the decorated function runs immediately to declare its body."""

        def decorator(fn: SpecFn) -> SpecFn:
            parent = self._stack[-1]
            suite = self._new_suite(description, parent)
            parent.children.append(suite)

            self._stack.append(suite)
            try:
                result = fn()
            finally:
                self._stack.pop()

            if inspect.iscoroutine(result):
                result.close()
                raise UsageError(f'describe("{description}") body must not be async')
            return fn

        return decorator

    def it(self, description: str) -> Callable[[SpecFn], SpecFn]:
        """Declare a spec in the current suite."""

        def decorator(fn: SpecFn) -> SpecFn:
            suite = self._stack[-1]
            suite.children.append(Spec(
                id=f"spec{self._spec_seq}",
                description=description,
                fn=fn,
                suite=suite,
            ))
            self._spec_seq += 1
            return fn

        return decorator

    def before_all(self, fn: SpecFn) -> SpecFn:
        self._stack[-1].before_all.append(fn)
        return fn

    def after_all(self, fn: SpecFn) -> SpecFn:
        self._stack[-1].after_all.append(fn)
        return fn

    def expect_async(self, actual: Any) -> AsyncExpectation:
        if self.registry is None:
            raise UsageError("No matchers are configured")
        return AsyncExpectation(self, actual)

    def record(self, result: ExpectationResult) -> None:
        """Attach an expectation outcome to the running spec."""
        if self._current is None:
            raise UsageError("Expectations can only be made inside it() blocks")
        self._current.add_expectation(result)

    # =========================================================================
    # Execution
    # =========================================================================

    def is_selected(self, spec: Spec) -> bool:
        return self.filter is None or bool(self.filter.search(spec.full_name))

    async def run(self) -> ResultTree:
        """Run every selected spec and return the complete result tree."""
        tree = ResultTree()
        await self._run_suite(self.root, tree)

        for reporter in self.reporters:
            reporter.run_done(tree)

        return tree

    async def _run_suite(
        self,
        suite: Suite,
        tree: ResultTree,
        inherited_error: Optional[str] = None,
    ) -> None:
        """
        Run one suite and its descendants.

        inherited_error is a failed before_all of an enclosing suite. It fails
        every spec below it, and this suite's own hooks are not run.
        """
        if not any(self.is_selected(spec) for spec in suite.all_specs()):
            return

        for reporter in self.reporters:
            reporter.suite_started(suite)

        result = SuiteResult(id=suite.id, description=suite.description, full_name=suite.full_name)

        setup_error = inherited_error
        hooks = [] if inherited_error else suite.before_all
        for hook in hooks:
            try:
                await _call(hook)
            except Exception as e:
                logger.error(f"[Runner] before_all of '{suite.full_name}' failed: {e}")
                setup_error = f"before_all failed: {describe_exception(e)}"
                break

        for child in suite.children:
            if isinstance(child, Suite):
                await self._run_suite(child, tree, setup_error)
            elif self.is_selected(child):
                spec_result = await self._run_spec(child, setup_error)
                result.specs.append(spec_result)
                for reporter in self.reporters:
                    reporter.spec_done(spec_result)

        for hook in ([] if inherited_error else suite.after_all):
            try:
                await _call(hook)
            except Exception as e:
                logger.error(f"[Runner] after_all of '{suite.full_name}' failed: {e}")

        tree.suites.append(result)
        for reporter in self.reporters:
            reporter.suite_done(result)

    async def _run_spec(self, spec: Spec, setup_error: Optional[str] = None) -> SpecResult:
        result = SpecResult(id=spec.id, description=spec.description, full_name=spec.full_name)

        if setup_error:
            result.add_expectation(ExpectationResult("before_all", False, setup_error))
            result.status = "failed"
            return result

        self._current = result
        started = time.monotonic()

        try:
            await asyncio.wait_for(_call(spec.fn), timeout=self.default_timeout_ms / 1000)
        except asyncio.TimeoutError:
            result.add_expectation(ExpectationResult(
                "timeout",
                False,
                f"Timeout - spec did not complete within {self.default_timeout_ms}ms",
            ))
        except AssertionError as e:
            result.add_expectation(ExpectationResult("assert", False, describe_exception(e)))
        except Exception as e:
            logger.debug(f"[Runner] Spec '{spec.full_name}' raised", exc_info=True)
            result.add_expectation(ExpectationResult(
                "error", False, f"{e.__class__.__name__}: {describe_exception(e)}"
            ))
        finally:
            self._current = None

        result.duration_ms = int((time.monotonic() - started) * 1000)
        result.status = "failed" if result.failed_expectations else "passed"
        return result
