"""
Assertion Protocol: asynchronous matchers over a RunResult.

Every matcher is an async function of a MatchContext returning a Verdict.
make_matcher() wraps it with:
- the RunResult precondition (UsageError when the left operand is wrong)
- the run's failure-message formatter

MatcherRegistry maps matcher name -> wrapped matcher and carries the
injected MatcherContext (platform client + invoker), built once per pass.

Most matchers hand fetched data to a caller-supplied callback
(callback_value): the callback raising means fail with its message,
returning normally means pass.
"""

import asyncio
import inspect
import logging
import textwrap
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from .entities import RunRequest, RunStatus
from .errors import UsageError
from .orchestrator import RunOrchestrator, RunResult, SettleDelay, is_run_result
from jobtester.platform.client import PlatformClient

logger = logging.getLogger(__name__)

RESULTS_CHECKER_ACTOR = "lukaskrivka/results-checker"
DUPLICATIONS_CHECKER_ACTOR = "lukaskrivka/duplications-checker"
OUTPUT_KEY = "OUTPUT"
STATISTICS_KEY_PREFIX = "SDK_CRAWLER_STATISTICS_"


@dataclass
class Verdict:
    """Outcome of one matcher call."""

    passed: bool
    message: str = ""


@dataclass
class MatcherContext:
    """Dependencies shared by every matcher in a pass."""

    client: PlatformClient
    invoker: RunOrchestrator
    settle_delay: SettleDelay = field(default_factory=SettleDelay)


@dataclass
class MatchContext:
    """Everything one matcher call sees."""

    run_result: RunResult
    expected: Any
    args: list
    client: PlatformClient
    invoker: RunOrchestrator
    settle_delay: SettleDelay
    format: Callable[[str], str]

    def next_options(self) -> dict:
        """
        Consume the next positional extra argument as an options dict.

        Missing or falsy arguments default to {}.
        """
        if not self.args:
            return {}
        value = self.args.pop(0)
        if not value:
            return {}
        if not isinstance(value, dict):
            raise UsageError(f"Expected an options dict, got {type(value).__name__}")
        return dict(value)


MatcherFn = Callable[[MatchContext], Awaitable[Verdict]]
BoundMatcher = Callable[..., Awaitable[Verdict]]


def make_matcher(compare: MatcherFn) -> Callable[..., Awaitable[Verdict]]:
    """
    Wrap a compare function into a matcher with precondition and formatting.

    The returned coroutine function takes
    (context, run_result, expected, *args).
    """

    async def matcher(context: MatcherContext, run_result: Any, expected: Any, *args) -> Verdict:
        if not is_run_result(run_result):
            raise UsageError(
                "Invalid usage of expect_async on a non-run result. Did you forget to invoke()?"
            )

        return await compare(MatchContext(
            run_result=run_result,
            expected=expected,
            args=list(args),
            client=context.client,
            invoker=context.invoker,
            settle_delay=context.settle_delay,
            format=run_result.format,
        ))

    matcher.__name__ = compare.__name__
    matcher.__doc__ = compare.__doc__
    return matcher


def describe_exception(error: BaseException) -> str:
    """Human-readable message for a failed callback."""
    message = str(error)
    if message:
        return message
    return error.__class__.__name__


async def callback_value(
    callback: Callable[[Any], Any],
    value: Any,
    format: Callable[[str], str],
) -> Verdict:
    """
    Run a caller-supplied check (sync or async) over fetched data.

    Raising means fail with the formatted exception message.
    """
    if not callable(callback):
        raise UsageError("Expected a callback function as the matcher argument")

    try:
        result = callback(value)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        return Verdict(passed=False, message=format(describe_exception(e)))

    return Verdict(passed=True)


def stringify_function(fn: Any) -> Any:
    """
    Serialize a function option to source text for a remote job.

    Non-callables are returned unchanged.
    """
    if not callable(fn):
        return fn

    try:
        return textwrap.dedent(inspect.getsource(fn))
    except (OSError, TypeError) as e:
        raise UsageError(f"Cannot serialize function {fn!r} to source: {e}") from e


def _pop_option(options: dict, *names: str) -> Any:
    """Pop the first present of several spellings (snake_case / camelCase)."""
    value = None
    for name in names:
        if name in options:
            popped = options.pop(name)
            if value is None:
                value = popped
    return value


async def _output_of_checker(ctx: MatchContext, checker: RunResult, label: str) -> Verdict:
    """Shared tail of the cross-job matchers."""
    run = await ctx.client.get_run(checker.run_id) or {}

    if run.get("status") != RunStatus.SUCCEEDED.value:
        return Verdict(
            passed=False,
            message=ctx.format(
                f"{label} run {checker.run_id} failed. Check the log for more information"
            ),
        )

    record = await ctx.client.get_record(checker.data.default_key_value_store_id, OUTPUT_KEY)

    return await callback_value(
        ctx.expected,
        {"run_result": checker, "output": (record or {}).get("value") or {}},
        ctx.format,
    )


# =============================================================================
# Matchers
# =============================================================================


async def to_have_status(ctx: MatchContext) -> Verdict:
    """Re-fetch the live run status and compare it to the expected status."""
    run = await ctx.client.get_run(ctx.run_result.run_id) or {}
    status = run.get("status")
    expected = ctx.expected.value if isinstance(ctx.expected, RunStatus) else ctx.expected

    return Verdict(
        passed=status == expected,
        message=ctx.format(f'Expected status to be "{expected}", got "{status}"'),
    )


async def with_log(ctx: MatchContext) -> Verdict:
    """Hand the run log text to the callback."""
    log = await ctx.client.get_log(ctx.run_result.run_id)
    return await callback_value(ctx.expected, log or "", ctx.format)


async def with_run_info(ctx: MatchContext) -> Verdict:
    """Hand the live run metadata to the callback."""
    run = await ctx.client.get_run(ctx.run_result.run_id) or {}
    return await callback_value(ctx.expected, run, ctx.format)


async def with_output(ctx: MatchContext) -> Verdict:
    """Hand the OUTPUT record of the run's key/value store to the callback."""
    record = await ctx.client.get_record(
        ctx.run_result.data.default_key_value_store_id, OUTPUT_KEY
    )

    if record is None:
        return Verdict(passed=False, message=ctx.format(f"No {OUTPUT_KEY}"))

    return await callback_value(ctx.expected, record, ctx.format)


async def with_statistics(ctx: MatchContext) -> Verdict:
    """Hand crawler statistics (options: {"index": n}, default 0) to the callback."""
    options = ctx.next_options()
    index = options.get("index") or 0
    key = f"{STATISTICS_KEY_PREFIX}{index}"

    await ctx.settle_delay()

    record = await ctx.client.get_record(ctx.run_result.data.default_key_value_store_id, key)

    if record is None:
        return Verdict(passed=False, message=ctx.format(f"No {key}"))

    return await callback_value(ctx.expected, record.get("value") or {}, ctx.format)


async def with_key_value_store(ctx: MatchContext) -> Verdict:
    """Hand any named record (options: {"key_name": "KEY"}) to the callback."""
    options = ctx.next_options()
    key_name = _pop_option(options, "key_name", "keyName")

    if not key_name or not isinstance(key_name, str):
        return Verdict(
            passed=False,
            message=ctx.format(
                'You need to specify the "key_name" option as {"key_name": "KEY_NAME"}'
            ),
        )

    await ctx.settle_delay()

    record = await ctx.client.get_record(
        ctx.run_result.data.default_key_value_store_id, key_name
    )

    if record is None:
        return Verdict(passed=False, message=ctx.format(f'Key "{key_name}" doesn\'t exist'))

    return await callback_value(ctx.expected, record, ctx.format)


async def with_request_queue(ctx: MatchContext) -> Verdict:
    """Hand the default request queue metadata to the callback."""
    queue = await ctx.client.get_request_queue(ctx.run_result.data.default_request_queue_id)
    return await callback_value(ctx.expected, queue or {}, ctx.format)


async def with_dataset(ctx: MatchContext) -> Verdict:
    """
    Hand {"dataset": <items page>, "info": <dataset metadata>} to the callback.

    Dataset metadata can lag behind the items right after a run finishes,
    so without pagination options the counts are recomputed from the items.
    """
    options = ctx.next_options()
    dataset_id = ctx.run_result.data.default_dataset_id

    await ctx.settle_delay()

    info, page = await asyncio.gather(
        ctx.client.get_dataset(dataset_id),
        ctx.client.list_items(dataset_id, options),
    )

    info = dict(info or {})
    if not options:
        items = page.get("items") or []
        info["itemCount"] = len(items)
        info["cleanItemCount"] = sum(1 for item in items if item)

    return await callback_value(ctx.expected, {"dataset": page, "info": info}, ctx.format)


async def with_checker(ctx: MatchContext) -> Verdict:
    """
    Verify the run with an auxiliary results-checker job.

    Options: {"task_id": ...} for a prepared checker task, or
    {"functional_checker": fn_or_source} for the ad-hoc checker actor;
    "record_key" points the checker at the key/value store instead of
    the dataset. A second options dict is passed as run options.
    """
    checker_args = ctx.next_options()
    run_options = ctx.next_options()

    task_id = _pop_option(checker_args, "task_id", "taskId")
    functional_checker = _pop_option(checker_args, "functional_checker", "functionalChecker")
    record_key = _pop_option(checker_args, "record_key", "recordKey")

    if not task_id and not functional_checker:
        return Verdict(
            passed=False,
            message=ctx.format(
                'You must provide a "functional_checker" option to with_checker as a second parameter'
            ),
        )

    await ctx.settle_delay()

    data = ctx.run_result.data
    checker_input = {
        "apifyStorageId": data.default_key_value_store_id if record_key else data.default_dataset_id,
        **checker_args,
    }
    if record_key:
        checker_input["recordKey"] = record_key
    if functional_checker:
        checker_input["functionalChecker"] = stringify_function(functional_checker)

    request = RunRequest(
        task_id=task_id or None,
        actor_id=None if task_id else RESULTS_CHECKER_ACTOR,
        input=checker_input,
        options=run_options,
    )
    checker = await ctx.invoker.invoke(request)

    return await _output_of_checker(ctx, checker, "Checker")


async def with_duplicates(ctx: MatchContext) -> Verdict:
    """
    Verify the run's dataset with an auxiliary duplications-checker job.

    Options: {"fields": [...]} is required; "task_id" selects a prepared
    task and "pre_check_function" is shipped as source text.
    """
    checker_args = ctx.next_options()
    run_options = ctx.next_options()

    fields = checker_args.get("fields")
    if not fields or not isinstance(fields, (list, tuple)):
        return Verdict(
            passed=False,
            message=ctx.format(
                'You need to provide a "fields" option as a list of strings on with_duplicates'
            ),
        )

    task_id = _pop_option(checker_args, "task_id", "taskId")
    pre_check = _pop_option(checker_args, "pre_check_function", "preCheckFunction")

    await ctx.settle_delay()

    checker_input = {
        "datasetId": ctx.run_result.data.default_dataset_id,
        "showItems": False,
        **checker_args,
        "fields": list(fields),
    }
    if pre_check:
        checker_input["preCheckFunction"] = stringify_function(pre_check)

    request = RunRequest(
        task_id=task_id or None,
        actor_id=None if task_id else DUPLICATIONS_CHECKER_ACTOR,
        input=checker_input,
        options=run_options,
    )
    checker = await ctx.invoker.invoke(request)

    return await _output_of_checker(ctx, checker, "Duplicates")


DEFAULT_MATCHERS: dict[str, MatcherFn] = {
    "to_have_status": to_have_status,
    "with_log": with_log,
    "with_run_info": with_run_info,
    "with_output": with_output,
    "with_statistics": with_statistics,
    "with_key_value_store": with_key_value_store,
    "with_request_queue": with_request_queue,
    "with_dataset": with_dataset,
    "with_checker": with_checker,
    "with_duplicates": with_duplicates,
}


class MatcherRegistry:
    """Name -> wrapped matcher, bound to one MatcherContext."""

    def __init__(
        self,
        context: MatcherContext,
        matchers: Optional[dict[str, MatcherFn]] = None,
    ):
        self.context = context
        self._matchers = {
            name: make_matcher(compare)
            for name, compare in (matchers if matchers is not None else DEFAULT_MATCHERS).items()
        }

    def names(self) -> list[str]:
        return list(self._matchers)

    def __contains__(self, name: str) -> bool:
        return name in self._matchers

    def register(self, name: str, compare: MatcherFn) -> None:
        self._matchers[name] = make_matcher(compare)

    async def match(self, name: str, run_result: Any, expected: Any, *args) -> Verdict:
        """
        Run one matcher.

        Raises:
            UsageError: unknown matcher, non-RunResult operand, bad options
        """
        matcher = self._matchers.get(name)
        if matcher is None:
            raise UsageError(f"Unknown matcher: {name}")
        return await matcher(self.context, run_result, expected, *args)
