"""
Tests for the Assertion Protocol (matchers and registry).

PYTEST_DONT_REWRITE: callbacks defined here assert with custom messages that the
code under test reports verbatim.
"""

import pytest

from jobtester.engine.errors import UsageError
from jobtester.engine.fingerprint import FingerprintCache
from jobtester.engine.matchers import (
    DUPLICATIONS_CHECKER_ACTOR,
    RESULTS_CHECKER_ACTOR,
    MatchContext,
    MatcherContext,
    MatcherRegistry,
    Verdict,
    callback_value,
    stringify_function,
)
from jobtester.engine.orchestrator import RunOrchestrator, SettleDelay


@pytest.fixture
def orchestrator(fake_client, memory_store, no_sleep):
    return RunOrchestrator(
        client=fake_client,
        cache=FingerprintCache(memory_store),
        sleep=no_sleep,
        console_url="https://console.example.com",
    )


@pytest.fixture
def registry(fake_client, orchestrator, no_sleep):
    return MatcherRegistry(MatcherContext(
        client=fake_client,
        invoker=orchestrator,
        settle_delay=SettleDelay(0, no_sleep),
    ))


def raise_with(message):
    def check(_value):
        raise AssertionError(message)
    return check


class TestRegistry:
    """Registry and wrapper behavior."""

    def test_default_matchers_registered(self, registry):
        assert set(registry.names()) == {
            "to_have_status",
            "with_log",
            "with_run_info",
            "with_output",
            "with_statistics",
            "with_key_value_store",
            "with_request_queue",
            "with_dataset",
            "with_checker",
            "with_duplicates",
        }

    @pytest.mark.asyncio
    async def test_non_run_result_is_usage_error(self, registry):
        """Matchers refuse anything that did not come from invoke()."""
        with pytest.raises(UsageError, match="forget to invoke"):
            await registry.match("with_output", {"runId": "r1"}, lambda output: None)

    @pytest.mark.asyncio
    async def test_unknown_matcher_is_usage_error(self, registry, orchestrator):
        run = await orchestrator.invoke(actor_id="X")

        with pytest.raises(UsageError):
            await registry.match("to_be_great", run, None)

    @pytest.mark.asyncio
    async def test_register_custom_matcher(self, registry, orchestrator):
        async def always(ctx: MatchContext) -> Verdict:
            return Verdict(passed=False, message=ctx.format("nope"))

        registry.register("always_fails", always)
        run = await orchestrator.invoke(actor_id="X")

        verdict = await registry.match("always_fails", run, None)

        assert not verdict.passed
        assert run.link in verdict.message


class TestCallbackAdapter:
    """Tests for callback_value."""

    @pytest.mark.asyncio
    async def test_returning_passes(self):
        verdict = await callback_value(lambda value: None, 1, str)

        assert verdict.passed

    @pytest.mark.asyncio
    async def test_raising_fails_with_formatted_message(self):
        verdict = await callback_value(raise_with("bad value"), 1, lambda m: f"[run] {m}")

        assert not verdict.passed
        assert verdict.message == "[run] bad value"

    @pytest.mark.asyncio
    async def test_async_callback(self):
        async def check(value):
            assert value == 2, "expected two"

        verdict = await callback_value(check, 1, str)

        assert not verdict.passed
        assert verdict.message == "expected two"

    @pytest.mark.asyncio
    async def test_non_callable_is_usage_error(self):
        with pytest.raises(UsageError):
            await callback_value("not callable", 1, str)


class TestStatusAndLog:
    """to_have_status, with_log, with_run_info."""

    @pytest.mark.asyncio
    async def test_status_match(self, registry, orchestrator):
        run = await orchestrator.invoke(actor_id="X")

        verdict = await registry.match("to_have_status", run, "SUCCEEDED")

        assert verdict.passed

    @pytest.mark.asyncio
    async def test_status_mismatch(self, registry, orchestrator, fake_client):
        fake_client.final_status["X"] = "FAILED"
        run = await orchestrator.invoke(actor_id="X")

        verdict = await registry.match("to_have_status", run, "SUCCEEDED")

        assert not verdict.passed
        assert 'got "FAILED"' in verdict.message

    @pytest.mark.asyncio
    async def test_log_handed_to_callback(self, registry, orchestrator, fake_client):
        run = await orchestrator.invoke(actor_id="X")
        fake_client.logs[run.run_id] = "INFO Crawler finished"
        seen = []

        verdict = await registry.match("with_log", run, seen.append)

        assert verdict.passed
        assert seen == ["INFO Crawler finished"]

    @pytest.mark.asyncio
    async def test_run_info_handed_to_callback(self, registry, orchestrator):
        run = await orchestrator.invoke(actor_id="X")
        seen = []

        await registry.match("with_run_info", run, seen.append)

        assert seen[0]["id"] == run.run_id
        assert seen[0]["stats"] == {"computeUnits": 0.1}


class TestRecordMatchers:
    """with_output, with_key_value_store, with_statistics."""

    @pytest.mark.asyncio
    async def test_missing_key_fails_with_key_and_link(self, registry, orchestrator):
        """A missing record fails with its key name and the run link."""
        run = await orchestrator.invoke(actor_id="X")

        verdict = await registry.match(
            "with_key_value_store", run, lambda record: None, {"key_name": "SCREENSHOT"}
        )

        assert verdict.passed is False
        assert "SCREENSHOT" in verdict.message
        assert run.link in verdict.message

    @pytest.mark.asyncio
    async def test_key_value_store_requires_key_name(self, registry, orchestrator):
        run = await orchestrator.invoke(actor_id="X")

        verdict = await registry.match("with_key_value_store", run, lambda record: None)

        assert not verdict.passed
        assert "key_name" in verdict.message

    @pytest.mark.asyncio
    async def test_key_value_store_present(self, registry, orchestrator, fake_client):
        run = await orchestrator.invoke(actor_id="X")
        fake_client.records[(run.data.default_key_value_store_id, "STATE")] = {"done": True}
        seen = []

        verdict = await registry.match("with_key_value_store", run, seen.append, {"keyName": "STATE"})

        assert verdict.passed
        assert seen[0]["value"] == {"done": True}

    @pytest.mark.asyncio
    async def test_output_missing(self, registry, orchestrator):
        run = await orchestrator.invoke(actor_id="X")

        verdict = await registry.match("with_output", run, lambda record: None)

        assert not verdict.passed
        assert "No OUTPUT" in verdict.message

    @pytest.mark.asyncio
    async def test_output_callback_failure(self, registry, orchestrator, fake_client):
        fake_client.outputs["X"] = {"items": 0}
        run = await orchestrator.invoke(actor_id="X")

        verdict = await registry.match("with_output", run, raise_with("expected items"))

        assert not verdict.passed
        assert "expected items" in verdict.message

    @pytest.mark.asyncio
    async def test_statistics_index(self, registry, orchestrator, fake_client):
        run = await orchestrator.invoke(actor_id="X")
        store = run.data.default_key_value_store_id
        fake_client.records[(store, "SDK_CRAWLER_STATISTICS_1")] = {"requestsFailed": 0}
        seen = []

        verdict = await registry.match("with_statistics", run, seen.append, {"index": 1})

        assert verdict.passed
        assert seen == [{"requestsFailed": 0}]

    @pytest.mark.asyncio
    async def test_statistics_missing(self, registry, orchestrator):
        run = await orchestrator.invoke(actor_id="X")

        verdict = await registry.match("with_statistics", run, lambda stats: None)

        assert not verdict.passed
        assert "SDK_CRAWLER_STATISTICS_0" in verdict.message


class TestDatasetAndQueue:
    """with_dataset, with_request_queue."""

    @pytest.mark.asyncio
    async def test_dataset_counts_corrected_without_options(self, registry, orchestrator, fake_client):
        """Stale metadata counts are recomputed from the fetched items."""
        run = await orchestrator.invoke(actor_id="X")
        dataset_id = run.data.default_dataset_id
        fake_client.datasets[dataset_id] = {"id": dataset_id, "itemCount": 0, "cleanItemCount": 0}
        fake_client.items[dataset_id] = [{"a": 1}, {}, {"a": 3}]
        seen = []

        verdict = await registry.match("with_dataset", run, seen.append)

        assert verdict.passed
        assert seen[0]["info"]["itemCount"] == 3
        assert seen[0]["info"]["cleanItemCount"] == 2
        assert seen[0]["dataset"]["items"] == [{"a": 1}, {}, {"a": 3}]

    @pytest.mark.asyncio
    async def test_dataset_with_options_keeps_metadata(self, registry, orchestrator, fake_client):
        run = await orchestrator.invoke(actor_id="X")
        dataset_id = run.data.default_dataset_id
        fake_client.datasets[dataset_id] = {"id": dataset_id, "itemCount": 10}
        fake_client.items[dataset_id] = [{"a": i} for i in range(10)]
        seen = []

        await registry.match("with_dataset", run, seen.append, {"limit": 2})

        assert seen[0]["info"]["itemCount"] == 10
        assert seen[0]["dataset"]["count"] == 2

    @pytest.mark.asyncio
    async def test_request_queue(self, registry, orchestrator, fake_client):
        run = await orchestrator.invoke(actor_id="X")
        fake_client.queues[run.data.default_request_queue_id] = {"handledRequestCount": 5}
        seen = []

        verdict = await registry.match("with_request_queue", run, seen.append)

        assert verdict.passed
        assert seen == [{"handledRequestCount": 5}]


class TestCrossJobMatchers:
    """with_checker, with_duplicates."""

    @pytest.mark.asyncio
    async def test_checker_requires_task_or_function(self, registry, orchestrator, fake_client):
        run = await orchestrator.invoke(actor_id="X")

        verdict = await registry.match("with_checker", run, lambda result: None)

        assert not verdict.passed
        assert "functional_checker" in verdict.message
        assert len(fake_client.started) == 1

    @pytest.mark.asyncio
    async def test_checker_runs_auxiliary_actor(self, registry, orchestrator, fake_client):
        fake_client.outputs[RESULTS_CHECKER_ACTOR] = {"totalItemCount": 3, "badItemCount": 0}
        run = await orchestrator.invoke(actor_id="X")
        seen = []

        verdict = await registry.match(
            "with_checker",
            run,
            seen.append,
            {"functional_checker": "() => ({ url: (url) => !!url })"},
        )

        assert verdict.passed
        checker_call = fake_client.started[-1]
        assert checker_call["target"] == RESULTS_CHECKER_ACTOR
        assert checker_call["input"]["apifyStorageId"] == run.data.default_dataset_id
        assert checker_call["input"]["functionalChecker"].startswith("() =>")
        assert seen[0]["output"] == {"totalItemCount": 3, "badItemCount": 0}

    @pytest.mark.asyncio
    async def test_checker_task_on_record_key(self, registry, orchestrator, fake_client):
        fake_client.outputs["user/checker-task"] = {"ok": True}
        run = await orchestrator.invoke(actor_id="X")

        verdict = await registry.match(
            "with_checker", run, lambda result: None, {"task_id": "user/checker-task", "record_key": "OUTPUT"}
        )

        assert verdict.passed
        checker_call = fake_client.started[-1]
        assert checker_call["kind"] == "task"
        assert checker_call["input"]["apifyStorageId"] == run.data.default_key_value_store_id
        assert checker_call["input"]["recordKey"] == "OUTPUT"

    @pytest.mark.asyncio
    async def test_checker_failed_run(self, registry, orchestrator, fake_client):
        fake_client.final_status[RESULTS_CHECKER_ACTOR] = "FAILED"
        run = await orchestrator.invoke(actor_id="X")

        verdict = await registry.match(
            "with_checker", run, lambda result: None, {"functional_checker": "() => ({})"}
        )

        assert not verdict.passed
        assert "Check the log" in verdict.message

    @pytest.mark.asyncio
    async def test_duplicates_requires_fields(self, registry, orchestrator):
        run = await orchestrator.invoke(actor_id="X")

        verdict = await registry.match("with_duplicates", run, lambda result: None, {"fields": "url"})

        assert not verdict.passed
        assert "fields" in verdict.message

    @pytest.mark.asyncio
    async def test_duplicates_runs_auxiliary_actor(self, registry, orchestrator, fake_client):
        fake_client.outputs[DUPLICATIONS_CHECKER_ACTOR] = []
        run = await orchestrator.invoke(actor_id="X")
        seen = []

        verdict = await registry.match("with_duplicates", run, seen.append, {"fields": ["url"]})

        assert verdict.passed
        checker_call = fake_client.started[-1]
        assert checker_call["target"] == DUPLICATIONS_CHECKER_ACTOR
        assert checker_call["input"]["datasetId"] == run.data.default_dataset_id
        assert checker_call["input"]["fields"] == ["url"]
        assert seen[0]["output"] == {}


class TestOptions:
    """Option consumption and function serialization."""

    def test_next_options_left_to_right(self):
        ctx = MatchContext(
            run_result=None,
            expected=None,
            args=[{"a": 1}, None],
            client=None,
            invoker=None,
            settle_delay=None,
            format=str,
        )

        assert ctx.next_options() == {"a": 1}
        assert ctx.next_options() == {}
        assert ctx.next_options() == {}

    def test_next_options_rejects_non_dict(self):
        ctx = MatchContext(None, None, ["oops"], None, None, None, str)

        with pytest.raises(UsageError):
            ctx.next_options()

    def test_stringify_function_returns_source(self):
        def pre_check(item):
            return item.get("url")

        source = stringify_function(pre_check)

        assert source.startswith("def pre_check(item):")
        assert 'return item.get("url")' in source

    def test_stringify_passes_strings_through(self):
        assert stringify_function("(item) => true") == "(item) => true"
