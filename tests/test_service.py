"""
End-to-end tests for TesterService against the in-memory platform.
"""

import pytest

from jobtester.config import TesterInput
from jobtester.engine.errors import AggregateFailure, UsageError
from jobtester.engine.fingerprint import CALLS_KEY
from jobtester.engine.retry_controller import ExecRelauncher, PlatformRelauncher, Relauncher, RetryState
from jobtester.harness.loader import ModuleProgramLoader
from jobtester.infra.settings import Settings
from jobtester.service import (
    TesterService,
    create_relauncher,
    resolve_test_name,
    tester_output_url,
    tester_run_url,
)

PROGRAM = '''
def define(ctx):
    @ctx.describe("Scraper")
    def _():
        @ctx.it("T1 finishes")
        async def _():
            run = await ctx.invoke(actor_id="X", input={"maxItems": 1})
            await ctx.expect_async(run).to_have_status(ctx.RunStatus.SUCCEEDED)

        @ctx.it("T2 finishes")
        async def _():
            run = await ctx.invoke(actor_id="Y", input=ctx.custom_data)
            await ctx.expect_async(run).to_have_status("SUCCEEDED")
'''


class RecordingRelauncher(Relauncher):
    def __init__(self):
        self.inputs = []

    async def relaunch(self, run_input: dict) -> None:
        self.inputs.append(run_input)


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    async def notify(self, notification):
        self.sent.append(notification)
        return {}


@pytest.fixture
def relauncher():
    return RecordingRelauncher()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def make_service(fake_client, memory_store, no_sleep, relauncher, notifier, tmp_path):
    def factory(tester_input: TesterInput) -> TesterService:
        return TesterService(
            settings=Settings(state_dir=tmp_path),
            tester_input=tester_input,
            client=fake_client,
            store=memory_store,
            loader=ModuleProgramLoader(tmp_path / "program"),
            notifier=notifier,
            relauncher=relauncher,
            sleep=no_sleep,
        )
    return factory


class TestPass:
    """A complete pass."""

    @pytest.mark.asyncio
    async def test_passing_program(self, make_service, fake_client, memory_store, notifier):
        service = make_service(TesterInput(test_spec=PROGRAM, custom_data={"q": "x"}))

        decision = await service.run()

        assert decision.state is RetryState.TERMINAL_SUCCESS
        assert decision.summary.total_spec_count == 2
        assert [call["target"] for call in fake_client.started] == ["X", "Y"]
        assert fake_client.started[1]["input"] == {"q": "x"}
        assert len(memory_store.values[CALLS_KEY]) == 2
        assert "suite2" in memory_store.values["OUTPUT"]
        assert notifier.sent == []

    @pytest.mark.asyncio
    async def test_failing_program_notifies(self, make_service, fake_client, memory_store, notifier):
        fake_client.final_status["X"] = "FAILED"
        service = make_service(TesterInput(test_spec=PROGRAM))

        with pytest.raises(AggregateFailure) as exc_info:
            await service.run()

        assert exc_info.value.summary.failing_spec_names == ["Actor tests Scraper T1 finishes"]
        assert "OUTPUT" in memory_store.values
        assert notifier.sent[0].subject == "Actor tests has failing tests"

    @pytest.mark.asyncio
    async def test_retry_reruns_only_failing_specs(self, make_service, fake_client, relauncher, notifier):
        """One relaunch narrowed to the failing spec; the second failure is final."""
        fake_client.final_status["X"] = "FAILED"

        first = await make_service(TesterInput(test_spec=PROGRAM, retry_failed_tests=True)).run()

        assert first.state is RetryState.RELAUNCH
        assert notifier.sent == []
        retry_input = relauncher.inputs[0]
        assert retry_input["retryFailedTests"] is False
        assert retry_input["retryEpoch"] == 1

        second = make_service(TesterInput.model_validate(retry_input))
        with pytest.raises(AggregateFailure):
            await second.run()

        assert [call["target"] for call in fake_client.started] == ["X", "Y", "X"]
        assert len(relauncher.inputs) == 1
        assert len(notifier.sent) == 1

    @pytest.mark.asyncio
    async def test_restart_reuses_recorded_runs(self, make_service, fake_client):
        """A second pass in the same epoch resolves to the recorded runs."""
        await make_service(TesterInput(test_spec=PROGRAM)).run()
        await make_service(TesterInput(test_spec=PROGRAM)).run()

        assert len(fake_client.started) == 2

    @pytest.mark.asyncio
    async def test_custom_test_name(self, make_service, memory_store):
        await make_service(TesterInput(test_spec=PROGRAM, test_name="Nightly")).run()

        output = memory_store.values["OUTPUT"]
        assert output["suite1"]["description"] == "Nightly"


class TestUsage:
    @pytest.mark.asyncio
    async def test_missing_program(self, make_service):
        with pytest.raises(UsageError, match="testSpec"):
            await make_service(TesterInput()).run()

    @pytest.mark.asyncio
    async def test_broken_program(self, make_service, memory_store):
        with pytest.raises(UsageError):
            await make_service(TesterInput(test_spec="def define(ctx):\n    raise NotImplementedError\n")).run()

        assert memory_store.writes == [CALLS_KEY]


class TestAbortSignal:
    @pytest.mark.asyncio
    async def test_aborts_recorded_runs(self, make_service, fake_client):
        await make_service(TesterInput(test_spec=PROGRAM)).run()

        result = await make_service(TesterInput(is_abort_signal=True)).run()

        assert result is None
        assert fake_client.aborted == ["run1", "run2"]


class TestHelpers:
    @pytest.mark.asyncio
    async def test_test_name_from_task(self, fake_client):
        fake_client.tasks["me~nightly"] = {"name": "nightly-check"}
        settings = Settings(task_id="me~nightly")

        assert await resolve_test_name(TesterInput(), settings, fake_client) == "nightly-check"
        assert await resolve_test_name(TesterInput(test_name="Mine"), settings, fake_client) == "Mine"
        assert await resolve_test_name(TesterInput(), Settings(), fake_client) == "Actor tests"

    def test_urls(self):
        settings = Settings(
            api_url="https://api.example.com",
            console_url="https://console.example.com",
            run_id="r1",
            actor_id="me/tester",
            default_kv_id="kv1",
        )

        assert tester_run_url(settings) == "https://console.example.com/actors/me~tester/runs/r1"
        assert tester_output_url(settings) == (
            "https://api.example.com/v2/key-value-stores/kv1/records/OUTPUT?disableRedirect=true"
        )
        assert tester_run_url(Settings()) is None
        assert tester_output_url(Settings()) is None

    def test_local_relauncher_keeps_cli_flags(self, fake_client, tmp_path):
        settings = Settings(state_dir=str(tmp_path))

        relauncher = create_relauncher(settings, fake_client, ["--verbose", "--log-dir", "out"])

        assert isinstance(relauncher, ExecRelauncher)
        assert relauncher.global_args == ["--verbose", "--log-dir", "out"]
        assert relauncher.input_path == tmp_path / "RETRY_INPUT.json"

    def test_platform_relauncher_on_platform(self, fake_client):
        settings = Settings(run_id="r1", actor_id="me~tester", default_kv_id="kv1")

        relauncher = create_relauncher(settings, fake_client, ["--verbose"])

        assert isinstance(relauncher, PlatformRelauncher)
