"""
Tester Service - wires one test pass end to end.

    input -> (abort signal? abort recorded runs, stop)
          -> register abort webhook
          -> load CALLS -> orchestrator -> matchers -> runner
          -> load + run test program
          -> RetryController.finish (OUTPUT, notify / relaunch / fail)

Usage:
    decision = await run_tester(get_settings(), input_path="input.json")
"""

import asyncio
import logging
import signal
from pathlib import Path
from typing import Optional

from jobtester.config import (
    DEFAULT_TEST_NAME,
    TesterInput,
    load_input_file,
    load_input_from_store,
)
from jobtester.engine.checkpoint import Checkpoint
from jobtester.engine.errors import RemoteInvocationError, UsageError
from jobtester.engine.fingerprint import FingerprintCache
from jobtester.engine.matchers import MatcherContext, MatcherRegistry
from jobtester.engine.orchestrator import RunOrchestrator, SettleDelay, create_run_link
from jobtester.engine.recovery import (
    abort_recorded_runs,
    register_abort_webhook,
    register_timeout_webhook,
)
from jobtester.engine.retry_controller import (
    ExecRelauncher,
    PlatformRelauncher,
    Relauncher,
    RetryController,
    RetryDecision,
)
from jobtester.harness.loader import ModuleProgramLoader, TestContext
from jobtester.harness.reporter import ConsoleReporter
from jobtester.harness.runner import SpecRunner
from jobtester.infra.notifier import Notifier
from jobtester.infra.settings import Settings
from jobtester.infra.storage import KeyValueStore, LocalKeyValueStore, RemoteKeyValueStore
from jobtester.platform.client import PlatformClient

logger = logging.getLogger(__name__)

LOCAL_STORE_DIRNAME = "key_value_store"
RETRY_INPUT_FILENAME = "RETRY_INPUT.json"


def create_store(settings: Settings, client: PlatformClient) -> KeyValueStore:
    """The tester's own store: the run's default store on the platform, a directory locally."""
    if settings.is_on_platform:
        return RemoteKeyValueStore(client, settings.default_kv_id)
    return LocalKeyValueStore(Path(settings.state_dir) / LOCAL_STORE_DIRNAME)


def create_relauncher(
    settings: Settings,
    client: PlatformClient,
    cli_args: Optional[list[str]] = None,
) -> Relauncher:
    """cli_args are the global CLI flags repeated on a local re-exec."""
    if settings.is_on_platform and settings.actor_id:
        return PlatformRelauncher(client, settings.run_id, settings.actor_id)
    return ExecRelauncher(
        Path(settings.state_dir) / RETRY_INPUT_FILENAME,
        global_args=cli_args,
    )


def tester_run_url(settings: Settings) -> Optional[str]:
    """Deep link to the tester's own run, when it is a platform run."""
    if not settings.run_id or not (settings.actor_id or settings.task_id):
        return None
    return create_run_link(
        settings.run_id,
        actor_id=settings.actor_id,
        task_id=settings.task_id,
        console_url=settings.console_url,
    )


def tester_output_url(settings: Settings) -> Optional[str]:
    if not settings.is_on_platform:
        return None
    return (
        f"{settings.api_url}/v2/key-value-stores/{settings.default_kv_id}"
        f"/records/OUTPUT?disableRedirect=true"
    )


async def resolve_test_name(
    tester_input: TesterInput,
    settings: Settings,
    client: PlatformClient,
) -> str:
    """Explicit test name, else this run's task name, else the default."""
    if tester_input.test_name:
        return tester_input.test_name

    if settings.task_id:
        try:
            task = await client.get_task(settings.task_id)
        except RemoteInvocationError as e:
            logger.warning(f"[Service] Could not resolve task name: {e}")
            task = None

        if task and task.get("name"):
            return task["name"]

    return DEFAULT_TEST_NAME


def install_signal_handlers(checkpoint: Checkpoint, task: asyncio.Task) -> None:
    """
    SIGINT / SIGTERM fire the checkpoint, then cancel the main task.

    No-op where the event loop does not support signal handlers.
    """
    loop = asyncio.get_running_loop()

    def handle(signum: int) -> None:
        logger.info(f"[Service] {signal.Signals(signum).name} received, persisting state")

        async def persist_and_stop() -> None:
            await checkpoint.fire()
            task.cancel()

        asyncio.ensure_future(persist_and_stop())

    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, handle, signum)
        except (NotImplementedError, RuntimeError):
            logger.debug(f"[Service] Signal handlers unavailable for {signum}")


class TesterService:
    """
    Runs one tester pass.

    All collaborators are injected so a pass can run against fakes.
    """

    def __init__(
        self,
        settings: Settings,
        tester_input: TesterInput,
        client: PlatformClient,
        store: KeyValueStore,
        checkpoint: Optional[Checkpoint] = None,
        loader: Optional[ModuleProgramLoader] = None,
        notifier: Optional[Notifier] = None,
        relauncher: Optional[Relauncher] = None,
        sleep=asyncio.sleep,
    ):
        self.settings = settings
        self.tester_input = tester_input
        self.client = client
        self.store = store
        self.checkpoint = checkpoint or Checkpoint()
        self.loader = loader or ModuleProgramLoader()
        self.notifier = notifier
        self.relauncher = relauncher
        self._sleep = sleep

    async def abort(self) -> dict:
        """Abort every run recorded in the store named by the input (or our own)."""
        store = self.store
        if self.tester_input.kv:
            store = RemoteKeyValueStore(self.client, self.tester_input.kv)
        return await abort_recorded_runs(self.client, store)

    async def run(self) -> Optional[RetryDecision]:
        """
        Execute the pass.

        Returns:
            The RetryDecision, or None for an abort signal

        Raises:
            UsageError: missing or broken test program
            AggregateFailure: failing specs and no retry left
        """
        tester_input = self.tester_input

        if tester_input.is_abort_signal:
            await self.abort()
            return None

        if tester_input.abort_runs:
            try:
                await register_abort_webhook(self.client, self.settings, tester_input.token)
            except RemoteInvocationError as e:
                logger.warning(f"[Service] Could not register abort webhook: {e}")

        if not tester_input.test_spec:
            raise UsageError('Missing required input "testSpec" parameter')

        test_name = await resolve_test_name(tester_input, self.settings, self.client)
        run_url = tester_run_url(self.settings)

        try:
            await register_timeout_webhook(self.client, self.settings, test_name, run_url)
        except RemoteInvocationError as e:
            logger.warning(f"[Service] Could not register timeout webhook: {e}")

        logger.info(
            f"[Service] Starting '{test_name}' "
            f"(retry epoch {tester_input.retry_epoch}, filter={tester_input.filter or 'none'})"
        )

        cache = await FingerprintCache.load(self.store)
        settle_delay = SettleDelay(self.settings.settle_delay_ms, self._sleep)
        orchestrator = RunOrchestrator(
            client=self.client,
            cache=cache,
            checkpoint=self.checkpoint,
            retry_epoch=tester_input.retry_epoch,
            poll_interval=self.settings.poll_interval,
            settle_delay=settle_delay,
            sleep=self._sleep,
            console_url=self.settings.console_url,
            verbose_logs=tester_input.verbose_logs,
        )
        registry = MatcherRegistry(MatcherContext(
            client=self.client,
            invoker=orchestrator,
            settle_delay=settle_delay,
        ))
        runner = SpecRunner(
            registry=registry,
            test_name=test_name,
            default_timeout_ms=tester_input.default_timeout,
            filter_patterns=tester_input.filter,
            reporters=[ConsoleReporter(verbose=tester_input.verbose_logs)],
        )
        context = TestContext(
            runner=runner,
            invoke=orchestrator.invoke,
            input=tester_input.to_payload(),
            custom_data=dict(tester_input.custom_data),
        )

        try:
            self.loader.load(tester_input.test_spec, context)
            tree = await runner.run()
        finally:
            await cache.flush()
            orchestrator.close()

        controller = RetryController(
            tester_input=tester_input,
            output_store=self.store,
            notifier=self.notifier,
            relauncher=self.relauncher,
            test_name=test_name,
            run_url=run_url,
            output_url=tester_output_url(self.settings),
        )
        return await controller.finish(tree)


async def run_tester(
    settings: Settings,
    input_path: Optional[Path | str] = None,
    input_override: Optional[TesterInput] = None,
    cli_args: Optional[list[str]] = None,
) -> Optional[RetryDecision]:
    """
    Build every collaborator from settings and run one pass.

    Input comes from input_override, else input_path, else the INPUT
    record of the tester's own store. cli_args are forwarded to a
    local retry pass.
    """
    async with PlatformClient(settings.api_url, settings.token) as bootstrap:
        if input_override is not None:
            tester_input = input_override
        elif input_path is not None:
            tester_input = load_input_file(input_path)
        else:
            tester_input = await load_input_from_store(create_store(settings, bootstrap))

    token = tester_input.token or settings.token

    async with PlatformClient(settings.api_url, token) as client:
        checkpoint = Checkpoint()
        service = TesterService(
            settings=settings,
            tester_input=tester_input,
            client=client,
            store=create_store(settings, client),
            checkpoint=checkpoint,
            notifier=Notifier(
                client=client,
                slack_token=tester_input.slack_token,
                slack_channel=tester_input.slack_channel,
                email=tester_input.email,
            ),
            relauncher=create_relauncher(settings, client, cli_args),
        )

        install_signal_handlers(checkpoint, asyncio.current_task())
        return await service.run()
