"""
Test program loading.

A test program is Python source text defining `define(ctx)`. The loader
imports it as a module through the standard import machinery and hands
it a TestContext, which exposes the declaration API of the runner plus
`invoke` and the process input.
"""

import importlib.util
import logging
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from jobtester.engine.entities import RunStatus
from jobtester.engine.errors import UsageError
from jobtester.harness.runner import SpecRunner

logger = logging.getLogger(__name__)

PROGRAM_FILENAME = "test_program.py"
PROGRAM_MODULE_NAME = "jobtester_test_program"
ENTRY_POINT = "define"


@dataclass
class TestContext:
    """What a test program's define(ctx) receives."""

    __test__ = False

    runner: SpecRunner
    invoke: Callable[..., Awaitable[Any]]
    input: dict = field(default_factory=dict)
    custom_data: dict = field(default_factory=dict)
    RunStatus: type = RunStatus

    @property
    def describe(self):
        return self.runner.describe

    @property
    def it(self):
        return self.runner.it

    @property
    def before_all(self):
        return self.runner.before_all

    @property
    def after_all(self):
        return self.runner.after_all

    @property
    def expect_async(self):
        return self.runner.expect_async


class ModuleProgramLoader:
    """Loads test program source as a throwaway module."""

    def __init__(self, work_dir: Optional[Path | str] = None):
        self.work_dir = Path(work_dir) if work_dir else None

    def load(self, source: str, context: TestContext) -> None:
        """
        Import the program and call its define(ctx).

        Raises:
            UsageError: missing source, import failure or missing entry point
        """
        if not source or not source.strip():
            raise UsageError('Missing required input "testSpec" parameter')

        if self.work_dir is not None:
            self.work_dir.mkdir(parents=True, exist_ok=True)
            self._load_from(self.work_dir, source, context)
            return

        with tempfile.TemporaryDirectory(prefix="jobtester_") as tmp:
            self._load_from(Path(tmp), source, context)

    def _load_from(self, directory: Path, source: str, context: TestContext) -> None:
        path = directory / PROGRAM_FILENAME
        path.write_text(source, encoding="utf-8")

        spec = importlib.util.spec_from_file_location(PROGRAM_MODULE_NAME, path)
        module = importlib.util.module_from_spec(spec)

        try:
            spec.loader.exec_module(module)
        except Exception as e:
            raise UsageError(f"Test program failed to load: {e.__class__.__name__}: {e}") from e

        entry = getattr(module, ENTRY_POINT, None)
        if not callable(entry):
            raise UsageError(f"Test program must define a {ENTRY_POINT}(ctx) function")

        logger.debug(f"[Loader] Declaring specs from {path}")
        try:
            entry(context)
        except UsageError:
            raise
        except Exception as e:
            raise UsageError(f"Test program failed to declare specs: {e.__class__.__name__}: {e}") from e
