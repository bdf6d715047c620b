"""
Host harness adapter: declares and runs test programs.
"""

from .runner import SpecRunner, AsyncExpectation, compile_filter
from .reporter import ConsoleReporter
from .loader import ModuleProgramLoader, TestContext

__all__ = [
    "SpecRunner",
    "AsyncExpectation",
    "compile_filter",
    "ConsoleReporter",
    "ModuleProgramLoader",
    "TestContext",
]
