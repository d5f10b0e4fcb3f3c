"""
Shared pytest fixtures for devhost tests.

Processes are real: helpers build `sys.executable -c ...` command lines so
the tests only need a Python interpreter on the machine.
"""

import sys
from typing import List

import pytest

from devhost.process import ProcessRunner
from devhost.ui.console import Console, set_console


def py(code: str) -> List[str]:
    """Command + args that run `code` in a fresh interpreter."""
    return [sys.executable, "-c", code]


@pytest.fixture(autouse=True)
def console():
    """A fresh, non-debug console per test."""
    c = Console(debug=False)
    set_console(c)
    return c


@pytest.fixture
def runner() -> ProcessRunner:
    return ProcessRunner(grace_period=1.0)
