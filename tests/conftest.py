from __future__ import annotations

import pytest

from ciflow.ui.console import Console, set_console


@pytest.fixture(autouse=True)
def quiet_console():
    console = Console(quiet=True)
    set_console(console)
    yield console
    set_console(Console())
