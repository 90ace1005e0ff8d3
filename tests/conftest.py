"""Shared test fixtures for childctl."""

import sys
from collections.abc import Iterator

import pytest
from support import MISSING_MODULE
from support import ExitRecorder

from childctl import manager as manager_module
from childctl.environment import HOOKS_VARIABLE
from childctl.environment import LOADER_VARIABLE
from childctl.environment import MANAGER_ID_VARIABLE
from childctl.environment import PYTHONPATH_VARIABLE
from childctl.environment import SOCKET_VARIABLE
from childctl.environment import TELEMETRY_VARIABLE
from childctl.manager import ChildManager
from childctl.registry import LoaderRegistry

INJECTED_VARIABLES: tuple[str, ...] = (
    HOOKS_VARIABLE,
    LOADER_VARIABLE,
    MANAGER_ID_VARIABLE,
    PYTHONPATH_VARIABLE,
    SOCKET_VARIABLE,
    TELEMETRY_VARIABLE,
)


@pytest.fixture()
def exit_recorder(monkeypatch: pytest.MonkeyPatch) -> ExitRecorder:
    """Replace process termination with a recorder.

    :param monkeypatch: Pytest monkeypatch fixture.
    :returns: Exit recorder.
    """
    recorder: ExitRecorder = ExitRecorder()
    monkeypatch.setattr(manager_module, "_exit_process", recorder)
    return recorder


@pytest.fixture()
def clean_environ(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Start with every injected variable unset and restore them afterwards.

    :param monkeypatch: Pytest monkeypatch fixture.
    :yields: Control to the active test.
    """
    for name in INJECTED_VARIABLES:
        monkeypatch.delenv(name, raising=False)
    yield


@pytest.fixture()
def manager() -> Iterator[ChildManager]:
    """Provide a manager without loader or context that is always closed.

    :yields: Manager instance.
    """
    created: ChildManager = ChildManager()
    try:
        yield created
    finally:
        created.close()


@pytest.fixture(autouse=True)
def _isolate_loader_state() -> Iterator[None]:
    """Undo loader registrations and fixture imports made by a test.

    :yields: Control to the active test.
    """
    saved_meta_path: list[object] = list(sys.meta_path)
    yield
    sys.meta_path[:] = saved_meta_path
    LoaderRegistry.instance().clear()
    sys.modules.pop(MISSING_MODULE, None)
