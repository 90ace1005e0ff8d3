"""Helpers shared by the childctl tests."""

import logging
import os
import pathlib
import sys
import threading
import time
from collections.abc import Callable

FIXTURES_DIR: pathlib.Path = pathlib.Path(__file__).parent / "fixtures"
LOADER_FIXTURE: pathlib.Path = FIXTURES_DIR / "loader.py"
BROKEN_LOADER_FIXTURE: pathlib.Path = FIXTURES_DIR / "broken_loader.py"
MISSING_MODULE: str = "childctl_fixture_missing_module"


class ExitRecorder:
    """Stand-in for process termination that records exit codes."""

    codes: list[int]
    called: threading.Event

    def __init__(self) -> None:
        """Initialize an empty recorder."""
        self.codes = []
        self.called = threading.Event()

    def __call__(self, code: int) -> None:
        """Record one exit request.

        :param code: Requested exit code.
        """
        self.codes.append(code)
        self.called.set()


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    """Poll ``predicate`` until it holds or ``timeout`` elapses.

    :param predicate: Condition to wait for.
    :param timeout: Maximum wait in seconds.
    :returns: Final predicate value.
    """
    deadline: float = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate() is True:
            return True
        time.sleep(0.01)
    return predicate()


def socket_file_exists(path: str | None) -> bool:
    """Report whether a socket file is still present.

    :param path: Socket path or named pipe address.
    :returns: ``True`` when a POSIX socket file remains.
    """
    if path is None or sys.platform == "win32":
        return False
    return os.path.exists(path)


def live_thread_names(key: str) -> list[str]:
    """Return names of running threads that belong to one manager.

    :param key: Manager key.
    :returns: Thread names containing ``key``.
    """
    return [thread.name for thread in threading.enumerate() if key in thread.name]


class RecordList(logging.Handler):
    """Logging handler that keeps every record it receives."""

    records: list[logging.LogRecord]

    def __init__(self) -> None:
        """Initialize an empty handler."""
        super().__init__(level=logging.DEBUG)
        self.records = []

    def emit(self, record: logging.LogRecord) -> None:
        """Keep one record.

        :param record: Emitted record.
        """
        self.records.append(record)

    def messages(self) -> list[str]:
        """Return the formatted messages received so far.

        :returns: Message strings in emission order.
        """
        return [record.getMessage() for record in self.records]
