"""End-to-end test with a real instrumented child interpreter."""

import subprocess
import sys
import textwrap
import threading

import pytest
from support import LOADER_FIXTURE
from support import MISSING_MODULE

from childctl.manager import ChildManager

CHILD_SCRIPT: str = textwrap.dedent(
    f"""
    import importlib
    import time

    from childctl.child import active_client

    client = active_client()
    if client is None:
        raise SystemExit("bootstrap did not attach")
    client.on("double", lambda payload: payload * 2)
    module = importlib.import_module({MISSING_MODULE!r})
    client.request("ready", {{"loaded": module.loaded}}).result(timeout=10)
    while client.is_connected:
        time.sleep(0.05)
    """
)


@pytest.mark.skipif(sys.platform == "win32", reason="named pipe child spawn is not covered here")
def test_instrumented_child_attaches_and_answers(clean_environ: None) -> None:
    """An injected child connects, resolves through the loader and serves requests."""
    manager: ChildManager = ChildManager(loader=LOADER_FIXTURE)
    ready: threading.Event = threading.Event()
    reports: list[object] = []

    def on_ready(payload: object) -> bool:
        """Record the child's readiness report.

        :param payload: Report payload.
        :returns: Acknowledgment.
        """
        reports.append(payload)
        ready.set()
        return True

    manager.handle("ready", on_ready)
    manager.listen()
    process: subprocess.Popen[bytes] | None = None
    try:
        with manager.inject():
            process = subprocess.Popen(
                [sys.executable, "-c", CHILD_SCRIPT],
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )

        assert ready.wait(20.0) is True
        assert reports == [{"loaded": True}]
        assert manager.child_id == str(process.pid)
        assert manager.request("double", 21).result(timeout=10) == 42

        manager.close()
        _, stderr = process.communicate(timeout=20)
        assert process.returncode == 0, stderr.decode("utf-8", "replace")
    finally:
        manager.close()
        if process is not None and process.poll() is None:
            process.kill()
            process.wait()
