"""Tests for the parent-side child manager."""

import importlib
import json
import logging
import os
import pathlib
import threading
from multiprocessing.connection import Client
from multiprocessing.connection import Connection
from multiprocessing.connection import Listener

import pytest
from support import BROKEN_LOADER_FIXTURE
from support import LOADER_FIXTURE
from support import MISSING_MODULE
from support import ExitRecorder
from support import RecordList
from support import live_thread_names
from support import socket_file_exists
from support import wait_until

from childctl import endpoint as endpoint_module
from childctl import BindError
from childctl import ChildClient
from childctl import ChildManager
from childctl import ChildNotConnectedError
from childctl import LoaderError
from childctl import ManagerClosedError
from childctl import MANAGER_CHILD_UNRESPONSIVE
from childctl import MANAGER_MESSAGE_HANDLING_FAILED
from childctl import RequestTimeoutError
from childctl import SocketRemovalError
from childctl.endpoint import parse_socket_url
from childctl.environment import BOOTSTRAP_HOOK
from childctl.environment import HOOKS_VARIABLE
from childctl.environment import LOADER_VARIABLE
from childctl.environment import SOCKET_VARIABLE
from childctl.environment import TELEMETRY_HOOK
from childctl.environment import TELEMETRY_VARIABLE
from childctl.registry import LoaderRegistry


def _connect_raw(manager: ChildManager) -> Connection:
    """Open a bare connection to the manager endpoint.

    :param manager: Listening manager.
    :returns: Raw connection.
    """
    url: str | None = manager.get_socket_url()
    assert url is not None
    address, family = parse_socket_url(url)
    return Client(address, family=family)


def test_listen_exposes_socket_path_and_url(manager: ChildManager) -> None:
    """The socket path is unknown before listen and bound afterwards."""
    assert manager.get_socket_path() is None
    assert manager.get_socket_url() is None

    path: str = manager.listen()
    assert manager.get_socket_path() == path
    url: str | None = manager.get_socket_url()
    assert url is not None
    assert url.endswith(path) is True
    assert manager.key in path


def test_listen_again_regenerates_path(manager: ChildManager) -> None:
    """Each listen binds a fresh path and releases the previous one."""
    first_path: str = manager.listen()
    second_path: str = manager.listen()
    assert first_path != second_path
    assert socket_file_exists(first_path) is False
    assert manager.get_socket_path() == second_path


def test_invalid_message_logs_and_exits(
    manager: ChildManager,
    exit_recorder: ExitRecorder,
    caplog: pytest.LogCaptureFixture,
) -> None:
    """A frame that is not JSON is fatal with the message-handling exit code."""
    caplog.set_level(logging.DEBUG)
    manager.listen()
    connection: Connection = _connect_raw(manager)
    try:
        connection.send_bytes(b"NO-WAY")
        assert exit_recorder.called.wait(5.0) is True
    finally:
        connection.close()

    assert exit_recorder.codes == [MANAGER_MESSAGE_HANDLING_FAILED]
    error_records: list[logging.LogRecord] = [
        record for record in caplog.records if record.levelno == logging.ERROR
    ]
    assert len(error_records) == 1
    cause: object = getattr(error_records[0], "err")
    assert isinstance(cause, json.JSONDecodeError) is True
    assert str(cause) == "Expecting value: line 1 column 1 (char 0)"


def test_non_object_message_is_fatal(manager: ChildManager, exit_recorder: ExitRecorder) -> None:
    """Valid JSON that is not an object is protocol corruption too."""
    manager.listen()
    connection: Connection = _connect_raw(manager)
    try:
        connection.send_bytes(b"[1, 2, 3]")
        assert exit_recorder.called.wait(5.0) is True
    finally:
        connection.close()
    assert exit_recorder.codes == [MANAGER_MESSAGE_HANDLING_FAILED]


def test_send_does_not_fail_when_client_is_missing(
    manager: ChildManager,
    caplog: pytest.LogCaptureFixture,
) -> None:
    """Sending, raw sending and keepalive ticks tolerate an absent child."""
    caplog.set_level(logging.DEBUG)
    manager.listen()

    assert manager.send(None, "name", {"requestId": "foo"}) is False
    assert manager._send({"requestId": "foo"}) is False
    manager._manage_keep_alive()

    error_records: list[logging.LogRecord] = [
        record for record in caplog.records if record.levelno >= logging.ERROR
    ]
    assert error_records == []


def test_send_before_listen_is_a_no_op(manager: ChildManager) -> None:
    """Calls before listen behave like calls without a child."""
    assert manager.send(None, "name", None) is False
    manager._manage_keep_alive()


def test_request_without_child_fails_future(manager: ChildManager) -> None:
    """Requests report delivery failure instead of waiting forever."""
    manager.listen()
    future = manager.request("status")
    with pytest.raises(ChildNotConnectedError):
        future.result(timeout=1.0)


def test_register_local_loader() -> None:
    """A registered loader resolves an otherwise missing module."""
    manager: ChildManager = ChildManager(loader=LOADER_FIXTURE)
    try:
        manager.register()
        module = importlib.import_module(MISSING_MODULE)
    finally:
        manager.close()
    assert module.loaded is True


def test_register_without_loader_is_a_no_op() -> None:
    """Managers without a loader leave imports untouched."""
    manager: ChildManager = ChildManager()
    try:
        manager.register()
        with pytest.raises(ModuleNotFoundError):
            importlib.import_module(MISSING_MODULE)
    finally:
        manager.close()


def test_register_loader_without_resolve_hook_fails_fast() -> None:
    """A loader module without resolve() is rejected before any import."""
    manager: ChildManager = ChildManager(loader=BROKEN_LOADER_FIXTURE)
    try:
        with pytest.raises(LoaderError, match="resolve"):
            manager.register()
        assert LoaderRegistry.instance().lookup(manager.key) is None
        with pytest.raises(ModuleNotFoundError):
            importlib.import_module(MISSING_MODULE)
    finally:
        manager.close()


@pytest.mark.usefixtures("clean_environ")
def test_inject_excludes_telemetry_when_disabled() -> None:
    """enabled=False keeps the telemetry hook out of the environment."""
    context: dict[str, object] = {
        "telemetryConfig": {
            "enabled": False,
            "serviceName": "test-service",
        }
    }
    manager: ChildManager = ChildManager(loader=LOADER_FIXTURE, context=context)
    try:
        manager.inject()
        hooks: str = os.environ[HOOKS_VARIABLE]
        assert TELEMETRY_HOOK not in hooks
        assert "telemetry.py" not in hooks
        assert BOOTSTRAP_HOOK in hooks
        assert TELEMETRY_VARIABLE not in os.environ
        manager.eject()
        assert HOOKS_VARIABLE not in os.environ
        assert LOADER_VARIABLE not in os.environ
    finally:
        manager.close()


@pytest.mark.usefixtures("clean_environ")
def test_inject_includes_telemetry_when_enabled() -> None:
    """enabled=True adds the telemetry hook after the bootstrap hook."""
    context: dict[str, object] = {
        "telemetryConfig": {
            "enabled": True,
            "serviceName": "test-service",
        }
    }
    manager: ChildManager = ChildManager(loader=LOADER_FIXTURE, context=context)
    try:
        manager.inject()
        hooks: str = os.environ[HOOKS_VARIABLE]
        assert TELEMETRY_HOOK in hooks
        assert BOOTSTRAP_HOOK in hooks
        assert hooks.index(BOOTSTRAP_HOOK) < hooks.index(TELEMETRY_HOOK)
        telemetry: object = json.loads(os.environ[TELEMETRY_VARIABLE])
        assert telemetry == {"serviceName": "test-service", "enabled": True}
        manager.eject()
        assert HOOKS_VARIABLE not in os.environ
        assert TELEMETRY_VARIABLE not in os.environ
    finally:
        manager.close()


@pytest.mark.usefixtures("clean_environ")
def test_inject_includes_telemetry_when_enabled_is_omitted() -> None:
    """A telemetry config without enabled counts as enabled."""
    context: dict[str, object] = {"telemetryConfig": {"serviceName": "test-service"}}
    manager: ChildManager = ChildManager(loader=LOADER_FIXTURE, context=context)
    try:
        manager.inject()
        hooks: str = os.environ[HOOKS_VARIABLE]
        assert TELEMETRY_HOOK in hooks
        assert BOOTSTRAP_HOOK in hooks
        manager.eject()
    finally:
        manager.close()


@pytest.mark.usefixtures("clean_environ")
def test_inject_without_telemetry_config() -> None:
    """Without telemetry config only the bootstrap hook is injected."""
    manager: ChildManager = ChildManager(loader=LOADER_FIXTURE, context={})
    try:
        manager.inject()
        hooks: str = os.environ[HOOKS_VARIABLE]
        assert TELEMETRY_HOOK not in hooks
        assert BOOTSTRAP_HOOK in hooks
        manager.eject()
    finally:
        manager.close()


def test_eject_restores_previous_value(clean_environ: None, monkeypatch: pytest.MonkeyPatch) -> None:
    """Existing hook flags survive injection and come back verbatim."""
    _ = clean_environ
    monkeypatch.setenv(HOOKS_VARIABLE, "--import=/opt/other_hook.py")
    manager: ChildManager = ChildManager()
    try:
        manager.inject()
        hooks: str = os.environ[HOOKS_VARIABLE]
        assert hooks.endswith("--import=/opt/other_hook.py") is True
        manager.eject()
        assert os.environ[HOOKS_VARIABLE] == "--import=/opt/other_hook.py"
    finally:
        manager.close()


@pytest.mark.usefixtures("clean_environ")
def test_inject_exports_socket_url_after_listen(manager: ChildManager) -> None:
    """A listening manager tells the child where to connect."""
    manager.listen()
    with manager.inject():
        assert os.environ[SOCKET_VARIABLE] == manager.get_socket_url()
    assert SOCKET_VARIABLE not in os.environ


def test_eject_without_inject_is_safe(manager: ChildManager) -> None:
    """Ejecting with nothing injected does nothing."""
    manager.eject()
    manager.eject()


def test_close_is_idempotent() -> None:
    """Closing twice leaves no socket file and no manager threads."""
    manager: ChildManager = ChildManager()
    path: str = manager.listen()
    manager.close()
    manager.close()

    assert manager.get_socket_path() is None
    assert socket_file_exists(path) is False
    assert live_thread_names(manager.key) == []


def test_close_without_listen() -> None:
    """Close is safe on a manager that never listened."""
    manager: ChildManager = ChildManager()
    manager.close()
    manager.close()


def test_listen_after_close_is_rejected() -> None:
    """A closed manager cannot be reused."""
    manager: ChildManager = ChildManager()
    manager.close()
    with pytest.raises(ManagerClosedError):
        manager.listen()


@pytest.mark.skipif(os.name == "nt", reason="socket files exist only on POSIX")
def test_listen_on_occupied_path_raises_bind_error(
    manager: ChildManager,
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: pathlib.Path,
) -> None:
    """An existing file at the socket path is a bind failure."""
    occupied: str = os.path.join(str(tmp_path), "occupied.sock")
    with open(occupied, "w", encoding="utf-8") as handle:
        handle.write("busy")
    monkeypatch.setattr(endpoint_module, "compute_socket_path", lambda key, generation: occupied)

    with pytest.raises(BindError) as exc_info:
        manager.listen()
    assert exc_info.value.address == occupied
    assert isinstance(exc_info.value.__cause__, OSError) is True
    assert manager.get_socket_path() is None


def test_second_connection_is_rejected(manager: ChildManager) -> None:
    """Only the first connection is kept."""
    manager.listen()
    first: Connection = _connect_raw(manager)
    try:
        assert wait_until(lambda: manager.is_connected) is True
        second: Connection = _connect_raw(manager)
        try:
            assert second.poll(5.0) is True
            with pytest.raises(EOFError):
                second.recv_bytes()
        finally:
            second.close()
        assert manager.is_connected is True
    finally:
        first.close()


def test_request_round_trip_with_child_client(manager: ChildManager) -> None:
    """Replies are correlated to requests and removed from the pending table."""
    manager.listen()
    url: str | None = manager.get_socket_url()
    assert url is not None
    client: ChildClient = ChildClient(url, child_id="child-1")
    client.on("echo", lambda payload: {"echo": payload})
    client.connect()
    try:
        assert wait_until(lambda: manager.child_id == "child-1") is True
        future = manager.request("echo", {"value": 3})
        assert future.result(timeout=5.0) == {"echo": {"value": 3}}
        assert manager._router.pending_count == 0
    finally:
        client.close()


def test_child_request_is_answered_by_handler(manager: ChildManager) -> None:
    """Handler return values answer child requests."""
    manager.handle("sum", lambda payload: sum(payload))
    manager.listen()
    url: str | None = manager.get_socket_url()
    assert url is not None
    client: ChildClient = ChildClient(url)
    client.connect()
    try:
        future = client.request("sum", [1, 2, 3])
        assert future.result(timeout=5.0) == 6
    finally:
        client.close()


def test_send_respects_target_id(manager: ChildManager) -> None:
    """Events addressed to another child are dropped."""
    manager.listen()
    url: str | None = manager.get_socket_url()
    assert url is not None
    received: list[object] = []
    delivered: threading.Event = threading.Event()

    def on_ping(payload: object) -> None:
        """Record one ping payload.

        :param payload: Ping payload.
        """
        received.append(payload)
        delivered.set()

    client: ChildClient = ChildClient(url, child_id="child-1")
    client.on("ping", on_ping)
    client.connect()
    try:
        assert wait_until(lambda: manager.child_id == "child-1") is True
        assert manager.send("child-2", "ping", {"n": 1}) is False
        assert manager.send("child-1", "ping", {"n": 2}) is True
        assert delivered.wait(5.0) is True
        assert received == [{"n": 2}]
    finally:
        client.close()


def test_keep_alive_probe_is_acknowledged(manager: ChildManager) -> None:
    """A responsive child keeps the miss counter at zero."""
    manager.listen()
    url: str | None = manager.get_socket_url()
    assert url is not None
    client: ChildClient = ChildClient(url)
    client.connect()
    try:
        assert wait_until(lambda: manager.is_connected) is True
        manager._manage_keep_alive()
        assert wait_until(lambda: manager._router.pending_count == 0) is True
        manager._manage_keep_alive()
        assert manager._supervisor.missed_beats == 0
    finally:
        client.close()


def test_silent_child_is_escalated(manager: ChildManager, exit_recorder: ExitRecorder) -> None:
    """A child that never answers probes ends with the unresponsive exit code."""
    manager.listen()
    connection: Connection = _connect_raw(manager)
    try:
        assert wait_until(lambda: manager.is_connected) is True
        manager._manage_keep_alive()
        manager._manage_keep_alive()
        assert exit_recorder.codes == []
        manager._manage_keep_alive()
    finally:
        connection.close()
    assert exit_recorder.codes == [MANAGER_CHILD_UNRESPONSIVE]


def test_close_fails_pending_requests(manager: ChildManager) -> None:
    """Pending requests fail with ManagerClosedError on close."""
    manager.listen()
    connection: Connection = _connect_raw(manager)
    try:
        assert wait_until(lambda: manager.is_connected) is True
        future = manager.request("never-answered")
        manager.close()
        with pytest.raises(ManagerClosedError):
            future.result(timeout=1.0)
    finally:
        connection.close()
    assert manager._router.pending_count == 0


def test_request_times_out_without_reply(manager: ChildManager) -> None:
    """An unanswered request fails after its timeout and leaves the table."""
    manager.listen()
    connection: Connection = _connect_raw(manager)
    try:
        assert wait_until(lambda: manager.is_connected) is True
        future = manager.request("never-answered", None, timeout=0.2)
        with pytest.raises(RequestTimeoutError):
            future.result(timeout=5.0)
        assert manager._router.pending_count == 0
    finally:
        connection.close()


def test_request_answered_before_timeout(manager: ChildManager) -> None:
    """A timely reply wins over the timeout."""
    manager.listen()
    url: str | None = manager.get_socket_url()
    assert url is not None
    client: ChildClient = ChildClient(url)
    client.on("double", lambda payload: payload * 2)
    client.connect()
    try:
        assert wait_until(lambda: manager.is_connected) is True
        future = manager.request("double", 21, timeout=5.0)
        assert future.result(timeout=5.0) == 42
        assert wait_until(lambda: f"childctl-timeout-{manager.key}" not in live_thread_names(manager.key)) is True
    finally:
        client.close()


def test_socket_removal_failure_is_raised_after_release(
    manager: ChildManager,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Close releases threads and requests before reporting the removal error."""
    original_close = Listener.close

    def failing_close(listener: Listener) -> None:
        """Close the listener, then report a removal failure.

        :param listener: Listener being closed.
        :raises PermissionError: Always.
        """
        original_close(listener)
        raise PermissionError(13, "Permission denied")

    monkeypatch.setattr(Listener, "close", failing_close)
    manager.listen()
    connection: Connection = _connect_raw(manager)
    try:
        assert wait_until(lambda: manager.is_connected) is True
        future = manager.request("never-answered")
        with pytest.raises(SocketRemovalError) as exc_info:
            manager.close()
        assert isinstance(exc_info.value.__cause__, PermissionError) is True
        with pytest.raises(ManagerClosedError):
            future.result(timeout=1.0)
    finally:
        connection.close()

    assert f"childctl-accept-{manager.key}" not in live_thread_names(manager.key)
    assert f"childctl-keepalive-{manager.key}" not in live_thread_names(manager.key)
    assert manager._router.pending_count == 0


def test_injected_logger_receives_lifecycle_records() -> None:
    """Endpoint and manager lifecycle records reach the owner's logger."""
    owner_logger: logging.Logger = logging.getLogger("childctl-test-owner")
    owner_logger.setLevel(logging.DEBUG)
    collected: RecordList = RecordList()
    owner_logger.addHandler(collected)
    manager: ChildManager = ChildManager(logger=owner_logger)
    try:
        path: str = manager.listen()
        url: str | None = manager.get_socket_url()
        assert url is not None
        client: ChildClient = ChildClient(url, child_id="c1")
        client.connect()
        try:
            assert wait_until(lambda: manager.child_id == "c1") is True
        finally:
            client.close()
        manager.close()
    finally:
        manager.close()
        owner_logger.removeHandler(collected)

    messages: list[str] = collected.messages()
    assert f"Control endpoint listening on {path}" in messages
    assert f"Child connected on {path}" in messages
    assert f"Control endpoint on {path} closed" in messages
    assert any(message.startswith("Child c1 attached") for message in messages) is True
