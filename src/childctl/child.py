"""Child-side client of the control channel."""

import atexit
import concurrent.futures
import logging
import os
import threading
from collections.abc import Mapping
from multiprocessing.connection import Client
from multiprocessing.connection import Connection

from childctl.endpoint import READ_POLL_SECONDS
from childctl.endpoint import parse_socket_url
from childctl.environment import LOADER_VARIABLE
from childctl.environment import MANAGER_ID_VARIABLE
from childctl.environment import SOCKET_VARIABLE
from childctl.errors import ChildNotConnectedError
from childctl.errors import LoaderError
from childctl.errors import ManagerClosedError
from childctl.errors import MessageHandlingError
from childctl.registry import LoaderRegistry
from childctl.registry import install_finder
from childctl.registry import load_loader
from childctl.router import HELLO_MESSAGE
from childctl.router import KEEPALIVE_MESSAGE
from childctl.router import MessageHandler
from childctl.router import MessageRouter

_log = logging.getLogger(__name__)

_ACTIVE_CLIENT_LOCK: threading.Lock = threading.Lock()
_ACTIVE_CLIENT: "ChildClient | None" = None


class ChildClient:
    """Connect to a parent manager and serve its control messages."""

    _socket_url: str
    _child_id: str
    _connection: Connection | None
    _router: MessageRouter
    _reader_thread: threading.Thread | None
    _stop: threading.Event
    _lock: threading.RLock
    _write_lock: threading.Lock

    def __init__(self, socket_url: str, child_id: str | None = None) -> None:
        """Initialize an unconnected client.

        :param socket_url: Manager endpoint URL.
        :param child_id: Id announced to the manager, defaults to the pid.
        """
        self._socket_url = socket_url
        if child_id is None:
            self._child_id = str(os.getpid())
        else:
            self._child_id = child_id
        self._connection = None
        self._router = MessageRouter(self._write, reply_errors=True, logger=_log)
        self._reader_thread = None
        self._stop = threading.Event()
        self._lock = threading.RLock()
        self._write_lock = threading.Lock()
        self._router.on(KEEPALIVE_MESSAGE, lambda payload: {"alive": True})

    @property
    def child_id(self) -> str:
        """Return the id announced to the manager.

        :returns: Child id.
        """
        return self._child_id

    @property
    def is_connected(self) -> bool:
        """Report whether the channel is open.

        :returns: ``True`` while connected.
        """
        with self._lock:
            return self._connection is not None

    def connect(self) -> None:
        """Open the channel, start reading and announce this child.

        :raises OSError: If the manager endpoint cannot be reached.
        :raises ValueError: If the socket URL is unsupported.
        """
        address, family = parse_socket_url(self._socket_url)
        with self._lock:
            if self._connection is not None:
                return
            connection: Connection = Client(address, family=family)
            self._connection = connection
            self._stop = threading.Event()
            reader_thread = threading.Thread(
                target=self._read_loop,
                args=(connection, self._stop),
                name="childctl-child-reader",
                daemon=True,
            )
            self._reader_thread = reader_thread
            reader_thread.start()

        self._router.notify(HELLO_MESSAGE, {"id": self._child_id, "pid": os.getpid()})
        _log.debug("Attached to manager at %s", self._socket_url)

    def on(self, name: str, handler: MessageHandler) -> None:
        """Register the handler for parent messages named ``name``.

        :param name: Message name.
        :param handler: Callable receiving the payload.
        """
        self._router.on(name, handler)

    def send(self, name: str, payload: object = None) -> bool:
        """Send one event to the manager.

        :param name: Message name.
        :param payload: JSON-compatible payload.
        :returns: ``True`` when the frame was written.
        """
        return self._router.notify(name, payload)

    def request(self, name: str, payload: object = None) -> "concurrent.futures.Future[object]":
        """Send one request to the manager.

        :param name: Message name.
        :param payload: JSON-compatible payload.
        :returns: Future resolved with the manager's reply.
        """
        future: concurrent.futures.Future[object] = concurrent.futures.Future()

        def resolve(reply: object, error: BaseException | None) -> None:
            """Complete the future from the reply.

            :param reply: Reply payload.
            :param error: Reply error, if any.
            """
            if error is not None:
                future.set_exception(error)
                return
            future.set_result(reply)

        self._router.request(name, payload, resolve)
        return future

    def _write(self, frame: bytes) -> bool:
        """Write one frame to the manager.

        :param frame: Encoded frame.
        :returns: ``True`` when written.
        """
        with self._lock:
            connection: Connection | None = self._connection
        if connection is None:
            return False
        try:
            with self._write_lock:
                connection.send_bytes(frame)
        except (BrokenPipeError, EOFError, OSError):
            return False
        return True

    def _read_loop(self, connection: Connection, stop: threading.Event) -> None:
        """Deliver parent frames until the channel ends.

        :param connection: Open connection.
        :param stop: Event set by ``close()``.
        """
        while stop.is_set() is False:
            try:
                has_data: bool = connection.poll(READ_POLL_SECONDS)
                if has_data is False:
                    continue
                frame: bytes = connection.recv_bytes()
            except (EOFError, OSError):
                break

            try:
                self._router.deliver(frame)
            except MessageHandlingError as exc:
                _log.error("Dropping malformed message from manager", exc_info=exc)

        with self._lock:
            if self._connection is connection:
                self._connection = None
        self._router.fail_all(ChildNotConnectedError("Manager connection closed"))

    def close(self) -> None:
        """Close the channel and fail outstanding requests."""
        with self._lock:
            connection: Connection | None = self._connection
            reader_thread: threading.Thread | None = self._reader_thread
            self._connection = None
            self._reader_thread = None
            self._stop.set()

        if reader_thread is not None and reader_thread is not threading.current_thread():
            reader_thread.join()
        if connection is not None:
            try:
                connection.close()
            except OSError:
                pass
        self._router.fail_all(ManagerClosedError("Child client closed"))


def active_client() -> ChildClient | None:
    """Return the client attached by the bootstrap hook.

    :returns: Active client or ``None``.
    """
    with _ACTIVE_CLIENT_LOCK:
        return _ACTIVE_CLIENT


def bootstrap_child(environ: Mapping[str, str] | None = None) -> ChildClient | None:
    """Wire a starting child interpreter into its manager.

    Installs the registered loader finder, then attaches to the manager
    endpoint when the environment names one.

    :param environ: Environment mapping, defaults to ``os.environ``.
    :returns: Attached client, or ``None`` when no endpoint is configured.
    """
    global _ACTIVE_CLIENT
    if environ is None:
        environ = os.environ

    manager_key: str | None = environ.get(MANAGER_ID_VARIABLE)
    loader_url: str | None = environ.get(LOADER_VARIABLE)
    if manager_key is not None and loader_url is not None:
        try:
            load_loader(loader_url)
        except LoaderError as exc:
            _log.error("Not installing unusable loader %s", loader_url, exc_info=exc)
        else:
            LoaderRegistry.instance().publish(manager_key, loader_url)
            install_finder(manager_key)

    socket_url: str | None = environ.get(SOCKET_VARIABLE)
    if socket_url is None:
        return None

    with _ACTIVE_CLIENT_LOCK:
        if _ACTIVE_CLIENT is not None:
            return _ACTIVE_CLIENT
        client: ChildClient = ChildClient(socket_url)
        try:
            client.connect()
        except OSError as exc:
            _log.error("Cannot attach to manager at %s", socket_url, exc_info=exc)
            return None
        _ACTIVE_CLIENT = client
    atexit.register(client.close)
    return client
