"""Local listening endpoint for the child control channel."""

import logging
import os
import sys
import tempfile
import threading
from collections.abc import Callable
from multiprocessing.connection import Client
from multiprocessing.connection import Connection
from multiprocessing.connection import Listener

from childctl.errors import BindError
from childctl.errors import SocketRemovalError

_log = logging.getLogger(__name__)

UNIX_SCHEME: str = "unix://"
PIPE_SCHEME: str = "pipe://"
READ_POLL_SECONDS: float = 0.05
JOIN_TIMEOUT_SECONDS: float = 2.0


def _is_windows() -> bool:
    """Report whether the host uses named pipes for local endpoints.

    :returns: ``True`` on Windows.
    """
    return sys.platform == "win32"


def _address_family() -> str:
    """Return the ``multiprocessing.connection`` family for local endpoints.

    :returns: ``AF_PIPE`` on Windows, ``AF_UNIX`` elsewhere.
    """
    if _is_windows() is True:
        return "AF_PIPE"
    return "AF_UNIX"


def compute_socket_path(key: str, generation: int, pid: int | None = None) -> str:
    """Derive the endpoint address for one ``listen()`` generation.

    :param key: Manager key.
    :param generation: Listen generation counter.
    :param pid: Owning process id, defaults to the current process.
    :returns: Named pipe address on Windows, socket file path elsewhere.
    """
    if pid is None:
        pid = os.getpid()
    name: str = f"childctl-{pid}-{key}-{generation}"
    if _is_windows() is True:
        return f"\\\\.\\pipe\\{name}"
    return os.path.join(tempfile.gettempdir(), f"{name}.sock")


def socket_url(socket_path: str) -> str:
    """Build the URL form of an endpoint address.

    :param socket_path: Socket file path or named pipe address.
    :returns: ``pipe://`` URL for named pipes, ``unix://`` URL otherwise.
    """
    if socket_path.startswith("\\\\.\\pipe\\") is True:
        return PIPE_SCHEME + socket_path
    return UNIX_SCHEME + socket_path


def parse_socket_url(url: str) -> tuple[str, str]:
    """Split an endpoint URL into address and connection family.

    :param url: ``unix://`` or ``pipe://`` URL.
    :returns: Tuple of ``(address, family)``.
    :raises ValueError: If the URL scheme is unsupported.
    """
    if url.startswith(UNIX_SCHEME) is True:
        return url[len(UNIX_SCHEME):], "AF_UNIX"
    if url.startswith(PIPE_SCHEME) is True:
        return url[len(PIPE_SCHEME):], "AF_PIPE"
    raise ValueError(f"Unsupported socket URL: {url!r}")


class ControlEndpoint:
    """Own the listening resource and the single child connection."""

    _key: str
    _on_frame: Callable[[bytes], bool]
    _on_disconnect: Callable[[], None]
    _generation: int
    _socket_path: str | None
    _listener: Listener | None
    _connection: Connection | None
    _has_accepted: bool
    _is_closing: bool
    _accept_thread: threading.Thread | None
    _reader_thread: threading.Thread | None
    _reader_stop: threading.Event
    _lock: threading.RLock
    _write_lock: threading.Lock
    _log: logging.Logger

    def __init__(
        self,
        key: str,
        on_frame: Callable[[bytes], bool],
        on_disconnect: Callable[[], None] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        """Initialize an idle endpoint.

        :param key: Manager key used in addresses and thread names.
        :param on_frame: Called on the reader thread for every inbound frame;
            returning ``False`` stops reading.
        :param on_disconnect: Called once when the child connection goes away.
        :param logger: Logger for connection lifecycle records.
        """
        self._key = key
        if logger is None:
            self._log = _log
        else:
            self._log = logger
        self._on_frame = on_frame
        if on_disconnect is None:
            self._on_disconnect = lambda: None
        else:
            self._on_disconnect = on_disconnect
        self._generation = 0
        self._socket_path = None
        self._listener = None
        self._connection = None
        self._has_accepted = False
        self._is_closing = False
        self._accept_thread = None
        self._reader_thread = None
        self._reader_stop = threading.Event()
        self._lock = threading.RLock()
        self._write_lock = threading.Lock()

    @property
    def socket_path(self) -> str | None:
        """Return the bound address, ``None`` when not listening.

        :returns: Bound address or ``None``.
        """
        with self._lock:
            return self._socket_path

    @property
    def is_connected(self) -> bool:
        """Report whether a child connection is active.

        :returns: ``True`` while a child is attached.
        """
        with self._lock:
            return self._connection is not None

    def listen(self) -> str:
        """Bind a fresh listening address and start accepting.

        :returns: The newly bound address.
        :raises BindError: If the address cannot be bound.
        """
        if self.socket_path is not None:
            self.close()

        with self._lock:
            self._generation += 1
            address: str = compute_socket_path(self._key, self._generation)
            try:
                listener: Listener = Listener(address, family=_address_family())
            except OSError as exc:
                raise BindError(address, exc.strerror or str(exc)) from exc

            self._listener = listener
            self._socket_path = address
            self._has_accepted = False
            self._is_closing = False
            self._reader_stop = threading.Event()
            accept_thread = threading.Thread(
                target=self._accept_loop,
                args=(listener,),
                name=f"childctl-accept-{self._key}",
                daemon=True,
            )
            self._accept_thread = accept_thread
            accept_thread.start()

        self._log.info("Control endpoint listening on %s", address)
        return address

    def _accept_loop(self, listener: Listener) -> None:
        """Accept the first child connection and reject any later one.

        :param listener: Listener owned by the current generation.
        """
        while True:
            try:
                connection: Connection = listener.accept()
            except OSError:
                return

            with self._lock:
                if self._is_closing is True:
                    connection.close()
                    return
                if self._has_accepted is True:
                    self._log.debug("Rejecting extra connection on %s", self._socket_path)
                    connection.close()
                    continue

                self._has_accepted = True
                accepted_on: str | None = self._socket_path
                self._connection = connection
                reader_thread = threading.Thread(
                    target=self._read_loop,
                    args=(connection, self._reader_stop),
                    name=f"childctl-reader-{self._key}",
                    daemon=True,
                )
                self._reader_thread = reader_thread
                reader_thread.start()

            self._log.debug("Child connected on %s", accepted_on)

    def _read_loop(self, connection: Connection, stop: threading.Event) -> None:
        """Read frames in wire order until the connection ends.

        :param connection: Active child connection.
        :param stop: Event set when the endpoint closes.
        """
        while stop.is_set() is False:
            try:
                has_data: bool = connection.poll(READ_POLL_SECONDS)
                if has_data is False:
                    continue
                frame: bytes = connection.recv_bytes()
            except (EOFError, OSError):
                break

            keep_reading: bool = self._on_frame(frame)
            if keep_reading is False:
                break

        self._drop_connection(connection)

    def _drop_connection(self, connection: Connection) -> None:
        """Forget ``connection`` if it is still the active one.

        :param connection: Connection that ended.
        """
        with self._lock:
            is_current: bool = self._connection is connection
            if is_current is True:
                self._connection = None

        try:
            connection.close()
        except OSError:
            pass

        if is_current is True:
            self._log.debug("Child disconnected from %s", self._socket_path)
            self._on_disconnect()

    def send_frame(self, frame: bytes) -> bool:
        """Write one frame to the child.

        :param frame: Encoded frame.
        :returns: ``True`` when the frame was written.
        """
        with self._lock:
            connection: Connection | None = self._connection
        if connection is None:
            return False

        try:
            with self._write_lock:
                connection.send_bytes(frame)
        except (BrokenPipeError, EOFError, OSError):
            self._drop_connection(connection)
            return False
        return True

    def close(self) -> None:
        """Stop accepting, drop the child connection and remove the socket.

        :raises SocketRemovalError: If the socket file could not be removed.
        """
        with self._lock:
            listener: Listener | None = self._listener
            address: str | None = self._socket_path
            accept_thread: threading.Thread | None = self._accept_thread
            reader_thread: threading.Thread | None = self._reader_thread
            connection: Connection | None = self._connection
            self._is_closing = True
            self._listener = None
            self._socket_path = None
            self._accept_thread = None
            self._reader_thread = None
            self._connection = None
            self._reader_stop.set()

        removal_error: BaseException | None = None
        if listener is not None:
            self._wake_accept(accept_thread, address)
            try:
                listener.close()
            except FileNotFoundError:
                pass
            except OSError as exc:
                removal_error = exc

        self._join(accept_thread)
        self._join(reader_thread)

        if connection is not None:
            try:
                connection.close()
            except OSError:
                pass
            self._log.debug("Closed child connection on %s", address)
            self._on_disconnect()

        if removal_error is not None:
            raise SocketRemovalError(f"Cannot remove socket {address}") from removal_error

        if listener is not None:
            self._log.info("Control endpoint on %s closed", address)

    def _wake_accept(self, accept_thread: threading.Thread | None, address: str | None) -> None:
        """Unblock a pending ``accept()`` so its thread can observe the close.

        :param accept_thread: Accept thread of the closing generation.
        :param address: Address the listener is bound to.
        """
        if accept_thread is None or address is None:
            return
        if accept_thread.is_alive() is False:
            return
        try:
            waker: Connection = Client(address, family=_address_family())
        except OSError:
            return
        waker.close()

    def _join(self, thread: threading.Thread | None) -> None:
        """Join an endpoint thread unless called from that thread.

        :param thread: Thread to join.
        """
        if thread is None:
            return
        if thread is threading.current_thread():
            return
        thread.join(timeout=JOIN_TIMEOUT_SECONDS)
