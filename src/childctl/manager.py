"""Parent-side manager for one child process control channel."""

import concurrent.futures
import logging
import os
import threading
import uuid
from collections.abc import Mapping
from collections.abc import MutableMapping

from childctl.config import ManagerOptions
from childctl.config import parse_manager_options
from childctl.endpoint import ControlEndpoint
from childctl.endpoint import socket_url
from childctl.environment import EnvironmentInjector
from childctl.environment import InjectedEnvironment
from childctl.errors import ChildUnresponsiveError
from childctl.errors import FatalManagerError
from childctl.errors import ManagerClosedError
from childctl.errors import MessageHandlingError
from childctl.errors import RequestTimeoutError
from childctl.registry import LoaderRegistry
from childctl.registry import install_finder
from childctl.registry import load_loader
from childctl.router import HELLO_MESSAGE
from childctl.router import KEEPALIVE_MESSAGE
from childctl.router import MessageHandler
from childctl.router import MessageRouter
from childctl.router import ReplyCallback
from childctl.router import encode_frame
from childctl.supervisor import LivenessSupervisor


def _exit_process(code: int) -> None:
    """Terminate the process immediately after flushing log handlers.

    :param code: Process exit code.
    """
    for handler in list(logging.getLogger().handlers):
        handler.flush()
    os._exit(code)


class ChildManager:
    """Expose a local endpoint for one child and keep its channel healthy.

    Typical use::

        manager = ChildManager(loader=loader_path, context=context)
        manager.listen()
        with manager.inject():
            process = subprocess.Popen(command)
        ...
        manager.close()
    """

    _key: str
    _options: ManagerOptions
    _log: logging.Logger
    _endpoint: ControlEndpoint
    _router: MessageRouter
    _supervisor: LivenessSupervisor
    _injector: EnvironmentInjector
    _injected: InjectedEnvironment | None
    _child_id: str | None
    _is_closed: bool
    _lock: threading.RLock

    def __init__(
        self,
        loader: str | os.PathLike[str] | None = None,
        context: Mapping[str, object] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        """Initialize a manager.

        :param loader: Optional loader module path or ``file://`` URL.
        :param context: Optional context mapping, may carry ``telemetryConfig``.
        :param logger: Logger receiving lifecycle and fault records.
        :raises ValueError: If the options are invalid.
        """
        self._options = parse_manager_options(loader=loader, context=context)
        self._key = uuid.uuid4().hex
        if logger is None:
            self._log = logging.getLogger(__name__)
        else:
            self._log = logger
        self._endpoint = ControlEndpoint(self._key, self._on_frame, self._on_disconnect, logger=self._log)
        self._router = MessageRouter(self._endpoint.send_frame, logger=self._log)
        self._supervisor = LivenessSupervisor(
            self._key,
            is_connected=lambda: self._endpoint.is_connected,
            probe=self._probe,
            cancel_probe=self._router.cancel,
            on_unresponsive=self._terminate,
            logger=self._log,
        )
        self._injector = EnvironmentInjector(
            self._key,
            loader_url=self._options.loader_url,
            telemetry=self._options.telemetry,
        )
        self._injected = None
        self._child_id = None
        self._is_closed = False
        self._lock = threading.RLock()
        self._router.on(HELLO_MESSAGE, self._on_hello)

    @property
    def key(self) -> str:
        """Return the process-unique manager key.

        :returns: Manager key.
        """
        return self._key

    @property
    def child_id(self) -> str | None:
        """Return the id announced by the attached child.

        :returns: Child id, or ``None`` before the child says hello.
        """
        with self._lock:
            return self._child_id

    @property
    def is_connected(self) -> bool:
        """Report whether a child is attached.

        :returns: ``True`` while a child connection is active.
        """
        return self._endpoint.is_connected

    def listen(self) -> str:
        """Open a fresh control endpoint and start liveness supervision.

        :returns: Bound socket path.
        :raises BindError: If the endpoint cannot bind.
        :raises ManagerClosedError: If the manager was closed.
        """
        with self._lock:
            if self._is_closed is True:
                raise ManagerClosedError("Cannot listen on a closed manager")
        address: str = self._endpoint.listen()
        self._supervisor.start()
        return address

    def get_socket_path(self) -> str | None:
        """Return the bound socket path.

        :returns: Socket path, or ``None`` when not listening.
        """
        return self._endpoint.socket_path

    def get_socket_url(self) -> str | None:
        """Return the ``unix://`` or ``pipe://`` URL of the endpoint.

        :returns: Socket URL, or ``None`` when not listening.
        """
        address: str | None = self._endpoint.socket_path
        if address is None:
            return None
        return socket_url(address)

    def handle(self, name: str, handler: MessageHandler) -> None:
        """Register the handler for unsolicited child messages named ``name``.

        :param name: Message name.
        :param handler: Callable receiving the payload; its return value
            answers child requests.
        """
        self._router.on(name, handler)

    def send(self, target_id: str | None, name: str, payload: object = None) -> bool:
        """Send one event to the child, tolerating a missing child.

        :param target_id: Expected child id, ``None`` for whichever child is attached.
        :param name: Message name.
        :param payload: JSON-compatible payload.
        :returns: ``True`` when the frame was written.
        """
        if self._endpoint.is_connected is False:
            return False
        child_id: str | None = self.child_id
        if target_id is not None and target_id != child_id:
            self._log.debug("Dropping %r for child %s; attached child is %s", name, target_id, child_id)
            return False
        return self._router.notify(name, payload)

    def _send(self, payload: dict[str, object]) -> bool:
        """Write ``payload`` as one raw frame, bypassing request bookkeeping.

        :param payload: Envelope mapping.
        :returns: ``True`` when the frame was written.
        """
        return self._endpoint.send_frame(encode_frame(payload))

    def request(
        self,
        name: str,
        payload: object = None,
        timeout: float | None = None,
    ) -> "concurrent.futures.Future[object]":
        """Send one request and return a future for the child's reply.

        :param name: Message name.
        :param payload: JSON-compatible payload.
        :param timeout: Seconds to wait for the reply before the request is
            dropped and the future fails with ``RequestTimeoutError``.
        :returns: Future resolved with the reply payload.
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

        with self._lock:
            is_closed: bool = self._is_closed
        if is_closed is True:
            future.set_exception(ManagerClosedError("Manager is closed"))
            return future
        request_id: str = self._router.request(name, payload, resolve)
        if timeout is not None and future.done() is False:
            timer: threading.Timer = threading.Timer(
                timeout,
                self._expire_request,
                args=(request_id, name, timeout, future),
            )
            timer.daemon = True
            timer.name = f"childctl-timeout-{self._key}"
            future.add_done_callback(lambda _: timer.cancel())
            timer.start()
        return future

    def _expire_request(
        self,
        request_id: str,
        name: str,
        timeout: float,
        future: "concurrent.futures.Future[object]",
    ) -> None:
        """Fail one request whose reply is overdue.

        :param request_id: Request identifier.
        :param name: Message name.
        :param timeout: Elapsed timeout in seconds.
        :param future: Future of the request.
        """
        if self._router.cancel(request_id) is False:
            return
        self._log.debug("Request %r timed out after %ss", name, timeout)
        future.set_exception(RequestTimeoutError(f"No reply to {name!r} within {timeout}s"))

    def _probe(self, callback: ReplyCallback) -> str:
        """Send one liveness probe.

        :param callback: Receives the acknowledgment.
        :returns: Probe request id.
        """
        return self._router.request(KEEPALIVE_MESSAGE, None, callback)

    def _manage_keep_alive(self) -> None:
        """Run one liveness supervision step."""
        self._supervisor.tick()

    def register(self) -> None:
        """Publish the configured loader and wire its finder into this process.

        :raises LoaderError: If the loader cannot be loaded or has no ``resolve`` hook.
        """
        loader_url: str | None = self._options.loader_url
        if loader_url is None:
            return
        load_loader(loader_url)
        LoaderRegistry.instance().publish(self._key, loader_url)
        install_finder(self._key)
        self._log.debug("Registered loader %s for manager %s", loader_url, self._key)

    def inject(self, environ: MutableMapping[str, str] | None = None) -> InjectedEnvironment:
        """Inject the instrumentation environment for a child about to spawn.

        Calling this twice without ``eject()`` makes the second snapshot
        capture the first injection, so ``eject()`` cannot fully restore.

        :param environ: Environment mapping, defaults to ``os.environ``.
        :returns: Handle restoring the prior environment; ``eject()`` does the same.
        """
        handle: InjectedEnvironment = self._injector.inject(socket_url=self.get_socket_url(), environ=environ)
        with self._lock:
            self._injected = handle
        return handle

    def eject(self) -> None:
        """Restore the environment captured by the latest ``inject()``."""
        with self._lock:
            handle: InjectedEnvironment | None = self._injected
            self._injected = None
        if handle is not None:
            handle.restore()

    def close(self) -> None:
        """Tear down the endpoint, stop supervision and fail pending requests.

        :raises SocketRemovalError: If the socket file could not be removed.
        """
        with self._lock:
            was_closed: bool = self._is_closed
            self._is_closed = True

        self._supervisor.stop()
        try:
            self._endpoint.close()
        finally:
            self._router.fail_all(ManagerClosedError("Manager closed"))
            with self._lock:
                self._child_id = None
        if was_closed is False:
            self._log.info("Child manager %s closed", self._key)

    def _on_hello(self, payload: object) -> None:
        """Record the id announced by a newly attached child.

        :param payload: Hello payload.
        """
        child_id: object = None
        if isinstance(payload, dict) is True:
            child_id = payload.get("id")
        with self._lock:
            if child_id is None:
                self._child_id = None
            else:
                self._child_id = str(child_id)
        self._log.info("Child %s attached to manager %s", child_id, self._key)

    def _on_disconnect(self) -> None:
        """Forget the child id when its connection ends."""
        with self._lock:
            child_id: str | None = self._child_id
            self._child_id = None
        self._log.info("Child %s detached from manager %s", child_id, self._key)

    def _on_frame(self, frame: bytes) -> bool:
        """Route one inbound frame, escalating fatal failures.

        :param frame: Raw frame bytes.
        :returns: ``False`` once the channel must stop reading.
        """
        try:
            self._router.deliver(frame)
        except FatalManagerError as exc:
            self._terminate(exc)
            return False
        except Exception as exc:
            wrapped: MessageHandlingError = MessageHandlingError(f"Cannot handle control message: {exc}")
            wrapped.__cause__ = exc
            self._terminate(wrapped)
            return False
        return True

    def _terminate(self, exc: FatalManagerError) -> None:
        """Log one fatal error and exit the process with its exit code.

        :param exc: Fatal error.
        """
        cause: BaseException = exc
        if exc.__cause__ is not None:
            cause = exc.__cause__
        if isinstance(exc, ChildUnresponsiveError) is True:
            self._log.error("Child is unresponsive, exiting", exc_info=exc, extra={"err": cause})
        else:
            self._log.error("Cannot handle a message from the child, exiting", exc_info=exc, extra={"err": cause})
        _exit_process(exc.exit_code)
