"""JSON envelope routing for the control channel."""

import json
import logging
import threading
import uuid
from collections.abc import Callable

from childctl.errors import ChildNotConnectedError
from childctl.errors import MessageHandlingError
from childctl.errors import RemoteError

HELLO_MESSAGE: str = "childctl:hello"
KEEPALIVE_MESSAGE: str = "childctl:keepalive"

MessageHandler = Callable[[object], object]
ReplyCallback = Callable[[object, BaseException | None], None]


def encode_frame(message: dict[str, object]) -> bytes:
    """Serialize one envelope into a UTF-8 JSON frame.

    :param message: Envelope mapping.
    :returns: Frame bytes.
    """
    return json.dumps(message, separators=(",", ":")).encode("utf-8")


def decode_frame(frame: bytes) -> dict[str, object]:
    """Parse and validate one inbound frame.

    :param frame: Raw frame bytes.
    :returns: Envelope mapping.
    :raises MessageHandlingError: If the frame is not a valid envelope.
    """
    try:
        document: object = json.loads(frame.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MessageHandlingError(f"Cannot parse control message: {exc}") from exc

    if isinstance(document, dict) is False:
        raise MessageHandlingError("Control message must be a JSON object")

    request_id: object = document.get("requestId")
    if request_id is not None and isinstance(request_id, str) is False:
        raise MessageHandlingError("requestId must be a string")

    name: object = document.get("name")
    if name is not None and isinstance(name, str) is False:
        raise MessageHandlingError("name must be a string")
    return document


def _reply_error(document: dict[str, object]) -> RemoteError | None:
    """Extract the error carried by a reply envelope.

    :param document: Reply envelope.
    :returns: Remote error, or ``None`` for successful replies.
    """
    error_obj: object = document.get("error")
    if error_obj is None:
        return None
    if isinstance(error_obj, dict) is False:
        return RemoteError("Error", str(error_obj))
    type_name: object = error_obj.get("type", "Error")
    message: object = error_obj.get("message", "")
    return RemoteError(str(type_name), str(message))


class MessageRouter:
    """Correlate replies to pending requests and dispatch everything else.

    The same router runs on both ends of the channel. The manager side
    treats any handler failure as protocol corruption; the child side
    answers failing requests with an error envelope instead.
    """

    _write: Callable[[bytes], bool]
    _reply_errors: bool
    _handlers: dict[str, MessageHandler]
    _pending: dict[str, ReplyCallback]
    _lock: threading.Lock
    _log: logging.Logger

    def __init__(
        self,
        write: Callable[[bytes], bool],
        reply_errors: bool = False,
        logger: logging.Logger | None = None,
    ) -> None:
        """Initialize a router.

        :param write: Frame writer, returns ``False`` when nothing is attached.
        :param reply_errors: Answer failing requests instead of raising.
        :param logger: Logger for dropped messages.
        """
        self._write = write
        self._reply_errors = reply_errors
        self._handlers = {}
        self._pending = {}
        self._lock = threading.Lock()
        if logger is None:
            self._log = logging.getLogger(__name__)
        else:
            self._log = logger

    @property
    def pending_count(self) -> int:
        """Return the number of requests awaiting a reply.

        :returns: Pending request count.
        """
        with self._lock:
            return len(self._pending)

    def on(self, name: str, handler: MessageHandler) -> None:
        """Register the handler for one message name, replacing any previous one.

        :param name: Message name.
        :param handler: Callable receiving the payload.
        """
        with self._lock:
            self._handlers[name] = handler

    def off(self, name: str) -> None:
        """Remove the handler for one message name.

        :param name: Message name.
        """
        with self._lock:
            self._handlers.pop(name, None)

    def notify(self, name: str, payload: object = None) -> bool:
        """Send one event that expects no reply.

        :param name: Message name.
        :param payload: JSON-compatible payload.
        :returns: ``True`` when the frame was written.
        """
        return self._write(encode_frame({"name": name, "payload": payload}))

    def request(self, name: str, payload: object, callback: ReplyCallback) -> str:
        """Send one request and register its reply callback.

        When the frame cannot be written the callback fails immediately
        with ``ChildNotConnectedError``.

        :param name: Message name.
        :param payload: JSON-compatible payload.
        :param callback: Receives ``(payload, error)`` exactly once.
        :returns: Request identifier.
        """
        request_id: str = uuid.uuid4().hex
        with self._lock:
            self._pending[request_id] = callback

        written: bool = self._write(encode_frame({"requestId": request_id, "name": name, "payload": payload}))
        if written is False:
            removed: ReplyCallback | None = self._pop_pending(request_id)
            if removed is not None:
                removed(None, ChildNotConnectedError(f"No peer attached for {name!r}"))
        return request_id

    def cancel(self, request_id: str) -> bool:
        """Drop one pending request without invoking its callback.

        :param request_id: Request identifier.
        :returns: ``True`` when the request was pending.
        """
        return self._pop_pending(request_id) is not None

    def fail_all(self, error: BaseException) -> int:
        """Fail every pending request.

        :param error: Error handed to each callback.
        :returns: Number of failed requests.
        """
        with self._lock:
            callbacks: list[ReplyCallback] = list(self._pending.values())
            self._pending.clear()
        for callback in callbacks:
            callback(None, error)
        return len(callbacks)

    def _pop_pending(self, request_id: str) -> ReplyCallback | None:
        """Remove and return one pending callback.

        :param request_id: Request identifier.
        :returns: Callback or ``None``.
        """
        with self._lock:
            return self._pending.pop(request_id, None)

    def deliver(self, frame: bytes) -> None:
        """Handle one inbound frame.

        :param frame: Raw frame bytes.
        :raises MessageHandlingError: If the frame is malformed, or a handler
            fails on a router that does not reply with errors.
        """
        document: dict[str, object] = decode_frame(frame)
        request_id: object = document.get("requestId")
        payload: object = document.get("payload")

        if isinstance(request_id, str) is True:
            callback: ReplyCallback | None = self._pop_pending(request_id)
            if callback is not None:
                callback(payload, _reply_error(document))
                return

        name: object = document.get("name")
        handler: MessageHandler | None = None
        if isinstance(name, str) is True:
            with self._lock:
                handler = self._handlers.get(name)

        if name is None and isinstance(request_id, str) is True:
            self._log.debug("Dropping reply for unknown request %s", request_id)
            return

        if handler is None:
            self._log.info("Dropping control message with unknown name %r", name)
            if isinstance(request_id, str) is True and self._reply_errors is True:
                self._write(
                    encode_frame(
                        {
                            "requestId": request_id,
                            "error": {"type": "LookupError", "message": f"No handler for {name!r}"},
                        }
                    )
                )
            return

        try:
            result: object = handler(payload)
            reply: bytes | None = None
            if isinstance(request_id, str) is True:
                reply = encode_frame({"requestId": request_id, "payload": result})
        except Exception as exc:
            if self._reply_errors is False:
                raise MessageHandlingError(f"Handler for {name!r} failed: {exc}") from exc
            self._log.error("Handler for %r failed", name, exc_info=exc)
            if isinstance(request_id, str) is True:
                self._write(
                    encode_frame(
                        {
                            "requestId": request_id,
                            "error": {"type": type(exc).__name__, "message": str(exc)},
                        }
                    )
                )
            return

        if reply is not None:
            self._write(reply)
