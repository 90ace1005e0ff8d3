"""Periodic liveness supervision of the attached child."""

import logging
import threading
from collections.abc import Callable

from childctl.errors import ChildUnresponsiveError

KEEPALIVE_INTERVAL_SECONDS: float = 5.0
MAX_MISSED_BEATS: int = 2

_log = logging.getLogger(__name__)


class LivenessSupervisor:
    """Probe the child on a fixed interval and escalate sustained silence."""

    _name: str
    _is_connected: Callable[[], bool]
    _probe: Callable[[Callable[[object, BaseException | None], None]], str]
    _cancel_probe: Callable[[str], bool]
    _on_unresponsive: Callable[[ChildUnresponsiveError], None]
    _interval: float
    _outstanding_probe: str | None
    _missed_beats: int
    _stop: threading.Event
    _thread: threading.Thread | None
    _lock: threading.Lock
    _log: logging.Logger

    def __init__(
        self,
        name: str,
        is_connected: Callable[[], bool],
        probe: Callable[[Callable[[object, BaseException | None], None]], str],
        cancel_probe: Callable[[str], bool],
        on_unresponsive: Callable[[ChildUnresponsiveError], None],
        interval: float = KEEPALIVE_INTERVAL_SECONDS,
        logger: logging.Logger | None = None,
    ) -> None:
        """Initialize an idle supervisor.

        :param name: Suffix for the supervisor thread name.
        :param is_connected: Reports whether a child is attached.
        :param probe: Sends one probe and returns its request id.
        :param cancel_probe: Drops one unanswered probe.
        :param on_unresponsive: Escalation target once the child is stale.
        :param interval: Seconds between ticks.
        :param logger: Logger for missed beats and escalation.
        """
        if logger is None:
            self._log = _log
        else:
            self._log = logger
        self._name = name
        self._is_connected = is_connected
        self._probe = probe
        self._cancel_probe = cancel_probe
        self._on_unresponsive = on_unresponsive
        self._interval = interval
        self._outstanding_probe = None
        self._missed_beats = 0
        self._stop = threading.Event()
        self._thread = None
        self._lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        """Report whether the supervisor thread is alive.

        :returns: ``True`` while the supervisor thread runs.
        """
        thread: threading.Thread | None = self._thread
        return thread is not None and thread.is_alive()

    @property
    def missed_beats(self) -> int:
        """Return the number of consecutive unanswered probes.

        :returns: Missed beat count.
        """
        with self._lock:
            return self._missed_beats

    def start(self) -> None:
        """Start ticking; a running supervisor is left as is."""
        if self.is_running is True:
            return
        self._stop = threading.Event()
        thread = threading.Thread(
            target=self._run,
            args=(self._stop,),
            name=f"childctl-keepalive-{self._name}",
            daemon=True,
        )
        self._thread = thread
        thread.start()

    def stop(self) -> None:
        """Cancel the schedule and wait for the thread to finish."""
        self._stop.set()
        thread: threading.Thread | None = self._thread
        self._thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join()
        self._reset()

    def _run(self, stop: threading.Event) -> None:
        """Tick until ``stop`` is set.

        :param stop: Cancellation event for this run.
        """
        while stop.wait(self._interval) is False:
            self.tick()

    def _reset(self) -> None:
        """Forget the outstanding probe and the miss counter."""
        with self._lock:
            outstanding: str | None = self._outstanding_probe
            self._outstanding_probe = None
            self._missed_beats = 0
        if outstanding is not None:
            self._cancel_probe(outstanding)

    def tick(self) -> None:
        """Run one supervision step.

        Without an attached child this only resets state.
        """
        if self._is_connected() is False:
            self._reset()
            return

        with self._lock:
            outstanding: str | None = self._outstanding_probe
            if outstanding is not None:
                self._missed_beats += 1
            missed: int = self._missed_beats

        if outstanding is not None:
            self._cancel_probe(outstanding)
            if missed >= MAX_MISSED_BEATS:
                self._log.error("Child missed %d liveness probes", missed)
                self._reset()
                self._on_unresponsive(ChildUnresponsiveError(f"Child missed {missed} liveness probes"))
                return
            self._log.warning("Child missed a liveness probe, probing again")

        self._send_probe()

    def _send_probe(self) -> None:
        """Send one probe and track it until acknowledged."""
        probe_id: list[str] = []

        def acknowledge(payload: object, error: BaseException | None) -> None:
            """Clear the miss counter when this probe is answered.

            :param payload: Reply payload.
            :param error: Reply error, if any.
            """
            _ = payload
            if error is not None:
                return
            with self._lock:
                is_current: bool = len(probe_id) > 0 and self._outstanding_probe == probe_id[0]
                if is_current is True:
                    self._outstanding_probe = None
                    self._missed_beats = 0

        with self._lock:
            request_id: str = self._probe(acknowledge)
            probe_id.append(request_id)
            self._outstanding_probe = request_id
