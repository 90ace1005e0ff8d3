"""Custom error types and process exit codes for childctl."""

MANAGER_MESSAGE_HANDLING_FAILED: int = 11
MANAGER_CHILD_UNRESPONSIVE: int = 12


class ChildctlError(Exception):
    """Base class for all childctl errors."""


class BindError(ChildctlError):
    """Raised when the control endpoint cannot bind its listening address."""

    address: str

    def __init__(self, address: str, reason: str) -> None:
        """Initialize a bind failure.

        :param address: Address the endpoint tried to bind.
        :param reason: Human-readable failure reason.
        """
        self.address = address
        super().__init__(f"Cannot listen on {address}: {reason}")


class SocketRemovalError(ChildctlError):
    """Raised when the socket file cannot be removed during close."""


class ManagerClosedError(ChildctlError):
    """Raised into pending requests when their manager closes."""


class ChildNotConnectedError(ChildctlError):
    """Raised into requests issued while no child is attached."""


class RequestTimeoutError(ChildctlError, TimeoutError):
    """Raised into requests whose reply did not arrive in time."""


class RemoteError(ChildctlError):
    """Raised when the peer answers a request with an error."""

    remote_type_name: str
    remote_message: str

    def __init__(self, remote_type_name: str, remote_message: str) -> None:
        """Initialize a remote error wrapper.

        :param remote_type_name: Exception type name reported by the peer.
        :param remote_message: Exception message reported by the peer.
        """
        self.remote_type_name = remote_type_name
        self.remote_message = remote_message
        super().__init__(f"Remote side raised {remote_type_name}: {remote_message}")


class FatalManagerError(ChildctlError):
    """Base class for errors that must terminate the managing process."""

    exit_code: int = 1


class MessageHandlingError(FatalManagerError):
    """Raised for malformed frames and failures while handling a message."""

    exit_code: int = MANAGER_MESSAGE_HANDLING_FAILED


class ChildUnresponsiveError(FatalManagerError):
    """Raised when the child stops acknowledging liveness probes."""

    exit_code: int = MANAGER_CHILD_UNRESPONSIVE


class LoaderError(ChildctlError, ImportError):
    """Raised when a registered loader module cannot resolve imports."""
