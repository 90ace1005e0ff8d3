"""Public package API for childctl."""

from childctl.child import ChildClient
from childctl.child import bootstrap_child
from childctl.environment import InjectedEnvironment
from childctl.errors import MANAGER_CHILD_UNRESPONSIVE
from childctl.errors import MANAGER_MESSAGE_HANDLING_FAILED
from childctl.errors import BindError
from childctl.errors import ChildctlError
from childctl.errors import ChildNotConnectedError
from childctl.errors import ChildUnresponsiveError
from childctl.errors import LoaderError
from childctl.errors import ManagerClosedError
from childctl.errors import MessageHandlingError
from childctl.errors import RequestTimeoutError
from childctl.errors import RemoteError
from childctl.errors import SocketRemovalError
from childctl.manager import ChildManager
from childctl.registry import LoaderRegistry

__all__: list[str] = [
    "ChildClient",
    "ChildManager",
    "InjectedEnvironment",
    "LoaderRegistry",
    "bootstrap_child",
    "MANAGER_CHILD_UNRESPONSIVE",
    "MANAGER_MESSAGE_HANDLING_FAILED",
    "BindError",
    "ChildctlError",
    "ChildNotConnectedError",
    "ChildUnresponsiveError",
    "LoaderError",
    "ManagerClosedError",
    "MessageHandlingError",
    "RequestTimeoutError",
    "RemoteError",
    "SocketRemovalError",
]
