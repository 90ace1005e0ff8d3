"""Instrumentation hook injection into the child's startup environment."""

import json
import logging
import os
import shlex
import subprocess
import sys
from collections.abc import MutableMapping
from types import TracebackType

from childctl.config import TelemetryConfig

HOOKS_VARIABLE: str = "CHILDCTL_OPTIONS"
MANAGER_ID_VARIABLE: str = "CHILDCTL_MANAGER_ID"
SOCKET_VARIABLE: str = "CHILDCTL_SOCKET"
LOADER_VARIABLE: str = "CHILDCTL_LOADER"
TELEMETRY_VARIABLE: str = "CHILDCTL_TELEMETRY"
PYTHONPATH_VARIABLE: str = "PYTHONPATH"
IMPORT_FLAG: str = "--import="

_PACKAGE_DIR: str = os.path.dirname(os.path.abspath(__file__))
BOOTSTRAP_HOOK: str = os.path.join(_PACKAGE_DIR, "hooks", "child_process.py")
TELEMETRY_HOOK: str = os.path.join(_PACKAGE_DIR, "hooks", "telemetry.py")
SITE_DIR: str = os.path.join(_PACKAGE_DIR, "_site")

_log = logging.getLogger(__name__)


def join_hook_flags(hook_paths: list[str]) -> str:
    """Encode hook paths as one space-separated flag string.

    :param hook_paths: Hook module paths in load order.
    :returns: ``--import=<path>`` flags quoted for the host platform.
    """
    flags: list[str] = [f"{IMPORT_FLAG}{hook_path}" for hook_path in hook_paths]
    if sys.platform == "win32":
        return subprocess.list2cmdline(flags)
    return " ".join(shlex.quote(flag) for flag in flags)


def split_hook_flags(value: str) -> list[str]:
    """Extract hook paths from a flag string.

    Tokens other than ``--import=`` flags are ignored.

    :param value: Content of the hook variable.
    :returns: Hook references in load order.
    """
    tokens: list[str] = shlex.split(value, posix=sys.platform != "win32")
    hook_paths: list[str] = []
    for token in tokens:
        if sys.platform == "win32" and len(token) >= 2 and token[0] == '"' and token[-1] == '"':
            token = token[1:-1]
        if token.startswith(IMPORT_FLAG) is True:
            hook_paths.append(token[len(IMPORT_FLAG):])
    return hook_paths


def compute_hook_paths(telemetry: TelemetryConfig | None) -> list[str]:
    """Return the ordered hook list for one child.

    :param telemetry: Telemetry settings, if configured.
    :returns: Bootstrap hook, then the telemetry hook when enabled.
    """
    hook_paths: list[str] = [BOOTSTRAP_HOOK]
    if telemetry is not None and telemetry.is_enabled is True:
        hook_paths.append(TELEMETRY_HOOK)
    return hook_paths


class InjectedEnvironment:
    """Scoped handle that restores the environment captured before injection."""

    _environ: MutableMapping[str, str]
    _snapshot: dict[str, str | None]
    _is_restored: bool

    def __init__(self, environ: MutableMapping[str, str]) -> None:
        """Initialize an empty handle over ``environ``.

        :param environ: Environment mapping being mutated.
        """
        self._environ = environ
        self._snapshot = {}
        self._is_restored = False

    @property
    def is_restored(self) -> bool:
        """Report whether ``restore()`` already ran.

        :returns: ``True`` after restoration.
        """
        return self._is_restored

    @property
    def snapshot(self) -> dict[str, str | None]:
        """Return the captured prior values, ``None`` meaning unset.

        :returns: Copy of the snapshot.
        """
        return dict(self._snapshot)

    def set(self, name: str, value: str) -> None:
        """Set one variable, capturing its prior value on first touch.

        :param name: Variable name.
        :param value: New value.
        """
        if name not in self._snapshot:
            self._snapshot[name] = self._environ.get(name)
        self._environ[name] = value

    def restore(self) -> None:
        """Write back every captured value; safe to call repeatedly."""
        if self._is_restored is True:
            return
        self._is_restored = True
        for name, prior in self._snapshot.items():
            if prior is None:
                self._environ.pop(name, None)
            else:
                self._environ[name] = prior

    def __enter__(self) -> "InjectedEnvironment":
        """Return this handle for ``with`` blocks.

        :returns: This handle.
        """
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_traceback: TracebackType | None,
    ) -> None:
        """Restore the environment when the ``with`` block ends."""
        self.restore()


class EnvironmentInjector:
    """Compute and apply the child's instrumentation environment."""

    _manager_key: str
    _loader_url: str | None
    _telemetry: TelemetryConfig | None

    def __init__(
        self,
        manager_key: str,
        loader_url: str | None = None,
        telemetry: TelemetryConfig | None = None,
    ) -> None:
        """Initialize an injector.

        :param manager_key: Key the child uses to find its loader.
        :param loader_url: Registered loader URL, if any.
        :param telemetry: Telemetry settings, if any.
        """
        self._manager_key = manager_key
        self._loader_url = loader_url
        self._telemetry = telemetry

    def inject(
        self,
        socket_url: str | None = None,
        environ: MutableMapping[str, str] | None = None,
    ) -> InjectedEnvironment:
        """Mutate ``environ`` so a spawned child wires itself to the manager.

        Calling this twice without restoring the first handle makes the second
        snapshot capture the already injected values.

        :param socket_url: Manager endpoint URL, when listening.
        :param environ: Environment mapping, defaults to ``os.environ``.
        :returns: Handle restoring the prior environment.
        """
        if environ is None:
            environ = os.environ
        handle: InjectedEnvironment = InjectedEnvironment(environ)
        try:
            self._apply(handle, environ, socket_url)
        except Exception:
            handle.restore()
            raise
        return handle

    def _apply(
        self,
        handle: InjectedEnvironment,
        environ: MutableMapping[str, str],
        socket_url: str | None,
    ) -> None:
        """Write every injected variable through ``handle``.

        :param handle: Snapshot-taking handle.
        :param environ: Environment mapping.
        :param socket_url: Manager endpoint URL, when listening.
        """
        hook_paths: list[str] = compute_hook_paths(self._telemetry)
        hooks_value: str = join_hook_flags(hook_paths)
        prior_hooks: str = environ.get(HOOKS_VARIABLE, "").strip()
        if len(prior_hooks) > 0:
            hooks_value = f"{hooks_value} {prior_hooks}"
        handle.set(HOOKS_VARIABLE, hooks_value)

        prior_path: str = environ.get(PYTHONPATH_VARIABLE, "")
        python_path: str = SITE_DIR
        if len(prior_path) > 0:
            python_path = f"{SITE_DIR}{os.pathsep}{prior_path}"
        handle.set(PYTHONPATH_VARIABLE, python_path)

        handle.set(MANAGER_ID_VARIABLE, self._manager_key)
        if socket_url is not None:
            handle.set(SOCKET_VARIABLE, socket_url)
        else:
            _log.debug("Injecting environment before listen(); child will not attach")
        if self._loader_url is not None:
            handle.set(LOADER_VARIABLE, self._loader_url)
        if self._telemetry is not None and self._telemetry.is_enabled is True:
            handle.set(TELEMETRY_VARIABLE, json.dumps(self._telemetry.to_dict()))
