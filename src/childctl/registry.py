"""Process-scoped loader registry and the import finder that consults it."""

import atexit
import importlib.abc
import importlib.machinery
import importlib.util
import logging
import os
import sys
import threading
from types import ModuleType
from typing import ClassVar
from typing import Optional

from childctl.config import path_to_url
from childctl.config import url_to_path
from childctl.errors import LoaderError

_log = logging.getLogger(__name__)


class LoaderRegistry:
    """Map manager keys to loader module URLs for the whole process.

    The instance is created on first use and cleared at interpreter exit.
    Entries are plain URLs so that code without access to the manager object,
    such as a child interpreter's startup hook, can publish and read them.
    """

    _instance: ClassVar[Optional["LoaderRegistry"]] = None
    _instance_lock: ClassVar[threading.Lock] = threading.Lock()

    _urls_by_key: dict[str, str]
    _lock: threading.Lock

    def __init__(self) -> None:
        """Initialize an empty registry."""
        self._urls_by_key = {}
        self._lock = threading.Lock()

    @classmethod
    def instance(cls) -> "LoaderRegistry":
        """Return the process-wide registry, creating it on first use.

        :returns: Shared registry.
        """
        with cls._instance_lock:
            if cls._instance is None:
                registry: LoaderRegistry = cls()
                atexit.register(registry.clear)
                cls._instance = registry
            return cls._instance

    def publish(self, key: str, url: str) -> None:
        """Store the loader URL for ``key``, replacing any previous one.

        :param key: Manager key.
        :param url: Canonical loader URL.
        """
        with self._lock:
            self._urls_by_key[key] = url

    def lookup(self, key: str) -> str | None:
        """Return the loader URL registered under ``key``.

        :param key: Manager key.
        :returns: Loader URL or ``None``.
        """
        with self._lock:
            return self._urls_by_key.get(key)

    def unregister(self, key: str) -> bool:
        """Remove the entry for ``key``.

        :param key: Manager key.
        :returns: ``True`` when an entry was removed.
        """
        with self._lock:
            return self._urls_by_key.pop(key, None) is not None

    def keys(self) -> list[str]:
        """Return the registered keys.

        :returns: Sorted key list.
        """
        with self._lock:
            return sorted(self._urls_by_key)

    def clear(self) -> None:
        """Remove every entry."""
        with self._lock:
            self._urls_by_key.clear()


def _load_file_module(module_name: str, location: str) -> ModuleType:
    """Execute one source file as a fresh module outside ``sys.modules``.

    :param module_name: Name given to the module object.
    :param location: Source file path.
    :returns: Executed module.
    :raises LoaderError: If the file cannot be loaded or fails to execute.
    """
    spec: importlib.machinery.ModuleSpec | None = importlib.util.spec_from_file_location(module_name, location)
    if spec is None or spec.loader is None:
        raise LoaderError(f"Cannot load loader module from {location}")
    module: ModuleType = importlib.util.module_from_spec(spec)
    try:
        spec.loader.exec_module(module)
    except FileNotFoundError as exc:
        raise LoaderError(f"Loader module {location} does not exist") from exc
    except Exception as exc:
        raise LoaderError(f"Loader module {location} failed to execute: {exc}") from exc
    return module


def load_loader(url: str, module_name: str = "_childctl_loader") -> ModuleType:
    """Load a loader module and check that it defines ``resolve``.

    :param url: Loader URL.
    :param module_name: Name given to the module object.
    :returns: Loader module.
    :raises LoaderError: If the module cannot be loaded or has no ``resolve`` hook.
    """
    module: ModuleType = _load_file_module(module_name, url_to_path(url))
    if callable(getattr(module, "resolve", None)) is False:
        raise LoaderError(f"Loader {url} does not define resolve(fullname, path)")
    return module


class RegisteredLoaderFinder(importlib.abc.MetaPathFinder):
    """Resolve otherwise unresolvable imports through one registered loader.

    The finder sits at the end of ``sys.meta_path`` and carries only a
    registry key. The loader module it finds there must define
    ``resolve(fullname, path)`` returning the source location for
    ``fullname``, or ``None`` for names it does not handle. A broken loader
    is logged and treated as declining, so unrelated failed imports still
    raise ``ModuleNotFoundError``.
    """

    key: str
    _loaded_modules: dict[str, ModuleType]
    _broken_urls: set[str]
    _lock: threading.Lock

    def __init__(self, key: str) -> None:
        """Initialize a finder bound to one registry key.

        :param key: Manager key to look up at resolution time.
        """
        self.key = key
        self._loaded_modules = {}
        self._broken_urls = set()
        self._lock = threading.Lock()

    def _loader_module(self, url: str) -> ModuleType | None:
        """Return the loader module for ``url``, loading it once.

        :param url: Loader URL.
        :returns: Loader module, or ``None`` when it cannot be used.
        """
        with self._lock:
            cached: ModuleType | None = self._loaded_modules.get(url)
            if cached is not None:
                return cached
            if url in self._broken_urls:
                return None
            try:
                module: ModuleType = load_loader(url, f"_childctl_loader_{self.key}")
            except LoaderError as exc:
                self._broken_urls.add(url)
                _log.error("Ignoring unusable loader %s", url, exc_info=exc)
                return None
            self._loaded_modules[url] = module
            return module

    def find_spec(
        self,
        fullname: str,
        path: object = None,
        target: ModuleType | None = None,
    ) -> importlib.machinery.ModuleSpec | None:
        """Ask the registered loader to resolve ``fullname``.

        :param fullname: Fully qualified module name.
        :param path: Parent package search path.
        :param target: Module being reloaded, if any.
        :returns: Module spec, or ``None`` when the loader declines or fails.
        """
        _ = target
        url: str | None = LoaderRegistry.instance().lookup(self.key)
        if url is None:
            return None

        loader_module: ModuleType | None = self._loader_module(url)
        if loader_module is None:
            return None

        try:
            location: object = loader_module.resolve(fullname, path)
        except Exception as exc:
            _log.error("Loader %s failed to resolve %s", url, fullname, exc_info=exc)
            return None
        if location is None:
            return None
        source: str = url_to_path(path_to_url(os.fspath(location)))
        return importlib.util.spec_from_file_location(fullname, source)


def install_finder(key: str) -> RegisteredLoaderFinder:
    """Append the finder for ``key`` to ``sys.meta_path`` once.

    :param key: Manager key.
    :returns: Installed finder.
    """
    for existing in sys.meta_path:
        if isinstance(existing, RegisteredLoaderFinder) is True and existing.key == key:
            return existing
    finder: RegisteredLoaderFinder = RegisteredLoaderFinder(key)
    sys.meta_path.append(finder)
    return finder


def uninstall_finder(key: str) -> bool:
    """Remove the finder for ``key`` from ``sys.meta_path``.

    :param key: Manager key.
    :returns: ``True`` when a finder was removed.
    """
    for existing in list(sys.meta_path):
        if isinstance(existing, RegisteredLoaderFinder) is True and existing.key == key:
            sys.meta_path.remove(existing)
            return True
    return False
