"""Run the startup hooks listed in ``CHILDCTL_OPTIONS``.

This directory is prepended to ``PYTHONPATH`` by the manager, so the ``site``
module imports this file before the child's own code runs. Any other
``sitecustomize`` found further down ``sys.path`` is chained afterwards.
"""

import importlib
import importlib.machinery
import importlib.util
import os
import sys
from types import ModuleType

_SITE_DIR: str = os.path.dirname(os.path.abspath(__file__))
_HOOKS_VARIABLE: str = "CHILDCTL_OPTIONS"


def _exec_file(module_name: str, location: str) -> None:
    """Execute one source file as a module.

    :param module_name: Name given to the module object.
    :param location: Source file path.
    :raises ImportError: If the file cannot be loaded.
    """
    spec: importlib.machinery.ModuleSpec | None = importlib.util.spec_from_file_location(module_name, location)
    if spec is None or spec.loader is None:
        raise ImportError(f"Cannot load {location}")
    module: ModuleType = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)


def _run_hook(reference: str, index: int) -> None:
    """Execute one hook given as a file path or a module name.

    :param reference: Hook file path or dotted module name.
    :param index: Position of the hook, used to name file-based hooks.
    """
    is_path: bool = reference.endswith(".py") is True or os.sep in reference or "/" in reference
    if is_path is True:
        _exec_file(f"_childctl_hook_{index}", reference)
        return
    importlib.import_module(reference)


def _run_hooks() -> None:
    """Run every hook named in the hook variable, in order."""
    value: str = os.environ.get(_HOOKS_VARIABLE, "")
    if len(value.strip()) == 0:
        return
    from childctl.environment import split_hook_flags

    for index, reference in enumerate(split_hook_flags(value)):
        _run_hook(reference, index)


def _chain_next_sitecustomize() -> None:
    """Import the ``sitecustomize`` this one shadows, if any."""
    for entry in sys.path:
        if len(entry) == 0 or os.path.abspath(entry) == _SITE_DIR:
            continue
        candidate: str = os.path.join(entry, "sitecustomize.py")
        if os.path.isfile(candidate) is True:
            _exec_file("_childctl_chained_sitecustomize", candidate)
            return


_run_hooks()
_chain_next_sitecustomize()
