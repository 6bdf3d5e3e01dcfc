"""
Loading the module named by an app locator (``module:attr``).

Dotted paths go through ``importlib.import_module`` and rely on the caller's
sys.path. File paths are loaded by location under a name derived from their
real path, so a spawned worker child reaches the same module name as its
parent.
"""

from __future__ import annotations

import hashlib
import importlib
import importlib.util
import os
import sys
from pathlib import Path
from types import ModuleType

from rowqueue.core.logging import get_logger

logger = get_logger('imports')

_PROJECT_MARKERS = ('pyproject.toml', 'setup.cfg', 'setup.py')

# Parent package of modules loaded from a file path.
LOADED_MODULE_PREFIX = 'rowqueue._loaded.'


def setup_sys_path_from_cwd() -> str | None:
    """Prepend cwd to sys.path when it holds a project marker file.

    Only cwd itself is checked; walking up to a parent marker picks the
    wrong root inside a monorepo. Returns cwd when it was added.
    """
    cwd = Path.cwd()
    if not any((cwd / marker).exists() for marker in _PROJECT_MARKERS):
        return None
    entry = str(cwd)
    if entry in sys.path:
        return None
    sys.path.insert(0, entry)
    logger.debug(f'sys.path += {entry} (project root)')
    return entry


def is_file_path(locator_module: str) -> bool:
    """``'jobs.py'`` or ``'src/jobs'`` name files; ``'myapp.jobs'`` names a module."""
    return locator_module.endswith('.py') or os.path.sep in locator_module


def import_module_path(dotted: str) -> ModuleType:
    return importlib.import_module(dotted)


def module_name_for_file(path: str | Path) -> str:
    digest = hashlib.sha256(str(Path(path).resolve()).encode()).hexdigest()
    return f'{LOADED_MODULE_PREFIX}{digest[:12]}'


def _already_loaded(path: Path) -> ModuleType | None:
    for mod in list(sys.modules.values()):
        mod_file = getattr(mod, '__file__', None)
        if mod_file and Path(mod_file).resolve() == path:
            return mod
    return None


def import_file_path(
    file_path: str | Path,
    module_name: str | None = None,
    add_parent_to_path: bool = True,
) -> ModuleType:
    """Execute a source file as a module and return it.

    A file that is already imported (under any name) is returned as is.
    The module is also registered under its file stem so handlers defined
    in it stay picklable by reference.

    Raises:
        FileNotFoundError: the file does not exist.
        ImportError: no loader could be built for it.
    """
    path = Path(file_path).resolve()
    if not path.is_file():
        raise FileNotFoundError(f'Module file not found: {path}')

    loaded = _already_loaded(path)
    if loaded is not None:
        return loaded

    if add_parent_to_path and str(path.parent) not in sys.path:
        sys.path.insert(0, str(path.parent))
        logger.debug(f'sys.path += {path.parent}')

    name = module_name or module_name_for_file(path)
    spec = importlib.util.spec_from_file_location(name, path)
    if spec is None or spec.loader is None:
        raise ImportError(f'Could not load module from path: {path}')

    mod = importlib.util.module_from_spec(spec)
    sys.modules[name] = mod
    sys.modules.setdefault(path.stem, mod)
    spec.loader.exec_module(mod)
    return mod
