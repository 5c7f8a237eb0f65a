"""
Registry of named parse routines for the custom engine.

Only callables registered here can run as custom parse routines; configuration
refers to them by name. Routines that should also run inside the offload worker
must be importable module-level functions: they cross the process boundary as a
``module:qualname`` import path, never as code.
"""

import importlib
import logging
from typing import Any, Callable, Dict, List, Optional

from financial_parser.config_models import ParserConfig
from financial_parser.exceptions import RoutineError

logger = logging.getLogger(__name__)

Routine = Callable[[str, ParserConfig], Any]


def import_path(func: Callable) -> Optional[str]:
    """``module:qualname`` of a module-level function, or None if it cannot be re-imported."""
    module = getattr(func, "__module__", None)
    qualname = getattr(func, "__qualname__", None)
    if not module or not qualname or module == "__main__" or "<" in qualname:
        return None
    return f"{module}:{qualname}"


def resolve_import_path(path: str) -> Routine:
    module_name, _, qualname = path.partition(":")
    obj: Any = importlib.import_module(module_name)
    for attr in qualname.split("."):
        obj = getattr(obj, attr)
    if not callable(obj):
        raise RoutineError(f"'{path}' is not callable")
    return obj


class RoutineRegistry:
    """Name to callable allow-list of parse routines.

    A routine is called as ``routine(text, config)`` and must return a
    ParsedDataSet or a dict of the same shape.
    """

    def __init__(self):
        self._routines: Dict[str, Routine] = {}
        self._exportable: Dict[str, str] = {}

    def register(self, name: str, func: Optional[Routine] = None, *, offload: bool = True):
        """Register ``func`` under ``name``. Usable as a decorator when ``func`` is omitted.

        Args:
            name: Routine name referenced by ``ParserConfig.parse_routine``
            func: The routine
            offload: Make the routine available inside the offload worker

        Raises:
            RoutineError: If ``func`` is not callable, or ``offload`` is set and
                ``func`` is not an importable module-level function
        """
        if func is None:
            def decorator(f: Routine) -> Routine:
                self.register(name, f, offload=offload)
                return f
            return decorator

        if not callable(func):
            raise RoutineError(f"Routine '{name}' must be callable")
        path = import_path(func)
        if offload and path is None:
            raise RoutineError(
                f"Routine '{name}' cannot be offloaded: only importable module-level "
                f"functions can run in the worker (register with offload=False)"
            )
        self._routines[name] = func
        if offload:
            self._exportable[name] = path
        else:
            self._exportable.pop(name, None)
        logger.debug(f"Registered parse routine '{name}'")
        return func

    def unregister(self, name: str) -> None:
        self._routines.pop(name, None)
        self._exportable.pop(name, None)

    def get(self, name: str) -> Routine:
        try:
            return self._routines[name]
        except KeyError:
            raise RoutineError(f"Unknown parse routine '{name}'") from None

    def names(self) -> List[str]:
        return list(self._routines)

    def __contains__(self, name: str) -> bool:
        return name in self._routines

    def is_exportable(self, name: str) -> bool:
        return name in self._exportable

    def export(self) -> Dict[str, str]:
        """Import paths of the routines allowed in the offload worker."""
        return dict(self._exportable)

    @classmethod
    def from_export(cls, exported: Dict[str, str]) -> "RoutineRegistry":
        """Rebuild a registry from ``export()`` output (used inside the worker).

        Entries that fail to import are logged and skipped.
        """
        registry = cls()
        registry.load_exported(exported)
        return registry

    def load_exported(self, exported: Dict[str, str]) -> None:
        """Add routines from ``export()`` output, replacing same-named entries.

        Entries that fail to import are logged and skipped.
        """
        for name, path in exported.items():
            try:
                self._routines[name] = resolve_import_path(path)
                self._exportable[name] = path
            except (ImportError, AttributeError, RoutineError) as e:
                logger.warning(f"Could not load parse routine '{name}' from {path}: {e}")


default_registry = RoutineRegistry()


def register_routine(name: str, func: Optional[Routine] = None, *, offload: bool = True):
    """Register a routine in the default registry. See RoutineRegistry.register."""
    return default_registry.register(name, func, offload=offload)
