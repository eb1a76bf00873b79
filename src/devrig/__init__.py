from __future__ import annotations

from collections.abc import Callable
from typing import Any, Dict, TypeVar

from devrig.runtime.loader import HOT_ACCEPT_ATTR, HOT_DISPOSE_ATTR

DisposeHook = TypeVar("DisposeHook", bound=Callable[[Dict[str, Any]], Any])


def dispose(func: DisposeHook, /) -> DisposeHook:
	"""Register func as the hot-dispose hook of the module that defines it.

	The hook receives a dict it may fill with state for the module's next
	version, and runs before the module is patched or discarded.
	"""
	func.__globals__[HOT_DISPOSE_ATTR] = func
	return func


def accept(module_globals: Dict[str, Any]) -> None:
	"""Mark a server module as able to take hot updates: ``accept(globals())``."""
	module_globals[HOT_ACCEPT_ATTR] = True


__all__ = ["accept", "dispose"]
