"""Public interface for the u3v_terminal package.

The implementation is split across small modules (framing, registers,
session, file transfer, interactive loops, transports).  This module
re-exports the names each of them lists in ``__all__`` so that callers can
simply ``from u3v_terminal import ...``.
"""

from __future__ import annotations

from importlib import import_module

__version__ = "0.1.0"

_MODULES = (
    ".errors",
    ".polling",
    ".uvcp",
    ".registers",
    ".core",
    ".terminal",
    ".filetransfer",
    ".interactive",
    ".app",
)

__all__ = ["__version__"]


def _export(module_name: str) -> list:
    module = import_module(module_name, __name__)
    names = list(getattr(module, "__all__", []))
    for name in names:
        globals()[name] = getattr(module, name)
    return names


for _module_name in _MODULES:
    __all__.extend(_export(_module_name))

del _module_name
