"""Flags Gateway package.

Flag evaluation service for embedded SDK agents and dashboard users:

- Signed capability tokens (HS256) as an alternative to scope headers
- Default environment resolution per agent
- Case-insensitive flag lookup that only sees enabled projects and agents
- Legacy and OFREP-style response encodings over the same evaluation
- An auth gate that degrades unauthenticated agents instead of rejecting them

Convenience imports
------------------
Importing the package has no side effects. For convenience, these are
available as top-level imports:

    from flags_gateway import FlagsGateway, create_app

    from flags_gateway import CapabilityTokenService, Scope

All of the above are loaded lazily.
"""

from __future__ import annotations

import re
from importlib import import_module
from pathlib import Path
from typing import Any


def _read_version_from_pyproject() -> str | None:
    """Best-effort version discovery for dev/test environments."""

    try:
        pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
        txt = pyproject.read_text(encoding="utf-8")
        m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
        return m.group(1) if m else None
    except Exception:
        return None


__version__ = _read_version_from_pyproject() or "0.3.0"

__all__ = [
    "__version__",
    "FlagsGateway",
    "create_app",
    "CapabilityTokenService",
    "Scope",
]

# Lazy export map: name -> (module, attribute)
_LAZY_EXPORTS: dict[str, tuple[str, str]] = {
    "FlagsGateway": ("flags_gateway.server", "FlagsGateway"),
    "create_app": ("flags_gateway.server", "create_app"),
    "CapabilityTokenService": ("flags_gateway.tokens", "CapabilityTokenService"),
    "Scope": ("flags_gateway.models", "Scope"),
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module_name, attr = _LAZY_EXPORTS[name]
        module = import_module(module_name)
        value = getattr(module, attr)
        globals()[name] = value
        return value
    raise AttributeError(f"module 'flags_gateway' has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(set(list(globals().keys()) + list(_LAZY_EXPORTS.keys())))
