"""
Voice interview orchestrator.

Submodules are imported lazily: `src.interviewer.audio` and `src.interviewer.vad`
only need numpy, while the session layer pulls in every provider SDK.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from src.interviewer.config import Config, get_config
    from src.interviewer.controller import SessionController
    from src.interviewer.manager import SessionManager

__version__ = "1.0.0"

_LAZY = {
    "Config": "src.interviewer.config",
    "get_config": "src.interviewer.config",
    "SessionController": "src.interviewer.controller",
    "SessionManager": "src.interviewer.manager",
}

__all__ = list(_LAZY)


def __getattr__(name: str) -> Any:
    module_name = _LAZY.get(name)
    if module_name is None:
        raise AttributeError(name)
    import importlib

    return getattr(importlib.import_module(module_name), name)
