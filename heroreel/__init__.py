"""Hero pool selection and rotation engine."""

from __future__ import annotations

from importlib import import_module
from typing import Any

__version__ = "1.0.0"

# Public names resolved on first access so importing the package stays cheap
# and does not build the FastAPI app.
_EXPORTS: dict[str, str] = {
    "app": "heroreel.main",
    "create_app": "heroreel.main",
    "HeroPolicy": "heroreel.policy",
    "allocate": "heroreel.services.allocator",
    "HeroPipeline": "heroreel.services.pipeline",
    "HeroAutoplay": "heroreel.services.rotation",
    "build_rotation_plan": "heroreel.services.rotation",
}

__all__ = ["__version__", *_EXPORTS]


def __getattr__(name: str) -> Any:
    module_name = _EXPORTS.get(name)
    if module_name is None:
        raise AttributeError(f"module 'heroreel' has no attribute {name!r}")
    return getattr(import_module(module_name), name)
