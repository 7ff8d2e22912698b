"""AssetFlow API routers package."""

from . import flowchains
from . import queue
from . import versions
from . import workflows

__all__ = [
    "flowchains",
    "queue",
    "versions",
    "workflows",
]
