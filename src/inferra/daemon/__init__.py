"""HTTP daemon for the inferra local API."""

from .app import create_app
from .loaded_models import LoadedModel, ModelSlot
from .resolution import ModelResolutionError, ModelResolver, ResolvedModel

__all__ = [
    "LoadedModel",
    "ModelResolutionError",
    "ModelResolver",
    "ModelSlot",
    "ResolvedModel",
    "create_app",
]
