"""Hot-reloadable route registry driven by JSON manifests."""

from .manifest import AUTH_MODES, ManifestError, RouteManifest, load_manifest
from .registry import RegisteredRoute, RegistryMiddleware, RouteDescriptor, RouteRegistry

__all__ = [
    "AUTH_MODES",
    "ManifestError",
    "RouteManifest",
    "load_manifest",
    "RegisteredRoute",
    "RegistryMiddleware",
    "RouteDescriptor",
    "RouteRegistry",
]
