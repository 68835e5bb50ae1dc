"""Agent Package Manager (APM): dependency resolution and lockfiles for AI prompt packages."""

from .version import __version__

__all__ = ["__version__"]
