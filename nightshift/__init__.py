"""NIGHTSHIFT: autonomous work orchestrator."""

from nightshift.identity import __codename__, __tagline__, __version__

__all__ = ["__codename__", "__tagline__", "__version__"]
