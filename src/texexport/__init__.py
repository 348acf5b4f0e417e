"""texexport: portable, accessible HTML export for annotated LaTeX sources."""

from .version import __version__

__all__ = ["__version__"]
