"""repotrack API - track GitHub repositories and refresh their metrics in the background."""

__version__ = "0.1.0"
