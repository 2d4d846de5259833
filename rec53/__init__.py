"""Building blocks for an iterative, caching DNS resolver with upstream quality tracking."""

__version__ = "0.1.0"