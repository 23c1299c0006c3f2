"""Box builder - build execution core for container images.

This package drives a container engine to materialize build steps as
image layers, with a commit-comment cache, interactive run support and
direct image archive import.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
