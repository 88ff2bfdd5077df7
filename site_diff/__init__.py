# site_diff/__init__.py
"""
SiteDiff package initializer.
Defines package version; the CLI lives in ``site_diff.cli`` (``site-diff`` entry point).
"""
__version__ = "0.1.0"

__all__ = ["__version__"]
