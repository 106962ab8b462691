"""Package metadata."""

__author__ = "pyeki developers"
__version__ = "0.3.0"
