"""
faultline command line interface.

Runs bundled or user-supplied cluster scenarios and summarizes the outcome.
"""

from .main import cli, main

__all__ = ["main", "cli"]
