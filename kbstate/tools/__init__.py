"""
CLI tools for knowledge state administration.

Invariants:
    - Tools work offline (no running server required)
    - Output is JSON for scripting
"""

from .admin_cli import AdminCLI

__all__ = ["AdminCLI"]
