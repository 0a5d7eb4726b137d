"""komarictl: lifecycle manager for the Komari Monitor service binary."""
from __future__ import annotations

__all__ = ["__version__"]

# Keep in sync with ``pyproject.toml``.
__version__ = "0.1.0"
