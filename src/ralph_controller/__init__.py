"""Ralph Controller - supervises long-running autonomous coding-agent loops."""

__version__ = "0.1.0"
