"""Self-healing controller for a multi-site article production pipeline."""

__version__ = "1.0.0"
