"""Market Pulse control plane: scheduler control store + admin health."""

__version__ = "1.2.0"
