"""Subject -> T1 -> template intermodality registration pipeline."""

__version__ = "0.1.0"
