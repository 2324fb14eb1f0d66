"""chatgate: single-session outbound chat gateway."""

__version__ = "0.1.0"
