"""Terminal IPTV directory with live stream checking."""

__version__ = "0.3.0"

__all__ = ["__version__"]
