"""Root filesystem, overlay and flash volume handling for embedded Linux."""

__version__ = "0.1.0"