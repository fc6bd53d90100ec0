"""Web-of-trust graph builder and trust scoring."""

__version__ = "0.1.0"
