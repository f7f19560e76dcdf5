"""Task gateway in front of a headless CLI agent process."""

__version__ = "0.1.0"
