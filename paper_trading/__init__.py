"""Paper trading simulation engine with an adaptive strategy selector."""

__version__ = "0.1.0"
