"""Shell session bridge with an autonomous terminal agent."""

__version__ = "0.3.0"
