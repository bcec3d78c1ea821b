"""Version information for device-repair."""

__version__ = "1.0.0"
