"""Configuration loading for device repair runs."""

from .settings import RepairConfig, load_config


__all__ = ["RepairConfig", "load_config"]
