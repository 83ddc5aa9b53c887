"""Topology configuration loading and built-in presets."""
from .presets import PRESETS, get_preset
from .topology import TopologyConfig

__all__ = ["PRESETS", "get_preset", "TopologyConfig"]
