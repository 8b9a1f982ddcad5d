"""KaleRig - multi-account KALE farming rig."""

__version__ = "1.0.0"
