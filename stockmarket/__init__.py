"""stockmarket — scheduled quote polling into a hierarchical state store."""

__version__ = "0.1.0"
