"""Deploy a local OP stack devnet from container primitives."""

__version__ = "0.1.0"
