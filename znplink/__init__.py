"""Z-Stack ZNP adapter link: serial framing, payload structures and coordinator control."""

__version__ = "0.1.0"
__all__ = ["adapter", "frame", "messages"]