"""StageFlow core: webhook signing and the persistent state store."""

__version__ = "0.4.0"
