"""StageFlow webhook pipeline API."""

__version__ = "0.4.0"
