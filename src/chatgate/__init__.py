"""chatgate — multi-transport conversational gateway."""

__version__ = "0.1.0"
