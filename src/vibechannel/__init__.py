"""VibeChannel: conversations stored as message files in a git repository."""

__version__ = "0.3.0"
