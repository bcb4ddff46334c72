"""deepchat: terminal chat client with persistent, streaming threads."""

__version__ = "0.4.0"
