"""HTTP gateway in front of an Ollama server."""

__version__ = "0.1.0"
