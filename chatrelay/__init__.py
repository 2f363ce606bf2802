"""chatrelay: multi-user chat relay in front of Ollama."""

__version__ = "0.1.0"
