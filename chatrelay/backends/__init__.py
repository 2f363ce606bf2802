"""
Inference backends for chatrelay.
"""
from chatrelay.backends.base import BaseBackend, RecordStream
from chatrelay.backends.cache import ModelListCache
from chatrelay.backends.ollama import OllamaBackend, OllamaStream

__all__ = [
    "BaseBackend",
    "RecordStream",
    "ModelListCache",
    "OllamaBackend",
    "OllamaStream",
]
