"""gigachatui - streaming terminal chat client for the GigaChat API."""

__version__ = "0.3.0"
