"""Completion client and stream decoding for gigachatui."""

from gigachatui.llm.engine import CompletionEngine, FragmentSink
from gigachatui.llm.stream import decode_stream, raise_for_api_error

__all__ = [
    "CompletionEngine",
    "FragmentSink",
    "decode_stream",
    "raise_for_api_error",
]
