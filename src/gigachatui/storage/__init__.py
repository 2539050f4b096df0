"""Persistent session and message storage."""

from gigachatui.storage.store import MessageRecord, Session, SessionStore

__all__ = ["MessageRecord", "Session", "SessionStore"]
