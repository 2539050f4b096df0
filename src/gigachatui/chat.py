"""Chat turns over a stored session.

``ChatService`` reads the session history from the store, sends it with
the new prompt to the completion engine and, only when the reply was
fully assembled, appends both the prompt and the reply to the session.
"""

from __future__ import annotations

import logging

from gigachatui.llm.engine import CompletionEngine, FragmentSink
from gigachatui.storage.store import MessageRecord, Session, SessionStore
from gigachatui.types import AssembledResponse, Message, Role

_logger = logging.getLogger(__name__)


class ChatService:
    def __init__(self, engine: CompletionEngine, store: SessionStore) -> None:
        self.engine = engine
        self.store = store

    def new_session(self, name: str) -> Session:
        session = Session(name=name)
        self.store.write_session(session)
        _logger.info("Started session %s (%s)", session.id, name)
        return session

    def history(self, session_id: str) -> list[Message]:
        return [r.to_message() for r in self.store.read_messages_by_session(session_id)]

    async def ask(
        self,
        session_id: str,
        prompt: str,
        on_fragment: FragmentSink | None = None,
        timeout: float | None = None,
    ) -> AssembledResponse:
        """Complete *prompt* in the context of the session's history.

        Errors from the engine propagate and leave the session unchanged.
        """
        user_msg = Message(role=Role.USER, content=prompt)
        conversation = self.history(session_id) + [user_msg]

        response = await self.engine.request_completion(
            conversation, on_fragment=on_fragment, timeout=timeout,
        )

        self.store.write_message(MessageRecord.from_message(session_id, user_msg))
        self.store.write_message(
            MessageRecord.from_message(session_id, response.to_message()),
        )
        return response
