# services/chat_service.py
"""Grounded chat: retrieve context for the latest question, then call the completion backend"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from config import settings
from core.domain import SearchFilters, Source
from core.interfaces import ICompletionBackend
from infrastructure.context_assembler import ContextAssembler
from services.rag_service import RAGService

logger = logging.getLogger(settings.LOGGER_NAME)

VALID_ROLES = ("system", "user", "assistant")


@dataclass
class ChatAnswer:
    text: str
    sources: List[Source] = field(default_factory=list)
    context_used: bool = False
    context_error: Optional[str] = None


class ChatService:
    def __init__(self, rag_service: RAGService, completion: ICompletionBackend, use_rag: bool = True):
        self.rag_service = rag_service
        self.completion = completion
        self.use_rag = use_rag

    async def answer(self, messages: List[Dict[str, str]], filters: Optional[SearchFilters] = None) -> ChatAnswer:
        """
        Answer the last user message of a conversation.

        The retrieved context goes in as a system message ahead of the
        conversation. Retrieval failures degrade to an ungrounded answer;
        completion failures raise CompletionError.
        """
        for message in messages:
            if message.get("role") not in VALID_ROLES:
                raise ValueError(f"Invalid message role: {message.get('role')}")
        question = next((m.get("content") for m in reversed(messages) if m.get("role") == "user"), None)
        if not question or not question.strip():
            raise ValueError("At least one non-empty user message is required")

        context = await self.rag_service.retrieve_context(question, filters=filters) if self.use_rag else None
        context_used = context is not None and context.success

        prompt: List[Dict[str, str]] = []
        if context_used:
            prompt.append({"role": "system", "content": context.text})
        elif context is not None:
            logger.info(f"Answering without retrieved context: {context.error}")
        prompt.extend({"role": m["role"], "content": m.get("content", "")} for m in messages)

        reply = await asyncio.to_thread(self.completion.complete, prompt)

        if context_used:
            reply += ContextAssembler.format_sources_for_display(context.sources)
        return ChatAnswer(
            text=reply,
            sources=list(context.sources) if context_used else [],
            context_used=context_used,
            context_error=None if context is None or context_used else context.error,
        )
