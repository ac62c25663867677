"""Chat answers grounded in the user's indexed documents.

Each turn stores the user message, retrieves the closest chunks, and asks
the chat model to answer from them. Retrieval failure degrades to an
ungrounded answer; model failure returns a fixed reply with ``error`` set.

Usage:
    chat = ChatService(llm=ProviderLLMService())
    reply = await chat.answer(session_id, user_id, "When is the Acme invoice due?")
"""

from dataclasses import dataclass, field
from typing import Any

from docflow.core.embeddings import EmbeddingModelResolver
from docflow.core.llm import ChatProviderResolver, LLMService, normalize_llm_content
from docflow.core.logging import get_logger
from docflow.core.retrieval import RetrievedChunk, search_documents
from docflow.db.chat_messages import insert_chat_message, list_recent_messages
from docflow.db.user_settings import get_user_settings

logger = get_logger(__name__)

CHAT_TOP_K = 5
CHAT_THRESHOLD = 0.65
CHAT_TEMPERATURE = 0.3
HISTORY_LIMIT = 20

UNAVAILABLE_REPLY = "I am unable to process that request."

BASE_PROMPT = (
    "You are a precise filing assistant that answers questions about the user's documents.\n"
)
GROUNDED_PROMPT = (
    "Below is text retrieved from the user's documents. Answer from it and cite the "
    "sources by number.\n\n"
)
UNGROUNDED_PROMPT = (
    "No documents matched this question. Answer conversationally, and tell the user "
    "you could not find matching files."
)


@dataclass
class ChatReply:
    content: str
    context_sources: list[RetrievedChunk] = field(default_factory=list)
    message_id: str | None = None
    error: str | None = None


def build_system_prompt(sources: list[RetrievedChunk]) -> str:
    if not sources:
        return BASE_PROMPT + UNGROUNDED_PROMPT

    blocks = [f"[Source {i}]:\n{chunk.content}" for i, chunk in enumerate(sources, start=1)]
    return (
        BASE_PROMPT
        + GROUNDED_PROMPT
        + "--- CONTEXT SOURCES ---\n"
        + "\n\n".join(blocks)
        + "\n--- END CONTEXT ---\n"
    )


class ChatService:
    def __init__(
        self,
        llm: LLMService,
        chat_resolver: ChatProviderResolver | None = None,
        embed_resolver: EmbeddingModelResolver | None = None,
    ):
        self.llm = llm
        self.chat_resolver = chat_resolver or ChatProviderResolver(llm)
        self.embed_resolver = embed_resolver or EmbeddingModelResolver()

    async def answer(
        self,
        session_id: str,
        user_id: str,
        content: str,
        settings: dict[str, Any] | None = None,
    ) -> ChatReply:
        """
        Answer one user message.

        Args:
            session_id: Chat session the message belongs to
            user_id: Owner whose documents are searched
            content: The user's message
            settings: llm_provider/llm_model and embedding overrides;
                loaded from user_settings when omitted

        Returns:
            ChatReply with the answer and the chunks it was grounded on
        """
        if settings is None:
            settings = self._load_settings(user_id)

        try:
            insert_chat_message(session_id, user_id, "user", content)
        except Exception as e:
            logger.error(f"Failed to save user message: {e}", extra={"user_id": user_id})
            return ChatReply(content="", error="Failed to save message")

        sources = await self._retrieve(content, user_id, settings)
        messages = [{"role": "system", "content": build_system_prompt(sources)}]
        messages += self._history(session_id, content)

        try:
            choice = await self.chat_resolver.resolve(settings.get("llm_provider"), settings.get("llm_model"))
            raw = await self.llm.chat_complete(
                messages, provider=choice.provider, model=choice.model, temperature=CHAT_TEMPERATURE
            )
            reply = normalize_llm_content(raw).strip() or UNAVAILABLE_REPLY
        except Exception as e:
            logger.error(f"Chat completion failed: {e}", extra={"user_id": user_id})
            return ChatReply(content=UNAVAILABLE_REPLY, context_sources=sources, error=str(e))

        message_id = None
        try:
            row = insert_chat_message(
                session_id,
                user_id,
                "assistant",
                reply,
                context_sources=[chunk.model_dump() for chunk in sources],
            )
            message_id = str(row["id"]) if row.get("id") is not None else None
        except Exception as e:
            logger.error(f"Failed to save assistant message: {e}", extra={"user_id": user_id})

        return ChatReply(content=reply, context_sources=sources, message_id=message_id)

    async def _retrieve(self, query: str, user_id: str, settings: dict[str, Any]) -> list[RetrievedChunk]:
        try:
            return await search_documents(
                query,
                user_id,
                llm=self.llm,
                resolver=self.embed_resolver,
                top_k=CHAT_TOP_K,
                threshold=CHAT_THRESHOLD,
                settings=settings,
            )
        except Exception as e:
            logger.warning(f"Semantic search failed, answering without context: {e}", extra={"user_id": user_id})
            return []

    def _history(self, session_id: str, content: str) -> list[dict[str, str]]:
        try:
            rows = list_recent_messages(session_id, HISTORY_LIMIT)
        except Exception as e:
            logger.warning(f"Failed to load chat history: {e}")
            rows = []

        history = [
            {"role": str(row.get("role") or "user"), "content": str(row.get("content") or "")}
            for row in rows
        ]
        if not history or history[-1] != {"role": "user", "content": content}:
            history.append({"role": "user", "content": content})
        return history

    def _load_settings(self, user_id: str) -> dict[str, Any]:
        try:
            return get_user_settings(user_id) or {}
        except Exception as e:
            logger.warning(f"Failed to load user settings, using defaults: {e}", extra={"user_id": user_id})
            return {}
