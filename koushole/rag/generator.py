"""
Generator - Grounded tutor replies and quiz context.

This module is the consumer side of retrieval:
1. Retrieve the book chunks relevant to the student's message
2. Add them to the system prompt as numbered sources
3. Ask the chat model for a reply
4. Return the reply with citations

If retrieval finds nothing, or the search itself fails, the tutor still
answers from general knowledge; a broken index never fails a chat request.
"""

from dataclasses import dataclass, field

from koushole.config import CHAT_MAX_TOKENS, QUIZ_CONTEXT_MAX_CHARS, TOP_K_CHUNKS
from koushole.llm import ChatModel
from koushole.models import CollectionType
from koushole.rag.retriever import Citation, RetrievalResult, Retriever
from koushole.storage.documents import DocumentRepository
from koushole.utils.errors import EmbeddingError, PersistenceError
from koushole.utils.logging import get_logger

logger = get_logger(__name__)

SYSTEM_PROMPT = """You are Koushole, a patient learning companion for Bangladeshi students.
Explain the core idea first, then break it down step by step if the student is stuck.
Answer in the student's language; in Bangla, keep technical terms in English.
Write maths in plain text with Unicode symbols (a² + b² = c²), never LaTeX.
Keep answers short: small paragraphs and bullet points."""

WEAKNESS_TEMPLATE = "\nThe student has struggled with: {weaknesses}. Be extra patient there."

BOOK_CONTEXT_TEMPLATE = """

You have excerpts from the student's book below. Prefer them over general knowledge
and say which source you used. If the answer is not in them, say so before answering
from general knowledge.

Book excerpts:
{context}"""


@dataclass
class ChatReply:
    """
    A tutor reply.

    Attributes:
        reply: The model's answer
        used_book_context: True if retrieved chunks were in the prompt
        sources: Citations for those chunks
    """
    reply: str
    used_book_context: bool = False
    sources: list[Citation] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = {"reply": self.reply, "usedBookContext": self.used_book_context}
        if self.sources:
            data["sources"] = [source.to_dict() for source in self.sources]
        return data


class TutorChat:
    """
    Answers student questions, grounded in a book when one is given.

    Example:
        chat = TutorChat(GroqChatModel(key), retriever, documents)
        answer = chat.reply("What is osmosis?", document_id=book_id,
                            collection=CollectionType.LIBRARY)
        print(answer.reply)
    """

    def __init__(
        self,
        model: ChatModel,
        retriever: Retriever | None = None,
        documents: DocumentRepository | None = None,
    ):
        self.model = model
        self.retriever = retriever
        self.documents = documents

    def _retrieve(
        self,
        query: str,
        document_id: str,
        collection: CollectionType,
        limit: int = TOP_K_CHUNKS,
    ) -> RetrievalResult | None:
        if self.retriever is None:
            return None
        try:
            return self.retriever.retrieve(query, document_id, collection, limit=limit)
        except (EmbeddingError, PersistenceError) as exc:
            logger.warning("retrieval_failed_falling_back", document_id=document_id, error=str(exc))
            return None

    def reply(
        self,
        message: str,
        document_id: str | None = None,
        collection: CollectionType | str = CollectionType.LIBRARY,
        weaknesses: list[str] | None = None,
    ) -> ChatReply:
        """
        Generate a reply to the student's message.

        Raises:
            ProviderError / LLMError: If the chat model itself fails
        """
        collection = CollectionType.parse(collection)
        retrieval = self._retrieve(message, document_id, collection) if document_id else None

        system = SYSTEM_PROMPT
        if weaknesses:
            system += WEAKNESS_TEMPLATE.format(weaknesses=", ".join(weaknesses))
        if retrieval is not None and retrieval.has_results:
            system += BOOK_CONTEXT_TEMPLATE.format(context=retrieval.context)
        else:
            retrieval = None

        answer = self.model.complete(
            system,
            message,
            temperature=0.7,
            max_tokens=CHAT_MAX_TOKENS,
        )
        return ChatReply(
            reply=answer,
            used_book_context=retrieval is not None,
            sources=retrieval.citations if retrieval else [],
        )

    def quiz_context(
        self,
        topic: str,
        document_id: str,
        collection: CollectionType | str = CollectionType.OFFICIAL,
        max_chars: int = QUIZ_CONTEXT_MAX_CHARS,
    ) -> str:
        """
        Source text for generating a quiz on `topic` from one book.

        Uses retrieved chunks when there are any, otherwise the stored
        content block. Returns "" when the book has neither.
        """
        collection = CollectionType.parse(collection)
        retrieval = self._retrieve(topic, document_id, collection, limit=TOP_K_CHUNKS * 2)
        if retrieval is not None and retrieval.has_results:
            return retrieval.context[:max_chars]

        if self.documents is None:
            return ""
        try:
            content = self.documents.get_content(document_id, collection) or ""
        except PersistenceError as exc:
            logger.warning("content_fallback_failed", document_id=document_id, error=str(exc))
            return ""
        return content[:max_chars]
