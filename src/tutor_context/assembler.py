"""Q&A context assembly.

Turns ranked chunks into labelled context blocks and the system prompt for
the tutoring model. Document names and types come from the application's
document store through ``DocumentLookup``; a lookup that fails or finds
nothing falls back to placeholder labels instead of failing the assembly.
"""

import asyncio
from typing import Protocol

from loguru import logger

from tutor_context.models import (
    AnswerContext,
    Bucket,
    CallerContext,
    DocumentInfo,
    RelevantDocument,
    ScoredChunk,
)
from tutor_context.retrieval import ContextualRetriever

UNKNOWN_DOCUMENT = DocumentInfo(name="Unknown", type="unknown")

BUCKET_LABELS = {
    Bucket.TEMPORARY: "[Tài liệu tạm thời]",
    Bucket.PERMANENT: "[Tài liệu cố định]",
    Bucket.OTHER: "[Tài liệu bên ngoài]",
}

SYSTEM_PROMPT_TEMPLATE = (
    "Bạn là giáo viên. Dựa vào tài liệu dưới đây để trả lời:\n\n"
    "{context}\n\n"
    "Chào học sinh rồi giải thích tự nhiên dựa trên tài liệu. Xuống dòng nhiều để dễ đọc. "
    "Giải bài tập chi tiết từng bước. Có thể đưa ví dụ thêm.\n\n"
    "Ưu tiên tài liệu người dùng tải lên. Nói chuyện bình thường, "
    'đừng dùng tiêu đề "Phần này", "Phần kia".'
)


class DocumentLookup(Protocol):
    """Read access to document display metadata owned by the application."""

    async def get_document(self, document_id: int) -> DocumentInfo | None:
        """Return a permanent document's metadata, or None if it does not exist."""
        ...

    async def get_temporary_document(self, document_id: int) -> DocumentInfo | None:
        """Return a temporary upload's metadata, or None if it does not exist."""
        ...


async def resolve_document(
    lookup: DocumentLookup, document_id: int, is_temporary: bool
) -> DocumentInfo:
    """Fetch metadata from the partition the chunk belongs to."""
    try:
        if is_temporary:
            info = await lookup.get_temporary_document(document_id)
        else:
            info = await lookup.get_document(document_id)
    except Exception as e:
        logger.warning(f"Document lookup failed for {document_id}: {e}")
        return UNKNOWN_DOCUMENT

    if info is None:
        logger.warning(
            f"No {'temporary ' if is_temporary else ''}document {document_id} for indexed chunk"
        )
        return UNKNOWN_DOCUMENT
    return info


def type_label(document_type: str) -> str:
    return "Lý thuyết" if document_type == "theory" else "Bài tập"


def format_block(position: int, doc: RelevantDocument) -> str:
    header = (
        f"[Tài liệu {position}: {doc.document_name} - "
        f"{type_label(doc.document_type)} {BUCKET_LABELS[doc.category]}]"
    )
    return f"{header}\n{doc.content}"


class QAContextAssembler:
    """Builds the answer context for a chat question."""

    def __init__(self, retriever: ContextualRetriever, lookup: DocumentLookup, top_k: int = 5):
        """Initialize assembler.

        Args:
            retriever: Contextual retriever for document chunks
            lookup: Document metadata lookup
            top_k: Number of chunks placed in the context
        """
        self.retriever = retriever
        self.lookup = lookup
        self.top_k = top_k

    async def label(self, ranked: list[ScoredChunk]) -> list[RelevantDocument]:
        """Attach document names and types to ranked chunks."""
        infos = await asyncio.gather(
            *(
                resolve_document(self.lookup, item.chunk.document_id, item.chunk.is_temporary)
                for item in ranked
            )
        )
        return [
            RelevantDocument(
                content=item.chunk.text,
                distance=item.distance,
                score=item.score,
                document_id=item.chunk.document_id,
                chunk_index=item.chunk.chunk_index,
                document_name=info.name,
                document_type=info.type,
                subject_id=item.chunk.subject_id,
                category=item.category,
                is_temporary=item.chunk.is_temporary,
            )
            for item, info in zip(ranked, infos, strict=True)
        ]

    def render(self, docs: list[RelevantDocument]) -> AnswerContext:
        """Render labelled documents into a context block and system prompt."""
        if not docs:
            return AnswerContext(system_prompt="", context="", relevant_docs=[])

        context = "\n\n".join(format_block(i, doc) for i, doc in enumerate(docs, start=1))
        return AnswerContext(
            system_prompt=SYSTEM_PROMPT_TEMPLATE.format(context=context),
            context=context,
            relevant_docs=docs,
        )

    async def build(
        self,
        query: str,
        subject_id: int | None = None,
        caller: CallerContext | None = None,
    ) -> AnswerContext:
        """Retrieve, label and render context for a question.

        Returns:
            Answer context; empty (not an error) when nothing was retrieved

        Raises:
            EmbeddingProviderError: If the query cannot be embedded
            RetrievalUnavailableError: If the index does not respond
        """
        ranked = await self.retriever.search_with_context(
            query, subject_id=subject_id, caller=caller, top_k=self.top_k
        )
        docs = await self.label(ranked)

        if docs:
            summary = ", ".join(
                f"{doc.document_name} ({doc.category.value}, {doc.score:.3f})" for doc in docs
            )
            logger.debug(f"Assembled context from {summary}")
        else:
            logger.debug(f"No context found for subject {subject_id}")
        return self.render(docs)
