"""Grounded prompt composition with row citations.

The answer UI turns literal ``[Row N]`` tokens into citation pills, so the
bracket format in the context block and in the instructions must not change.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence

from kbchat.api.chat.schemas import Citation
from kbchat.services.retriever import RetrievedChunk

REFUSAL_SENTENCE = "I don't have that information in the current knowledge base."

EXCERPT_CHARS = 200

GROUNDED_SYSTEM_PROMPT = f"""You are a helpful assistant that answers questions using ONLY the data rows provided by the user.

Rules:
- Answer only from the provided data rows. Never use outside knowledge and never fabricate values.
- Cite every row you use with its literal bracket token, for example [Row 2].
- When several rows are relevant, cite all of them, for example [Row 2] [Row 5].
- If the answer is not contained in the data rows, reply exactly: "{REFUSAL_SENTENCE}"
"""

NO_KNOWLEDGE_BASE_SYSTEM_PROMPT = """You are a helpful assistant. No knowledge base has been synced yet, so there are no data rows to answer from.
Tell the user that no knowledge base has been synced and that an administrator needs to sync one before questions can be answered from it. Do not invent data."""


@dataclass
class ComposedPrompt:
    system_prompt: str
    user_prompt: str

    @property
    def has_context(self) -> bool:
        return self.system_prompt is GROUNDED_SYSTEM_PROMPT


def render_context(chunks: Sequence[RetrievedChunk]) -> str:
    return "\n\n".join(f"[Row {chunk.row_number}]\n{chunk.content}" for chunk in chunks)


def compose(chunks: Sequence[RetrievedChunk], question: str) -> ComposedPrompt:
    """Build the system and user prompts for a question."""
    if not chunks:
        return ComposedPrompt(system_prompt=NO_KNOWLEDGE_BASE_SYSTEM_PROMPT, user_prompt=question)

    user_prompt = f"Data rows:\n{render_context(chunks)}\n\nQuestion: {question}"
    return ComposedPrompt(system_prompt=GROUNDED_SYSTEM_PROMPT, user_prompt=user_prompt)


def build_citations(chunks: Sequence[RetrievedChunk]) -> List[Citation]:
    """Citation snapshots in retrieval rank order."""
    return [
        Citation(
            chunk_id=chunk.id,
            chunk_index=chunk.chunk_index,
            excerpt=chunk.content[:EXCERPT_CHARS],
            row_number=chunk.row_number,
            reference=rank,
            similarity=round(chunk.similarity * 100) if chunk.similarity is not None else None,
        )
        for rank, chunk in enumerate(chunks, start=1)
    ]
