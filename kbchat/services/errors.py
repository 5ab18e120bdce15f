"""Error taxonomy shared by the ingestion, retrieval and answer pipeline.

Every error carries the HTTP status it maps to and a message that is safe to
show to the caller. The FastAPI exception handler in ``kbchat.main`` renders
them as ``ErrorResponse`` bodies.
"""

from typing import Optional


class KnowledgeBaseError(Exception):
    """Base class for errors raised by the knowledge base services."""

    status_code: int = 500
    default_message: str = "Internal server error"

    def __init__(self, message: Optional[str] = None, detail: Optional[str] = None):
        self.message = message or self.default_message
        self.detail = detail
        super().__init__(self.message)


class AuthenticationError(KnowledgeBaseError):
    status_code = 401
    default_message = "Unauthorized"


class AuthorizationError(KnowledgeBaseError):
    status_code = 403
    default_message = "Forbidden"


class ValidationError(KnowledgeBaseError):
    status_code = 400
    default_message = "Invalid request"


class NotFoundError(KnowledgeBaseError):
    status_code = 404
    default_message = "Not found"


class RetrievalError(KnowledgeBaseError):
    """Embedding or chunk-query collaborator failed. Never used for empty results."""

    status_code = 502
    default_message = "Failed to retrieve context for the question"


class EmbeddingTimeoutError(RetrievalError):
    default_message = "Embedding service timed out"


class UpstreamError(KnowledgeBaseError):
    status_code = 502
    default_message = "AI service error"


class UpstreamRateLimitError(UpstreamError):
    status_code = 429
    default_message = "Rate limit exceeded, please try again later."


class UpstreamQuotaError(UpstreamError):
    status_code = 402
    default_message = "AI usage limit reached. Please add credits to continue."


class PersistenceError(KnowledgeBaseError):
    status_code = 500
    default_message = "Storage operation failed"


class IncompleteStreamError(KnowledgeBaseError):
    """Raised by the SSE decoder when a stream closes without ``[DONE]``."""

    status_code = 502
    default_message = "The answer stream ended unexpectedly"
