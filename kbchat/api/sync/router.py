"""Knowledge base sync endpoints."""

from fastapi import APIRouter, Depends

from kbchat.api.sync.schemas import SyncRequest, SyncResult, SyncStatusResponse
from kbchat.config.logger import app_logger
from kbchat.config.settings import settings
from kbchat.db.storage import Storage, get_storage
from kbchat.services.embeddings import embed_texts
from kbchat.services.ingestion import sync_table, sync_text
from kbchat.services.sync_status import get_sync_status
from kbchat.utils.auth import require_admin, require_auth
from kbchat.utils.responses import SuccessResponse, success_response

router = APIRouter(prefix="/v1/sync", tags=["sync"])


@router.post(
    "",
    response_model=SuccessResponse[SyncResult],
    summary="Replace the knowledge base with a CSV table or free text",
)
async def sync_knowledge_base(
    request: SyncRequest,
    user: dict = Depends(require_admin),
    storage: Storage = Depends(get_storage),
) -> SuccessResponse[SyncResult]:
    """Sync the knowledge base (admin only).

    The previous generation is deleted and fully replaced. Progress and
    failures are recorded in the sync status.
    """
    embedder = embed_texts if settings.effective_retrieval_mode == "vector" else None
    app_logger.info(f"Sync requested by {user['user_id']} (source_label={request.source_label!r})")

    if request.content is not None:
        result = await sync_text(
            storage,
            user,
            request.content,
            source_label=request.source_label,
            embedder=embedder,
        )
    else:
        result = await sync_table(
            storage,
            user,
            csv_text=request.csv,
            rows=request.rows,
            source_label=request.source_label,
            embedder=embedder,
        )

    return success_response(
        data=SyncResult(**result),
        message="Knowledge base synced successfully",
    )


@router.get(
    "/status",
    response_model=SuccessResponse[SyncStatusResponse],
    summary="Current knowledge base sync status",
)
async def sync_status(
    user_id: str = Depends(require_auth),
    storage: Storage = Depends(get_storage),
) -> SuccessResponse[SyncStatusResponse]:
    row = await get_sync_status(storage)
    return success_response(
        data=SyncStatusResponse(
            status=row.get("status") or "idle",
            chunk_count=row.get("chunk_count") or 0,
            doc_title=row.get("doc_title"),
            last_synced_at=row.get("last_synced_at"),
            error_message=row.get("error_message"),
        ),
        message="Sync status retrieved successfully",
    )
