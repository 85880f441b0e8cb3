"""
Stats endpoint for administrators.
"""
from typing import Annotated

from fastapi import APIRouter, Depends

from messaging.api.deps import get_store
from messaging.core.errors import ForbiddenError
from messaging.core.logging import get_logger, log_extra
from messaging.core.security import Caller, get_caller
from messaging.schemas.message import ErrorResponse, SenderCount, StatsResponse
from messaging.services.store import MessageStore

logger = get_logger(__name__)

router = APIRouter(tags=["Analytics"])


@router.get(
    "/stats",
    response_model=StatsResponse,
    responses={403: {"model": ErrorResponse, "description": "Administrators only"}},
    summary="Get messaging statistics",
    description="Returns lightweight analytics about stored messages and deliveries.",
)
async def get_stats(
    caller: Annotated[Caller, Depends(get_caller)],
    store: Annotated[MessageStore, Depends(get_store)],
) -> StatsResponse:
    """
    Get messaging statistics including:

    - Message, delivery and unread delivery totals
    - Unique sender count and top 10 senders
    - Messages per message type
    - First and last message timestamps
    """
    if not caller.is_admin:
        raise ForbiddenError("only administrators may view statistics")

    stats = store.stats()

    logger.debug(
        "Generated stats",
        **log_extra(total_messages=stats["total_messages"], senders_count=stats["senders_count"]),
    )

    return StatsResponse(
        total_messages=stats["total_messages"],
        total_deliveries=stats["total_deliveries"],
        unread_deliveries=stats["unread_deliveries"],
        senders_count=stats["senders_count"],
        messages_per_sender=[SenderCount(**row) for row in stats["messages_per_sender"]],
        messages_per_type=stats["messages_per_type"],
        first_message_at=stats["first_message_at"],
        last_message_at=stats["last_message_at"],
    )
