"""
Messages endpoints: compose, reply, inbox, read state and delete.
"""
from typing import Annotated, Dict, Iterable, List, Literal, Optional

from fastapi import APIRouter, Depends, Query

from messaging.api.deps import get_directory, get_store
from messaging.core.logging import get_logger, log_extra
from messaging.core.security import Caller, get_caller
from messaging.models.message import Message
from messaging.schemas.message import (
    ComposeRequest,
    ComposeResponse,
    ErrorResponse,
    InboxResponse,
    MessageResponse,
    MessagesListResponse,
    ReadResponse,
    RecipientOption,
    RecipientsResponse,
    ReplyRequest,
    StatusResponse,
    ThreadResponse,
    UnreadCountResponse,
)
from messaging.services.compose import send_from_template
from messaging.services.directory import UserDirectory
from messaging.services.store import MessageStore
from messaging.services.templates import TemplateRegistry, get_template_registry
from messaging.services.threads import Thread

logger = get_logger(__name__)

router = APIRouter(prefix="/messages", tags=["Messages"])

ERRORS = {
    400: {"model": ErrorResponse, "description": "Invalid request"},
    401: {"model": ErrorResponse, "description": "Missing caller identity"},
    403: {"model": ErrorResponse, "description": "No access"},
    404: {"model": ErrorResponse, "description": "Not found"},
}


def _message_response(message: Message, read: Optional[bool] = None) -> MessageResponse:
    return MessageResponse.model_validate(message).model_copy(update={"read": read})


def _thread_response(thread: Thread, states: Dict[int, bool]) -> ThreadResponse:
    return ThreadResponse(
        root=_message_response(thread.root, states.get(thread.root.id)),
        replies=[_message_response(reply, states.get(reply.id)) for reply in thread.replies],
        is_unread=thread.is_unread,
        last_activity=thread.last_activity,
        parents=thread.parents,
    )


def _thread_messages(threads: Iterable[Thread]) -> List[Message]:
    return [message for thread in threads for message in thread.messages]


Folder = Annotated[
    Literal["inbox", "sent", "all"],
    Query(description="Received messages, the caller's own, or both"),
]
OnlyUnread = Annotated[bool, Query(description="Only messages the caller has not read yet")]


@router.get(
    "",
    response_model=MessagesListResponse,
    responses=ERRORS,
    summary="List messages",
    description="Messages the caller sent or received, newest first, without threading.",
)
async def list_messages(
    caller: Annotated[Caller, Depends(get_caller)],
    store: Annotated[MessageStore, Depends(get_store)],
    folder: Folder = "all",
    only_unread: OnlyUnread = False,
) -> MessagesListResponse:
    messages = store.list_messages_for_user(caller.user_id, folder, only_unread)
    states = store.read_states(caller.user_id, messages)
    return MessagesListResponse(
        data=[_message_response(message, states[message.id]) for message in messages],
        total=len(messages),
    )


@router.get(
    "/threads",
    response_model=InboxResponse,
    responses=ERRORS,
    summary="Inbox threads",
    description="The caller's messages grouped into threads, most recent activity first.",
)
async def list_threads(
    caller: Annotated[Caller, Depends(get_caller)],
    store: Annotated[MessageStore, Depends(get_store)],
    folder: Folder = "all",
    only_unread: OnlyUnread = False,
) -> InboxResponse:
    threads = store.inbox(caller.user_id, folder, only_unread)
    states = store.read_states(caller.user_id, _thread_messages(threads))
    logger.debug(
        "Listed threads",
        **log_extra(user_id=caller.user_id, threads=len(threads)),
    )
    return InboxResponse(
        threads=[_thread_response(thread, states) for thread in threads],
        total=len(threads),
        unread_threads=sum(1 for thread in threads if thread.is_unread),
    )


@router.get(
    "/unread/count",
    response_model=UnreadCountResponse,
    responses=ERRORS,
    summary="Unread count",
)
async def unread_count(
    caller: Annotated[Caller, Depends(get_caller)],
    store: Annotated[MessageStore, Depends(get_store)],
) -> UnreadCountResponse:
    return UnreadCountResponse(count=store.unread_count(caller.user_id))


@router.get(
    "/recipients",
    response_model=RecipientsResponse,
    responses=ERRORS,
    summary="Users the caller can message",
    description="Administrators may write to anyone; everyone else may write to the staff.",
)
async def list_recipients(
    caller: Annotated[Caller, Depends(get_caller)],
    directory: Annotated[UserDirectory, Depends(get_directory)],
) -> RecipientsResponse:
    users = directory.list_contacts(caller.user_id, staff_only=not caller.is_admin)
    return RecipientsResponse(
        data=[RecipientOption.model_validate(user) for user in users],
        total=len(users),
    )


@router.get(
    "/{message_id}",
    response_model=MessageResponse,
    responses=ERRORS,
    summary="Get a message",
)
async def get_message(
    message_id: int,
    caller: Annotated[Caller, Depends(get_caller)],
    store: Annotated[MessageStore, Depends(get_store)],
) -> MessageResponse:
    message = store.get_message(message_id, caller.user_id)
    states = store.read_states(caller.user_id, [message])
    return _message_response(message, states[message.id])


@router.get(
    "/{message_id}/thread",
    response_model=ThreadResponse,
    responses=ERRORS,
    summary="Get the thread containing a message",
)
async def get_thread(
    message_id: int,
    caller: Annotated[Caller, Depends(get_caller)],
    store: Annotated[MessageStore, Depends(get_store)],
) -> ThreadResponse:
    thread = store.get_thread(message_id, caller.user_id)
    states = store.read_states(caller.user_id, thread.messages)
    return _thread_response(thread, states)


@router.post(
    "",
    status_code=201,
    response_model=ComposeResponse,
    responses={**ERRORS, 422: {"model": ErrorResponse, "description": "Template error"}},
    summary="Send a message",
    description="Send to a user, a broadcast class or a dynamic audience, optionally from a template.",
)
async def compose_message(
    request: ComposeRequest,
    caller: Annotated[Caller, Depends(get_caller)],
    store: Annotated[MessageStore, Depends(get_store)],
    directory: Annotated[UserDirectory, Depends(get_directory)],
    registry: Annotated[TemplateRegistry, Depends(get_template_registry)],
) -> ComposeResponse:
    addressing = request.recipient.to_addressing() if request.recipient else None
    attachments = [attachment.model_dump() for attachment in request.attachments]

    if request.template_id:
        messages = send_from_template(
            store,
            registry,
            directory,
            caller.user_id,
            request.template_id,
            addressing,
            sender_role=caller.role,
            version=request.template_version,
            extra=request.context,
            attachments=attachments,
        )
    else:
        messages = [store.create_message(
            caller.user_id,
            request.subject,
            request.content,
            addressing,
            attachments,
            sender_role=caller.role,
        )]

    return ComposeResponse(
        data=[_message_response(message, True) for message in messages],
        recipients=sum(len(message.recipients) for message in messages),
    )


@router.post(
    "/{message_id}/reply",
    status_code=201,
    response_model=MessageResponse,
    responses=ERRORS,
    summary="Reply to a message",
)
async def reply_to_message(
    message_id: int,
    request: ReplyRequest,
    caller: Annotated[Caller, Depends(get_caller)],
    store: Annotated[MessageStore, Depends(get_store)],
) -> MessageResponse:
    message = store.create_message(
        caller.user_id,
        request.subject,
        request.content,
        request.recipient.to_addressing() if request.recipient else None,
        [attachment.model_dump() for attachment in request.attachments],
        in_reply_to=message_id,
        sender_role=caller.role,
    )
    return _message_response(message, True)


@router.put(
    "/{message_id}/read",
    response_model=ReadResponse,
    responses=ERRORS,
    summary="Mark a message read",
)
async def mark_read(
    message_id: int,
    caller: Annotated[Caller, Depends(get_caller)],
    store: Annotated[MessageStore, Depends(get_store)],
) -> ReadResponse:
    record = store.mark_read(message_id, caller.user_id)
    return ReadResponse(message_id=message_id, read=record.read, read_at=record.read_at)


@router.delete(
    "/{message_id}",
    response_model=StatusResponse,
    responses=ERRORS,
    summary="Delete a message from the caller's view",
)
async def delete_message(
    message_id: int,
    caller: Annotated[Caller, Depends(get_caller)],
    store: Annotated[MessageStore, Depends(get_store)],
) -> StatusResponse:
    store.delete_for_user(message_id, caller.user_id)
    return StatusResponse()
