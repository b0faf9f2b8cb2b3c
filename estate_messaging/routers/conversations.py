import asyncio
from typing import List

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, WebSocket, WebSocketDisconnect, status

from estate_messaging.errors import (
    InvalidMessage,
    MessagingError,
    NotAuthorized,
    NotFound,
    StoreUnavailable,
    UploadError,
)
from estate_messaging.schemas.messaging import AttachmentFile, Identity, StartConversation
from estate_messaging.services.messaging_service import MessagingService
from estate_messaging.services.session_registry import SessionRegistry
from estate_messaging.utils.dependencies import get_current_user, get_sessions, identity_from_values
from estate_messaging.utils.websocket_manager import ConnectionManager, snapshot_payload


router = APIRouter(prefix="/conversations", tags=["chat"])
manager = ConnectionManager()

_STATUS = {
    NotFound: status.HTTP_404_NOT_FOUND,
    NotAuthorized: status.HTTP_403_FORBIDDEN,
    InvalidMessage: status.HTTP_422_UNPROCESSABLE_ENTITY,
    UploadError: status.HTTP_502_BAD_GATEWAY,
    StoreUnavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def to_http_error(exc: MessagingError) -> HTTPException:
    for error_type, code in _STATUS.items():
        if isinstance(exc, error_type):
            return HTTPException(status_code=code, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


def get_messaging_service(
    current_user: Identity = Depends(get_current_user),
    sessions: SessionRegistry = Depends(get_sessions),
) -> MessagingService:
    return sessions.get(current_user)


@router.get("")
async def list_conversations(service: MessagingService = Depends(get_messaging_service)):
    try:
        items = await service.load()
    except MessagingError as exc:
        raise to_http_error(exc) from exc
    return {"items": [c.model_dump(mode="json") for c in items]}


@router.post("")
async def start_conversation(body: StartConversation, service: MessagingService = Depends(get_messaging_service)):
    try:
        conversation = await service.start(
            body.other_user_id,
            subject=body.subject,
            initial_message=body.initial_message,
            property_id=body.property_id,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except MessagingError as exc:
        raise to_http_error(exc) from exc
    return conversation.model_dump(mode="json")


@router.get("/{conversation_id}/messages")
async def open_conversation(conversation_id: str, service: MessagingService = Depends(get_messaging_service)):
    try:
        messages = await service.open_conversation_by_id(conversation_id)
    except MessagingError as exc:
        raise to_http_error(exc) from exc
    return {"items": [m.model_dump(mode="json") for m in messages or []]}


@router.post("/{conversation_id}/messages")
async def send_message(
    conversation_id: str,
    content: str = Form(default=""),
    files: List[UploadFile] = File(default=[]),
    service: MessagingService = Depends(get_messaging_service),
):
    attachments = [
        AttachmentFile(
            filename=f.filename or "file",
            content_type=f.content_type or "application/octet-stream",
            content=await f.read(),
        )
        for f in files
    ]
    try:
        message = await service.send(conversation_id, content, attachments)
    except MessagingError as exc:
        raise to_http_error(exc) from exc
    return message.model_dump(mode="json")


@router.delete("/{conversation_id}")
async def delete_conversation(conversation_id: str, service: MessagingService = Depends(get_messaging_service)):
    try:
        await service.remove(conversation_id)
    except MessagingError as exc:
        raise to_http_error(exc) from exc
    return {"deleted": conversation_id}


@router.websocket("/ws")
async def snapshot_socket(websocket: WebSocket):
    params = websocket.query_params
    headers = websocket.headers
    try:
        identity = identity_from_values(
            headers.get("x-user-id") or params.get("user_id"),
            headers.get("x-user-email") or params.get("email"),
        )
    except HTTPException:
        await websocket.close(code=4401)
        return

    sessions: SessionRegistry = websocket.app.state.sessions
    queue = await manager.connect(identity.id, websocket)
    try:
        service = await sessions.connect(identity)
    except MessagingError:
        manager.disconnect(identity.id, queue)
        await websocket.close(code=1011)
        return
    remove_listener = service.add_listener(queue.put_nowait)
    await queue.put(service.snapshot)

    async def pump():
        while True:
            snapshot = await queue.get()
            await websocket.send_json(snapshot_payload(snapshot))

    sender = asyncio.create_task(pump())
    try:
        while True:
            # clients only keep the socket open; anything they send is ignored
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        sender.cancel()
        remove_listener()
        manager.disconnect(identity.id, queue)
        await sessions.disconnect(identity.id)
