from __future__ import annotations

import hmac
from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, Path, Query, Request

from tutorbridge.api.schemas import (
    AccountResponse,
    AuthResponse,
    ChatRequest,
    ChatResponse,
    ConversationDetailResponse,
    ConversationListResponse,
    ConversationResponse,
    CreateConversationRequest,
    Envelope,
    InternalAccountResponse,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    RenameConversationRequest,
)
from tutorbridge.logging import get_correlation_id, get_logger
from tutorbridge.service.auth import AuthContext, AuthResult
from tutorbridge.service.chat import ConversationDetail, seed_from_request
from tutorbridge.service.errors import ForbiddenError, NotFoundError
from tutorbridge.service.runtime import Runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _ok(data: Any = None) -> Envelope:
    envelope = Envelope(status="ok", data=data)
    if get_correlation_id():
        envelope.request_id = get_correlation_id()
    return envelope


def get_runtime(request: Request) -> Runtime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        runtime = Runtime.from_settings()
        request.app.state.runtime = runtime
    return runtime


async def get_principal(
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> AuthContext:
    return await runtime.auth.authenticate(authorization)


def _auth_payload(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        account=AccountResponse.from_account(result.account),
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        access_expires_at=result.access_expires_at,
        refresh_expires_at=result.refresh_expires_at,
    )


def _detail_payload(detail: ConversationDetail) -> ConversationDetailResponse:
    conversation = detail.conversation
    return ConversationDetailResponse(
        id=conversation.id,
        title=conversation.title,
        created_at=conversation.created_at,
        updated_at=conversation.updated_at,
        messages=[MessageResponse.from_message(m) for m in detail.messages],
    )


# auth


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, runtime: Runtime = Depends(get_runtime)):
    result = await runtime.auth.register(body.email, body.password, body.display_name)
    return _ok(_auth_payload(result))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, runtime: Runtime = Depends(get_runtime)):
    """Exchange email and password for an access/refresh pair.

    Raises:
        401 unauthorized: unknown email or wrong password
        401 account_locked: too many failures; ``Retry-After`` is set
    """
    result = await runtime.auth.login(body.email, body.password)
    return _ok(_auth_payload(result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: RefreshRequest, runtime: Runtime = Depends(get_runtime)):
    """Rotate a refresh token; the presented token cannot be used again."""
    result = await runtime.auth.refresh(body.refresh_token)
    return _ok(_auth_payload(result))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: LogoutRequest, runtime: Runtime = Depends(get_runtime)):
    await runtime.auth.logout(body.refresh_token)
    return _ok({"message": "logged out"})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    account = await runtime.auth.get_profile(principal.account_id)
    return _ok(AccountResponse.from_account(account))


# chat


@router.post("/chat", response_model=Envelope, status_code=201, tags=["chat"])
async def send_message(
    body: ChatRequest,
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    """Append a user turn, ask the generation service, append its reply.

    Creates a conversation when ``conversation_id`` is omitted. Generation
    failures still return 201 with a fallback assistant turn.
    """
    result = await runtime.chat.send_message(
        principal.account_id,
        body.message,
        str(body.conversation_id) if body.conversation_id else None,
    )
    return _ok(
        ChatResponse(
            conversation=ConversationResponse.from_conversation(result.conversation),
            user_message=MessageResponse.from_message(result.user_message),
            assistant_message=MessageResponse.from_message(result.assistant_message),
        )
    )


@router.get("/conversations", response_model=Envelope, tags=["chat"])
async def list_conversations(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    result = await runtime.chat.list_conversations(principal.account_id, page=page, limit=limit)
    return _ok(
        ConversationListResponse(
            items=[ConversationResponse.from_conversation(c) for c in result.items],
            total=result.total,
            page=result.page,
            limit=result.limit,
        )
    )


@router.post("/conversations", response_model=Envelope, status_code=201, tags=["chat"])
async def create_conversation(
    body: CreateConversationRequest,
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    seed = seed_from_request(body.title, body.first_message)
    detail = await runtime.chat.create_conversation(principal.account_id, seed)
    return _ok(_detail_payload(detail))


@router.get("/conversations/{conversation_id}", response_model=Envelope, tags=["chat"])
async def get_conversation(
    conversation_id: UUID = Path(...),
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    detail = await runtime.chat.get_conversation(principal.account_id, str(conversation_id))
    return _ok(_detail_payload(detail))


@router.patch("/conversations/{conversation_id}", response_model=Envelope, tags=["chat"])
async def rename_conversation(
    body: RenameConversationRequest,
    conversation_id: UUID = Path(...),
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    conversation = await runtime.chat.rename_conversation(
        principal.account_id, str(conversation_id), body.title
    )
    return _ok(ConversationResponse.from_conversation(conversation))


@router.delete("/conversations/{conversation_id}", response_model=Envelope, tags=["chat"])
async def delete_conversation(
    conversation_id: UUID = Path(...),
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.chat.delete_conversation(principal.account_id, str(conversation_id))
    return _ok({"deleted": True, "conversation_id": str(conversation_id)})


@router.delete("/messages/{message_id}", response_model=Envelope, tags=["chat"])
async def delete_message(
    message_id: UUID = Path(...),
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.chat.delete_message(principal.account_id, str(message_id))
    return _ok({"deleted": True, "message_id": str(message_id)})


# internal


def require_service_key(
    x_service_key: Optional[str] = Header(None, alias="X-Service-Key"),
    runtime: Runtime = Depends(get_runtime),
) -> None:
    expected = runtime.settings.internal_service_key
    if not expected or not x_service_key:
        raise ForbiddenError("service key required")
    if not hmac.compare_digest(expected.encode(), x_service_key.encode()):
        logger.warning("internal_service_key_rejected")
        raise ForbiddenError("invalid service key")


@router.get(
    "/internal/accounts/{account_id}",
    response_model=Envelope,
    tags=["internal"],
    dependencies=[Depends(require_service_key)],
)
async def internal_get_account(
    account_id: UUID = Path(...),
    runtime: Runtime = Depends(get_runtime),
):
    """Account lookup for the generation service."""
    account = runtime.store.get_account(str(account_id))
    if not account:
        raise NotFoundError("account not found", detail={"account_id": str(account_id)})
    logger.info("internal_account_lookup", account_id=account.id)
    return _ok(InternalAccountResponse.from_account(account))
