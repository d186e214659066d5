# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""FastAPI application factory and HTTP schemas for the mail transfer service.

This module provides the REST API interface of the service. It includes:

- Pydantic models defining request/response schemas for all endpoints
- A factory function to create and configure the FastAPI application
- Authentication via API token in the X-API-Token header
- Endpoints for accounts, sending, messages, drafts, domains and DNS checks
- Health checks and Prometheus metrics exposure

Every endpoint delegates to :meth:`MailTransferCore.handle_command`; error
codes returned by the core are mapped to HTTP status codes here.

Example:
    Creating and running the API application::

        from async_mail_transfer.core import MailTransferCore
        from async_mail_transfer.api import create_app

        core = MailTransferCore(db_path="/data/mail_transfer.db")
        app = create_app(core, api_token="secret-token")

        # Run with uvicorn
        uvicorn.run(app, host="0.0.0.0", port=8000)
"""

from typing import Any, AsyncContextManager, Callable, Dict, List, Optional
import logging

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, ConfigDict, Field

from .core import MailTransferCore
from .models import AuthenticationReport, Domain, Draft, MessageRecord, MessageStats, SendStatus

logger = logging.getLogger(__name__)

service: MailTransferCore | None = None
API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)

ERROR_STATUS = {
    "invalid_input": status.HTTP_400_BAD_REQUEST,
    "sender_not_authorized": status.HTTP_400_BAD_REQUEST,
    "not_found": status.HTTP_404_NOT_FOUND,
    "store_unavailable": status.HTTP_503_SERVICE_UNAVAILABLE,
    "resolution_unavailable": status.HTTP_503_SERVICE_UNAVAILABLE,
}


async def require_token(request: Request, api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    If a token has been configured through :func:`create_app` and a request
    provides either a missing or different value, a ``401`` error is raised.
    When no token is configured the dependency is effectively bypassed.
    """
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")


auth_dependency = Depends(require_token)


class CommandStatus(BaseModel):
    """Base schema shared by most responses produced by the service."""
    ok: bool
    error: Optional[str] = None


class BasicOkResponse(CommandStatus):
    pass


class CreatedResponse(CommandStatus):
    id: str


class AccountPayload(BaseModel):
    """Account provisioning payload."""
    id: Optional[str] = None
    address: str
    user_id: Optional[str] = None


class AccountInfo(BaseModel):
    id: str
    address: str
    user_id: Optional[str] = None
    created_at: Optional[str] = None


class AccountsResponse(CommandStatus):
    accounts: List[AccountInfo]


class SendPayload(BaseModel):
    """Message composed by a user and handed to the relay."""
    model_config = ConfigDict(populate_by_name=True)
    account_id: str
    from_addr: Optional[str] = Field(default=None, alias="from")
    to: str
    subject: str = ""
    body: str = ""
    html: Optional[str] = None
    provider: Optional[str] = None


class SendResponse(CommandStatus):
    status: SendStatus
    message_id: Optional[str] = None
    relay_message_id: Optional[str] = None
    draft_id: Optional[str] = None


class MessagesResponse(CommandStatus):
    messages: List[MessageRecord]
    stats: MessageStats


class MessageResponse(CommandStatus, MessageRecord):
    pass


class DraftPayload(BaseModel):
    to: Optional[str] = None
    subject: Optional[str] = None
    body: Optional[str] = None


class DraftsResponse(CommandStatus):
    drafts: List[Draft]


class DomainPayload(BaseModel):
    user_id: str
    domain: str


class DomainCreatedResponse(CreatedResponse):
    domain: str


class DomainsResponse(CommandStatus):
    domains: List[Domain]


class VerifiedPayload(BaseModel):
    verified: bool


class DnsCheckPayload(BaseModel):
    domain: str
    dkim_selector: Optional[str] = None


class DnsCheckResponse(CommandStatus, AuthenticationReport):
    pass


def _checked(result: Dict[str, Any]) -> Dict[str, Any]:
    """Return ``result`` when ok, otherwise raise the matching HTTP error."""
    if result.get("ok") is True:
        return result
    code = result.get("code")
    http_status = ERROR_STATUS.get(code, status.HTTP_400_BAD_REQUEST)
    if http_status >= 500:
        logger.error("Command failed with %s: %s", code, result.get("error"))
    raise HTTPException(http_status, detail={"error": result.get("error"), "code": code})


def create_app(
    svc: MailTransferCore,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        Instance of :class:`async_mail_transfer.core.MailTransferCore` that
        implements the business logic for each command.
    api_token:
        Optional secret used to protect every endpoint except ``/health``.
        When provided, the ``X-API-Token`` header must match this value.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.

    Returns
    -------
    FastAPI
        A configured application ready to be served by Uvicorn or any ASGI
        server.
    """
    global service
    service = svc

    api = FastAPI(title="Async Mail Transfer", lifespan=lifespan)
    api.state.api_token = api_token

    def _service() -> MailTransferCore:
        if not service:
            raise HTTPException(500, "Service not initialized")
        return service

    @api.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Log validation errors with full details."""
        logger.error("Validation error on %s %s: %s", request.method, request.url.path, exc.errors())
        return JSONResponse(status_code=422, content={"detail": exc.errors()})

    @api.get("/health")
    async def health():
        """Health check endpoint for container monitoring (no authentication required)."""
        return {"status": "ok"}

    @api.get("/status", dependencies=[auth_dependency])
    async def get_status():
        """Report whether the SMTP listener is running."""
        return _service().status()

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the service."""
        return Response(content=_service().metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    # Accounts
    @api.post("/accounts", response_model=CreatedResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def add_account(payload: AccountPayload):
        """Provision a local mail account."""
        result = await _service().handle_command("addAccount", payload.model_dump(exclude_none=True))
        return CreatedResponse.model_validate(_checked(result))

    @api.get("/accounts", response_model=AccountsResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def list_accounts(user_id: Optional[str] = None):
        result = await _service().handle_command("listAccounts", {"user_id": user_id})
        return AccountsResponse.model_validate(_checked(result))

    # Sending
    @api.post("/send", response_model=SendResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def send(payload: SendPayload):
        """Relay a message. A relay failure keeps the message as a draft and answers 202."""
        data = payload.model_dump(by_alias=True, exclude_none=True)
        result = _checked(await _service().handle_command("sendMessage", data))
        response = SendResponse.model_validate(result)
        if response.status is SendStatus.DEFERRED:
            return JSONResponse(
                status_code=status.HTTP_202_ACCEPTED,
                content=response.model_dump(mode="json", exclude_none=True),
            )
        return response

    # Messages
    @api.get("/messages/{account_id}", response_model=MessagesResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def list_messages(account_id: str, limit: int = 50, offset: int = 0, direction: Optional[str] = None):
        """List an account's messages, newest first, with total and unread counts."""
        payload: Dict[str, Any] = {"account_id": account_id, "limit": limit, "offset": offset}
        if direction:
            if direction not in ("sent", "received"):
                raise HTTPException(400, detail={"error": f"Invalid direction '{direction}'", "code": "invalid_input"})
            payload["direction"] = direction
        result = await _service().handle_command("listMessages", payload)
        return MessagesResponse.model_validate(_checked(result))

    @api.get("/message/{message_id}", response_model=MessageResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def get_message(message_id: str):
        """Return a message and mark it read."""
        result = await _service().handle_command("getMessage", {"id": message_id})
        return MessageResponse.model_validate(_checked(result))

    @api.delete("/message/{message_id}", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def delete_message(message_id: str):
        result = await _service().handle_command("deleteMessage", {"id": message_id})
        return BasicOkResponse.model_validate(_checked(result))

    # Drafts
    @api.get("/drafts/{account_id}", response_model=DraftsResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def list_drafts(account_id: str):
        result = await _service().handle_command("listDrafts", {"account_id": account_id})
        return DraftsResponse.model_validate(_checked(result))

    @api.post("/drafts/{account_id}", response_model=CreatedResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def save_draft(account_id: str, payload: DraftPayload):
        """Save a work-in-progress composition."""
        data = {"account_id": account_id, **payload.model_dump()}
        result = await _service().handle_command("saveDraft", data)
        return CreatedResponse.model_validate(_checked(result))

    @api.delete("/draft/{draft_id}", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def delete_draft(draft_id: str):
        result = await _service().handle_command("deleteDraft", {"id": draft_id})
        return BasicOkResponse.model_validate(_checked(result))

    # Domains
    @api.post("/domains", response_model=DomainCreatedResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def add_domain(payload: DomainPayload):
        """Register a domain for a user. New domains start unverified."""
        result = await _service().handle_command("addDomain", payload.model_dump())
        return DomainCreatedResponse.model_validate(_checked(result))

    @api.get("/domains/{user_id}", response_model=DomainsResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def list_domains(user_id: str):
        result = await _service().handle_command("listDomains", {"user_id": user_id})
        return DomainsResponse.model_validate(_checked(result))

    @api.put("/domain/{domain_id}/verified", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def set_domain_verified(domain_id: str, payload: VerifiedPayload):
        """Record the outcome of a verification decided by the caller."""
        result = await _service().handle_command("setDomainVerified", {"id": domain_id, "verified": payload.verified})
        return BasicOkResponse.model_validate(_checked(result))

    @api.post("/dns/check", response_model=DnsCheckResponse, dependencies=[auth_dependency])
    async def dns_check(payload: DnsCheckPayload):
        """Look up MX, SPF, DMARC and DKIM records for a domain."""
        result = await _service().handle_command("checkDomain", payload.model_dump())
        return DnsCheckResponse.model_validate(_checked(result))

    return api
