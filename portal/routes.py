import logging
import uuid
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, File, Form, Query, Request, UploadFile, WebSocket, WebSocketDisconnect
from starlette.responses import FileResponse

from portal.access import AccessRequestService
from portal.auth import (
    ROLE_ADMIN,
    BootstrapCredentials,
    Identity,
    TokenIssuer,
    get_current_identity,
    get_optional_identity,
    require_admin,
    role_for,
)
from portal.chat import ChatService
from portal.errors import InvalidCredentialsError, ValidationError
from portal.papers import PaperService
from portal.profiles import ProfileService
from portal.schemas import (
    AccessRequest,
    AccessRequestCreate,
    AccessRequestStatus,
    AuditEntry,
    LoginRequest,
    MaintenanceRequest,
    Paper,
    PinRequest,
    Profile,
    StatusUpdate,
    TokenResponse,
)
from portal.uploads import check_upload

logger = logging.getLogger(__name__)

papers_router = APIRouter(tags=["papers"])
auth_router = APIRouter(tags=["auth"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
profile_router = APIRouter(prefix="/profile", tags=["profiles"])
files_router = APIRouter(tags=["files"])
chat_router = APIRouter(tags=["chat"])

UPLOAD_CHUNK_SIZE = 64 * 1024


def get_papers(request: Request) -> PaperService:
    return request.app.state.papers


def get_access(request: Request) -> AccessRequestService:
    return request.app.state.access


def get_profiles(request: Request) -> ProfileService:
    return request.app.state.profiles


def base_url(request: Request) -> str:
    """Public base address, read from configuration on every request."""
    configured = request.app.state.settings.public_base_url
    return configured or str(request.base_url)


# ---- Papers -------------------------------------------------------------------


async def read_limited(file: UploadFile, max_bytes: int) -> bytes:
    """Read an upload in chunks, failing as soon as it passes ``max_bytes``."""
    if file.size is not None and file.size > max_bytes:
        raise ValidationError("File too large")
    chunks = []
    total = 0
    while True:
        chunk = await file.read(UPLOAD_CHUNK_SIZE)
        if not chunk:
            break
        total += len(chunk)
        if total > max_bytes:
            raise ValidationError("File too large")
        chunks.append(chunk)
    return b"".join(chunks)


@papers_router.post("/upload", response_model=Paper)
async def upload_paper(
    request: Request,
    file: Optional[UploadFile] = File(None),
    title: str = Form(""),
    description: str = Form(""),
    category: str = Form(""),
    abstract: str = Form(""),
    author: str = Form(""),
    identity: Identity = Depends(get_current_identity),
    papers: PaperService = Depends(get_papers),
):
    """Submit a paper for review. New papers always start as pending."""
    max_bytes = request.app.state.settings.max_upload_bytes
    content = await read_limited(file, max_bytes) if file is not None else b""
    content_type = (file.content_type if file is not None else None) or "application/pdf"
    if content:
        check_upload(content, content_type, max_bytes)

    paper = await papers.submit(
        identity.email,
        {"title": title, "description": description, "category": category, "abstract": abstract, "author": author},
        file.filename if file is not None else None,
        content,
        content_type,
    )
    return await papers.get(paper.id, base_url(request), is_admin=True)


@papers_router.get("/papers", response_model=list[Paper])
async def list_papers(request: Request, papers: PaperService = Depends(get_papers)):
    """Approved papers only."""
    return await papers.list_public(base_url(request))


@papers_router.get("/papers/{paper_id}", response_model=Paper)
async def get_paper(
    paper_id: str,
    request: Request,
    identity: Optional[Identity] = Depends(get_optional_identity),
    papers: PaperService = Depends(get_papers),
):
    is_admin = identity is not None and identity.is_admin
    return await papers.get(paper_id, base_url(request), is_admin=is_admin)


@papers_router.patch("/papers/{paper_id}", response_model=Paper)
async def update_paper_status(
    paper_id: str,
    update: StatusUpdate,
    request: Request,
    admin: Identity = Depends(require_admin),
    papers: PaperService = Depends(get_papers),
):
    await papers.set_status(paper_id, update.status, actor=admin.email)
    return await papers.get(paper_id, base_url(request), is_admin=True)


# ---- Auth ---------------------------------------------------------------------


@auth_router.post("/login", response_model=TokenResponse)
async def login(body: LoginRequest, request: Request):
    bootstrap: BootstrapCredentials = request.app.state.bootstrap
    identity = bootstrap.match_login(body.email, body.password)
    if identity is None:
        raise InvalidCredentialsError("Invalid credentials")
    issuer: TokenIssuer = request.app.state.token_issuer
    return TokenResponse(token=issuer.issue(identity), email=identity.email, role=identity.role)


@auth_router.post("/auth/request-access", response_model=AccessRequestStatus)
async def request_access(body: AccessRequestCreate, access: AccessRequestService = Depends(get_access)):
    created = await access.request(body.name, body.email, body.department, body.reason)
    return AccessRequestStatus(id=created.id, status=created.status)


@auth_router.get("/auth/request-status", response_model=AccessRequestStatus)
async def request_status(email: str = Query(..., min_length=1), access: AccessRequestService = Depends(get_access)):
    latest = await access.status_for(email)
    return AccessRequestStatus(id=latest.id, status=latest.status)


@auth_router.post("/auth/verify-pin", response_model=TokenResponse)
async def verify_pin(body: PinRequest, request: Request, access: AccessRequestService = Depends(get_access)):
    email = await access.verify_pin(body.pin)
    bootstrap: BootstrapCredentials = request.app.state.bootstrap
    if bootstrap.enabled and email == bootstrap.email:
        role = ROLE_ADMIN
    else:
        role = role_for(email, request.app.state.settings)
    issuer: TokenIssuer = request.app.state.token_issuer
    token = issuer.issue(Identity(email=email, role=role))
    return TokenResponse(token=token, email=email, role=role)


# ---- Admin --------------------------------------------------------------------


@admin_router.get("/papers", response_model=list[Paper])
async def admin_list_papers(
    request: Request,
    admin: Identity = Depends(require_admin),
    papers: PaperService = Depends(get_papers),
):
    return await papers.list_for_admin(base_url(request))


@admin_router.get("/audit-log", response_model=list[AuditEntry])
async def admin_audit_log(
    paper_id: Optional[str] = Query(None, alias="paperId"),
    admin: Identity = Depends(require_admin),
    papers: PaperService = Depends(get_papers),
):
    return await papers.audit_log(paper_id)


@admin_router.delete("/papers/{paper_id}")
async def admin_delete_paper(
    paper_id: str,
    confirm: bool = Query(False),
    admin: Identity = Depends(require_admin),
    papers: PaperService = Depends(get_papers),
):
    deleted = await papers.delete(paper_id, actor=admin.email, confirm=confirm)
    return {"success": True, "id": deleted.id}


@admin_router.post("/maintenance/normalize-papers")
async def admin_normalize_papers(
    body: MaintenanceRequest,
    admin: Identity = Depends(require_admin),
    papers: PaperService = Depends(get_papers),
):
    count = await papers.normalize(actor=admin.email, confirm=body.confirm)
    return {"message": "Papers normalized", "count": count}


@admin_router.post("/maintenance/reset-papers")
async def admin_reset_papers(
    body: MaintenanceRequest,
    admin: Identity = Depends(require_admin),
    papers: PaperService = Depends(get_papers),
):
    count = await papers.reset(actor=admin.email, confirm=body.confirm)
    return {"message": "Papers reset", "count": count}


@admin_router.get("/access-requests", response_model=list[AccessRequest])
async def admin_list_access_requests(
    admin: Identity = Depends(require_admin),
    access: AccessRequestService = Depends(get_access),
):
    return await access.list_for_admin()


@admin_router.post("/approve-request/{request_id}", response_model=AccessRequest)
async def admin_approve_request(
    request_id: str,
    admin: Identity = Depends(require_admin),
    access: AccessRequestService = Depends(get_access),
):
    return await access.approve(request_id, actor=admin.email)


# ---- Profiles -----------------------------------------------------------------


@profile_router.get("/{email}", response_model=Profile)
async def get_profile(
    email: str,
    identity: Identity = Depends(get_current_identity),
    profiles: ProfileService = Depends(get_profiles),
):
    return await profiles.get(email)


@profile_router.patch("", response_model=Profile)
async def update_profile(
    changes: dict[str, Any] = Body(...),
    identity: Identity = Depends(get_current_identity),
    profiles: ProfileService = Depends(get_profiles),
):
    """Merge changes into the caller's own profile."""
    return await profiles.update(identity.email, changes)


# ---- Files --------------------------------------------------------------------


@files_router.get("/uploads/{locator}")
async def serve_upload(locator: str, request: Request):
    path = request.app.state.uploads.open(locator)
    return FileResponse(path, headers={"Cache-Control": "public, max-age=31536000"})


# ---- Chat ---------------------------------------------------------------------


@chat_router.websocket("/ws/chat")
async def chat_socket(websocket: WebSocket):
    chat: ChatService = websocket.app.state.chat
    await websocket.accept()
    connection_id = uuid.uuid4().hex
    try:
        await chat.connect(connection_id, websocket.send_json)
        while True:
            frame = await websocket.receive_text()
            await chat.handle(connection_id, frame)
    except WebSocketDisconnect:
        pass
    finally:
        await chat.leave(connection_id)


routers = [papers_router, auth_router, admin_router, profile_router, files_router, chat_router]
