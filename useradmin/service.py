"""HTTP API for administering Authelia users and invitations."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import Any, AsyncIterator, Dict, List, Optional, Union

import anyio
from fastapi import BackgroundTasks, Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from .config import Settings, load_settings
from .exceptions import NotFound, UserAdminError
from .hashing import HashProvider, build_hash_provider
from .invites import Clock, InviteService
from .mail import SMTPMailer
from .security import AccessGuard
from .stores import CredentialStore, InviteStore
from .users import UserService

logger = logging.getLogger("useradmin.service")

GroupsField = Optional[Union[List[str], str]]


class CreateUserRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    username: Optional[str] = None
    password: Optional[str] = None
    email: Optional[str] = None
    groups: GroupsField = None
    displayname: Optional[str] = None


class UpdateUserRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    email: Optional[str] = None
    displayname: Optional[str] = None
    groups: GroupsField = None


class PasswordRequest(BaseModel):
    password: Optional[str] = None


class InviteRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    email: Optional[str] = None
    groups: GroupsField = None
    displayname: Optional[str] = None
    expires_minutes: Optional[float] = Field(default=None, alias="expiresMinutes")


class AcceptInviteRequest(BaseModel):
    token: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None


class OkResponse(BaseModel):
    ok: bool = True


class InviteResponse(OkResponse):
    token: str
    link: str


class InvitationView(BaseModel):
    email: str
    groups: List[str]
    displayname: str
    createdAt: int
    expiresAt: int


def _first_validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "invalid request"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "invalid value")
    return f"{location}: {message}" if location else message


def register_api_routes(
    app: FastAPI,
    users: UserService,
    invites: InviteService,
    *,
    require_admin: AccessGuard,
    settings: Settings,
) -> None:
    """Expose the JSON endpoints on the provided FastAPI application."""

    admin = [Depends(require_admin)]

    @app.get("/health")
    async def healthcheck() -> Dict[str, bool]:
        return {"ok": True}

    @app.get("/api/users", dependencies=admin)
    async def list_users() -> Dict[str, Dict[str, Any]]:
        return await users.list()

    @app.get("/api/users/{username}", dependencies=admin)
    async def get_user(username: str) -> Dict[str, Any]:
        return await users.get(username)

    @app.post("/api/users", dependencies=admin, response_model=OkResponse)
    async def create_user(request: CreateUserRequest) -> OkResponse:
        await users.create(
            request.username,
            request.password,
            email=request.email,
            groups=request.groups,
            displayname=request.displayname,
        )
        return OkResponse()

    @app.put("/api/users/{username}", dependencies=admin, response_model=OkResponse)
    async def update_user(username: str, request: UpdateUserRequest) -> OkResponse:
        provided = request.model_dump(include=request.model_fields_set)
        await users.update(username, **provided)
        return OkResponse()

    @app.post("/api/users/{username}/password", dependencies=admin, response_model=OkResponse)
    async def change_password(username: str, request: PasswordRequest) -> OkResponse:
        await users.change_password(username, request.password)
        return OkResponse()

    @app.delete("/api/users/{username}", dependencies=admin, response_model=OkResponse)
    async def delete_user(username: str) -> OkResponse:
        await users.delete(username)
        return OkResponse()

    @app.post("/api/invite", dependencies=admin, response_model=InviteResponse)
    async def create_invite(request: InviteRequest, background_tasks: BackgroundTasks) -> InviteResponse:
        result = await invites.invite(
            request.email,
            groups=request.groups,
            displayname=request.displayname,
            expires_minutes=request.expires_minutes,
        )
        background_tasks.add_task(invites.deliver, result)
        return InviteResponse(token=result.token, link=result.link)

    @app.get("/api/invites", dependencies=admin)
    async def list_invites() -> Dict[str, InvitationView]:
        pending = await invites.list_pending()
        return {token: InvitationView(**invitation.to_dict()) for token, invitation in pending.items()}

    @app.delete("/api/invite/{token}", dependencies=admin, response_model=OkResponse)
    async def revoke_invite(token: str) -> OkResponse:
        await invites.revoke(token)
        return OkResponse()

    @app.post("/api/invite/accept", response_model=OkResponse)
    async def accept_invite(request: AcceptInviteRequest) -> OkResponse:
        await invites.accept(request.token, request.username, request.password)
        return OkResponse()

    @app.get("/api/logfile", dependencies=admin)
    async def logfile() -> FileResponse:
        path = settings.log_file
        if path is None or not path.is_file():
            raise NotFound("no logfile")
        return FileResponse(path, media_type="text/plain")


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(UserAdminError)
    async def handle_user_admin_error(request: Request, exc: UserAdminError) -> JSONResponse:
        log = logger.error if exc.status_code >= 500 else logger.warning
        log("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        message = _first_validation_message(exc)
        logger.warning("%s %s rejected: %s", request.method, request.url.path, message)
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": message})

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("%s %s error: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "internal server error"},
        )


async def check_smtp(mailer: SMTPMailer) -> bool:
    """Run the startup SMTP probe; never raises into the event loop."""

    try:
        return await anyio.to_thread.run_sync(mailer.verify, abandon_on_cancel=True)
    except Exception:
        logger.exception("SMTP verify raised unexpectedly")
        return False


def create_app(
    *,
    settings: Settings | None = None,
    credential_store: CredentialStore | None = None,
    invite_store: InviteStore | None = None,
    hasher: HashProvider | None = None,
    mailer: SMTPMailer | None = None,
    guard: AccessGuard | None = None,
    clock: Clock | None = None,
) -> FastAPI:
    """Instantiate the FastAPI application for the user administration API."""

    settings = settings or load_settings()
    try:
        settings.config_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        logger.warning("Unable to create config directory %s: %s", settings.config_dir, exc)

    credential_store = credential_store or CredentialStore(settings.users_file)
    invite_store = invite_store or InviteStore(settings.invites_file)
    hasher = hasher or build_hash_provider(settings)
    if mailer is None and settings.smtp is not None:
        mailer = SMTPMailer(settings.smtp)
    guard = guard or AccessGuard(headers=settings.group_headers, admin_group=settings.admin_group)

    user_service = UserService(credential_store, hasher)
    invite_options: Dict[str, Any] = {}
    if clock is not None:
        invite_options["clock"] = clock
    invite_service = InviteService(
        invite_store,
        user_service,
        mailer=mailer,
        base_url=settings.base_url,
        invite_path=settings.invite_path,
        subject=settings.invite_subject,
        **invite_options,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        smtp_check: Optional[asyncio.Task[bool]] = None
        if mailer is not None:
            smtp_check = asyncio.create_task(check_smtp(mailer))
        else:
            logger.info("SMTP not configured - invites will be returned but not emailed")
        logger.info(
            "Managing %s with %s hashing (invites in %s)",
            credential_store.path,
            hasher.name,
            invite_store.path,
        )
        try:
            yield
        finally:
            if smtp_check is not None and not smtp_check.done():
                smtp_check.cancel()
                with suppress(asyncio.CancelledError):
                    await smtp_check

    app = FastAPI(
        title="Authelia UserAdmin",
        version="1.0.0",
        description="Manage the Authelia file user database and email invitations.",
        lifespan=lifespan,
    )
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=list(settings.trusted_proxies))

    register_api_routes(app, user_service, invite_service, require_admin=guard, settings=settings)
    register_error_handlers(app)
    return app


__all__ = ["check_smtp", "create_app", "register_api_routes", "register_error_handlers"]
