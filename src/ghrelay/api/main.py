from __future__ import annotations

import asyncio
import html
import logging
from contextlib import asynccontextmanager
from typing import Any

import httpx
from fastapi import Body, Depends, FastAPI, Form, HTTPException, Request, Response
from fastapi.responses import FileResponse, HTMLResponse, PlainTextResponse, RedirectResponse
from starlette.middleware.sessions import SessionMiddleware

from ..audit.interactions import InteractionLog, InteractionLogMiddleware
from ..auth.assertion import AssertionMinter
from ..auth.session import SessionStore, UserSessionStore, guard
from ..broker import CredentialBroker, build_router
from ..client.github import GithubAppClient
from ..errors import LoginRequired
from ..settings import Settings, settings as default_settings
from ..state.store import CallbackState, StateDocument, WebhookState


def _serve_html(cfg: Settings, name: str) -> Response:
    page = cfg.html_dir / name
    if not page.is_file():
        logging.error("Missing html page %s", page)
        return PlainTextResponse("could not serve static html", status_code=500)
    return FileResponse(page, media_type="text/html")


def create_app(
    cfg: Settings | None = None,
    *,
    minter: AssertionMinter | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    sessions: SessionStore | None = None,
) -> FastAPI:
    """Wire the relay: session cookie -> interaction log -> routes.

    ``minter``, ``transport`` and ``sessions`` replace the key file, the
    network and the single configured operator respectively.
    """
    cfg = cfg or default_settings
    if not cfg.app_id:
        raise ValueError("app_id is required")
    minter = minter or AssertionMinter.from_file(cfg.private_key_file)

    client = GithubAppClient(
        minter,
        cfg.app_id,
        cfg.app_name,
        api_url=cfg.github_api_url,
        timeout=cfg.upstream_timeout_seconds,
        transport=transport,
    )
    interactions = InteractionLog(cfg.interactions_file, lock_timeout=cfg.audit_lock_timeout_seconds).open()

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        try:
            yield
        finally:
            await client.aclose()
            interactions.close()

    app = FastAPI(title="GitHub App Relay", lifespan=lifespan)
    app.state.settings = cfg
    app.state.broker = CredentialBroker(client)
    app.state.interactions = interactions
    app.state.sessions = sessions or UserSessionStore.single(cfg.access_login, cfg.access_password)
    app.state.callback_state = StateDocument(cfg.callback_data_file, CallbackState)
    app.state.webhook_state = StateDocument(cfg.webhook_data_file, WebhookState)

    @app.exception_handler(LoginRequired)
    async def _redirect_to_login(request: Request, exc: LoginRequired):
        return RedirectResponse(exc.location, status_code=307)

    @app.get("/", dependencies=[Depends(guard("/login?to=./"))])
    def index():
        return _serve_html(cfg, "index.html")

    @app.get("/login")
    def login_page():
        return _serve_html(cfg, "login.html")

    @app.post("/login")
    def login(
        request: Request,
        login: str = Form(...),
        password: str = Form(...),
        to: str | None = Form(None),
    ):
        store: SessionStore = request.app.state.sessions
        user = store.authenticate(login, password)
        if user is None:
            logging.warning("Rejected login attempt for %r", login)
            return PlainTextResponse("invalid creds", status_code=403)
        store.login(request, user)
        if to:
            target = html.escape(to, quote=True)
            return HTMLResponse(
                f"<html><head><meta http-equiv=\"Refresh\" content=\"0; url='{target}'\" /></head></html>"
            )
        return PlainTextResponse("logged in")

    @app.get("/logout")
    def logout(request: Request):
        request.app.state.sessions.logout(request)
        return Response(status_code=200)

    @app.get("/callback")
    async def callback(request: Request, code: str, installation_id: str):
        doc: StateDocument[CallbackState] = request.app.state.callback_state
        doc.data.callback_code = code
        doc.data.installation_ids.add(installation_id)
        return _save(doc)

    @app.post("/webhook")
    async def webhook(request: Request, payload: Any = Body(...)):  # noqa: B008 FastAPI dependency pattern
        doc: StateDocument[WebhookState] = request.app.state.webhook_state
        doc.data.deliveries += 1
        doc.data.last_payload = payload
        return _save(doc)

    @app.get("/incoming", dependencies=[Depends(guard("/login?to=incoming"))])
    async def incoming(request: Request):
        log: InteractionLog = request.app.state.interactions
        try:
            data = await asyncio.to_thread(log.read)
        except OSError as e:
            raise HTTPException(500, f"could not read interactions: {e}") from e
        return Response(content=data, media_type="text/plain")

    app.include_router(build_router(cfg.gate_installation_access_token))

    # Last added runs first: the session cookie is resolved outside the log.
    app.add_middleware(InteractionLogMiddleware, log=interactions, max_body_bytes=cfg.max_body_bytes)
    app.add_middleware(SessionMiddleware, secret_key=cfg.session_secret, session_cookie="ghrelay_session")
    return app


def _save(doc: StateDocument) -> PlainTextResponse:
    try:
        doc.save()
    except OSError as e:
        logging.exception("Failed to save state document %s", doc.path)
        return PlainTextResponse(f"failed to save the state: {e}", status_code=500)
    return PlainTextResponse("processed")
