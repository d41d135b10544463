"""
OAuth endpoints.

- Authorization flow (/oauth/authorize, /oauth/login_page, /oauth/login,
  /oauth/approve_page, /oauth/approve)
- Token endpoints (/oauth/token, /oauth/revoke, /oauth/validate/{token})
- Logout (/logout)
"""

import logging
from pathlib import Path
from typing import Tuple
from urllib.parse import urlencode

from authlib.oauth2.rfc6749.util import extract_basic_authorization
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response
from fastapi.templating import Jinja2Templates
from sqlalchemy.orm import Session

from config import SESSION_COOKIE, SESSION_COOKIE_SECURE
from .auth import create_session_cookie, read_session_cookie
from .database import get_db
from .errors import IdpError, InvalidClient, InvalidCredentials, NotFound
from .oauth2_server import AuthorizationServer
from .schemas import (
    ApproveParams,
    AuthorizeParams,
    LoginParams,
    RequestIdParams,
    RevokeParams,
    TokenParams,
)
from .tokens import TokenResponse

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates"
templates = Jinja2Templates(directory=str(TEMPLATES_DIR))

router = APIRouter()

NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}

# Errors on these routes are answered with JSON, everywhere else with HTML
JSON_ROUTES = ("/oauth/token", "/oauth/revoke", "/oauth/validate")


def get_server(request: Request, db: Session = Depends(get_db)) -> AuthorizationServer:
    state = request.app.state
    return AuthorizationServer(db, clock=state.clock, lifetime=state.grant_request_lifetime)


async def get_form(request: Request):
    return await request.form()


def _redirect(url: str) -> RedirectResponse:
    return RedirectResponse(url=url, status_code=302, headers=NO_STORE)


def _page(path: str, request_id: str) -> RedirectResponse:
    return _redirect(f"{path}?{urlencode({'request_id': request_id})}")


def _finish_login(server: AuthorizationServer, request_id: str) -> RedirectResponse:
    """Skip the consent page when the account already approved the whole scope."""
    outcome = server.auto_approve(request_id)
    if outcome is not None:
        return _redirect(outcome.redirect_url())
    return _page("/oauth/approve_page", request_id)


def _client_credentials(request: Request, params) -> Tuple[str, str]:
    """HTTP Basic credentials, falling back to client_id/client_secret form fields."""
    client_id, client_secret = extract_basic_authorization(request.headers)
    if not client_id:
        client_id, client_secret = params.client_id, params.client_secret
    if not client_id or client_secret is None:
        raise InvalidClient("No credentials provided")
    return client_id, client_secret


async def idp_error_handler(request: Request, exc: IdpError):
    body = {
        "code": exc.status_code,
        "error": exc.error,
        "message": exc.message,
        "reasons": getattr(exc, "field_errors", {}),
    }
    if exc.status_code >= 500:
        logger.error("[HTTP] %s %s failed: %s", request.method, request.url.path, exc.error)
    else:
        logger.info("[HTTP] %s %s -> %d %s", request.method, request.url.path,
                    exc.status_code, exc.error)

    headers = {"Cache-Control": "no-cache"}
    if request.url.path.startswith(JSON_ROUTES):
        if isinstance(exc, InvalidClient):
            headers["WWW-Authenticate"] = 'Basic realm="oauth"'
        return JSONResponse(body, status_code=exc.status_code, headers=headers)

    return templates.TemplateResponse(
        request,
        "error.html",
        {"error": body, "referrer": request.headers.get("referer")},
        status_code=exc.status_code,
        headers=headers,
    )


# ============== Authorization Flow ==============

@router.get("/oauth/authorize")
def authorize(request: Request, server: AuthorizationServer = Depends(get_server)):
    params = AuthorizeParams.parse(request.query_params)
    grant = server.create_grant_request(
        params.client_id, params.response_type, params.redirect_uri, params.state, params.scope
    )

    session_token = read_session_cookie(request.cookies.get(SESSION_COOKIE))
    if session_token:
        try:
            server.authenticate_session(grant.token, session_token)
        except (NotFound, InvalidCredentials):
            logger.info("[SESSION] Session expired or account disabled, asking for credentials")
        else:
            return _finish_login(server, grant.token)

    return _page("/oauth/login_page", grant.token)


@router.get("/oauth/login_page")
def login_page(request: Request, server: AuthorizationServer = Depends(get_server)):
    params = RequestIdParams.parse(request.query_params)
    if server.get_grant_request(params.request_id) is None:
        raise NotFound("Grant request does not exist")

    return templates.TemplateResponse(
        request, "login.html", {"request_id": params.request_id}, headers=NO_STORE
    )


@router.post("/oauth/login")
def login(request: Request, form=Depends(get_form),
          server: AuthorizationServer = Depends(get_server)):
    params = LoginParams.parse(form)
    try:
        grant = server.authenticate(params.request_id, params.login, params.password)
    except InvalidCredentials as exc:
        return templates.TemplateResponse(
            request,
            "login.html",
            {"request_id": params.request_id, "error": exc.message},
            status_code=exc.status_code,
            headers=NO_STORE,
        )

    session = server.tokens.issue_session(grant.account_uuid)
    response = _finish_login(server, params.request_id)
    response.set_cookie(
        key=SESSION_COOKIE,
        value=create_session_cookie(session),
        httponly=True,
        secure=SESSION_COOKIE_SECURE,
        samesite="lax",
    )
    return response


@router.get("/oauth/approve_page")
def approve_page(request: Request, server: AuthorizationServer = Depends(get_server)):
    params = RequestIdParams.parse(request.query_params)
    grant, description = server.describe(params.request_id)
    if not grant.is_authenticated:
        raise InvalidCredentials("Grant request is not authenticated")

    return templates.TemplateResponse(
        request,
        "approve.html",
        {"client": grant.client.name, "scope": description, "request_id": grant.token},
        headers=NO_STORE,
    )


@router.post("/oauth/approve")
def approve(form=Depends(get_form), server: AuthorizationServer = Depends(get_server)):
    params = ApproveParams.parse(form)
    if params.deny:
        outcome = server.deny(params.request_id)
    else:
        outcome = server.approve(params.request_id, params.scope)
    return _redirect(outcome.redirect_url())


# ============== Token Endpoints ==============

@router.post("/oauth/token")
def token(request: Request, form=Depends(get_form),
          server: AuthorizationServer = Depends(get_server)):
    params = TokenParams.parse(form)
    client_id, client_secret = _client_credentials(request, params)

    if params.grant_type == "authorization_code":
        access, refresh = server.tokens.redeem_code(
            client_id, client_secret, params.code, params.redirect_uri
        )
    else:
        access = server.tokens.refresh_access_token(client_id, client_secret, params.refresh_token)
        refresh = None

    return JSONResponse(TokenResponse.build(access, refresh).to_dict(), headers=NO_STORE)


@router.post("/oauth/revoke")
def revoke(request: Request, form=Depends(get_form),
           server: AuthorizationServer = Depends(get_server)):
    params = RevokeParams.parse(form)
    client_id, client_secret = _client_credentials(request, params)
    server.tokens.revoke_refresh_token(client_id, client_secret, params.token)
    return Response(status_code=200, headers=NO_STORE)


@router.get("/oauth/validate/{token}")
def validate(token: str, server: AuthorizationServer = Depends(get_server)):
    info = server.tokens.validate_access_token(token)
    return JSONResponse(info, headers={"Cache-Control": "no-cache"})


@router.get("/logout")
def logout(request: Request, server: AuthorizationServer = Depends(get_server)):
    session_token = read_session_cookie(request.cookies.get(SESSION_COOKIE))
    if session_token:
        server.tokens.end_session(session_token)
    response = templates.TemplateResponse(request, "logout.html", {}, headers=NO_STORE)
    response.delete_cookie(SESSION_COOKIE)
    return response
