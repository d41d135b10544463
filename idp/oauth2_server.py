"""
Grant request state machine.

A request moves Created -> Authenticated -> Approved and is finally
consumed by the token issuer. Requests older than the grant request
life time are treated as missing by every step, whether or not the
sweeper has removed them yet.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlencode, urlsplit, urlunsplit

from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from config import GRANT_REQUEST_EXPIRE_MINUTES
from .auth import authenticate_account, random_token
from .clients import ClientRegistry
from .database import transaction
from .errors import (
    InvalidClient,
    InvalidCredentials,
    InvalidGrantType,
    InvalidRedirect,
    InvalidScope,
    NotFound,
)
from .models import AccessToken, GrantRequest, LoginSession, utcnow
from .scopes import ScopeCatalog, format_scope
from .tokens import TokenIssuer

logger = logging.getLogger(__name__)

RESPONSE_TYPES = ("code", "token")


def _append_query(uri: str, params: Dict[str, str]) -> str:
    parts = urlsplit(uri)
    query = urlencode(params)
    if parts.query:
        query = f"{parts.query}&{query}"
    return urlunsplit(parts._replace(query=query))


@dataclass
class GrantOutcome:
    """What the client gets told once a grant request is finished."""

    grant_type: str
    redirect_uri: str
    state: str
    scope: frozenset
    code: Optional[str] = None
    access_token: Optional[AccessToken] = None
    error: Optional[str] = None

    def redirect_url(self) -> str:
        if self.error:
            return _append_query(self.redirect_uri, {"error": self.error, "state": self.state})
        if self.grant_type == "code":
            params = {"scope": format_scope(self.scope), "state": self.state, "code": self.code}
        else:
            params = {
                "token_type": "bearer",
                "scope": format_scope(self.scope),
                "state": self.state,
                "access_token": self.access_token.token,
            }
        return _append_query(self.redirect_uri, params)


class AuthorizationServer:
    """Carries grant requests from creation to approval."""

    def __init__(
        self,
        db: Session,
        catalog: ScopeCatalog = None,
        clients: ClientRegistry = None,
        tokens: TokenIssuer = None,
        clock: Callable = utcnow,
        lifetime: timedelta = timedelta(minutes=GRANT_REQUEST_EXPIRE_MINUTES),
    ):
        self.db = db
        self.clock = clock
        self.lifetime = lifetime
        self.catalog = catalog or ScopeCatalog(db)
        self.clients = clients or ClientRegistry(db, self.catalog, clock=clock)
        self.tokens = tokens or TokenIssuer(
            db, self.clients, clock=clock, grant_request_lifetime=lifetime
        )

    def _live(self):
        return self.db.query(GrantRequest).filter(
            GrantRequest.created_at > self.clock() - self.lifetime
        )

    def _locked(self, token: str) -> GrantRequest:
        request = None
        if token:
            request = self._live().filter(GrantRequest.token == token).with_for_update().first()
        if request is None:
            raise NotFound("Grant request does not exist")
        return request

    # ---- lookups ----

    def get_grant_request(self, token: str) -> Optional[GrantRequest]:
        if not token:
            return None
        return self._live().filter(GrantRequest.token == token).first()

    def list_grant_requests(self) -> List[GrantRequest]:
        return self.db.query(GrantRequest).order_by(GrantRequest.created_at).all()

    def describe(self, token: str) -> Tuple[GrantRequest, Dict[str, str]]:
        """The request and the descriptions of its requested scope, for consent pages."""
        request = self.get_grant_request(token)
        if request is None:
            raise NotFound("Grant request does not exist")
        description, complete = self.catalog.describe(request.scope_requested)
        if not complete:
            raise InvalidScope()
        return request, description

    # ---- transitions ----

    def create_grant_request(self, client_id: str, response_type: str, redirect_uri: str,
                             state: str, scope: Iterable[str]) -> GrantRequest:
        client = self.clients.get_by_name(client_id) if client_id else None
        if client is None:
            raise InvalidClient(f"Client '{client_id}' does not exist")
        if response_type not in RESPONSE_TYPES:
            raise InvalidGrantType()
        if redirect_uri not in client.redirect_uris:
            raise InvalidRedirect(f"Redirect URI invalid: '{redirect_uri}'")
        scope = frozenset(scope)
        if not self.catalog.validate(scope):
            raise InvalidScope()

        now = self.clock()
        with transaction(self.db):
            request = GrantRequest(
                token=random_token(),
                grant_type=response_type,
                state=state or "",
                scope_requested=scope,
                scope_approved=frozenset(),
                redirect_uri=redirect_uri,
                client_uuid=client.uuid,
                created_at=now,
                updated_at=now,
            )
            self.db.add(request)

        logger.info("[GRANT] Created %s grant request for client %s", response_type, client.name)
        return request

    def _attach_account(self, token: str, account_uuid: str) -> GrantRequest:
        with transaction(self.db):
            request = self._locked(token)
            if request.code is not None or request.scope_approved:
                raise NotFound("Grant request does not exist")
            request.account_uuid = account_uuid
            request.updated_at = self.clock()
        return request

    def authenticate(self, token: str, login: str, password: str) -> GrantRequest:
        if self.get_grant_request(token) is None:
            raise NotFound("Grant request does not exist")
        account = authenticate_account(self.db, login, password)
        if account is None:
            logger.info("[GRANT] Failed login attempt for %s", login)
            raise InvalidCredentials()
        return self._attach_account(token, account.uuid)

    def authenticate_session(self, token: str, session_token: str) -> GrantRequest:
        """
        Authenticate with a live login session instead of credentials.

        Raises NotFound for an unknown or expired session and
        InvalidCredentials when the account was disabled since login.
        """
        if self.get_grant_request(token) is None:
            raise NotFound("Grant request does not exist")
        session: LoginSession = self.tokens.touch_session(session_token)
        return self._attach_account(token, session.account_uuid)

    def approve(self, token: str, scope: Iterable[str]) -> GrantOutcome:
        """
        Record the account's consent and finish the request.

        For a code grant the request gets a fresh code and waits for
        redemption; for an implicit grant the access token is minted here
        and the request is consumed.
        """
        scope = frozenset(scope)
        with transaction(self.db):
            request = self._locked(token)
            if not request.is_authenticated or request.code is not None or request.scope_approved:
                raise NotFound("Grant request is not authenticated")
            if not scope or not scope <= request.scope_requested:
                raise InvalidScope("Approved scope must be part of the requested scope")

            outcome = GrantOutcome(
                grant_type=request.grant_type,
                redirect_uri=request.redirect_uri,
                state=request.state,
                scope=scope,
            )
            client_uuid, account_uuid = request.client_uuid, request.account_uuid
            now = self.clock()
            if outcome.grant_type == "code":
                outcome.code = random_token()

            # Only one of two concurrent approvals finds the request unapproved.
            claimed = (
                self.db.query(GrantRequest)
                .filter(
                    GrantRequest.token == request.token,
                    GrantRequest.account_uuid == account_uuid,
                    GrantRequest.code.is_(None),
                    GrantRequest.scope_approved == frozenset(),
                )
                .update(
                    {
                        GrantRequest.scope_approved: scope,
                        GrantRequest.code: outcome.code,
                        GrantRequest.updated_at: now,
                    },
                    synchronize_session=False,
                )
            )
            if claimed != 1:
                raise NotFound("Grant request is not authenticated")
            set_committed_value(request, "scope_approved", scope)
            set_committed_value(request, "code", outcome.code)
            set_committed_value(request, "updated_at", now)

            self.clients.approve(client_uuid, account_uuid, scope)
            if outcome.grant_type == "token":
                outcome.access_token = self.tokens.mint_access_token(
                    scope, client_uuid, account_uuid
                )
                self.db.query(GrantRequest).filter(GrantRequest.token == request.token).delete(
                    synchronize_session=False
                )
                self.db.expunge(request)

        logger.info("[GRANT] Approved %s grant request", outcome.grant_type)
        return outcome

    def auto_approve(self, token: str) -> Optional[GrantOutcome]:
        """Approve without asking if the account already consented to the whole scope."""
        request = self.get_grant_request(token)
        if request is None:
            raise NotFound("Grant request does not exist")
        if not request.is_authenticated:
            return None
        if not self.clients.covers(request.client_uuid, request.account_uuid,
                                   request.scope_requested):
            return None
        return self.approve(token, request.scope_requested)

    def deny(self, token: str) -> GrantOutcome:
        """The account refused; the request is removed."""
        with transaction(self.db):
            request = self._locked(token)
            if request.code is not None:
                raise NotFound("Grant request does not exist")
            outcome = GrantOutcome(
                grant_type=request.grant_type,
                redirect_uri=request.redirect_uri,
                state=request.state,
                scope=frozenset(),
                error="access_denied",
            )
            self.db.delete(request)

        logger.info("[GRANT] Denied %s grant request", outcome.grant_type)
        return outcome
