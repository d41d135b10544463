"""
Token issuer: mints access tokens, refresh tokens and login sessions.

Access and refresh tokens come out of a redeemed grant request or a
refresh exchange; sessions come out of the interactive login.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from config import (
    ACCESS_TOKEN_EXPIRE_MINUTES,
    BASE_URL,
    GRANT_REQUEST_EXPIRE_MINUTES,
    ISSUER,
    SESSION_EXPIRE_MINUTES,
)
from .auth import get_active_account, random_token
from .clients import ClientRegistry
from .database import transaction
from .errors import InvalidCredentials, InvalidGrant, NotFound
from .models import (
    AccessToken,
    Account,
    GrantRequest,
    LoginSession,
    RefreshToken,
    utcnow,
)
from .scopes import format_scope

logger = logging.getLogger(__name__)


@dataclass
class TokenResponse:
    access_token: str
    scope: str
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"

    @classmethod
    def build(cls, access: AccessToken, refresh: RefreshToken = None) -> "TokenResponse":
        return cls(
            access_token=access.token,
            scope=format_scope(access.scope),
            refresh_token=refresh.token if refresh is not None else None,
        )

    def to_dict(self) -> Dict[str, str]:
        data = {
            "token_type": self.token_type,
            "scope": self.scope,
            "access_token": self.access_token,
        }
        if self.refresh_token is not None:
            data["refresh_token"] = self.refresh_token
        return data


class TokenIssuer:
    def __init__(
        self,
        db: Session,
        clients: ClientRegistry = None,
        clock: Callable = utcnow,
        token_lifetime: timedelta = timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES),
        session_lifetime: timedelta = timedelta(minutes=SESSION_EXPIRE_MINUTES),
        grant_request_lifetime: timedelta = timedelta(minutes=GRANT_REQUEST_EXPIRE_MINUTES),
    ):
        self.db = db
        self.clock = clock
        self.clients = clients or ClientRegistry(db, clock=clock)
        self.token_lifetime = token_lifetime
        self.session_lifetime = session_lifetime
        self.grant_request_lifetime = grant_request_lifetime

    # ---- minting (inside the caller's transaction) ----

    def mint_access_token(self, scope: Iterable[str], client_uuid: str,
                          account_uuid: str) -> AccessToken:
        now = self.clock()
        access = AccessToken(
            token=random_token(),
            scope=frozenset(scope),
            expires=now + self.token_lifetime,
            client_uuid=client_uuid,
            account_uuid=account_uuid,
            created_at=now,
            updated_at=now,
        )
        self.db.add(access)
        return access

    def mint_refresh_token(self, scope: Iterable[str], client_uuid: str,
                           account_uuid: str) -> RefreshToken:
        now = self.clock()
        refresh = RefreshToken(
            token=random_token(),
            scope=frozenset(scope),
            client_uuid=client_uuid,
            account_uuid=account_uuid,
            created_at=now,
            updated_at=now,
        )
        self.db.add(refresh)
        return refresh

    # ---- OAuth exchanges ----

    def redeem_code(self, client_id: str, client_secret: str, code: str,
                    redirect_uri: str) -> Tuple[AccessToken, RefreshToken]:
        """
        Exchange an approved grant code for an access and a refresh token.

        The grant request is deleted in the same transaction that stores the
        tokens. The delete is conditional, so of two concurrent redemptions
        of one code only the first to commit issues tokens.
        """
        client = self.clients.authenticate(client_id, client_secret)
        if not code:
            raise InvalidGrant("Invalid grant code")

        cutoff = self.clock() - self.grant_request_lifetime
        with transaction(self.db):
            request = (
                self.db.query(GrantRequest)
                .filter(
                    GrantRequest.code == code,
                    GrantRequest.client_uuid == client.uuid,
                    GrantRequest.grant_type == "code",
                    GrantRequest.created_at > cutoff,
                )
                .with_for_update()
                .first()
            )
            if (
                request is None
                or request.redirect_uri != redirect_uri
                or not request.is_authenticated
                or not request.is_approved
            ):
                raise InvalidGrant("Invalid grant code")

            scope, account_uuid = request.scope_approved, request.account_uuid
            if get_active_account(self.db, account_uuid) is None:
                logger.info("[TOKEN] Refused grant code of a disabled account")
                raise InvalidGrant("Invalid grant code")
            deleted = (
                self.db.query(GrantRequest)
                .filter(GrantRequest.token == request.token, GrantRequest.code == code)
                .delete(synchronize_session=False)
            )
            self.db.expunge(request)
            if deleted != 1:
                raise InvalidGrant("Invalid grant code")

            access = self.mint_access_token(scope, client.uuid, account_uuid)
            refresh = self.mint_refresh_token(scope, client.uuid, account_uuid)

        logger.info("[TOKEN] Redeemed grant code for client %s", client.name)
        return access, refresh

    def refresh_access_token(self, client_id: str, client_secret: str,
                             refresh_token: str) -> AccessToken:
        """Mint a new access token; the refresh token stays valid."""
        client = self.clients.authenticate(client_id, client_secret)
        refresh = self.get_refresh_token(refresh_token)
        if refresh is None or refresh.client_uuid != client.uuid:
            raise InvalidGrant("Invalid refresh token")
        if get_active_account(self.db, refresh.account_uuid) is None:
            raise InvalidGrant("Invalid refresh token")

        with transaction(self.db):
            access = self.mint_access_token(refresh.scope, client.uuid, refresh.account_uuid)

        logger.info("[TOKEN] Refreshed access token for client %s", client.name)
        return access

    def revoke_refresh_token(self, client_id: str, client_secret: str,
                             refresh_token: str) -> bool:
        """Delete a refresh token owned by the client. Unknown tokens are not an error."""
        client = self.clients.authenticate(client_id, client_secret)
        with transaction(self.db):
            deleted = (
                self.db.query(RefreshToken)
                .filter(
                    RefreshToken.token == refresh_token,
                    RefreshToken.client_uuid == client.uuid,
                )
                .delete(synchronize_session=False)
            )
        if deleted:
            logger.info("[TOKEN] Revoked refresh token of client %s", client.name)
        return deleted == 1

    # ---- lookups ----

    def get_access_token(self, token: str) -> Optional[AccessToken]:
        """Returns the access token unless it is unknown or expired."""
        if not token:
            return None
        return (
            self.db.query(AccessToken)
            .filter(AccessToken.token == token, AccessToken.expires > self.clock())
            .first()
        )

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        if not token:
            return None
        return self.db.query(RefreshToken).filter(RefreshToken.token == token).first()

    def validate_access_token(self, token: str) -> Dict:
        """Token info for resource servers. Unknown and expired tokens are NotFound."""
        access = self.get_access_token(token)
        if access is None:
            raise NotFound("The requested token does not exist")
        account = self.db.query(Account).filter(Account.uuid == access.account_uuid).first()
        if account is None or account.is_disabled:
            raise NotFound("The requested token does not exist")

        return {
            "url": f"{BASE_URL}/oauth/validate/{access.token}",
            "jti": access.token,
            "exp": access.expires.isoformat(),
            "iss": ISSUER,
            "login": account.login,
            "account_url": f"{BASE_URL}/api/accounts/{account.login}",
            "client_id": access.client.name,
            "scope": sorted(access.scope),
        }

    def list_access_tokens(self) -> List[AccessToken]:
        return self.db.query(AccessToken).order_by(AccessToken.created_at).all()

    def list_refresh_tokens(self) -> List[RefreshToken]:
        return self.db.query(RefreshToken).order_by(RefreshToken.created_at).all()

    # ---- login sessions ----

    def issue_session(self, account_uuid: str) -> LoginSession:
        if get_active_account(self.db, account_uuid) is None:
            raise NotFound("Account does not exist")

        now = self.clock()
        with transaction(self.db):
            session = LoginSession(
                token=random_token(),
                expires=now + self.session_lifetime,
                account_uuid=account_uuid,
                created_at=now,
                updated_at=now,
            )
            self.db.add(session)
        return session

    def touch_session(self, token: str) -> LoginSession:
        """
        Extend a live session. Expired or unknown sessions are NotFound, a
        session of a disabled account is InvalidCredentials and not extended.
        """
        now = self.clock()
        with transaction(self.db):
            session = None
            if token:
                session = (
                    self.db.query(LoginSession)
                    .filter(LoginSession.token == token, LoginSession.expires > now)
                    .with_for_update()
                    .first()
                )
            if session is None:
                raise NotFound("Session does not exist")
            if get_active_account(self.db, session.account_uuid) is None:
                raise InvalidCredentials("Account is disabled")
            session.expires = now + self.session_lifetime
            session.updated_at = now
        return session

    def end_session(self, token: str) -> bool:
        if not token:
            return False
        with transaction(self.db):
            deleted = (
                self.db.query(LoginSession)
                .filter(LoginSession.token == token)
                .delete(synchronize_session=False)
            )
        return deleted == 1

    def list_sessions(self) -> List[LoginSession]:
        return self.db.query(LoginSession).order_by(LoginSession.created_at).all()
