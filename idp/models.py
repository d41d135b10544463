import json
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.types import TypeDecorator

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the format every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def empty_set() -> frozenset:
    return frozenset()


def new_uuid() -> str:
    return str(uuid.uuid4())


class StringSet(TypeDecorator):
    """Unordered set of strings stored as a sorted JSON list."""

    impl = Text
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return json.dumps([])
        return json.dumps(sorted(set(value)))

    def process_result_value(self, value, dialect):
        if not value:
            return frozenset()
        return frozenset(json.loads(value))


class Account(Base):
    __tablename__ = "accounts"
    uuid = Column(String(36), primary_key=True, default=new_uuid)
    login = Column(String, unique=True, index=True, nullable=False)
    email = Column(String, unique=True, index=True)
    hashed_password = Column(String, nullable=False)
    is_disabled = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class Scope(Base):
    """Scope catalog entry."""

    __tablename__ = "scopes"
    name = Column(String, primary_key=True)
    description = Column(Text, nullable=False, default="")


class Client(Base):
    __tablename__ = "clients"
    uuid = Column(String(36), primary_key=True, default=new_uuid)
    name = Column(String, unique=True, index=True, nullable=False)
    secret = Column(String, nullable=False)
    redirect_uris = Column(StringSet, nullable=False, default=empty_set)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    scopes = relationship(
        "ClientScope", cascade="all, delete-orphan", passive_deletes=True, lazy="selectin"
    )
    approvals = relationship(
        "ClientApproval", cascade="all, delete-orphan", passive_deletes=True
    )

    @property
    def scope_provided(self) -> frozenset:
        return frozenset(s.name for s in self.scopes)

    def __repr__(self):
        # the secret stays out of reprs and therefore out of logs
        return f"<Client {self.name} ({self.uuid})>"


class ClientScope(Base):
    """A scope a client provides."""

    __tablename__ = "client_scopes"
    client_uuid = Column(
        String(36), ForeignKey("clients.uuid", ondelete="CASCADE"), primary_key=True
    )
    name = Column(String, ForeignKey("scopes.name"), primary_key=True)

    scope = relationship("Scope", lazy="joined")


class ClientApproval(Base):
    """Scopes an account has approved for a client (trust on first use)."""

    __tablename__ = "client_approvals"
    __table_args__ = (UniqueConstraint("client_uuid", "account_uuid"),)
    uuid = Column(String(36), primary_key=True, default=new_uuid)
    scope = Column(StringSet, nullable=False, default=empty_set)
    client_uuid = Column(
        String(36), ForeignKey("clients.uuid", ondelete="CASCADE"), nullable=False
    )
    account_uuid = Column(
        String(36), ForeignKey("accounts.uuid", ondelete="CASCADE"), nullable=False
    )
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class GrantRequest(Base):
    __tablename__ = "grant_requests"
    token = Column(String, primary_key=True)
    grant_type = Column(String(16), nullable=False)  # "code" or "token"
    state = Column(Text, nullable=False, default="")
    code = Column(String, unique=True, index=True, nullable=True)
    scope_requested = Column(StringSet, nullable=False, default=empty_set)
    scope_approved = Column(StringSet, nullable=False, default=empty_set)
    redirect_uri = Column(Text, nullable=False)
    client_uuid = Column(
        String(36), ForeignKey("clients.uuid", ondelete="CASCADE"), nullable=False
    )
    account_uuid = Column(
        String(36), ForeignKey("accounts.uuid", ondelete="CASCADE"), nullable=True
    )
    created_at = Column(DateTime, nullable=False, index=True)
    updated_at = Column(DateTime, nullable=False)

    client = relationship("Client")

    @property
    def is_authenticated(self) -> bool:
        return self.account_uuid is not None

    @property
    def is_approved(self) -> bool:
        return bool(self.scope_approved) and self.scope_approved <= self.scope_requested


class AccessToken(Base):
    __tablename__ = "access_tokens"
    token = Column(String, primary_key=True)
    scope = Column(StringSet, nullable=False, default=empty_set)
    expires = Column(DateTime, nullable=False, index=True)
    client_uuid = Column(
        String(36), ForeignKey("clients.uuid", ondelete="CASCADE"), nullable=False
    )
    account_uuid = Column(
        String(36), ForeignKey("accounts.uuid", ondelete="CASCADE"), nullable=False
    )
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    client = relationship("Client")
    account = relationship("Account")


class RefreshToken(Base):
    __tablename__ = "refresh_tokens"
    token = Column(String, primary_key=True)
    scope = Column(StringSet, nullable=False, default=empty_set)
    client_uuid = Column(
        String(36), ForeignKey("clients.uuid", ondelete="CASCADE"), nullable=False
    )
    account_uuid = Column(
        String(36), ForeignKey("accounts.uuid", ondelete="CASCADE"), nullable=False
    )
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)


class LoginSession(Base):
    """Login session of the server itself, not an OAuth credential."""

    __tablename__ = "sessions"
    token = Column(String, primary_key=True)
    expires = Column(DateTime, nullable=False, index=True)
    account_uuid = Column(
        String(36), ForeignKey("accounts.uuid", ondelete="CASCADE"), nullable=False
    )
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)
