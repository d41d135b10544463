from datetime import datetime, timedelta

import pytest

from idp.auth import hash_password
from idp.clients import ClientRegistry
from idp.database import Database
from idp.models import Account
from idp.oauth2_server import AuthorizationServer

REDIRECT_URI = "https://host/cb"
OTHER_REDIRECT_URI = "https://host/other"
PASSWORD = "testtest"

CLIENT_SCOPE = {
    "repo-read": "Read access to your repositories",
    "repo-write": "Write access to your repositories",
    "account-read": "Read access to your account data",
}

CLIENTS = {
    "gin": {
        "secret": "secret",
        "redirect_uris": [REDIRECT_URI, OTHER_REDIRECT_URI],
        "scope": CLIENT_SCOPE,
    },
}


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = datetime(2026, 3, 1, 12, 0, 0)):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture(scope="session")
def password_hash():
    # bcrypt is slow on purpose, hash once per test run
    return hash_password(PASSWORD)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def database():
    database = Database("sqlite://")
    database.init_db()
    yield database
    database.drop_all()
    database.dispose()


@pytest.fixture
def db(database):
    with database.session() as session:
        yield session


def _account(db, password_hash, login, disabled=False):
    account = Account(
        login=login,
        email=f"{login}@example.com",
        hashed_password=password_hash,
        is_disabled=disabled,
    )
    db.add(account)
    db.commit()
    return account


def disable(db, login):
    db.query(Account).filter(Account.login == login).update({"is_disabled": True})
    db.commit()


@pytest.fixture
def alice(db, password_hash):
    return _account(db, password_hash, "alice")


@pytest.fixture
def bob(db, password_hash):
    """A disabled account."""
    return _account(db, password_hash, "bob", disabled=True)


@pytest.fixture
def registry(db, clock):
    return ClientRegistry(db, clock=clock)


@pytest.fixture
def gin(registry):
    return registry.register(
        "gin", [REDIRECT_URI, OTHER_REDIRECT_URI], CLIENT_SCOPE, secret="secret"
    )


@pytest.fixture
def server(db, clock, gin, alice, bob):
    return AuthorizationServer(db, clock=clock)


@pytest.fixture
def authenticated(server):
    """A code grant request for repo-read and repo-write, logged in as alice."""
    request = server.create_grant_request(
        "gin", "code", REDIRECT_URI, "xyz", {"repo-read", "repo-write"}
    )
    return server.authenticate(request.token, "alice", PASSWORD)


@pytest.fixture
def file_database(tmp_path, password_hash):
    """A file backed database for tests running several threads, with alice and gin."""
    database = Database(f"sqlite:///{tmp_path / 'idp.db'}")
    database.init_db()
    with database.session() as db:
        _account(db, password_hash, "alice")
        ClientRegistry(db).register(
            "gin", [REDIRECT_URI, OTHER_REDIRECT_URI], CLIENT_SCOPE, secret="secret"
        )
    yield database
    database.dispose()
