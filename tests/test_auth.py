from jose import jwt

from config import ALGORITHM
from idp.auth import (
    authenticate_account,
    create_account,
    create_session_cookie,
    get_active_account,
    random_token,
    read_session_cookie,
    verify_password,
)
from idp.models import LoginSession

from conftest import PASSWORD


def test_random_tokens():
    tokens = {random_token() for _ in range(100)}
    assert len(tokens) == 100
    # 64 bytes of entropy in url safe base64
    assert all(len(t) >= 86 for t in tokens)


def test_password_hash(password_hash):
    assert password_hash != PASSWORD
    assert verify_password(PASSWORD, password_hash)
    assert not verify_password("wrong", password_hash)


def test_authenticate_account(db, alice, bob):
    assert authenticate_account(db, "alice", PASSWORD).uuid == alice.uuid
    assert authenticate_account(db, "alice", "wrong") is None
    assert authenticate_account(db, "mallory", PASSWORD) is None
    # disabled
    assert authenticate_account(db, "bob", PASSWORD) is None


def test_get_active_account(db, alice, bob):
    assert get_active_account(db, alice.uuid) is not None
    assert get_active_account(db, bob.uuid) is None


def test_create_account(db):
    account = create_account(db, "carol", "hunter22", email="carol@example.com")
    db.commit()
    assert authenticate_account(db, "carol", "hunter22").uuid == account.uuid


def test_session_cookie_round_trip():
    session = LoginSession(token="sid-value", account_uuid="account-uuid")
    cookie = create_session_cookie(session, "k1")
    assert read_session_cookie(cookie, "k1") == "sid-value"
    assert jwt.decode(cookie, "k1", algorithms=[ALGORITHM])["sub"] == "account-uuid"


def test_session_cookie_wrong_key():
    session = LoginSession(token="sid-value", account_uuid="account-uuid")
    assert read_session_cookie(create_session_cookie(session, "k1"), "k2") is None


def test_session_cookie_garbage():
    assert read_session_cookie("not-a-jwt", "k1") is None
    assert read_session_cookie(None, "k1") is None
    assert read_session_cookie("", "k1") is None
