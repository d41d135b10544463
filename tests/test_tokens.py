import pytest

from idp.errors import InvalidClient, InvalidCredentials, InvalidGrant, NotFound
from idp.models import Account, GrantRequest
from idp.tokens import TokenResponse

from conftest import PASSWORD, REDIRECT_URI, disable


@pytest.fixture
def tokens(server):
    return server.tokens


@pytest.fixture
def code(server, authenticated):
    return server.approve(authenticated.token, {"repo-read", "repo-write"}).code


class TestRedeemCode:
    def test_full_flow(self, server, tokens, alice, gin):
        request = server.create_grant_request(
            "gin", "code", REDIRECT_URI, "xyz", {"repo-read", "repo-write"}
        )
        server.authenticate(request.token, "alice", PASSWORD)
        outcome = server.approve(request.token, {"repo-read", "repo-write"})

        access, refresh = tokens.redeem_code("gin", "secret", outcome.code, REDIRECT_URI)

        assert access.scope == {"repo-read", "repo-write"}
        assert access.client_uuid == gin.uuid
        assert access.account_uuid == alice.uuid
        assert refresh.scope == access.scope
        assert refresh.account_uuid == alice.uuid
        assert len(access.token) >= 86
        assert access.token != refresh.token
        assert tokens.db.query(GrantRequest).count() == 0

    def test_expiry_from_lifetime(self, tokens, code, clock):
        access, _ = tokens.redeem_code("gin", "secret", code, REDIRECT_URI)
        assert access.expires == clock() + tokens.token_lifetime

    def test_partial_approval_limits_token(self, server, tokens, authenticated):
        code = server.approve(authenticated.token, {"repo-read"}).code
        access, refresh = tokens.redeem_code("gin", "secret", code, REDIRECT_URI)
        assert access.scope == {"repo-read"}
        assert refresh.scope == {"repo-read"}

    def test_second_redemption(self, tokens, code):
        tokens.redeem_code("gin", "secret", code, REDIRECT_URI)
        with pytest.raises(InvalidGrant):
            tokens.redeem_code("gin", "secret", code, REDIRECT_URI)
        assert len(tokens.list_access_tokens()) == 1
        assert len(tokens.list_refresh_tokens()) == 1

    def test_wrong_secret(self, tokens, code):
        with pytest.raises(InvalidClient):
            tokens.redeem_code("gin", "wrong", code, REDIRECT_URI)
        # the code survives a failed client authentication
        assert tokens.redeem_code("gin", "secret", code, REDIRECT_URI)

    def test_wrong_redirect(self, tokens, code):
        with pytest.raises(InvalidGrant):
            tokens.redeem_code("gin", "secret", code, "https://host/other")
        assert tokens.list_access_tokens() == []

    def test_other_client(self, tokens, registry, code):
        registry.register("other", [REDIRECT_URI], {"repo-read": "Read"}, secret="other")
        with pytest.raises(InvalidGrant):
            tokens.redeem_code("other", "other", code, REDIRECT_URI)

    def test_unknown_code(self, tokens, code):
        with pytest.raises(InvalidGrant):
            tokens.redeem_code("gin", "secret", "no-such-code", REDIRECT_URI)

    def test_expired_code(self, tokens, code, clock):
        clock.advance(minutes=16)
        with pytest.raises(InvalidGrant):
            tokens.redeem_code("gin", "secret", code, REDIRECT_URI)

    def test_account_disabled_after_approval(self, tokens, code, db):
        disable(db, "alice")
        with pytest.raises(InvalidGrant):
            tokens.redeem_code("gin", "secret", code, REDIRECT_URI)
        assert tokens.list_access_tokens() == []
        assert tokens.list_refresh_tokens() == []

    def test_implicit_request_has_no_code(self, server, tokens):
        request = server.create_grant_request("gin", "token", REDIRECT_URI, "xyz", {"repo-read"})
        server.authenticate(request.token, "alice", PASSWORD)
        with pytest.raises(InvalidGrant):
            tokens.redeem_code("gin", "secret", request.token, REDIRECT_URI)


class TestRefresh:
    def test_refresh(self, tokens, code, alice):
        _, refresh = tokens.redeem_code("gin", "secret", code, REDIRECT_URI)

        access = tokens.refresh_access_token("gin", "secret", refresh.token)

        assert access.scope == refresh.scope
        assert access.account_uuid == alice.uuid
        assert tokens.get_access_token(access.token) is not None

    def test_refresh_token_is_reusable(self, tokens, code):
        _, refresh = tokens.redeem_code("gin", "secret", code, REDIRECT_URI)
        first = tokens.refresh_access_token("gin", "secret", refresh.token)
        second = tokens.refresh_access_token("gin", "secret", refresh.token)
        assert first.token != second.token

    def test_other_client(self, tokens, registry, code):
        _, refresh = tokens.redeem_code("gin", "secret", code, REDIRECT_URI)
        registry.register("other", [REDIRECT_URI], {"repo-read": "Read"}, secret="other")
        with pytest.raises(InvalidGrant):
            tokens.refresh_access_token("other", "other", refresh.token)

    def test_unknown_token(self, tokens, code):
        with pytest.raises(InvalidGrant):
            tokens.refresh_access_token("gin", "secret", "no-such-token")

    def test_disabled_account(self, tokens, code, alice, db):
        _, refresh = tokens.redeem_code("gin", "secret", code, REDIRECT_URI)
        db.query(Account).filter(Account.uuid == alice.uuid).update({"is_disabled": True})
        db.commit()
        with pytest.raises(InvalidGrant):
            tokens.refresh_access_token("gin", "secret", refresh.token)

    def test_revoke(self, tokens, code):
        _, refresh = tokens.redeem_code("gin", "secret", code, REDIRECT_URI)

        assert tokens.revoke_refresh_token("gin", "secret", refresh.token)
        with pytest.raises(InvalidGrant):
            tokens.refresh_access_token("gin", "secret", refresh.token)
        assert not tokens.revoke_refresh_token("gin", "secret", refresh.token)

    def test_revoke_needs_owner(self, tokens, registry, code):
        _, refresh = tokens.redeem_code("gin", "secret", code, REDIRECT_URI)
        registry.register("other", [REDIRECT_URI], {"repo-read": "Read"}, secret="other")

        assert not tokens.revoke_refresh_token("other", "other", refresh.token)
        assert tokens.get_refresh_token(refresh.token) is not None


class TestAccessToken:
    def test_expired_token_is_missing(self, tokens, code, clock):
        access, _ = tokens.redeem_code("gin", "secret", code, REDIRECT_URI)
        clock.advance(minutes=24 * 60)
        assert tokens.get_access_token(access.token) is None

    def test_validate(self, tokens, code):
        access, _ = tokens.redeem_code("gin", "secret", code, REDIRECT_URI)
        info = tokens.validate_access_token(access.token)
        assert info["jti"] == access.token
        assert info["login"] == "alice"
        assert info["client_id"] == "gin"
        assert info["scope"] == ["repo-read", "repo-write"]
        assert info["exp"] == access.expires.isoformat()
        assert info["url"].endswith(f"/oauth/validate/{access.token}")

    def test_validate_unknown(self, tokens):
        with pytest.raises(NotFound):
            tokens.validate_access_token("no-such-token")

    def test_validate_expired(self, tokens, code, clock):
        access, _ = tokens.redeem_code("gin", "secret", code, REDIRECT_URI)
        clock.advance(days=2)
        with pytest.raises(NotFound):
            tokens.validate_access_token(access.token)


class TestSessions:
    def test_issue(self, tokens, alice, clock):
        session = tokens.issue_session(alice.uuid)
        assert session.account_uuid == alice.uuid
        assert session.expires == clock() + tokens.session_lifetime
        assert len(session.token) >= 86

    def test_disabled_account(self, tokens, bob):
        with pytest.raises(NotFound):
            tokens.issue_session(bob.uuid)

    def test_touch_slides_expiry(self, tokens, alice, clock):
        session = tokens.issue_session(alice.uuid)
        clock.advance(days=1)
        touched = tokens.touch_session(session.token)
        assert touched.expires == clock() + tokens.session_lifetime

    def test_touch_expired(self, tokens, alice, clock):
        session = tokens.issue_session(alice.uuid)
        clock.advance(days=2)
        with pytest.raises(NotFound):
            tokens.touch_session(session.token)

    def test_touch_disabled_account(self, tokens, alice, db, clock):
        session = tokens.issue_session(alice.uuid)
        expires = session.expires
        disable(db, "alice")
        clock.advance(hours=1)
        with pytest.raises(InvalidCredentials):
            tokens.touch_session(session.token)
        db.expire_all()
        assert tokens.list_sessions()[0].expires == expires

    def test_end(self, tokens, alice):
        session = tokens.issue_session(alice.uuid)
        assert tokens.end_session(session.token)
        assert not tokens.end_session(session.token)
        with pytest.raises(NotFound):
            tokens.touch_session(session.token)

    def test_list(self, tokens, alice, clock):
        first = tokens.issue_session(alice.uuid)
        clock.advance(minutes=1)
        second = tokens.issue_session(alice.uuid)
        assert [s.token for s in tokens.list_sessions()] == [first.token, second.token]


class TestTokenResponse:
    def test_with_refresh_token(self, tokens, code):
        access, refresh = tokens.redeem_code("gin", "secret", code, REDIRECT_URI)
        assert TokenResponse.build(access, refresh).to_dict() == {
            "token_type": "Bearer",
            "scope": "repo-read repo-write",
            "access_token": access.token,
            "refresh_token": refresh.token,
        }

    def test_without_refresh_token(self):
        response = TokenResponse(access_token="abc", scope="repo-read")
        assert "refresh_token" not in response.to_dict()
