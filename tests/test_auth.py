"""
认证单元测试：密码哈希 / JWT 编解码 / 单会话存储
"""

import threading
import time

import pytest

from vitachat.auth.errors import AuthenticationError
from vitachat.auth.password import hash_password, verify_password
from vitachat.auth.session_store import LOGOUT_REASON, NEW_LOGIN_REASON, SessionStore
from vitachat.auth.token import TokenCodec

from conftest import RecordingCloser

SECRET = "unit-test-secret-key-long-enough-for-hs256"


# ── 密码 ──

class TestPassword:
    def test_hash_and_verify(self):
        hashed = hash_password("s3cret!", rounds=4)
        assert hashed != "s3cret!"
        assert verify_password("s3cret!", hashed)
        assert not verify_password("wrong", hashed)

    def test_garbage_hash_is_rejected(self):
        assert not verify_password("anything", "not-a-bcrypt-hash")
        assert not verify_password("anything", "")


# ── Token ──

class TestTokenCodec:
    def test_roundtrip_claims(self):
        codec = TokenCodec(SECRET)
        token = codec.encode("u1", "alice@example.com", "session_u1_1")
        claims = codec.decode(token)
        assert claims.user_id == "u1"
        assert claims.email == "alice@example.com"
        assert claims.session_id == "session_u1_1"
        assert claims.expires_at - claims.issued_at == 24 * 3600

    def test_expired_token(self):
        codec = TokenCodec(SECRET)
        token = codec.encode("u1", "a@b.c", "s1", expire_hours=-1)
        with pytest.raises(AuthenticationError):
            codec.decode(token)

    def test_wrong_secret(self):
        token = TokenCodec(SECRET).encode("u1", "a@b.c", "s1")
        with pytest.raises(AuthenticationError):
            TokenCodec("another-secret-key-long-enough-for-hs256").decode(token)

    def test_garbage_and_empty(self):
        codec = TokenCodec(SECRET)
        for bad in ("", "abc", "a.b.c"):
            with pytest.raises(AuthenticationError):
                codec.decode(bad)

    def test_empty_secret_refused(self):
        with pytest.raises(ValueError):
            TokenCodec("")


# ── 会话存储 ──

def _store(users, closer=None):
    return SessionStore(users=users, codec=TokenCodec(SECRET), closer=closer)


class TestSessionStore:
    def test_bad_credentials(self, fake_users):
        store = _store(fake_users)
        assert store.authenticate_user("alice@example.com", "nope") is None
        assert store.authenticate_user("nobody@example.com", "nope") is None
        assert store.check_credentials("alice@example.com", "nope") is None
        assert store.active_sessions_count == 0

    def test_login_returns_token_bound_to_session(self, fake_users):
        store = _store(fake_users)
        result = store.authenticate_user("alice@example.com", "correct horse", user_agent="pytest")
        assert result is not None
        assert "password" not in result.user
        assert result.invalidated_sessions == []
        claims = store.verify_token(result.token)
        assert claims.session_id == result.session_id
        assert store.get_session(result.session_id).user_agent == "pytest"

    def test_second_login_replaces_first(self, fake_users):
        closer = RecordingCloser()
        store = _store(fake_users, closer)
        first = store.authenticate_user("alice@example.com", "correct horse")
        second = store.authenticate_user("alice@example.com", "correct horse")

        assert second.invalidated_sessions == [first.session_id]
        assert [s.session_id for s in store.get_user_sessions("u1")] == [second.session_id]
        with pytest.raises(AuthenticationError):
            store.verify_token(first.token)
        assert store.verify_token(second.token).session_id == second.session_id
        assert closer.closed_users[-1] == ("u1", second.session_id, NEW_LOGIN_REASON)

    def test_concurrent_logins_leave_one_session(self, fake_users):
        store = _store(fake_users, RecordingCloser())
        workers = 16
        barrier = threading.Barrier(workers)
        results = []

        def login():
            barrier.wait()
            results.append(store.authenticate_user("alice@example.com", "correct horse"))

        threads = [threading.Thread(target=login) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert len(results) == workers and all(r is not None for r in results)
        sessions = store.get_user_sessions("u1")
        assert len(sessions) == 1

        valid = []
        for r in results:
            try:
                store.verify_token(r.token)
                valid.append(r.session_id)
            except AuthenticationError:
                pass
        assert valid == [sessions[0].session_id]

    def test_check_credentials_does_not_mutate(self, fake_users):
        store = _store(fake_users)
        login = store.authenticate_user("alice@example.com", "correct horse")
        check = store.check_credentials("alice@example.com", "correct horse")
        assert check is not None
        assert [s["session_id"] for s in check.existing_sessions] == [login.session_id]
        assert store.verify_token(login.token).user_id == "u1"

    def test_users_are_independent(self, fake_users):
        store = _store(fake_users)
        alice = store.authenticate_user("alice@example.com", "correct horse")
        bob = store.authenticate_user("bob@example.com", "hunter22")
        assert bob.invalidated_sessions == []
        assert store.verify_token(alice.token).user_id == "u1"
        assert store.active_sessions_count == 2

    def test_logout(self, fake_users):
        closer = RecordingCloser()
        store = _store(fake_users, closer)
        login = store.authenticate_user("alice@example.com", "correct horse")
        assert store.logout(login.session_id)
        assert not store.logout(login.session_id)
        assert closer.closed_sessions == [(login.session_id, LOGOUT_REASON)]
        with pytest.raises(AuthenticationError):
            store.verify_token(login.token)

    def test_logout_skip_socket_close(self, fake_users):
        closer = RecordingCloser()
        store = _store(fake_users, closer)
        login = store.authenticate_user("alice@example.com", "correct horse")
        store.logout(login.session_id, skip_socket_close=True)
        assert closer.closed_sessions == []

    def test_invalidate_user_sessions(self, fake_users):
        store = _store(fake_users)
        login = store.authenticate_user("alice@example.com", "correct horse")
        assert store.invalidate_user_sessions("u1") == [login.session_id]
        assert not store.is_session_valid(login.session_id)

    def test_verify_refreshes_last_activity(self, fake_users):
        now = [1000.0]
        store = SessionStore(users=fake_users, codec=TokenCodec(SECRET), clock=lambda: now[0])
        login = store.authenticate_user("alice@example.com", "correct horse")
        now[0] = 1050.0
        store.verify_token(login.token)
        assert store.get_session(login.session_id).last_activity == 1050.0

    def test_lookup_failure_is_generic(self):
        class BrokenUsers:
            def find_by_email(self, email):
                raise RuntimeError("db down")

        store = _store(BrokenUsers())
        with pytest.raises(AuthenticationError) as exc:
            store.authenticate_user("a@b.c", "x")
        assert "db down" not in str(exc.value)

    def test_closer_failure_does_not_break_login(self, fake_users):
        class ExplodingCloser(RecordingCloser):
            def close_all_sessions_for_user(self, *args, **kwargs):
                raise RuntimeError("loop gone")

        store = _store(fake_users, ExplodingCloser())
        store.authenticate_user("alice@example.com", "correct horse")
        assert store.authenticate_user("alice@example.com", "correct horse") is not None

    def test_session_id_format(self, fake_users):
        store = _store(fake_users)
        login = store.authenticate_user("alice@example.com", "correct horse")
        prefix, user_id, millis, suffix = login.session_id.split("_")
        assert prefix == "session" and user_id == "u1"
        assert abs(int(millis) / 1000 - time.time()) < 60
        assert len(suffix) == 10
