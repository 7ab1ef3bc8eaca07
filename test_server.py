"""
Server-side test suite for the passkeys relying party HTTP surface
"""
import pytest
from fastapi.testclient import TestClient

from conftest import RP_ORIGIN, make_settings
from passkey_rp.core.errors import StorageUnavailable
from passkey_rp.db.kv import Database
from passkey_rp.main import create_app
from soft_authenticator import SoftAuthenticator, b64url_decode

AUTH_FAILED = {"detail": "authentication failed"}
REG_FAILED = {"detail": "registration failed"}


@pytest.fixture
def client():
    """Test client for a fresh app on an in-memory store"""
    app = create_app(make_settings(), db=Database(":memory:"))
    with TestClient(app) as c:
        yield c


def register(client, username, authenticator, **kwargs):
    opts = client.post("/registration/start", json={"username": username})
    assert opts.status_code == 200
    resp = authenticator.create(opts.json()["publicKey"], RP_ORIGIN, **kwargs)
    return client.post("/registration/finish", json={"username": username, "response": resp})


def authenticate(client, username, authenticator, **kwargs):
    opts = client.post("/authentication/start", json={"username": username})
    if opts.status_code != 200:
        return opts
    resp = authenticator.get(opts.json()["publicKey"], RP_ORIGIN, **kwargs)
    return client.post("/authentication/finish", json={"username": username, "response": resp})


class TestFrontend:
    """Static pages and fixed routes"""

    @pytest.mark.parametrize("path,ctype", [
        ("/", "text/html"),
        ("/style.css", "text/css"),
        ("/auth.js", "application/javascript"),
    ])
    def test_assets(self, client, path, ctype):
        r = client.get(path)
        assert r.status_code == 200
        assert r.headers["content-type"].startswith(ctype)
        assert r.content

    def test_index_loads_script_and_styles(self, client):
        html = client.get("/").text
        assert 'src="/auth.js"' in html
        assert 'href="/style.css"' in html

    def test_robots(self, client):
        r = client.get("/robots.txt")
        assert r.status_code == 200
        assert r.text == "User-agent: *\nDisallow: /\n"

    def test_favicon_not_found(self, client):
        assert client.get("/favicon.ico").status_code == 404

    def test_healthz(self, client):
        assert client.get("/healthz").json() == {"ok": True}

    @pytest.mark.parametrize("method,path", [
        ("GET", "/nope"),
        ("GET", "/registration/start"),
        ("POST", "/"),
        ("DELETE", "/auth.js"),
        ("GET", "/docs"),
        ("GET", "/openapi.json"),
    ])
    def test_unknown_routes_are_not_found(self, client, method, path):
        assert client.request(method, path).status_code == 404

    def test_security_headers(self, client):
        r = client.get("/")
        assert "default-src 'none'" in r.headers["content-security-policy"]
        assert r.headers["x-content-type-options"] == "nosniff"
        assert r.headers["referrer-policy"] == "no-referrer"
        assert r.headers["x-request-id"]

    def test_request_id_is_echoed(self, client):
        assert client.get("/healthz", headers={"X-Request-ID": "abc123"}).headers["x-request-id"] == "abc123"


class TestRegistrationFlow:
    """End-to-end registration against the real verifier"""

    def test_register(self, client):
        soft = SoftAuthenticator()
        r = register(client, "alice", soft)
        assert r.status_code == 200
        body = r.json()
        assert body["ok"] is True
        assert b64url_decode(body["credential_id"]) in soft.keys

    def test_second_registration_excludes_first(self, client):
        soft = SoftAuthenticator()
        first = register(client, "alice", soft).json()["credential_id"]
        opts = client.post("/registration/start", json={"username": "alice"}).json()["publicKey"]
        assert [d["id"] for d in opts["excludeCredentials"]] == [first]

    def test_replayed_finish_fails(self, client):
        soft = SoftAuthenticator()
        opts = client.post("/registration/start", json={"username": "alice"}).json()
        payload = {"username": "alice", "response": soft.create(opts["publicKey"], RP_ORIGIN)}
        assert client.post("/registration/finish", json=payload).status_code == 200
        r = client.post("/registration/finish", json=payload)
        assert r.status_code == 400
        assert r.json() == REG_FAILED

    def test_wrong_origin_fails(self, client):
        soft = SoftAuthenticator()
        opts = client.post("/registration/start", json={"username": "alice"}).json()
        resp = soft.create(opts["publicKey"], "https://evil.example")
        r = client.post("/registration/finish", json={"username": "alice", "response": resp})
        assert r.status_code == 400
        assert r.json() == REG_FAILED

    def test_credential_cannot_move_between_users(self, client):
        cid = b"\x42" * 32
        assert register(client, "alice", SoftAuthenticator(), credential_id=cid).status_code == 200
        r = register(client, "bob", SoftAuthenticator(), credential_id=cid)
        assert r.status_code == 400
        assert r.json() == REG_FAILED

    def test_strict_policy_rejects_unattested(self):
        app = create_app(make_settings(passkeys_policy="strict"), db=Database(":memory:"))
        with TestClient(app) as c:
            assert register(c, "alice", SoftAuthenticator()).status_code == 400
            assert register(c, "alice", SoftAuthenticator(attestation="packed")).status_code == 200

    def test_non_string_id_fails_cleanly(self, client):
        opts = client.post("/registration/start", json={"username": "alice"}).json()
        resp = SoftAuthenticator().create(opts["publicKey"], RP_ORIGIN)
        resp["id"] = 7
        r = client.post("/registration/finish", json={"username": "alice", "response": resp})
        assert r.status_code == 400
        assert r.json() == REG_FAILED

    @pytest.mark.parametrize("body", [
        {},
        {"username": 42},
        {"username": ""},
        {"username": "x" * 65},
        {"name": "alice"},
    ])
    def test_malformed_start(self, client, body):
        r = client.post("/registration/start", json=body)
        assert r.status_code == 400
        assert r.json() == {"detail": "malformed request"}

    def test_non_json_body(self, client):
        r = client.post("/registration/start", content=b"username=alice",
                        headers={"content-type": "application/x-www-form-urlencoded"})
        assert r.status_code == 400

    def test_finish_response_must_be_object(self, client):
        client.post("/registration/start", json={"username": "alice"})
        r = client.post("/registration/finish", json={"username": "alice", "response": "nope"})
        assert r.status_code == 400
        assert r.json() == {"detail": "malformed request"}


class TestAuthenticationFlow:
    """End-to-end authentication against the real verifier"""

    def test_register_then_authenticate(self, client):
        soft = SoftAuthenticator()
        assert register(client, "alice", soft).status_code == 200
        r = authenticate(client, "alice", soft)
        assert r.status_code == 200
        body = r.json()
        assert body["ok"] is True and body["username"] == "alice"
        assert next(iter(soft.keys.values())).sign_count == 1

    def test_ed25519_passkey(self, client):
        soft = SoftAuthenticator(alg="EdDSA", attestation="packed")
        assert register(client, "alice", soft).status_code == 200
        assert authenticate(client, "alice", soft).status_code == 200

    def test_non_counting_authenticator(self, client):
        soft = SoftAuthenticator(counting=False)
        register(client, "alice", soft)
        for _ in range(3):
            assert authenticate(client, "alice", soft).status_code == 200

    def test_counter_regression_rejected(self, client):
        soft = SoftAuthenticator()
        register(client, "alice", soft)
        assert authenticate(client, "alice", soft, sign_count=5).status_code == 200
        r = authenticate(client, "alice", soft, sign_count=5)
        assert r.status_code == 401
        assert r.json() == AUTH_FAILED
        assert authenticate(client, "alice", soft, sign_count=6).status_code == 200

    def test_unknown_user_looks_like_any_failure(self, client):
        soft = SoftAuthenticator()
        register(client, "alice", soft)
        unknown = client.post("/authentication/start", json={"username": "bob"})
        assert unknown.status_code == 401
        assert unknown.json() == AUTH_FAILED

        opts = client.post("/authentication/start", json={"username": "alice"}).json()
        resp = soft.get(opts["publicKey"], RP_ORIGIN)
        resp["response"]["signature"] = resp["response"]["signature"][::-1]
        bad_sig = client.post("/authentication/finish", json={"username": "alice", "response": resp})
        assert bad_sig.status_code == 401
        assert bad_sig.content == unknown.content

    def test_user_without_passkeys(self, client):
        client.post("/registration/start", json={"username": "carol"})
        r = client.post("/authentication/start", json={"username": "carol"})
        assert r.status_code == 401
        assert r.json() == AUTH_FAILED

    @pytest.mark.parametrize("handle", [7, ["x"], {"id": "x"}])
    def test_non_string_user_handle(self, client, handle):
        soft = SoftAuthenticator()
        register(client, "alice", soft)
        opts = client.post("/authentication/start", json={"username": "alice"}).json()
        resp = soft.get(opts["publicKey"], RP_ORIGIN)
        resp["response"]["userHandle"] = handle
        r = client.post("/authentication/finish", json={"username": "alice", "response": resp})
        assert r.status_code == 401
        assert r.json() == AUTH_FAILED

    def test_non_string_credential_id(self, client):
        soft = SoftAuthenticator()
        register(client, "alice", soft)
        opts = client.post("/authentication/start", json={"username": "alice"}).json()
        resp = soft.get(opts["publicKey"], RP_ORIGIN)
        resp["id"] = 7
        r = client.post("/authentication/finish", json={"username": "alice", "response": resp})
        assert r.status_code == 401
        assert r.json() == AUTH_FAILED

    def test_replayed_assertion_fails(self, client):
        soft = SoftAuthenticator()
        register(client, "alice", soft)
        opts = client.post("/authentication/start", json={"username": "alice"}).json()
        payload = {"username": "alice", "response": soft.get(opts["publicKey"], RP_ORIGIN)}
        assert client.post("/authentication/finish", json=payload).status_code == 200
        r = client.post("/authentication/finish", json=payload)
        assert r.status_code == 401
        assert r.json() == AUTH_FAILED

    def test_finish_without_start(self, client):
        soft = SoftAuthenticator()
        register(client, "alice", soft)
        opts = client.post("/authentication/start", json={"username": "alice"}).json()
        resp = soft.get(opts["publicKey"], RP_ORIGIN)
        client.post("/registration/start", json={"username": "alice"})  # supersedes the login ceremony
        r = client.post("/authentication/finish", json={"username": "alice", "response": resp})
        assert r.status_code == 401

    def test_assertion_for_another_users_passkey(self, client):
        alice, bob = SoftAuthenticator(), SoftAuthenticator()
        register(client, "alice", alice)
        register(client, "bob", bob)
        opts = client.post("/authentication/start", json={"username": "alice"}).json()
        bob_cred = next(iter(bob.keys))
        resp = bob.get(opts["publicKey"], RP_ORIGIN, credential_id=bob_cred)
        r = client.post("/authentication/finish", json={"username": "alice", "response": resp})
        assert r.status_code == 401
        assert r.json() == AUTH_FAILED


class _BrokenDatabase(Database):
    async def write_value(self, *args, **kwargs):
        raise StorageUnavailable("disk on fire")


def test_storage_failure_is_service_unavailable():
    app = create_app(make_settings(), db=_BrokenDatabase(":memory:"))
    with TestClient(app) as c:
        r = c.post("/registration/start", json={"username": "alice"})
        assert r.status_code == 503
        assert r.json() == {"detail": "service unavailable"}
