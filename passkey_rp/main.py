# passkey_rp/main.py
import os, secrets, logging, base64
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware import Middleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import FileResponse
from pydantic import BaseModel

from passkey_rp.core.config import Settings, load_settings
from passkey_rp.core.errors import MalformedRequest, PasskeyError, StorageUnavailable
from passkey_rp.db.kv import Database, KEYS, OWNERS, STATE, USERS
from passkey_rp.services.ceremony_state import CeremonyStateStore
from passkey_rp.services.credentials import CredentialStore
from passkey_rp.services.identity import IdentityDirectory
from passkey_rp.services.orchestrator import CeremonyOrchestrator
from passkey_rp.services.verifier import CredentialVerifier, WebAuthnVerifier

log = logging.getLogger(__name__)

ASSETS_DIR = os.path.join(os.path.dirname(__file__), "assets")


# ---------------- Request bodies ----------------
class UsernameForm(BaseModel):
    username: str


class CeremonyResponse(BaseModel):
    username: str
    response: Dict[str, Any]


# ---------------- Security / request-id middleware ----------------
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    CSP_DEFAULT = (
        "default-src 'none'; "
        "script-src 'self'; "
        "style-src 'self'; "
        "img-src 'self' data:; "
        "connect-src 'self'; "
        "base-uri 'none'; "
        "form-action 'self'; "
        "frame-ancestors 'none'"
    )

    async def dispatch(self, request: Request, call_next):
        resp = await call_next(request)
        resp.headers.setdefault("Content-Security-Policy", self.CSP_DEFAULT)
        resp.headers.setdefault("Referrer-Policy", "no-referrer")
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        resp.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
        return resp


class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or base64.urlsafe_b64encode(secrets.token_bytes(9)).rstrip(b"=").decode()
        request.state.request_id = rid
        resp = await call_next(request)
        resp.headers["X-Request-ID"] = rid
        return resp


# ---------------- Error mapping ----------------
# Client-visible text never says *why* a ceremony failed; an unknown username
# looks exactly like a bad signature.
_GENERIC = {
    "registration": (400, "registration failed"),
    "authentication": (401, "authentication failed"),
}


def _ceremony_error(kind: str, req: Request, exc: PasskeyError) -> HTTPException:
    rid = getattr(req.state, "request_id", "-")
    if isinstance(exc, StorageUnavailable):
        log.error("%s: storage unavailable rid=%s: %s", kind, rid, exc)
        return HTTPException(status_code=503, detail="service unavailable")
    if isinstance(exc, MalformedRequest):
        log.info("%s: malformed request rid=%s: %s", kind, rid, exc)
        return HTTPException(status_code=400, detail="malformed request")
    log.warning("%s failed rid=%s: %s(%s)", kind, rid, type(exc).__name__, exc)
    status, detail = _GENERIC[kind]
    return HTTPException(status_code=status, detail=detail)


def build_orchestrator(settings: Settings, db: Database, verifier: Optional[CredentialVerifier] = None) -> CeremonyOrchestrator:
    return CeremonyOrchestrator(
        settings,
        IdentityDirectory(db.store(USERS)),
        CredentialStore(db.store(KEYS), db.store(OWNERS)),
        CeremonyStateStore(db.store(STATE)),
        verifier or WebAuthnVerifier(settings.passkeys_policy),
    )


def create_app(settings: Optional[Settings] = None, *, verifier: Optional[CredentialVerifier] = None,
               db: Optional[Database] = None) -> FastAPI:
    settings = settings or load_settings()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s [%(name)s.%(funcName)s] %(message)s")
    log.info("Loaded config from: %s", settings.cfg_file_used or "<defaults>")
    log.info("Relying party: id=%s origin=%s policy=%s", settings.rp_id, settings.rp_origin, settings.passkeys_policy)

    db = db or Database(settings.db_path)
    app = FastAPI(
        title="Passkeys relying party",
        docs_url=None, redoc_url=None, openapi_url=None,
        middleware=[
            Middleware(RequestIDMiddleware),
            Middleware(SecurityHeadersMiddleware),
        ],
    )
    app.state.settings = settings
    app.state.db = db
    app.state.orchestrator = build_orchestrator(settings, db, verifier)

    # ---- DB lifecycle ----
    @app.on_event("startup")
    async def _init_db():
        await db.init()
        log.info("DB initialized at %s", db.path)

    @app.on_event("shutdown")
    async def _close_db():
        await db.close()

    # ---- Error handlers ----
    @app.exception_handler(RequestValidationError)
    async def _malformed(req: Request, exc: RequestValidationError):
        log.info("malformed body on %s: %s", req.url.path, exc.errors())
        return JSONResponse({"detail": "malformed request"}, status_code=400)

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(req: Request, exc: StarletteHTTPException):
        # Only exact (method, path) pairs exist; everything else is simply not found.
        if exc.status_code == 405:
            return JSONResponse({"detail": "Not Found"}, status_code=404)
        return JSONResponse({"detail": exc.detail}, status_code=exc.status_code, headers=getattr(exc, "headers", None))

    def orchestrator() -> CeremonyOrchestrator:
        return app.state.orchestrator

    # ---------------- Frontend ----------------
    @app.get("/")
    async def index():
        return FileResponse(os.path.join(ASSETS_DIR, "index.html"), media_type="text/html; charset=utf-8")

    @app.get("/style.css")
    async def style_css():
        return FileResponse(os.path.join(ASSETS_DIR, "style.css"), media_type="text/css; charset=utf-8")

    @app.get("/auth.js")
    async def auth_js():
        return FileResponse(os.path.join(ASSETS_DIR, "auth.js"), media_type="application/javascript; charset=utf-8")

    @app.get("/robots.txt")
    async def robots_txt():
        return PlainTextResponse("User-agent: *\nDisallow: /\n")

    @app.get("/favicon.ico")
    async def favicon():
        return Response(status_code=404)

    @app.get("/healthz")
    async def healthz():
        return {"ok": True}

    # ---------------- Registration ----------------
    @app.post("/registration/start")
    async def registration_start(form: UsernameForm, req: Request):
        try:
            options = await orchestrator().start_registration(form.username)
        except PasskeyError as e:
            raise _ceremony_error("registration", req, e)
        return JSONResponse(options)

    @app.post("/registration/finish")
    async def registration_finish(body: CeremonyResponse, req: Request):
        try:
            cred = await orchestrator().finish_registration(body.username, body.response)
        except PasskeyError as e:
            raise _ceremony_error("registration", req, e)
        return JSONResponse({"ok": True, "credential_id": cred.credential_id})

    # ---------------- Authentication ----------------
    @app.post("/authentication/start")
    async def authentication_start(form: UsernameForm, req: Request):
        try:
            options = await orchestrator().start_authentication(form.username)
        except PasskeyError as e:
            raise _ceremony_error("authentication", req, e)
        return JSONResponse(options)

    @app.post("/authentication/finish")
    async def authentication_finish(body: CeremonyResponse, req: Request):
        try:
            ident = await orchestrator().finish_authentication(body.username, body.response)
        except PasskeyError as e:
            raise _ceremony_error("authentication", req, e)
        # Session issuance belongs to whoever mounts this app.
        return JSONResponse({"ok": True, "username": ident.username, "user_id": ident.id})

    return app


def main():
    import uvicorn
    settings = load_settings()
    uvicorn.run(create_app(settings), host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "8000")))


if __name__ == "__main__":
    main()
