import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app import seed, storage, telemetry
from app.anchor import AnchorReader
from app.credentials import CredentialVerifier, credential_view
from app.crypto import CryptoVault
from app.did import normalize_did, normalize_wallet
from app.did_auth import ChallengeManager
from app.errors import Forbidden, NotFound, TrustError, Unauthorized
from app.models import (
    ChallengeRequest, ChallengeResponse, CredentialEnvelope, CredentialList,
    CredentialRevokeRequest, CredentialSubmitRequest, LogoutRequest,
    SessionInfoResponse, SessionResponse, VerifyRequest,
)
from app.ratelimit import RedisRateLimiter
from app.sessions import SessionManager
from app.settings import Settings
from app.utils import now_ts

logger = logging.getLogger(__name__)

RATE_LIMITED_PREFIXES = ("/v1/auth/",)


@dataclass
class Services:
    settings: Settings
    engine: Any
    Session: Any
    vault: CryptoVault
    anchor_reader: AnchorReader
    challenges: ChallengeManager
    sessions: SessionManager
    credentials: CredentialVerifier
    limiter: Optional[RedisRateLimiter]


def build_services(settings, anchor_reader=None, verify_signature=None, redis=None) -> Services:
    engine, Session = storage.init_db(settings)
    vault = CryptoVault.from_settings(settings)
    anchor_reader = anchor_reader or AnchorReader.from_settings(settings)
    redis = redis if redis is not None else storage.init_redis(settings)
    limiter = None
    if redis is not None:
        limiter = RedisRateLimiter(redis, settings.rate_limit_max, settings.rate_limit_window_seconds)
    return Services(
        settings=settings,
        engine=engine,
        Session=Session,
        vault=vault,
        anchor_reader=anchor_reader,
        challenges=ChallengeManager(Session, settings),
        sessions=SessionManager(Session, settings, verify_signature=verify_signature),
        credentials=CredentialVerifier(Session, vault, anchor_reader),
        limiter=limiter,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def require_admin(x_admin_token: str = Header(None), services: Services = Depends(get_services)):
    expected = services.settings.issuer_admin_token
    if not expected:
        return
    if x_admin_token != expected:
        raise Unauthorized("invalid admin token")


router = APIRouter()


@router.post("/v1/auth/did/challenge", response_model=ChallengeResponse, status_code=201)
def issue_challenge(req: ChallengeRequest, request: Request, services: Services = Depends(get_services)):
    return services.challenges.issue(
        req.wallet_address,
        req.did,
        display_name=req.display_name,
        email=req.email,
        statement=req.statement,
        resources=req.resources,
        chain_id=req.chain_id,
        domain=request.headers.get("host"),
        origin=request.headers.get("origin"),
    )


@router.post("/v1/auth/did/verify", response_model=SessionResponse)
def verify_challenge(req: VerifyRequest, request: Request, services: Services = Depends(get_services)):
    return services.sessions.verify_and_issue(
        req.wallet_address,
        req.did,
        req.nonce,
        req.signature,
        expires_in_seconds=req.expires_in_seconds,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )


@router.get("/v1/auth/session", response_model=SessionInfoResponse)
def current_session(
    token: Optional[str] = Query(None),
    authorization: Optional[str] = Header(None),
    services: Services = Depends(get_services),
):
    if not token and authorization and authorization.startswith("Bearer "):
        token = authorization.split(" ", 1)[1].strip()
    return services.sessions.describe(token)


@router.post("/v1/auth/logout")
def logout(req: LogoutRequest, services: Services = Depends(get_services)):
    services.sessions.revoke(req.token)
    return {"ok": True}


@router.get("/v1/auth/did/credentials", response_model=CredentialList)
def list_credentials(user_id: str = Query(..., alias="userId"), services: Services = Depends(get_services)):
    return {"credentials": services.credentials.list_for_user(user_id)}


@router.post("/v1/auth/did/credentials", response_model=CredentialEnvelope)
def submit_credential(req: CredentialSubmitRequest, services: Services = Depends(get_services)):
    with services.Session() as db:
        user = storage.get_user(db, req.user_id)
    if not user:
        raise NotFound("User not found")
    if normalize_wallet(req.wallet_address) != user["wallet_address"]:
        raise Forbidden("Wallet address does not belong to user")
    if normalize_did(req.did) != user["did"]:
        raise Forbidden("DID does not belong to user")
    if req.session_token:
        services.sessions.require_active(req.session_token, req.user_id, req.challenge_nonce)

    record = services.credentials.verify_and_store(
        req.user_id,
        req.wallet_address,
        req.did,
        req.credential,
        issuer_allow_list=req.issuer_allow_list,
        expected_types=req.expected_types,
    )
    return {"credential": credential_view(record)}


@router.post("/v1/auth/did/credentials/revoke")
def revoke_credential(
    req: CredentialRevokeRequest,
    _=Depends(require_admin),
    services: Services = Depends(get_services),
):
    if not services.credentials.revoke(req.credential_id):
        raise NotFound("Credential not found")
    return {"ok": True}


@router.get("/healthz")
def healthz(services: Services = Depends(get_services)):
    storage.health_check(services.engine)
    return {"ok": True, "ts": now_ts(), "anchorConfigured": services.anchor_reader.configured}


@router.get("/readyz")
def readyz():
    return {"ok": True}


async def trust_error_handler(request: Request, exc: TrustError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse({"error": exc.message}, status_code=exc.status_code)


async def validation_error_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0]
    if first.get("type") == "json_invalid":
        return JSONResponse({"error": "Invalid JSON payload"}, status_code=400)
    field = ".".join(str(part) for part in first.get("loc", ()) if part not in ("body", "query", "header"))
    message = f"{field}: {first.get('msg')}" if field else str(first.get("msg"))
    return JSONResponse({"error": message}, status_code=400)


def create_app(settings=None, *, anchor_reader=None, verify_signature=None, redis=None) -> FastAPI:
    settings = settings or Settings()
    telemetry.configure_logging(settings)
    telemetry.setup_otel(settings)
    services = build_services(settings, anchor_reader, verify_signature, redis)

    @asynccontextmanager
    async def lifespan(_app):
        storage.create_schema(services.engine)
        seed.ensure_seed_users(services.Session, settings)
        yield
        services.engine.dispose()

    application = FastAPI(title="Academic Trust API", version="1.0.0", lifespan=lifespan)
    application.state.services = services
    origins = [origin.strip() for origin in settings.ui_cors_origins.split(",") if origin.strip()]
    if not origins:
        origins = ["*"]
    application.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @application.middleware("http")
    async def rate_limit(request: Request, call_next):
        limiter = services.limiter
        if limiter is not None and request.url.path.startswith(RATE_LIMITED_PREFIXES):
            identifier = f"{client_ip(request) or 'unknown'}:{request.url.path}"
            result = await run_in_threadpool(limiter.check, identifier)
            if not result.allowed:
                return JSONResponse(
                    {"error": "Too many requests, please slow down."},
                    status_code=429,
                    headers={"Retry-After": str(result.retry_after)},
                )
        return await call_next(request)

    application.add_exception_handler(TrustError, trust_error_handler)
    application.add_exception_handler(RequestValidationError, validation_error_handler)
    application.include_router(router)
    return application


app = create_app()
