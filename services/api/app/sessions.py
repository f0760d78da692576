import logging
import secrets
from typing import Optional

from opentelemetry import trace

from app import storage
from app.did import normalize_did, normalize_wallet, verify_wallet_signature
from app.errors import BadRequest, Conflict, Forbidden, Gone, NotFound, Unauthorized
from app.utils import iso_ts, now_ts

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def generate_token() -> str:
    return secrets.token_urlsafe(32)


def public_user(user: dict) -> dict:
    return {
        "id": user["id"],
        "walletAddress": user["wallet_address"],
        "did": user["did"],
        "role": user["role"],
        "displayName": user["display_name"],
        "email": user["email"],
    }


class SessionManager:
    """Turns a signed challenge into a fixed-duration bearer session."""

    def __init__(self, Session, settings, verify_signature=None, clock=None):
        self.Session = Session
        self.settings = settings
        self.verify_signature = verify_signature or verify_wallet_signature
        self.clock = clock or now_ts

    def session_ttl(self, expires_in_seconds: Optional[int]) -> int:
        if expires_in_seconds and expires_in_seconds > self.settings.session_min_ttl_seconds:
            return min(int(expires_in_seconds), self.settings.session_max_ttl_seconds)
        return self.settings.session_default_ttl_seconds

    def verify_and_issue(
        self,
        wallet_address: str,
        did: str,
        nonce: str,
        signature: str,
        expires_in_seconds: Optional[int] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> dict:
        with tracer.start_as_current_span("did_auth.verify_and_issue"), self.Session.begin() as db:
            now = self.clock()
            challenge = storage.get_challenge_by_nonce(db, nonce)
            if not challenge:
                raise NotFound("Challenge not found")
            if challenge["expires_at"] <= now:
                raise Gone("Challenge expired")
            if challenge["verified_at"] is not None:
                raise Conflict("Challenge already used")

            wallet = normalize_wallet(wallet_address)
            if challenge["wallet_address"] != wallet:
                raise BadRequest("Wallet address mismatch")
            if challenge["did"] != normalize_did(did):
                raise BadRequest("DID mismatch")

            if not self.verify_signature(wallet, challenge["message"], signature):
                logger.info("signature rejected for challenge %s", challenge["id"])
                raise Unauthorized("Signature verification failed")

            user = self._resolve_user(db, challenge, now)

            # the conditional update is the single point that decides who owns the nonce
            if not storage.consume_challenge(db, challenge["id"], user["id"], now):
                raise Conflict("Challenge already used")

            session = storage.create_session(
                db,
                {
                    "token": generate_token(),
                    "user_id": user["id"],
                    "nonce": challenge["nonce"],
                    "challenge_id": challenge["id"],
                    "issued_at": now,
                    "expires_at": now + self.session_ttl(expires_in_seconds),
                    "verified_at": now,
                    "ip_address": ip_address,
                    "user_agent": user_agent,
                },
            )
        logger.info("issued session for user %s", user["id"])
        return {
            "token": session["token"],
            "nonce": session["nonce"],
            "expiresAt": iso_ts(session["expires_at"]),
            "user": public_user(user),
        }

    def _resolve_user(self, db, challenge: dict, now: int) -> dict:
        user = None
        if challenge["user_id"]:
            user = storage.get_user(db, challenge["user_id"])
        if user is None:
            user = storage.get_user_by_wallet(db, challenge["wallet_address"])
        if user is None:
            user = storage.create_user(
                db,
                challenge["wallet_address"],
                challenge["did"],
                challenge["display_name"],
                challenge["email"],
                "MEMBER",
                now,
            )
            logger.info("resolved new user %s for %s", user["id"], challenge["wallet_address"])
        # profile follows the most recently verified challenge
        if (
            user["did"] != challenge["did"]
            or (challenge["display_name"] and user["display_name"] != challenge["display_name"])
            or (challenge["email"] and user["email"] != challenge["email"])
        ):
            storage.update_user_profile(
                db, user["id"], challenge["did"], challenge["display_name"], challenge["email"]
            )
            user = storage.get_user(db, user["id"])
        return user

    def is_active(self, session: dict, now: Optional[int] = None) -> bool:
        now = self.clock() if now is None else now
        return session["revoked_at"] is None and now < session["expires_at"]

    def get(self, token: str) -> Optional[dict]:
        with self.Session() as db:
            return storage.get_session_by_token(db, token)

    def touch(self, session: dict) -> None:
        with self.Session.begin() as db:
            storage.touch_session(db, session["id"], self.clock())

    def revoke(self, token: str) -> int:
        with self.Session.begin() as db:
            count = storage.revoke_sessions(db, token, self.clock())
        if count:
            logger.info("revoked %d session(s)", count)
        return count

    def require_active(
        self,
        token: Optional[str],
        user_id: Optional[str] = None,
        challenge_nonce: Optional[str] = None,
    ) -> dict:
        """Return the live session for ``token`` or raise; touches it on success."""
        session = self.get(token) if token else None
        if not session:
            raise Unauthorized("Session not found")
        if user_id is not None and session["user_id"] != user_id:
            raise Forbidden("Session does not belong to user")
        if not self.is_active(session):
            raise Unauthorized("Session expired")
        if challenge_nonce and session["nonce"] != challenge_nonce:
            raise BadRequest("Challenge nonce mismatch")
        self.touch(session)
        return session

    def describe(self, token: Optional[str]) -> dict:
        session = self.require_active(token)
        with self.Session() as db:
            user = storage.get_user(db, session["user_id"])
        return {
            "nonce": session["nonce"],
            "expiresAt": iso_ts(session["expires_at"]),
            "user": public_user(user),
        }
