import logging
import uuid
from typing import Iterable, Optional

from eth_utils import to_checksum_address

from app import storage
from app.did import is_wallet_address, normalize_did, normalize_wallet
from app.errors import BadRequest
from app.utils import iso_ts, now_ts

logger = logging.getLogger(__name__)

DEFAULT_STATEMENT = (
    "Sign this message to prove wallet control and link your DID to Academic Repository."
)


def build_sign_in_message(
    *,
    domain: str,
    uri: str,
    address: str,
    statement: str,
    nonce: str,
    chain_id: int,
    issued_at: str,
    resources: Iterable[str],
) -> str:
    """Render an EIP-4361 style sign-in message.

    The nonce, address and DID (via resources) are all part of the signed text,
    so a signature over one challenge cannot be replayed against another.
    """
    lines = [
        f"{domain} wants you to sign in with your Ethereum account:",
        to_checksum_address(address),
    ]
    if statement:
        lines += ["", statement]
    lines += [
        "",
        f"URI: {uri}",
        "Version: 1",
        f"Chain ID: {chain_id}",
        f"Nonce: {nonce}",
        f"Issued At: {issued_at}",
    ]
    resources = list(resources)
    if resources:
        lines.append("Resources:")
        lines += [f"- {resource}" for resource in resources]
    return "\n".join(lines)


class ChallengeManager:
    def __init__(self, Session, settings, clock=None):
        self.Session = Session
        self.settings = settings
        self.clock = clock or now_ts

    def issue(
        self,
        wallet_address: str,
        did: str,
        *,
        display_name: Optional[str] = None,
        email: Optional[str] = None,
        statement: Optional[str] = None,
        resources: Optional[list] = None,
        chain_id: Optional[int] = None,
        domain: Optional[str] = None,
        origin: Optional[str] = None,
    ) -> dict:
        if not is_wallet_address(wallet_address):
            raise BadRequest("Invalid wallet address supplied")
        if not isinstance(did, str) or not did.strip():
            raise BadRequest("DID is required to create a challenge")

        wallet = normalize_wallet(wallet_address)
        normalized_did = normalize_did(did)
        statement = statement if statement is not None else DEFAULT_STATEMENT
        resources = list(resources) if resources else [normalized_did]
        domain = domain or self.settings.siwe_domain
        origin = origin or f"https://{domain}"

        now = self.clock()
        nonce = str(uuid.uuid4())
        message = build_sign_in_message(
            domain=domain,
            uri=origin,
            address=wallet,
            statement=statement,
            nonce=nonce,
            chain_id=chain_id or self.settings.siwe_chain_id,
            issued_at=iso_ts(now),
            resources=resources,
        )

        with self.Session.begin() as db:
            user = storage.get_user_by_wallet(db, wallet)
            challenge = storage.create_challenge(
                db,
                {
                    "nonce": nonce,
                    "wallet_address": wallet,
                    "did": normalized_did,
                    "message": message,
                    "statement": statement,
                    "resources": resources,
                    "display_name": display_name,
                    "email": email,
                    "user_id": user["id"] if user else None,
                    "created_at": now,
                    "expires_at": now + self.settings.challenge_ttl_seconds,
                },
            )
        logger.info("issued DID auth challenge for %s", wallet)
        return {
            "challengeId": challenge["id"],
            "userId": challenge["user_id"],
            "nonce": challenge["nonce"],
            "message": challenge["message"],
            "expiresAt": iso_ts(challenge["expires_at"]),
        }
