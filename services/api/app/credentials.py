"""Verifiable-credential verification and storage.

A submitted credential is parsed into ``VerifiableCredential``, run through
the business rules in a fixed order, hashed canonically (signature material
excluded), cross-checked against the on-chain anchor when one exists, then
encrypted and upserted as the single row for its ``(user, type)`` pair.
Any failure aborts the whole operation before the store is written, except
an on-chain revocation, which also flips the stored row to REVOKED.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from opentelemetry import trace
from pydantic import ValidationError

from app import storage
from app.errors import VerificationFailed
from app.models import VerifiableCredential
from app.utils import canonical_hash, iso_ts, now_ts, parse_instant

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

GENERIC_CREDENTIAL_TYPE = "VerifiableCredential"
ASSERTION_PURPOSE = "assertionMethod"

STATUS_VERIFIED = "VERIFIED"

SCHEMA_MESSAGES = {
    ("credentialSubject",): "credentialSubject is required",
    ("issuer",): "Credential issuer is missing",
    ("type",): "Credential type is required",
    ("issuanceDate",): "Invalid issuanceDate on credential",
    ("expirationDate",): "Invalid expirationDate on credential",
    ("proof", "proofPurpose"): "Credential proof purpose must be assertionMethod",
    ("proof", "challenge"): "Credential proof is missing challenge",
    ("proof",): "Credential proof is malformed",
}


def parse_credential(payload) -> VerifiableCredential:
    try:
        return VerifiableCredential.model_validate(payload)
    except ValidationError as exc:
        loc = tuple(str(part) for part in exc.errors()[0]["loc"])
        for size in (2, 1):
            message = SCHEMA_MESSAGES.get(loc[:size])
            if message:
                raise VerificationFailed(message) from exc
        raise VerificationFailed("Credential payload is malformed") from exc


def extract_credential_type(types) -> str:
    if isinstance(types, list):
        for candidate in types:
            if candidate != GENERIC_CREDENTIAL_TYPE:
                return candidate
        return types[0]
    return str(types)


def hash_input(credential: dict) -> dict:
    """The credential as hashed: ``proof.proofValue`` left out."""
    payload = dict(credential)
    proof = payload.get("proof")
    if isinstance(proof, dict):
        payload["proof"] = {key: value for key, value in proof.items() if key != "proofValue"}
    return payload


def credential_view(record: dict, metadata=None) -> dict:
    return {
        "id": record["id"],
        "type": record["type"],
        "status": record["status"],
        "issuer": record["issuer"],
        "issuedAt": iso_ts(record["issued_at"]),
        "revokedAt": iso_ts(record["revoked_at"]),
        "hash": record["hash"],
        "metadata": record["metadata"] if metadata is None else metadata,
    }


class CredentialVerifier:
    def __init__(self, Session, vault, anchor_reader, clock=None):
        self.Session = Session
        self.vault = vault
        self.anchor_reader = anchor_reader
        self.clock = clock or now_ts

    def verify_and_store(
        self,
        user_id: str,
        wallet_address: str,
        did: str,
        credential: dict,
        issuer_allow_list: Optional[List[str]] = None,
        expected_types: Optional[List[str]] = None,
    ) -> dict:
        with tracer.start_as_current_span("credentials.verify_and_store") as span:
            vc = parse_credential(credential)
            now = self.clock()

            subject_did = vc.credential_subject.id
            if not subject_did or subject_did.lower() != did.lower():
                raise VerificationFailed("Credential subject DID does not match authenticated DID")

            issuer = vc.issuer
            if issuer_allow_list:
                if not any(allowed.lower() == issuer.lower() for allowed in issuer_allow_list):
                    raise VerificationFailed(f"Issuer {issuer} is not in the allowed list")

            cred_type = extract_credential_type(vc.type)
            if expected_types:
                if not any(expected.lower() == cred_type.lower() for expected in expected_types):
                    raise VerificationFailed(f"Credential type {cred_type} does not match expected types")
            span.set_attribute("credential.type", cred_type)

            issued_at = now
            if vc.issuance_date:
                issued_at = int(self._instant(vc.issuance_date, "issuanceDate").timestamp())

            if vc.expiration_date:
                expiration = self._instant(vc.expiration_date, "expirationDate")
                if expiration < datetime.fromtimestamp(now, tz=timezone.utc):
                    raise VerificationFailed("Credential is expired")

            if vc.proof is not None:
                if vc.proof.proof_purpose and vc.proof.proof_purpose != ASSERTION_PURPOSE:
                    raise VerificationFailed("Credential proof purpose must be assertionMethod")
                if not vc.proof.challenge:
                    raise VerificationFailed("Credential proof is missing challenge")

            digest = canonical_hash(hash_input(credential))

            anchor = self.anchor_reader.read(wallet_address)
            span.set_attribute("credential.anchored", anchor is not None)
            if anchor is not None:
                if anchor.revoked:
                    self._mark_revoked(user_id, cred_type, now)
                    raise VerificationFailed("Credential has been revoked on-chain")
                if anchor.credential_hash.lower() != digest.lower():
                    raise VerificationFailed("Credential hash does not match on-chain anchor")
            else:
                logger.info("no usable anchor for %s; accepting unanchored", wallet_address)

            metadata = self.vault.encrypt(credential)

            with self.Session.begin() as db:
                record = storage.upsert_credential(
                    db,
                    {
                        "user_id": user_id,
                        "type": cred_type,
                        "issuer": issuer,
                        "hash": digest,
                        "status": STATUS_VERIFIED,
                        "issued_at": issued_at,
                        "metadata": metadata,
                        "ts": now,
                    },
                )
        logger.info("verified %s credential for user %s", cred_type, user_id)
        return record

    @staticmethod
    def _instant(value: str, field: str) -> datetime:
        try:
            return parse_instant(value)
        except ValueError as exc:
            raise VerificationFailed(f"Invalid {field} on credential") from exc

    def _mark_revoked(self, user_id: str, cred_type: str, now: int) -> None:
        with self.Session.begin() as db:
            if storage.revoke_credential_by_type(db, user_id, cred_type, now):
                logger.warning("credential %s for user %s revoked on-chain", cred_type, user_id)

    def list_for_user(self, user_id: str) -> list:
        with self.Session() as db:
            records = storage.list_credentials_for_user(db, user_id)
        views = []
        for record in records:
            metadata = None
            if self.vault.available and record["metadata"]:
                metadata = self.vault.decrypt(record["metadata"])
            views.append(credential_view(record, metadata))
        return views

    def revoke(self, credential_id: str) -> bool:
        with self.Session.begin() as db:
            return storage.revoke_credential(db, credential_id, self.clock())
