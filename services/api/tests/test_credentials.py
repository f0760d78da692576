import copy

import pytest

from app import storage
from app.anchor import AnchorRecord
from app.credentials import CredentialVerifier, hash_input
from app.crypto import CryptoVault
from app.errors import VaultUnavailable, VerificationFailed
from app.utils import canonical_hash
from conftest import Clock

WALLET = "0x1111111111111111111111111111111111111111"
DID = f"did:pkh:eip155:80002:{WALLET}"
ISSUER = "did:web:lab.example.edu"


def make_credential(**overrides):
    credential = {
        "@context": ["https://www.w3.org/2018/credentials/v1"],
        "id": "urn:uuid:7d2b3c1e-0000-4000-8000-000000000001",
        "type": ["VerifiableCredential", "LabMembershipCredential"],
        "issuer": ISSUER,
        "issuanceDate": "2024-03-01T12:00:00Z",
        "expirationDate": "2099-01-01T00:00:00Z",
        "credentialSubject": {"id": DID, "lab": "Quantum Systems Lab", "role": "researcher"},
        "proof": {
            "type": "EcdsaSecp256k1Signature2019",
            "proofPurpose": "assertionMethod",
            "challenge": "3f1c2a9e-aaaa-4bbb-8ccc-000000000000",
            "proofValue": "z3FXQjecWufY46yg5abdVZsXqLhxhueuSoZgNSARiKBk",
        },
    }
    credential.update(overrides)
    return credential


@pytest.fixture(scope="module")
def vault():
    return CryptoVault("credential-test-secret")


@pytest.fixture
def clock():
    return Clock(start=1_750_000_000)


@pytest.fixture
def user(db, clock):
    _, Session = db
    with Session.begin() as session:
        return storage.create_user(session, WALLET, DID, "Ada", None, "MEMBER", clock.now)


@pytest.fixture
def verifier(db, vault, anchor, clock):
    _, Session = db
    return CredentialVerifier(Session, vault, anchor, clock=clock)


def _rows(db, user_id):
    _, Session = db
    with Session() as session:
        return storage.list_credentials_for_user(session, user_id)


def test_valid_unanchored_credential_is_stored(verifier, user, vault, db, anchor):
    credential = make_credential()
    record = verifier.verify_and_store(user["id"], WALLET, DID, credential)
    assert record["type"] == "LabMembershipCredential"
    assert record["status"] == "VERIFIED"
    assert record["issuer"] == ISSUER
    assert record["issued_at"] == 1709294400
    assert record["revoked_at"] is None
    assert record["hash"] == canonical_hash(hash_input(credential))
    assert vault.decrypt(record["metadata"]) == credential
    assert anchor.calls == [WALLET]
    assert len(_rows(db, user["id"])) == 1


def test_subject_did_comparison_is_case_insensitive(verifier, user):
    credential = make_credential(credentialSubject={"id": DID.upper()})
    assert verifier.verify_and_store(user["id"], WALLET, DID, credential)["status"] == "VERIFIED"


def test_subject_mismatch_creates_no_row(verifier, user, db):
    credential = make_credential(credentialSubject={"id": "did:example:mallory"})
    with pytest.raises(VerificationFailed, match="does not match authenticated DID"):
        verifier.verify_and_store(user["id"], WALLET, DID, credential)
    assert _rows(db, user["id"]) == []


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"credentialSubject": None}, "credentialSubject is required"),
        ({"credentialSubject": "did:example:1"}, "credentialSubject is required"),
        ({"issuer": ""}, "Credential issuer is missing"),
        ({"issuer": {"id": ISSUER}}, "Credential issuer is missing"),
        ({"type": []}, "Credential type is required"),
        ({"type": None}, "Credential type is required"),
        ({"issuanceDate": "yesterday"}, "Invalid issuanceDate on credential"),
        ({"expirationDate": "not-a-date"}, "Invalid expirationDate on credential"),
        ({"expirationDate": "2020-01-01T00:00:00Z"}, "Credential is expired"),
    ],
)
def test_structural_rejections(verifier, user, db, overrides, message):
    with pytest.raises(VerificationFailed, match=message):
        verifier.verify_and_store(user["id"], WALLET, DID, make_credential(**overrides))
    assert _rows(db, user["id"]) == []


def test_missing_credential_subject_key(verifier, user):
    credential = make_credential()
    del credential["credentialSubject"]
    with pytest.raises(VerificationFailed, match="credentialSubject is required"):
        verifier.verify_and_store(user["id"], WALLET, DID, credential)


def test_issuer_allow_list_is_case_insensitive(verifier, user):
    record = verifier.verify_and_store(
        user["id"], WALLET, DID, make_credential(), issuer_allow_list=[ISSUER.upper()]
    )
    assert record["issuer"] == ISSUER
    with pytest.raises(VerificationFailed, match="not in the allowed list"):
        verifier.verify_and_store(
            user["id"], WALLET, DID, make_credential(), issuer_allow_list=["did:web:other.example"]
        )


def test_expected_types(verifier, user):
    record = verifier.verify_and_store(
        user["id"], WALLET, DID, make_credential(), expected_types=["labmembershipcredential"]
    )
    assert record["type"] == "LabMembershipCredential"
    with pytest.raises(VerificationFailed, match="does not match expected types"):
        verifier.verify_and_store(user["id"], WALLET, DID, make_credential(), expected_types=["PhDCredential"])


def test_generic_only_type_falls_back_to_first_entry(verifier, user):
    record = verifier.verify_and_store(user["id"], WALLET, DID, make_credential(type=["VerifiableCredential"]))
    assert record["type"] == "VerifiableCredential"


def test_missing_issuance_date_defaults_to_now(verifier, user, clock):
    credential = make_credential()
    del credential["issuanceDate"]
    assert verifier.verify_and_store(user["id"], WALLET, DID, credential)["issued_at"] == clock.now


def test_proof_purpose_must_be_assertion(verifier, user):
    credential = make_credential()
    credential["proof"]["proofPurpose"] = "authentication"
    with pytest.raises(VerificationFailed, match="proof purpose must be assertionMethod"):
        verifier.verify_and_store(user["id"], WALLET, DID, credential)


def test_proof_requires_challenge(verifier, user):
    credential = make_credential()
    del credential["proof"]["challenge"]
    with pytest.raises(VerificationFailed, match="missing challenge"):
        verifier.verify_and_store(user["id"], WALLET, DID, credential)


def test_credential_without_proof_is_accepted(verifier, user):
    credential = make_credential()
    del credential["proof"]
    assert verifier.verify_and_store(user["id"], WALLET, DID, credential)["status"] == "VERIFIED"


def test_matching_anchor_is_accepted(verifier, user, anchor):
    credential = make_credential()
    digest = canonical_hash(hash_input(credential))
    anchor.record = AnchorRecord(credential_hash=digest.upper().replace("0X", "0x"), lab_id=7, revoked=False, issued_at=1)
    assert verifier.verify_and_store(user["id"], WALLET, DID, credential)["hash"] == digest


def test_revoked_anchor_rejects_even_when_hash_matches(verifier, user, anchor, db):
    credential = make_credential()
    digest = canonical_hash(hash_input(credential))
    anchor.record = AnchorRecord(credential_hash=digest, lab_id=7, revoked=True, issued_at=1)
    with pytest.raises(VerificationFailed, match="revoked on-chain"):
        verifier.verify_and_store(user["id"], WALLET, DID, credential)
    assert _rows(db, user["id"]) == []


def test_revoked_anchor_marks_existing_row_revoked(verifier, user, anchor, db, clock):
    credential = make_credential()
    verifier.verify_and_store(user["id"], WALLET, DID, credential)
    clock.advance(60)
    anchor.record = AnchorRecord(credential_hash=canonical_hash(hash_input(credential)), lab_id=7, revoked=True, issued_at=1)
    with pytest.raises(VerificationFailed):
        verifier.verify_and_store(user["id"], WALLET, DID, credential)
    (row,) = _rows(db, user["id"])
    assert row["status"] == "REVOKED"
    assert row["revoked_at"] == clock.now


def test_anchor_hash_mismatch_is_tamper(verifier, user, anchor, db):
    anchor.record = AnchorRecord(credential_hash="0x" + "ab" * 32, lab_id=7, revoked=False, issued_at=1)
    with pytest.raises(VerificationFailed, match="does not match on-chain anchor"):
        verifier.verify_and_store(user["id"], WALLET, DID, make_credential())
    assert _rows(db, user["id"]) == []


def test_tampered_field_breaks_anchor_match(verifier, user, anchor):
    original = make_credential()
    anchor.record = AnchorRecord(credential_hash=canonical_hash(hash_input(original)), lab_id=7, revoked=False, issued_at=1)
    tampered = copy.deepcopy(original)
    tampered["credentialSubject"]["role"] = "principal investigator"
    with pytest.raises(VerificationFailed):
        verifier.verify_and_store(user["id"], WALLET, DID, tampered)


def test_resubmission_upserts_single_row(verifier, user, db, clock):
    first = verifier.verify_and_store(user["id"], WALLET, DID, make_credential())
    clock.advance(10)
    updated = make_credential(issuanceDate="2024-06-01T00:00:00Z")
    second = verifier.verify_and_store(user["id"], WALLET, DID, updated)
    rows = _rows(db, user["id"])
    assert len(rows) == 1
    assert second["id"] == first["id"]
    assert rows[0]["issued_at"] == 1717200000
    assert rows[0]["hash"] == canonical_hash(hash_input(updated))
    assert rows[0]["hash"] != first["hash"]


def test_reverification_clears_revocation(verifier, user, db):
    record = verifier.verify_and_store(user["id"], WALLET, DID, make_credential())
    assert verifier.revoke(record["id"]) is True
    assert _rows(db, user["id"])[0]["status"] == "REVOKED"
    verifier.verify_and_store(user["id"], WALLET, DID, make_credential())
    (row,) = _rows(db, user["id"])
    assert row["status"] == "VERIFIED"
    assert row["revoked_at"] is None


def test_vault_unavailable_writes_nothing(db, user, anchor, clock):
    _, Session = db
    verifier = CredentialVerifier(Session, CryptoVault(None), anchor, clock=clock)
    with pytest.raises(VaultUnavailable):
        verifier.verify_and_store(user["id"], WALLET, DID, make_credential())
    assert _rows(db, user["id"]) == []


def test_list_decrypts_metadata(verifier, user):
    credential = make_credential()
    verifier.verify_and_store(user["id"], WALLET, DID, credential)
    (view,) = verifier.list_for_user(user["id"])
    assert view["metadata"] == credential
    assert view["issuedAt"] == "2024-03-01T12:00:00Z"
    assert view["revokedAt"] is None


def test_empty_issuance_date_defaults_to_now(verifier, user, clock):
    record = verifier.verify_and_store(user["id"], WALLET, DID, make_credential(issuanceDate=""))
    assert record["issued_at"] == clock.now


def test_empty_expiration_date_is_ignored(verifier, user):
    record = verifier.verify_and_store(user["id"], WALLET, DID, make_credential(expirationDate=""))
    assert record["status"] == "VERIFIED"
