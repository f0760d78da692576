from typing import Annotated, Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class ChallengeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    wallet_address: str = Field(alias="walletAddress")
    did: str
    display_name: Optional[str] = Field(default=None, alias="displayName")
    email: Optional[str] = None
    statement: Optional[str] = None
    resources: Optional[List[str]] = None
    chain_id: Optional[int] = Field(default=None, alias="chainId")


class ChallengeResponse(BaseModel):
    challengeId: str
    userId: Optional[str]
    nonce: str
    message: str
    expiresAt: str


class VerifyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    wallet_address: str = Field(alias="walletAddress")
    did: str
    nonce: str
    signature: str
    expires_in_seconds: Optional[int] = Field(default=None, alias="expiresInSeconds")


class PublicUser(BaseModel):
    id: str
    walletAddress: str
    did: str
    role: str
    displayName: Optional[str] = None
    email: Optional[str] = None


class SessionResponse(BaseModel):
    token: str
    nonce: str
    expiresAt: str
    user: PublicUser


class SessionInfoResponse(BaseModel):
    nonce: str
    expiresAt: str
    user: PublicUser


class LogoutRequest(BaseModel):
    token: str


class CredentialSubmitRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    user_id: str = Field(alias="userId")
    wallet_address: str = Field(alias="walletAddress")
    did: str
    credential: Dict[str, Any]
    issuer_allow_list: Optional[List[str]] = Field(default=None, alias="issuerAllowList")
    expected_types: Optional[List[str]] = Field(default=None, alias="expectedTypes")
    session_token: Optional[str] = Field(default=None, alias="sessionToken")
    challenge_nonce: Optional[str] = Field(default=None, alias="challengeNonce")


class CredentialRevokeRequest(BaseModel):
    credential_id: str = Field(alias="credentialId")


class CredentialView(BaseModel):
    id: str
    type: str
    status: str
    issuer: str
    issuedAt: Optional[str] = None
    revokedAt: Optional[str] = None
    hash: str
    metadata: Any = None


class CredentialEnvelope(BaseModel):
    credential: CredentialView


class CredentialList(BaseModel):
    credentials: List[CredentialView]


# W3C verifiable credential, as much of it as the verifier relies on.
# Field order matters: the first schema error reported follows it.


class CredentialSubject(BaseModel):
    model_config = ConfigDict(extra="allow")
    id: Optional[str] = None


class CredentialProof(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)
    type: Optional[str] = None
    proof_purpose: Optional[str] = Field(default=None, alias="proofPurpose")
    challenge: Optional[str] = None
    proof_value: Any = Field(default=None, alias="proofValue")


NonEmptyStr = Annotated[str, Field(min_length=1)]


class VerifiableCredential(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)
    credential_subject: CredentialSubject = Field(alias="credentialSubject")
    issuer: NonEmptyStr
    type: Union[NonEmptyStr, Annotated[List[str], Field(min_length=1)]]
    issuance_date: Optional[str] = Field(default=None, alias="issuanceDate")
    expiration_date: Optional[str] = Field(default=None, alias="expirationDate")
    proof: Optional[CredentialProof] = None
