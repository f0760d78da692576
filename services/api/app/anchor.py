import logging
from dataclasses import dataclass
from typing import Optional

from eth_utils import to_checksum_address
from web3 import Web3

logger = logging.getLogger(__name__)

CREDENTIAL_ANCHOR_ABI = [
    {
        "inputs": [{"internalType": "address", "name": "subject", "type": "address"}],
        "name": "getCredential",
        "outputs": [
            {
                "components": [
                    {"internalType": "bytes32", "name": "credentialHash", "type": "bytes32"},
                    {"internalType": "uint256", "name": "labId", "type": "uint256"},
                    {"internalType": "bool", "name": "revoked", "type": "bool"},
                    {"internalType": "uint256", "name": "issuedAt", "type": "uint256"},
                ],
                "internalType": "struct CredentialAnchor.CredentialRecord",
                "name": "",
                "type": "tuple",
            }
        ],
        "stateMutability": "view",
        "type": "function",
    }
]


@dataclass(frozen=True)
class AnchorRecord:
    credential_hash: str
    lab_id: int
    revoked: bool
    issued_at: int

    @classmethod
    def from_call(cls, raw) -> "AnchorRecord":
        credential_hash, lab_id, revoked, issued_at = raw
        if isinstance(credential_hash, str):
            digest = credential_hash.lower()
            if not digest.startswith("0x"):
                digest = f"0x{digest}"
        else:
            digest = "0x" + bytes(credential_hash).hex()
        return cls(
            credential_hash=digest,
            lab_id=int(lab_id),
            revoked=bool(revoked),
            issued_at=int(issued_at),
        )


class AnchorReader:
    """Read-only view of the CredentialAnchor contract.

    ``read`` answers None for "no usable anchor": unconfigured, no record for
    the subject, or any failure of the RPC call.
    """

    def __init__(self, contract=None):
        self.contract = contract

    @classmethod
    def from_settings(cls, settings) -> "AnchorReader":
        if not settings.anchor_address or not settings.anchor_rpc_url:
            logger.info("credential anchor not configured; running unanchored")
            return cls(None)
        try:
            address = to_checksum_address(settings.anchor_address)
        except ValueError:
            logger.warning(
                "invalid CREDENTIAL_ANCHOR_ADDRESS %r; running unanchored", settings.anchor_address
            )
            return cls(None)
        provider = Web3.HTTPProvider(
            settings.anchor_rpc_url,
            request_kwargs={"timeout": settings.anchor_timeout_seconds},
        )
        w3 = Web3(provider)
        contract = w3.eth.contract(
            address=address,
            abi=CREDENTIAL_ANCHOR_ABI,
        )
        return cls(contract)

    @property
    def configured(self) -> bool:
        return self.contract is not None

    def read(self, wallet_address: str) -> Optional[AnchorRecord]:
        if self.contract is None:
            return None
        try:
            raw = self.contract.functions.getCredential(to_checksum_address(wallet_address)).call()
            record = AnchorRecord.from_call(raw)
        except Exception:  # noqa: BLE001 - any RPC fault degrades to "no anchor"
            logger.warning("failed to read credential anchor for %s", wallet_address, exc_info=True)
            return None
        if record.issued_at == 0:
            return None
        return record
