import logging

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_utils import is_address

logger = logging.getLogger(__name__)


def normalize_wallet(wallet: str) -> str:
    return wallet.strip().lower()


def normalize_did(did: str) -> str:
    return did.strip().lower()


def is_wallet_address(wallet) -> bool:
    return isinstance(wallet, str) and is_address(wallet.strip())


def did_pkh_for(wallet: str, chain_id: int) -> str:
    return f"did:pkh:eip155:{chain_id}:{normalize_wallet(wallet)}"


def verify_wallet_signature(address: str, message: str, signature: str) -> bool:
    """Check an EIP-191 personal_sign signature against ``address``.

    Any failure inside the recovery primitive counts as a bad signature.
    """
    try:
        recovered = Account.recover_message(encode_defunct(text=message), signature=signature)
    except Exception:  # noqa: BLE001 - malformed signatures surface as many exception types
        logger.info("signature recovery failed for %s", normalize_wallet(address), exc_info=True)
        return False
    return recovered.lower() == normalize_wallet(address)
