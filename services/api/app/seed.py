import logging

from app import storage
from app.did import did_pkh_for, is_wallet_address, normalize_wallet
from app.utils import now_ts

logger = logging.getLogger(__name__)

# First account of the local hardhat/anvil node.
DEV_ADMIN_WALLET = "0xf39fd6e51aad88f6f4ce6ab8827279cfffb92266"


def parse_address_list(value):
    return [entry.strip() for entry in (value or "").split(",") if entry.strip()]


def default_admins(settings):
    wallets = parse_address_list(settings.default_admins)
    if not wallets and settings.env == "dev":
        wallets = [DEV_ADMIN_WALLET]
    admins = []
    for index, wallet in enumerate(wallets):
        if not is_wallet_address(wallet):
            logger.warning("skipping invalid admin wallet %r", wallet)
            continue
        admins.append(
            {
                "wallet_address": normalize_wallet(wallet),
                "did": did_pkh_for(wallet, settings.siwe_chain_id),
                "display_name": "Staging DAO Admin" if index == 0 else f"DAO Member {index + 1}",
                "role": "ADMIN" if index == 0 else "ADVISOR",
            }
        )
    return admins


def ensure_seed_users(Session, settings) -> int:
    """Insert the configured admin accounts; existing wallets are left untouched."""
    created = 0
    now = now_ts()
    with Session.begin() as db:
        for admin in default_admins(settings):
            if storage.insert_user_if_absent(
                db,
                admin["wallet_address"],
                admin["did"],
                admin["display_name"],
                admin["role"],
                now,
            ):
                created += 1
    if created:
        logger.info("seeded %d admin user(s)", created)
    return created
