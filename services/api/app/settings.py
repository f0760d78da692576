import os
from pydantic import BaseModel


def _rpc_url_from_env() -> str:
    return (
        os.getenv("CREDENTIAL_ANCHOR_RPC_URL")
        or os.getenv("POLYGON_AMOY_RPC_URL")
        or os.getenv("SEPOLIA_RPC_URL")
        or ""
    )


class Settings(BaseModel):
    db_dsn: str = os.getenv("DB_DSN", "postgresql+psycopg2://trust:trust@db:5432/trust")
    redis_url: str = os.getenv("REDIS_URL", "redis://redis:6379/0")
    env: str = os.getenv("ENV", "dev")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    otlp_endpoint: str = os.getenv("OTLP_ENDPOINT", "")
    ui_cors_origins: str = os.getenv("UI_CORS_ORIGINS", "")
    issuer_admin_token: str = os.getenv("ISSUER_ADMIN_TOKEN", "")
    vc_encryption_secret: str = os.getenv("VC_ENCRYPTION_SECRET", "")
    anchor_address: str = os.getenv("CREDENTIAL_ANCHOR_ADDRESS", "")
    anchor_rpc_url: str = _rpc_url_from_env()
    anchor_timeout_seconds: float = float(os.getenv("ANCHOR_TIMEOUT_SECONDS", "5"))
    challenge_ttl_seconds: int = int(os.getenv("CHALLENGE_TTL_SECONDS", "600"))
    session_default_ttl_seconds: int = int(os.getenv("SESSION_DEFAULT_TTL_SECONDS", str(60 * 60 * 12)))
    session_min_ttl_seconds: int = int(os.getenv("SESSION_MIN_TTL_SECONDS", "300"))
    session_max_ttl_seconds: int = int(os.getenv("SESSION_MAX_TTL_SECONDS", str(60 * 60 * 24 * 30)))
    default_admins: str = os.getenv("GOVERNANCE_DEFAULT_ADMINS", "")
    rate_limit_window_seconds: int = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"))
    rate_limit_max: int = int(os.getenv("RATE_LIMIT_MAX", "30"))
    siwe_domain: str = os.getenv("SIWE_DOMAIN", "academic-repository.local")
    siwe_chain_id: int = int(os.getenv("SIWE_CHAIN_ID", "80002"))
