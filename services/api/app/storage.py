import json
import uuid
from typing import Optional

import redis as _redis
from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS users (
  id TEXT PRIMARY KEY,
  wallet_address TEXT NOT NULL UNIQUE,
  did TEXT NOT NULL,
  display_name TEXT,
  email TEXT,
  role TEXT NOT NULL DEFAULT 'MEMBER',
  created_at BIGINT NOT NULL
);
CREATE TABLE IF NOT EXISTS challenges (
  id TEXT PRIMARY KEY,
  nonce TEXT NOT NULL UNIQUE,
  wallet_address TEXT NOT NULL,
  did TEXT NOT NULL,
  message TEXT NOT NULL,
  statement TEXT,
  resources TEXT NOT NULL,
  display_name TEXT,
  email TEXT,
  user_id TEXT REFERENCES users (id),
  created_at BIGINT NOT NULL,
  expires_at BIGINT NOT NULL,
  verified_at BIGINT
);
CREATE TABLE IF NOT EXISTS sessions (
  id TEXT PRIMARY KEY,
  token TEXT NOT NULL UNIQUE,
  user_id TEXT NOT NULL REFERENCES users (id),
  nonce TEXT NOT NULL UNIQUE,
  challenge_id TEXT NOT NULL REFERENCES challenges (id),
  issued_at BIGINT NOT NULL,
  expires_at BIGINT NOT NULL,
  verified_at BIGINT,
  revoked_at BIGINT,
  last_used_at BIGINT,
  ip_address TEXT,
  user_agent TEXT,
  CHECK (expires_at > issued_at)
);
CREATE TABLE IF NOT EXISTS credentials (
  id TEXT PRIMARY KEY,
  user_id TEXT NOT NULL REFERENCES users (id),
  type TEXT NOT NULL,
  issuer TEXT NOT NULL,
  hash TEXT NOT NULL,
  status TEXT NOT NULL,
  issued_at BIGINT,
  revoked_at BIGINT,
  metadata TEXT,
  created_at BIGINT NOT NULL,
  updated_at BIGINT NOT NULL,
  UNIQUE (user_id, type)
)
"""

USER_COLUMNS = "id, wallet_address, did, display_name, email, role, created_at"
CHALLENGE_COLUMNS = (
    "id, nonce, wallet_address, did, message, statement, resources, display_name, "
    "email, user_id, created_at, expires_at, verified_at"
)
SESSION_COLUMNS = (
    "id, token, user_id, nonce, challenge_id, issued_at, expires_at, verified_at, "
    "revoked_at, last_used_at, ip_address, user_agent"
)
CREDENTIAL_COLUMNS = (
    "id, user_id, type, issuer, hash, status, issued_at, revoked_at, metadata, "
    "created_at, updated_at"
)


def init_db(settings):
    kwargs = {"pool_pre_ping": True}
    if settings.db_dsn.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in settings.db_dsn or settings.db_dsn.rstrip("/") == "sqlite:":
            kwargs["poolclass"] = StaticPool
    engine = create_engine(settings.db_dsn, **kwargs)
    Session = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    return engine, Session


def create_schema(engine):
    with engine.begin() as conn:
        for stmt in SCHEMA_SQL.split(";"):
            sql = stmt.strip()
            if sql:
                conn.execute(text(sql))


def init_redis(settings):
    if not settings.redis_url:
        return None
    return _redis.Redis.from_url(settings.redis_url, decode_responses=True)


def new_id() -> str:
    return str(uuid.uuid4())


def _row(row) -> Optional[dict]:
    return dict(row._mapping) if row is not None else None


def _challenge_row(row) -> Optional[dict]:
    data = _row(row)
    if data is not None:
        data["resources"] = json.loads(data["resources"])
    return data


# users


def get_user(db, user_id: str) -> Optional[dict]:
    row = db.execute(
        text(f"SELECT {USER_COLUMNS} FROM users WHERE id=:id"), {"id": user_id}
    ).first()
    return _row(row)


def get_user_by_wallet(db, wallet_address: str) -> Optional[dict]:
    row = db.execute(
        text(f"SELECT {USER_COLUMNS} FROM users WHERE wallet_address=:w"),
        {"w": wallet_address},
    ).first()
    return _row(row)


def create_user(db, wallet_address, did, display_name, email, role, created_at) -> dict:
    """Insert a user, or return the row a concurrent insert for the wallet won."""
    db.execute(
        text(
            "INSERT INTO users (id,wallet_address,did,display_name,email,role,created_at) "
            "VALUES (:id,:w,:d,:n,:e,:r,:ts) ON CONFLICT (wallet_address) DO NOTHING"
        ),
        {
            "id": new_id(),
            "w": wallet_address,
            "d": did,
            "n": display_name,
            "e": email,
            "r": role,
            "ts": created_at,
        },
    )
    return get_user_by_wallet(db, wallet_address)


def update_user_profile(db, user_id, did, display_name=None, email=None) -> None:
    db.execute(
        text(
            "UPDATE users SET did=:d, display_name=COALESCE(:n, display_name), "
            "email=COALESCE(:e, email) WHERE id=:id"
        ),
        {"d": did, "n": display_name, "e": email, "id": user_id},
    )


def insert_user_if_absent(db, wallet_address, did, display_name, role, created_at) -> bool:
    result = db.execute(
        text(
            "INSERT INTO users (id,wallet_address,did,display_name,role,created_at) "
            "VALUES (:id,:w,:d,:n,:r,:ts) ON CONFLICT (wallet_address) DO NOTHING"
        ),
        {
            "id": new_id(),
            "w": wallet_address,
            "d": did,
            "n": display_name,
            "r": role,
            "ts": created_at,
        },
    )
    return result.rowcount == 1


# challenges


def create_challenge(db, data: dict) -> dict:
    params = dict(data)
    params["id"] = new_id()
    params["resources"] = json.dumps(data["resources"])
    db.execute(
        text(
            "INSERT INTO challenges (id,nonce,wallet_address,did,message,statement,resources,"
            "display_name,email,user_id,created_at,expires_at) "
            "VALUES (:id,:nonce,:wallet_address,:did,:message,:statement,:resources,"
            ":display_name,:email,:user_id,:created_at,:expires_at)"
        ),
        params,
    )
    return get_challenge_by_nonce(db, data["nonce"])


def get_challenge_by_nonce(db, nonce: str) -> Optional[dict]:
    row = db.execute(
        text(f"SELECT {CHALLENGE_COLUMNS} FROM challenges WHERE nonce=:n"), {"n": nonce}
    ).first()
    return _challenge_row(row)


def consume_challenge(db, challenge_id: str, user_id: str, verified_at: int) -> bool:
    """Mark a challenge verified only if nobody else has; True when this call won."""
    result = db.execute(
        text(
            "UPDATE challenges SET verified_at=:ts, user_id=:u "
            "WHERE id=:id AND verified_at IS NULL"
        ),
        {"ts": verified_at, "u": user_id, "id": challenge_id},
    )
    return result.rowcount == 1


# sessions


def create_session(db, data: dict) -> dict:
    params = dict(data)
    params["id"] = new_id()
    db.execute(
        text(
            "INSERT INTO sessions (id,token,user_id,nonce,challenge_id,issued_at,expires_at,"
            "verified_at,ip_address,user_agent) "
            "VALUES (:id,:token,:user_id,:nonce,:challenge_id,:issued_at,:expires_at,"
            ":verified_at,:ip_address,:user_agent)"
        ),
        params,
    )
    return get_session_by_token(db, data["token"])


def get_session_by_token(db, token: str) -> Optional[dict]:
    row = db.execute(
        text(f"SELECT {SESSION_COLUMNS} FROM sessions WHERE token=:t"), {"t": token}
    ).first()
    return _row(row)


def touch_session(db, session_id: str, used_at: int) -> None:
    db.execute(
        text("UPDATE sessions SET last_used_at=:ts WHERE id=:id"),
        {"ts": used_at, "id": session_id},
    )


def revoke_sessions(db, token: str, revoked_at: int) -> int:
    result = db.execute(
        text("UPDATE sessions SET revoked_at=:ts WHERE token=:t AND revoked_at IS NULL"),
        {"ts": revoked_at, "t": token},
    )
    return result.rowcount


# credentials


def upsert_credential(db, data: dict) -> dict:
    params = dict(data)
    params["id"] = new_id()
    db.execute(
        text(
            "INSERT INTO credentials (id,user_id,type,issuer,hash,status,issued_at,revoked_at,"
            "metadata,created_at,updated_at) "
            "VALUES (:id,:user_id,:type,:issuer,:hash,:status,:issued_at,NULL,"
            ":metadata,:ts,:ts) "
            "ON CONFLICT (user_id, type) DO UPDATE SET issuer=EXCLUDED.issuer, "
            "hash=EXCLUDED.hash, status=EXCLUDED.status, issued_at=EXCLUDED.issued_at, "
            "revoked_at=NULL, metadata=EXCLUDED.metadata, updated_at=EXCLUDED.updated_at"
        ),
        params,
    )
    return get_credential_by_type(db, data["user_id"], data["type"])


def get_credential_by_type(db, user_id: str, cred_type: str) -> Optional[dict]:
    row = db.execute(
        text(f"SELECT {CREDENTIAL_COLUMNS} FROM credentials WHERE user_id=:u AND type=:t"),
        {"u": user_id, "t": cred_type},
    ).first()
    return _row(row)


def list_credentials_for_user(db, user_id: str) -> list:
    rows = db.execute(
        text(
            f"SELECT {CREDENTIAL_COLUMNS} FROM credentials WHERE user_id=:u "
            "ORDER BY created_at DESC, id"
        ),
        {"u": user_id},
    ).all()
    return [_row(row) for row in rows]


def revoke_credential(db, credential_id: str, revoked_at: int) -> bool:
    result = db.execute(
        text(
            "UPDATE credentials SET status='REVOKED', revoked_at=:ts, updated_at=:ts "
            "WHERE id=:id"
        ),
        {"ts": revoked_at, "id": credential_id},
    )
    return result.rowcount == 1


def revoke_credential_by_type(db, user_id: str, cred_type: str, revoked_at: int) -> bool:
    result = db.execute(
        text(
            "UPDATE credentials SET status='REVOKED', revoked_at=:ts, updated_at=:ts "
            "WHERE user_id=:u AND type=:t AND status <> 'REVOKED'"
        ),
        {"ts": revoked_at, "u": user_id, "t": cred_type},
    )
    return result.rowcount == 1


def health_check(engine):
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
