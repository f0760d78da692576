from pathlib import Path
import sys

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct
from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from app import storage
from app.main import create_app
from app.settings import Settings
from app.utils import now_ts


class StubAnchorReader:
    configured = True

    def __init__(self, record=None):
        self.record = record
        self.calls = []

    def read(self, wallet_address):
        self.calls.append(wallet_address)
        return self.record


class Clock:
    def __init__(self, start=None):
        self.now = start if start is not None else now_ts()

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def sign(account, message):
    signed = Account.sign_message(encode_defunct(text=message), private_key=account.key)
    return "0x" + bytes(signed.signature).hex()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        db_dsn=f"sqlite:///{tmp_path / 'trust.db'}",
        redis_url="",
        env="test",
        otlp_endpoint="",
        issuer_admin_token="admin-secret",
        vc_encryption_secret="test-vault-secret",
        anchor_address="",
        anchor_rpc_url="",
        default_admins="",
    )


@pytest.fixture
def anchor():
    return StubAnchorReader()


@pytest.fixture
def app(settings, anchor):
    return create_app(settings, anchor_reader=anchor)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def services(client):
    return client.app.state.services


@pytest.fixture
def db(settings):
    engine, Session = storage.init_db(settings)
    storage.create_schema(engine)
    yield engine, Session
    engine.dispose()


@pytest.fixture
def account():
    return Account.create()
