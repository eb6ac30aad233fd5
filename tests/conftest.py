import asyncio
import os

os.environ["DATABASE_URL"] = "sqlite:///:memory:"

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool
from typing import Generator

from main import app
from app.db.base import Base
from app.db.session import get_db
from app.models.claims import Claim
from app.services.claim_store import ClaimStore


# Create in-memory SQLite database for testing
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"
engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def override_get_db() -> Generator:
    """Override database dependency for testing"""
    try:
        db = TestingSessionLocal()
        yield db
    finally:
        db.close()


@pytest.fixture(autouse=True)
def tables():
    """Fresh claims table for every test"""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def client() -> TestClient:
    """Create a test client for the FastAPI application"""
    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def db_session() -> Generator[Session, None, None]:
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def store(db_session) -> ClaimStore:
    return ClaimStore(db_session)


@pytest.fixture
def fetch_claim():
    """Read a claim row in its own session, returned as a plain dict (or None)"""
    def _fetch(wallet: str):
        db = TestingSessionLocal()
        try:
            claim = db.get(Claim, wallet.strip().lower())
            if claim is None:
                return None
            return {
                "wallet_address": claim.wallet_address,
                "email_address": claim.email_address,
                "discord_handle": claim.discord_handle,
                "signature": claim.signature,
                "nonce": claim.nonce,
            }
        finally:
            db.close()
    return _fetch


@pytest.fixture
def wallet():
    """Deterministic test account (address is EIP-55 checksummed, i.e. mixed case)"""
    return Account.from_key("0x" + "11" * 32)


@pytest.fixture
def other_wallet():
    return Account.from_key("0x" + "22" * 32)


def sign_text(account, message: str) -> str:
    signed = account.sign_message(encode_defunct(text=message))
    return "0x" + bytes(signed.signature).hex()


@pytest.fixture
def sign():
    """personal_sign the way an injected wallet does"""
    return sign_text


class WalletRpcError(Exception):
    """EIP-1193 provider error"""

    def __init__(self, code: int, message: str):
        self.code = code
        super().__init__(message)


class FakeWalletProvider:
    """Injected-wallet stand-in backed by a local eth_account key"""

    def __init__(self, account, sign_error: Exception | None = None, account_events=None, signer=None):
        self.account = account
        self.sign_error = sign_error
        self.account_events = account_events or []
        self.signer = signer or account
        self.calls = []

    async def request(self, method, params=None):
        self.calls.append((method, params))
        if method == "eth_requestAccounts":
            return [self.account.address]
        if method == "wallet_switchEthereumChain":
            raise WalletRpcError(4902, "Unrecognized chain ID")
        if method == "personal_sign":
            if self.sign_error is not None:
                raise self.sign_error
            message, _address = params
            return sign_text(self.signer, message)
        raise WalletRpcError(4200, f"Unsupported method {method}")

    async def account_changes(self):
        for accounts in self.account_events:
            await asyncio.sleep(0)
            yield accounts


@pytest.fixture
def make_provider():
    return FakeWalletProvider
