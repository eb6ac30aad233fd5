"""
Client side of claim registration.

Drives an injected wallet provider (EIP-1193 style ``request(method, params)``)
through nonce fetch -> message build -> personal_sign, then submits the signed
payload to a registration backend. The backend's server orchestrator is the
authoritative check; nothing decided here is trusted for uniqueness or auth.

There is no persisted local state: a ``WalletSession`` lives as long as the
page/process and the user re-authenticates every session.
"""

import asyncio
import logging
import math
import time
from dataclasses import asdict, dataclass, field
from typing import Any, AsyncIterator, Callable, Optional, Protocol

import httpx

from app.core.config import settings
from app.core.errors import (
    ClaimError,
    DuplicateField,
    MalformedInput,
    PersistFailed,
    RetryThrottled,
    SigningFailed,
    StorageUnavailable,
    UserCancelled,
    VerificationFailed,
)
from app.core.messages import build_registration_message
from app.core.wallet_auth import normalize_address
from app.db.session import SessionLocal
from app.services.claim_store import ClaimStore
from app.services.nonce_service import NonceService
from app.services.registration import (
    RegistrationOrchestrator,
    RegistrationOutcome,
    RegistrationRequest,
    RegistrationState,
)

logger = logging.getLogger(__name__)

USER_REJECTED_CODE = 4001


class WalletProvider(Protocol):
    async def request(self, method: str, params: Optional[list] = None) -> Any: ...

    def account_changes(self) -> AsyncIterator[list[str]]: ...


class RegistrationBackend(Protocol):
    async def request_nonce(self, wallet: str) -> str: ...

    async def submit(self, request: RegistrationRequest) -> RegistrationOutcome: ...


def is_user_rejection(error: BaseException) -> bool:
    return getattr(error, "code", None) == USER_REJECTED_CODE


class RetryThrottle:
    """Blocks new attempts for a cooldown after a retryable (storage/network) failure."""

    def __init__(self, cooldown_seconds: float = settings.RETRY_COOLDOWN_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.cooldown_seconds = cooldown_seconds
        self.clock = clock
        self._blocked_until: Optional[float] = None

    def arm(self) -> None:
        self._blocked_until = self.clock() + self.cooldown_seconds

    def reset(self) -> None:
        self._blocked_until = None

    def check(self) -> None:
        if self._blocked_until is None:
            return
        left = self._blocked_until - self.clock()
        if left > 0:
            raise RetryThrottled(math.ceil(left))
        self._blocked_until = None


@dataclass
class WalletSession:
    """Explicit per-user context: the connected address and retry bookkeeping."""

    address: Optional[str] = None
    throttle: RetryThrottle = field(default_factory=RetryThrottle)
    last_outcome: Optional[RegistrationOutcome] = None

    @property
    def connected(self) -> bool:
        return self.address is not None

    def on_accounts_changed(self, accounts: list[str]) -> None:
        address = normalize_address(accounts[0]) if accounts else None
        if address != self.address:
            logger.info("wallet account changed: %s -> %s", self.address, address)
            self.last_outcome = None
            self.throttle.reset()
        self.address = address or None


class AccountWatcher:
    """Cancellable subscription feeding provider account changes into the session."""

    def __init__(self, provider: WalletProvider, session: WalletSession):
        self.provider = provider
        self.session = session
        self._task: Optional[asyncio.Task] = None

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())
        return self._task

    async def _run(self) -> None:
        async for accounts in self.provider.account_changes():
            self.session.on_accounts_changed(accounts)

    async def cancel(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def __aenter__(self) -> "AccountWatcher":
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.cancel()


async def connect_wallet(
    provider: WalletProvider, session: WalletSession, chain_id: str = settings.TARGET_CHAIN_ID
) -> str:
    """
    Ask the wallet for accounts and store the first one on the session.

    Raises:
        UserCancelled: user dismissed the connect prompt
        SigningFailed: the wallet returned an error or no accounts
    """
    try:
        accounts = await provider.request("eth_requestAccounts")
    except Exception as e:
        if is_user_rejection(e):
            raise UserCancelled() from e
        logger.warning("wallet connection failed: %s", e)
        raise SigningFailed("Connection failed. Try again or use another wallet.") from e

    if not accounts:
        raise SigningFailed("Wallet returned no accounts.")
    session.on_accounts_changed(list(accounts))

    try:
        await provider.request("wallet_switchEthereumChain", [{"chainId": chain_id}])
    except Exception as e:
        # chain switch is best effort, registration signatures are chain independent
        logger.info("chain switch to %s skipped: %s", chain_id, e)
    return session.address


class InProcessRegistrationBackend:
    """Runs the server orchestrator in this process (trusted execution only)."""

    def __init__(self, session_factory: Callable = SessionLocal):
        self.session_factory = session_factory

    def _issue(self, wallet: str) -> str:
        db = self.session_factory()
        try:
            return NonceService(ClaimStore(db)).issue(wallet)
        finally:
            db.close()

    def _register(self, request: RegistrationRequest) -> RegistrationOutcome:
        db = self.session_factory()
        try:
            return RegistrationOrchestrator(ClaimStore(db)).register(request)
        finally:
            db.close()

    async def request_nonce(self, wallet: str) -> str:
        return await asyncio.to_thread(self._issue, wallet)

    async def submit(self, request: RegistrationRequest) -> RegistrationOutcome:
        return await asyncio.to_thread(self._register, request)


class HttpRegistrationBackend:
    """Talks to the /nonce and /register endpoints."""

    def __init__(self, base_url: str = "", client: Optional[httpx.AsyncClient] = None, timeout: float = 30.0):
        self.client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def aclose(self) -> None:
        await self.client.aclose()

    async def request_nonce(self, wallet: str) -> str:
        try:
            response = await self.client.post("/nonce", json={"wallet_address": wallet})
        except httpx.HTTPError as e:
            logger.warning("nonce request failed: %s", e)
            raise StorageUnavailable() from e
        if response.status_code != 201:
            raise self._error_from(response)
        try:
            return response.json()["nonce"]
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("unexpected nonce response: %s", response.text[:200])
            raise StorageUnavailable() from e

    async def submit(self, request: RegistrationRequest) -> RegistrationOutcome:
        try:
            response = await self.client.post("/register", json=asdict(request))
        except httpx.HTTPError as e:
            logger.warning("register request failed: %s", e)
            return RegistrationOutcome.rejected(StorageUnavailable(), reached=RegistrationState.MESSAGE_SIGNED)

        if response.status_code == 200:
            try:
                body = response.json()
                already_existed = bool(body.get("alreadyExisted"))
            except (ValueError, AttributeError):
                logger.warning("unexpected register response: %s", response.text[:200])
                return RegistrationOutcome.rejected(StorageUnavailable(), reached=RegistrationState.MESSAGE_SIGNED)
            return RegistrationOutcome(
                state=RegistrationState.PERSISTED,
                reached=RegistrationState.DUPLICATE_CHECKED,
                already_existed=already_existed,
                email=body.get("email") or "",
                discord=body.get("discord") or "",
            )

        error = self._error_from(response)
        reached = RegistrationState.VERIFIED if isinstance(error, DuplicateField) else RegistrationState.MESSAGE_SIGNED
        return RegistrationOutcome.rejected(error, reached=reached)

    @staticmethod
    def _error_from(response: httpx.Response) -> ClaimError:
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        message = body.get("error") or response.text or "Request failed"
        code = body.get("code")
        if code == DuplicateField.kind or response.status_code == 409:
            return DuplicateField(body.get("field") or "email")
        if code == MalformedInput.kind or response.status_code == 400:
            return MalformedInput(message, field=body.get("field"))
        if code == VerificationFailed.kind or response.status_code == 403:
            return VerificationFailed(message)
        if code == PersistFailed.kind:
            return PersistFailed(message)
        return StorageUnavailable(message)


class ClientRegistrationFlow:
    """
    One client-side registration attempt per ``run`` call.

    The wallet signature request may wait on the user indefinitely; there is no timeout.
    Every path ends in PERSISTED or REJECTED and the flow can be run again from IDLE.
    """

    def __init__(
        self,
        session: WalletSession,
        wallet: WalletProvider,
        backend: RegistrationBackend,
        allow_unverified_fallback: bool = settings.ALLOW_UNVERIFIED_FALLBACK,
    ):
        self.session = session
        self.wallet = wallet
        self.backend = backend
        self.allow_unverified_fallback = allow_unverified_fallback
        self.state = RegistrationState.IDLE

    async def run(self, email: str, discord: str = "") -> RegistrationOutcome:
        self.state = RegistrationState.IDLE
        try:
            self.session.throttle.check()
            address = self.session.address
            if not address:
                raise MalformedInput("Connect a wallet first.", field="wallet_address")

            nonce = await self._request_nonce(address)
            message = build_registration_message(address, email, discord, nonce=nonce)
            signature = await self._sign(address, message)

            outcome = await self.backend.submit(
                RegistrationRequest(
                    wallet_address=address,
                    email=email,
                    discord=discord,
                    message=message,
                    signature=signature,
                )
            )
        except UserCancelled as e:
            outcome = RegistrationOutcome.rejected(e, reached=self.state)
        except ClaimError as e:
            logger.warning("registration attempt failed at %s: %s", self.state.value, e.message)
            outcome = RegistrationOutcome.rejected(e, reached=self.state)

        if outcome.error is not None and outcome.error.retryable:
            self.session.throttle.arm()
        self.state = outcome.state
        self.session.last_outcome = outcome
        return outcome

    async def _request_nonce(self, address: str) -> Optional[str]:
        self.state = RegistrationState.NONCE_REQUESTED
        try:
            return await self.backend.request_nonce(address)
        except StorageUnavailable:
            if not self.allow_unverified_fallback:
                raise
            logger.warning("nonce unavailable for %s, building message without nonce", address)
            return None

    async def _sign(self, address: str, message: str) -> str:
        try:
            signature = await self.wallet.request("personal_sign", [message, address])
        except Exception as e:
            if is_user_rejection(e):
                raise UserCancelled() from e
            raise SigningFailed() from e
        if not isinstance(signature, str) or not signature:
            raise SigningFailed("Wallet returned an empty signature.")
        self.state = RegistrationState.MESSAGE_SIGNED
        return signature
