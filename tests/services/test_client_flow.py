import asyncio

import httpx
import pytest

from app.core.errors import RetryThrottled, StorageUnavailable, UserCancelled
from app.db.session import get_db
from app.services.client_flow import (
    AccountWatcher,
    ClientRegistrationFlow,
    HttpRegistrationBackend,
    InProcessRegistrationBackend,
    RetryThrottle,
    WalletSession,
    connect_wallet,
)
from app.services.registration import RegistrationState
from main import app
from tests.conftest import TestingSessionLocal, WalletRpcError, override_get_db


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


class UnavailableBackend:
    """Backend whose store is down"""

    def __init__(self):
        self.submitted = []

    async def request_nonce(self, wallet):
        raise StorageUnavailable()

    async def submit(self, request):
        self.submitted.append(request)
        return await InProcessRegistrationBackend(TestingSessionLocal).submit(request)


@pytest.fixture
def backend():
    return InProcessRegistrationBackend(TestingSessionLocal)


@pytest.fixture
def connected_session(wallet):
    return WalletSession(address=wallet.address.lower())


class TestRetryThrottle:
    def test_blocks_during_cooldown(self):
        clock = FakeClock()
        throttle = RetryThrottle(cooldown_seconds=5, clock=clock)
        throttle.arm()
        clock.now += 2.5

        with pytest.raises(RetryThrottled) as exc_info:
            throttle.check()
        assert exc_info.value.retry_after == 3

    def test_released_after_cooldown(self):
        clock = FakeClock()
        throttle = RetryThrottle(cooldown_seconds=5, clock=clock)
        throttle.arm()
        clock.now += 5
        throttle.check()


class TestWalletSession:
    def test_account_change_resets_state(self):
        session = WalletSession(address="0x" + "a" * 40)
        session.last_outcome = object()
        session.throttle.arm()

        session.on_accounts_changed(["0x" + "B" * 40])

        assert session.address == "0x" + "b" * 40
        assert session.last_outcome is None
        session.throttle.check()

    def test_disconnect(self):
        session = WalletSession(address="0x" + "a" * 40)
        session.on_accounts_changed([])
        assert session.address is None
        assert not session.connected


class TestConnectWallet:
    def test_connect_sets_normalized_address(self, make_provider, wallet):
        provider = make_provider(wallet)
        session = WalletSession()

        address = asyncio.run(connect_wallet(provider, session))

        assert address == wallet.address.lower()
        assert session.connected
        assert [call[0] for call in provider.calls] == ["eth_requestAccounts", "wallet_switchEthereumChain"]

    def test_user_rejects_connect(self, make_provider, wallet):
        provider = make_provider(wallet)

        async def reject(method, params=None):
            raise WalletRpcError(4001, "User rejected the request.")

        provider.request = reject
        with pytest.raises(UserCancelled):
            asyncio.run(connect_wallet(provider, WalletSession()))


class TestAccountWatcher:
    def test_events_reach_session(self, make_provider, wallet, other_wallet):
        provider = make_provider(wallet, account_events=[[other_wallet.address], []])
        session = WalletSession(address=wallet.address.lower())

        async def scenario():
            watcher = AccountWatcher(provider, session)
            await watcher.start()

        asyncio.run(scenario())
        assert session.address is None

    def test_cancel_stops_subscription(self, make_provider, wallet):
        class EndlessProvider:
            async def account_changes(self):
                while True:
                    await asyncio.sleep(3600)
                    yield []

        session = WalletSession(address=wallet.address.lower())

        async def scenario():
            async with AccountWatcher(EndlessProvider(), session) as watcher:
                await asyncio.sleep(0)
                task = watcher._task
            return task

        task = asyncio.run(scenario())
        assert task.cancelled()
        assert session.address == wallet.address.lower()


class TestClientRegistrationFlow:
    def test_full_flow_then_idempotent_resubmit(self, make_provider, backend, connected_session, wallet, fetch_claim):
        flow = ClientRegistrationFlow(connected_session, make_provider(wallet), backend)

        first = asyncio.run(flow.run("a@b.co", ""))
        second = asyncio.run(flow.run("other@b.co", "x#1"))

        assert first.success and first.already_existed is False
        assert (first.email, first.discord) == ("a@b.co", "")
        assert second.success and second.already_existed is True
        assert (second.email, second.discord) == ("a@b.co", "")
        assert flow.state is RegistrationState.PERSISTED
        assert fetch_claim(wallet.address)["email_address"] == "a@b.co"

    def test_signed_message_carries_nonce(self, make_provider, backend, connected_session, wallet, fetch_claim):
        provider = make_provider(wallet)
        asyncio.run(ClientRegistrationFlow(connected_session, provider, backend).run("a@b.co"))

        method, params = provider.calls[-1]
        assert method == "personal_sign"
        assert "Nonce: " in params[0]
        assert params[1] == wallet.address.lower()

    def test_user_cancel_is_silent_rejection(self, make_provider, backend, connected_session, wallet, fetch_claim):
        provider = make_provider(wallet, sign_error=WalletRpcError(4001, "User rejected the request."))

        outcome = asyncio.run(ClientRegistrationFlow(connected_session, provider, backend).run("a@b.co"))

        assert outcome.state is RegistrationState.REJECTED
        assert outcome.error_kind == "user_cancelled"
        assert outcome.reached is RegistrationState.NONCE_REQUESTED
        assert fetch_claim(wallet.address)["email_address"] is None

    def test_signing_failure(self, make_provider, backend, connected_session, wallet):
        provider = make_provider(wallet, sign_error=WalletRpcError(-32603, "Internal error"))
        outcome = asyncio.run(ClientRegistrationFlow(connected_session, provider, backend).run("a@b.co"))
        assert outcome.error_kind == "signing_failed"

    def test_wrong_key_is_hard_verification_failure(self, make_provider, backend, connected_session, wallet, other_wallet, fetch_claim):
        provider = make_provider(wallet, signer=other_wallet)
        outcome = asyncio.run(ClientRegistrationFlow(connected_session, provider, backend).run("a@b.co"))
        assert outcome.error_kind == "verification_failed"
        assert fetch_claim(wallet.address)["email_address"] is None

    def test_not_connected(self, make_provider, backend, wallet):
        outcome = asyncio.run(ClientRegistrationFlow(WalletSession(), make_provider(wallet), backend).run("a@b.co"))
        assert outcome.error_kind == "malformed_input"
        assert outcome.field == "wallet_address"

    def test_nonce_unavailable_refuses_and_throttles(self, make_provider, connected_session, wallet):
        backend = UnavailableBackend()
        flow = ClientRegistrationFlow(connected_session, make_provider(wallet), backend, allow_unverified_fallback=False)

        first = asyncio.run(flow.run("a@b.co"))
        second = asyncio.run(flow.run("a@b.co"))

        assert first.error_kind == "storage_unavailable"
        assert first.retry_after is not None
        assert backend.submitted == []
        assert second.error_kind == "retry_throttled"

    def test_nonce_unavailable_fallback_when_policy_allows(self, make_provider, connected_session, wallet):
        backend = UnavailableBackend()
        flow = ClientRegistrationFlow(connected_session, make_provider(wallet), backend, allow_unverified_fallback=True)

        outcome = asyncio.run(flow.run("a@b.co"))

        assert len(backend.submitted) == 1
        assert "Nonce:" not in backend.submitted[0].message
        # the server still insists on a nonce
        assert outcome.error_kind == "verification_failed"


class TestHttpRegistrationBackend:
    def _run(self, coro_factory):
        app.dependency_overrides[get_db] = override_get_db

        async def scenario():
            transport = httpx.ASGITransport(app=app)
            async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
                return await coro_factory(HttpRegistrationBackend(client=client))

        try:
            return asyncio.run(scenario())
        finally:
            app.dependency_overrides.clear()

    def test_register_over_http(self, make_provider, connected_session, wallet):
        provider = make_provider(wallet)

        outcome = self._run(lambda backend: ClientRegistrationFlow(connected_session, provider, backend).run("A@b.co", "ts#1"))

        assert outcome.success
        assert outcome.already_existed is False
        assert (outcome.email, outcome.discord) == ("a@b.co", "ts#1")

    def test_duplicate_over_http(self, make_provider, wallet, other_wallet):
        async def both(backend):
            first = await ClientRegistrationFlow(
                WalletSession(address=wallet.address.lower()), make_provider(wallet), backend
            ).run("a@b.co")
            second = await ClientRegistrationFlow(
                WalletSession(address=other_wallet.address.lower()), make_provider(other_wallet), backend
            ).run("a@b.co")
            return first, second

        first, second = self._run(both)

        assert first.success
        assert second.error_kind == "duplicate_field"
        assert second.field == "email"

    def test_transport_error_is_storage_unavailable(self, wallet):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        async def scenario():
            async with httpx.AsyncClient(transport=httpx.MockTransport(refuse), base_url="http://testserver") as client:
                backend = HttpRegistrationBackend(client=client)
                with pytest.raises(StorageUnavailable):
                    await backend.request_nonce(wallet.address)

        asyncio.run(scenario())

    def test_unexpected_nonce_body_is_storage_unavailable(self, make_provider, connected_session, wallet):
        def handler(request):
            return httpx.Response(201, json={"token": "abc"})

        async def scenario():
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://testserver") as client:
                flow = ClientRegistrationFlow(connected_session, make_provider(wallet), HttpRegistrationBackend(client=client))
                return await flow.run("a@b.co")

        outcome = asyncio.run(scenario())

        assert outcome.error_kind == "storage_unavailable"
        assert outcome.reached is RegistrationState.NONCE_REQUESTED

    def test_unreadable_register_body_is_storage_unavailable(self, make_provider, connected_session, wallet):
        def handler(request):
            if request.url.path == "/nonce":
                return httpx.Response(201, json={"nonce": "abc123"})
            return httpx.Response(200, text="<html>gateway</html>")

        async def scenario():
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://testserver") as client:
                flow = ClientRegistrationFlow(connected_session, make_provider(wallet), HttpRegistrationBackend(client=client))
                return await flow.run("a@b.co")

        outcome = asyncio.run(scenario())

        assert outcome.state is RegistrationState.REJECTED
        assert outcome.error_kind == "storage_unavailable"
        assert connected_session.throttle._blocked_until is not None
