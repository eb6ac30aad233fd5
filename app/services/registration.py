"""
Registration orchestrator.

Sequences one registration attempt:

    IDLE -> NONCE_REQUESTED -> MESSAGE_SIGNED -> VERIFIED -> DUPLICATE_CHECKED -> PERSISTED
                                                                               \\-> REJECTED

The client half (nonce fetch, signing) lives in app.services.client_flow.
This module is the server half: it receives an already signed message and is the
only authoritative check of the signature, the nonce and field uniqueness.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from app.core.config import settings
from app.core.errors import ClaimError, DuplicateField, MalformedInput, VerificationFailed
from app.core.messages import message_contains_nonce
from app.core.wallet_auth import (
    is_well_formed_signature,
    recover_address,
    validate_wallet_address,
    verify_signature,
)
from app.models.claims import Claim
from app.services.claim_store import ClaimStore, NONCE_EXPIRED, normalize_discord, normalize_email

logger = logging.getLogger(__name__)


class RegistrationState(str, Enum):
    IDLE = "idle"
    NONCE_REQUESTED = "nonce_requested"
    MESSAGE_SIGNED = "message_signed"
    VERIFIED = "verified"
    DUPLICATE_CHECKED = "duplicate_checked"
    PERSISTED = "persisted"
    REJECTED = "rejected"


@dataclass
class RegistrationRequest:
    wallet_address: str
    email: str
    discord: Optional[str]
    message: str
    signature: str


@dataclass
class RegistrationOutcome:
    """Terminal result of an attempt, with enough detail to point at the offending input."""

    state: RegistrationState
    reached: RegistrationState = RegistrationState.IDLE
    already_existed: bool = False
    email: str = ""
    discord: str = ""
    error: Optional[ClaimError] = None

    @property
    def success(self) -> bool:
        return self.state is RegistrationState.PERSISTED

    @property
    def error_kind(self) -> Optional[str]:
        return self.error.kind if self.error else None

    @property
    def field(self) -> Optional[str]:
        return self.error.field if self.error else None

    @property
    def retry_after(self) -> Optional[int]:
        return self.error.retry_after if self.error else None

    @classmethod
    def rejected(cls, error: ClaimError, reached: RegistrationState = RegistrationState.IDLE) -> "RegistrationOutcome":
        return cls(state=RegistrationState.REJECTED, reached=reached, error=error)


Verifier = Callable[[str, str, str], bool]


class RegistrationOrchestrator:
    def __init__(
        self,
        store: ClaimStore,
        verifier: Verifier = verify_signature,
        require_nonce: bool = settings.REQUIRE_NONCE,
    ):
        self.store = store
        self.verifier = verifier
        self.require_nonce = require_nonce

    def register(self, request: RegistrationRequest) -> RegistrationOutcome:
        state = RegistrationState.MESSAGE_SIGNED
        try:
            wallet = self._validate(request)

            claim = self.verify(wallet, request.message, request.signature)
            state = RegistrationState.VERIFIED
            expected_nonce = claim.nonce if claim is not None else None

            if claim is None or not claim.email_address:
                field = self.store.find_duplicate_field(wallet, request.email, request.discord)
                if field:
                    raise DuplicateField(field)
                state = RegistrationState.DUPLICATE_CHECKED

            result = self.store.finalize_registration(
                wallet, request.email, request.discord, request.signature, expected_nonce=expected_nonce
            )
        except ClaimError as e:
            logger.warning("registration rejected for %s at %s: %s", request.wallet_address, state.value, e.kind)
            return RegistrationOutcome.rejected(e, reached=state)

        logger.info("registration persisted for %s (already existed: %s)", wallet, not result.created)
        return RegistrationOutcome(
            state=RegistrationState.PERSISTED,
            reached=state,
            already_existed=not result.created,
            email=result.email,
            discord=result.discord,
        )

    def authenticate(self, wallet_address: str, message: str, signature: str) -> Optional[Claim]:
        """
        Verify a signed sign-in message and consume its nonce.

        Returns the wallet's claim row (None if the wallet never requested a nonce).

        Raises:
            MalformedInput, VerificationFailed, StorageUnavailable
        """
        if not message or not signature:
            raise MalformedInput("Missing required fields: wallet_address, message, signature")
        wallet = validate_wallet_address(wallet_address)
        self._check_signature(message, signature)

        claim = self.verify(wallet, message, signature)
        if claim is not None and claim.nonce and not self.store.consume_nonce(wallet, claim.nonce):
            raise VerificationFailed(NONCE_EXPIRED)
        return self.store.get_by_wallet(wallet)

    def verify(self, wallet: str, message: str, signature: str) -> Optional[Claim]:
        """Signature must recover to ``wallet`` and the message must carry its outstanding nonce."""
        if not self.verifier(message, signature, wallet):
            raise VerificationFailed()

        claim = self.store.get_by_wallet(wallet)
        stored_nonce = claim.nonce if claim is not None else None
        if stored_nonce:
            if not message_contains_nonce(message, stored_nonce):
                raise VerificationFailed(NONCE_EXPIRED)
        elif self.require_nonce:
            raise VerificationFailed(NONCE_EXPIRED)
        return claim

    @staticmethod
    def _validate(request: RegistrationRequest) -> str:
        if not (request.wallet_address and request.email and request.message and request.signature):
            raise MalformedInput("Missing required fields: wallet_address, email, message, signature")
        wallet = validate_wallet_address(request.wallet_address)
        if "@" not in normalize_email(request.email):
            raise MalformedInput("Invalid email format.", field="email")
        if len(normalize_discord(request.discord)) > 64:
            raise MalformedInput("Discord handle is too long.", field="discord")
        RegistrationOrchestrator._check_signature(request.message, request.signature)
        return wallet

    @staticmethod
    def _check_signature(message: str, signature: str) -> None:
        """A signature that cannot be decoded is malformed input, not a mismatch."""
        if not is_well_formed_signature(signature):
            raise MalformedInput("Invalid signature", field="signature")
        try:
            recover_address(message, signature)
        except ValueError as e:
            raise MalformedInput("Invalid signature", field="signature") from e
