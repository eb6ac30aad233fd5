import logging

from app.core.config import settings
from app.core.wallet_auth import generate_nonce, validate_wallet_address
from app.services.claim_store import ClaimStore

logger = logging.getLogger(__name__)


class NonceService:
    """
    Issues single-use challenge tokens, one outstanding token per wallet.

    The token is stored on the wallet's claim row (created if absent). Issuing a new
    token overwrites the previous one, so only the latest token can ever be consumed.
    """

    def __init__(self, store: ClaimStore, num_bytes: int = settings.NONCE_NUM_BYTES):
        self.store = store
        self.num_bytes = num_bytes

    def issue(self, wallet: str) -> str:
        """
        Raises:
            MalformedInput: wallet address missing or invalid
            StorageUnavailable: the token could not be stored
        """
        address = validate_wallet_address(wallet)
        token = generate_nonce(self.num_bytes)
        self.store.issue_or_touch_nonce(address, token)
        logger.info("nonce issued for %s (%s...)", address, token[:6])
        return token
