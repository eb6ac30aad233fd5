"""
EVM Wallet Authentication Utilities

This module handles the cryptographic side of claim registration.
It implements signature verification for EIP-191 ``personal_sign`` messages,
the format produced by MetaMask, Coinbase Wallet, the Base app and other injected wallets.

Authentication Flow:
1. Backend generates a random nonce -> generate_nonce()
2. Frontend embeds the nonce in a message and signs it with the wallet (personal_sign)
3. Frontend sends: wallet_address, message, signature
4. Backend verifies: verify_signature()
   - Recovers the signing address from message + signature
   - Compares it with the claimed address (case-insensitive)

The signature verification uses:
- secp256k1 public key recovery via eth_account
- EIP-191 message prefix ("\\x19Ethereum Signed Message:\\n{len}")
"""

import logging
import re
import secrets

from eth_account import Account
from eth_account.messages import encode_defunct

from app.core.config import settings
from app.core.errors import MalformedInput

logger = logging.getLogger(__name__)

SIGNATURE_BYTES = 65  # r (32) + s (32) + v (1)
_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")
_ADDRESS_RE = re.compile(r"^0x[0-9a-f]{40}$")


def generate_nonce(num_bytes: int = settings.NONCE_NUM_BYTES) -> str:
    """
    Generate a cryptographically secure random nonce for claim registration.

    The nonce is a random hex string that must appear verbatim in the next message
    signed by the wallet. Issuing a new one replaces the old one, which prevents replay.

    Args:
        num_bytes: Number of random bytes to generate

    Returns:
        Hex-encoded random string (e.g., "a1b2c3d4...")
    """
    if num_bytes <= 0:
        num_bytes = settings.NONCE_NUM_BYTES
    return secrets.token_hex(num_bytes)


def normalize_address(address: str | None) -> str:
    """Trim and lower-case a wallet address so lookups are case-insensitive."""
    return (address or "").strip().lower()


def is_well_formed_signature(signature: str | None) -> bool:
    """Helper: hex string (0x optional) of exactly 65 bytes."""
    if not signature:
        return False
    value = signature.strip()
    if value[:2] in ("0x", "0X"):
        value = value[2:]
    if len(value) != SIGNATURE_BYTES * 2:
        return False
    return bool(_HEX_RE.match(value))


def recover_address(message: str, signature: str) -> str:
    """
    Recover the address that signed ``message`` with ``personal_sign``.

    Raises:
        ValueError: If the signature cannot be decoded or recovered
    """
    try:
        return Account.recover_message(encode_defunct(text=message), signature=signature.strip())
    except Exception as e:
        raise ValueError(f"Signature recovery failed: {e}") from e


def verify_signature(message: str, signature: str, claimed_address: str) -> bool:
    """
    Verify that ``signature`` over ``message`` was produced by ``claimed_address``.

    A failed verification is a normal outcome (the user may sign with another account),
    so this never raises.

    Args:
        message: The exact text the wallet signed
        signature: 65-byte ECDSA signature as hex
        claimed_address: Wallet address the caller claims to own

    Returns:
        True if the recovered signer equals the claimed address, False otherwise

    Example:
        ok = verify_signature(message, "0x5f1c...1b", "0xAbC...123")
        if ok:
            # persist claim for the address
    """
    if not message or not normalize_address(claimed_address):
        return False
    if not is_well_formed_signature(signature):
        return False

    try:
        recovered = recover_address(message, signature)
    except ValueError as e:
        logger.warning("signature recovery failed for %s: %s", normalize_address(claimed_address), e)
        return False

    if normalize_address(recovered) != normalize_address(claimed_address):
        logger.warning(
            "signature mismatch: claimed=%s recovered=%s",
            normalize_address(claimed_address),
            normalize_address(recovered),
        )
        return False
    return True


def validate_wallet_address(address: str | None) -> str:
    """
    Normalize an EVM address and check its shape (0x + 40 hex characters).

    Raises:
        MalformedInput: If the address is missing or not a valid EVM address
    """
    normalized = normalize_address(address)
    if not normalized:
        raise MalformedInput("Wallet address is required.", field="wallet_address")
    if not _ADDRESS_RE.match(normalized):
        raise MalformedInput("Invalid wallet address.", field="wallet_address")
    return normalized
