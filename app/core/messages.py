"""Challenge messages shown in the wallet and signed with personal_sign."""

from datetime import datetime, timezone
from typing import Optional

from app.core.config import settings

PLACEHOLDER = "(not provided)"
GAS_FREE_NOTICE = "This request will not trigger a blockchain transaction or cost any gas fees."
NONCE_PREFIX = "Nonce: "


def format_timestamp(issued_at: Optional[datetime] = None) -> str:
    """ISO-8601 in UTC with milliseconds, e.g. 2024-01-01T12:00:00.000Z"""
    if issued_at is None:
        issued_at = datetime.now(timezone.utc)
    elif issued_at.tzinfo is None:
        issued_at = issued_at.replace(tzinfo=timezone.utc)
    stamp = issued_at.astimezone(timezone.utc).isoformat(timespec="milliseconds")
    return stamp.replace("+00:00", "Z")


def _field(value: Optional[str]) -> str:
    value = (value or "").strip()
    return value if value else PLACEHOLDER


def _footer(nonce: Optional[str], issued_at: Optional[datetime]) -> list[str]:
    lines = ["", GAS_FREE_NOTICE, ""]
    if nonce:
        lines.append(f"{NONCE_PREFIX}{nonce}")
    lines.append(f"Issued At: {format_timestamp(issued_at)}")
    return lines


def build_auth_message(
    wallet: str,
    nonce: Optional[str] = None,
    issued_at: Optional[datetime] = None,
    app_name: str = settings.PROJECT_NAME,
) -> str:
    """Short sign-in message: proves control of ``wallet`` only."""
    lines = [
        f"Sign in to {app_name}.",
        "",
        f"Wallet: {wallet.strip()}",
    ]
    return "\n".join(lines + _footer(nonce, issued_at))


def build_registration_message(
    wallet: str,
    email: Optional[str],
    discord: Optional[str],
    nonce: Optional[str] = None,
    issued_at: Optional[datetime] = None,
    app_name: str = settings.PROJECT_NAME,
) -> str:
    """
    Registration message: binds ``email`` and ``discord`` to ``wallet``.

    Missing fields are rendered as a visible placeholder instead of being left out,
    so the text the user signs is never ambiguous.
    """
    lines = [
        f"Register for {app_name}.",
        "",
        "By signing, I confirm that I own this wallet and want to claim with the details below.",
        "",
        f"Wallet: {wallet.strip()}",
        f"Email: {_field(email)}",
        f"Discord: {_field(discord)}",
    ]
    return "\n".join(lines + _footer(nonce, issued_at))


def message_contains_nonce(message: str, nonce: Optional[str]) -> bool:
    if not message or not nonce:
        return False
    return f"{NONCE_PREFIX}{nonce}" in (line.strip() for line in message.splitlines())
