from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Text, UniqueConstraint

from app.core.config import settings
from app.db.base import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Claim(Base):
    """One TS Pass claim per wallet
    Example:
    {
        "wallet_address": "0x52908400098527886e0f7030069857d2e4169ee7",
        "email_address": "a@b.co",
        "discord_handle": "teamsecret#0001",
        "signature": "0x5f1c...1b",
        "nonce": null,
        "created_at": "2024-01-01T12:00:00",
        "updated_at": "2024-01-01T12:00:00"
    }
    """

    __tablename__ = settings.CLAIMS_TABLE
    __table_args__ = (
        UniqueConstraint("email_address", name=f"uq_{settings.CLAIMS_TABLE}_email_address"),
        UniqueConstraint("discord_handle", name=f"uq_{settings.CLAIMS_TABLE}_discord_handle"),
    )

    wallet_address = Column(Text, primary_key=True)
    email_address = Column(Text, nullable=True)
    discord_handle = Column(Text, nullable=True)
    signature = Column(Text, nullable=True)
    nonce = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
