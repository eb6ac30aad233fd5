"""
Claim store gateway.

The only reader/writer of the claims table. Every public method runs in its own
transaction and commits (or rolls back) before returning.

Uniqueness of email_address / discord_handle is enforced by database constraints.
The pre-checks here exist to produce a friendly error before writing; a writer that
loses a race still fails on the constraint and gets the same DuplicateField error.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.errors import (
    DuplicateField,
    MalformedInput,
    PersistFailed,
    StorageUnavailable,
    VerificationFailed,
)
from app.core.wallet_auth import normalize_address
from app.models.claims import Claim, utcnow

logger = logging.getLogger(__name__)

NONCE_EXPIRED = "Invalid or expired nonce. Please try again."


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def normalize_discord(discord: Optional[str]) -> str:
    return (discord or "").strip()


@dataclass
class FinalizeResult:
    created: bool
    email: str
    discord: str


class ClaimStore:
    def __init__(self, db: Session):
        self.db = db

    def _insert(self):
        dialect = self.db.get_bind().dialect.name
        if dialect == "postgresql":
            return pg_insert
        if dialect == "sqlite":
            return sqlite_insert
        raise StorageUnavailable(f"Unsupported database dialect: {dialect}")

    def _select(self, address: str, for_update: bool = False) -> Optional[Claim]:
        query = select(Claim).where(Claim.wallet_address == address)
        if for_update:
            query = query.with_for_update()
        query = query.execution_options(populate_existing=True)
        return self.db.execute(query).scalar_one_or_none()

    @staticmethod
    def _require_address(wallet: str) -> str:
        address = normalize_address(wallet)
        if not address:
            raise MalformedInput("Wallet address is required.", field="wallet_address")
        return address

    def get_by_wallet(self, wallet: str) -> Optional[Claim]:
        address = self._require_address(wallet)
        try:
            return self._select(address)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.exception("get_by_wallet failed for %s", address)
            raise StorageUnavailable() from e

    def issue_or_touch_nonce(self, wallet: str, token: str) -> None:
        """Create the row if missing and replace its outstanding nonce."""
        address = self._require_address(wallet)
        now = utcnow()
        table = Claim.__table__
        stmt = self._insert()(table).values(
            wallet_address=address, nonce=token, created_at=now, updated_at=now
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.wallet_address],
            set_={"nonce": token, "updated_at": now},
        )
        try:
            self.db.execute(stmt)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.exception("issue_or_touch_nonce failed for %s", address)
            raise StorageUnavailable() from e

    def consume_nonce(self, wallet: str, expected_nonce: str) -> bool:
        """Clear the nonce only if it still equals ``expected_nonce``."""
        address = self._require_address(wallet)
        stmt = (
            update(Claim)
            .where(Claim.wallet_address == address, Claim.nonce == expected_nonce)
            .values(nonce=None, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.db.execute(stmt)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.exception("consume_nonce failed for %s", address)
            raise StorageUnavailable() from e
        return result.rowcount == 1

    def find_duplicate_field(self, wallet: str, email: str, discord: Optional[str]) -> Optional[str]:
        """Return "email" or "discord" if another wallet already holds the value."""
        address = self._require_address(wallet)
        email = normalize_email(email)
        discord = normalize_discord(discord)
        try:
            if email and self._taken(Claim.email_address, email, address):
                return "email"
            if discord and self._taken(Claim.discord_handle, discord, address):
                return "discord"
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.exception("duplicate check failed for %s", address)
            raise StorageUnavailable() from e
        return None

    def _taken(self, column, value: str, address: str) -> bool:
        query = select(Claim.wallet_address).where(column == value, Claim.wallet_address != address).limit(1)
        return self.db.execute(query).first() is not None

    def finalize_registration(
        self,
        wallet: str,
        email: str,
        discord: Optional[str],
        signature: str,
        expected_nonce: Optional[str] = None,
    ) -> FinalizeResult:
        """
        Persist a verified registration.

        - Row already has an email: only signature/updated_at change, created=False.
        - Otherwise: email/discord must be free, then the full row is upserted
          and the nonce cleared, created=True.

        Raises:
            DuplicateField: email or discord is held by another wallet (no write)
            VerificationFailed: stored nonce no longer equals ``expected_nonce``
            PersistFailed: any other storage error
        """
        address = self._require_address(wallet)
        email = normalize_email(email)
        discord = normalize_discord(discord)
        if not email:
            raise MalformedInput("Email is required.", field="email")

        try:
            claim = self._select(address, for_update=True)
            if expected_nonce is not None and (claim is None or claim.nonce != expected_nonce):
                self.db.rollback()
                raise VerificationFailed(NONCE_EXPIRED)

            if claim is not None and claim.email_address:
                return self._refresh_signature(claim, signature, expected_nonce)

            try:
                field = self.find_duplicate_field(address, email, discord)
            except StorageUnavailable as e:
                raise PersistFailed() from e
            if field:
                self.db.rollback()
                raise DuplicateField(field)

            created = self._upsert_registration(address, email, discord, signature, expected_nonce)
            if not created:
                # another request registered this wallet first
                self.db.rollback()
                claim = self._select(address, for_update=True)
                if claim is None or not claim.email_address:
                    raise VerificationFailed(NONCE_EXPIRED)
                return self._refresh_signature(claim, signature, None)

            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            field = self._constraint_field(e)
            if field is None:
                logger.exception("finalize_registration failed for %s", address)
                raise PersistFailed() from e
            logger.warning("unique constraint on %s rejected registration for %s", field, address)
            raise DuplicateField(field) from e
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.exception("finalize_registration failed for %s", address)
            raise PersistFailed() from e

        return FinalizeResult(created=True, email=email, discord=discord)

    def _upsert_registration(
        self, address: str, email: str, discord: str, signature: str, expected_nonce: Optional[str]
    ) -> bool:
        now = utcnow()
        table = Claim.__table__
        values = {
            "wallet_address": address,
            "email_address": email,
            "discord_handle": discord or None,
            "signature": signature,
            "nonce": None,
            "created_at": now,
            "updated_at": now,
        }
        guard = table.c.email_address.is_(None)
        if expected_nonce is not None:
            guard = guard & (table.c.nonce == expected_nonce)
        stmt = self._insert()(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.wallet_address],
            set_={key: values[key] for key in ("email_address", "discord_handle", "signature", "nonce", "updated_at")},
            where=guard,
        )
        return self.db.execute(stmt).rowcount == 1

    def _refresh_signature(self, claim: Claim, signature: str, expected_nonce: Optional[str]) -> FinalizeResult:
        email = claim.email_address
        discord = claim.discord_handle or ""
        stmt = update(Claim).where(Claim.wallet_address == claim.wallet_address)
        if expected_nonce is not None:
            stmt = stmt.where(Claim.nonce == expected_nonce)
        stmt = stmt.values(signature=signature, nonce=None, updated_at=utcnow()).execution_options(
            synchronize_session=False
        )
        if self.db.execute(stmt).rowcount != 1:
            self.db.rollback()
            raise VerificationFailed(NONCE_EXPIRED)
        self.db.commit()
        return FinalizeResult(created=False, email=email, discord=discord)

    @staticmethod
    def _constraint_field(error: IntegrityError) -> Optional[str]:
        text = str(error.orig).lower()
        if "discord_handle" in text:
            return "discord"
        if "email_address" in text:
            return "email"
        return None
