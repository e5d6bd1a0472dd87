"""
Token Vault
Stores each user's external calendar credentials encrypted at rest and hands
out access tokens that are valid for at least the refresh margin.
"""
import asyncio
import base64
import hashlib
import logging
from datetime import timedelta
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy.orm import Session

from ...auth import create_oauth_state
from ...config import (
    DEFAULT_TIMEZONE,
    SECRET_KEY,
    SHARED_CALENDAR_NAME,
    TOKEN_ENCRYPTION_KEY,
    TOKEN_REFRESH_MARGIN_SECONDS,
)
from ...errors import NotConnected, ProviderError, ReauthRequired
from ...models import utcnow
from ...models_external_calendar import CalendarSelection, ExternalCalendarAccount
from ...services.google_calendar_client import GoogleCalendarClient, InvalidGrant
from .link_registry import ExternalLinkRegistry

logger = logging.getLogger(__name__)


def _cipher() -> Fernet:
    if TOKEN_ENCRYPTION_KEY:
        return Fernet(TOKEN_ENCRYPTION_KEY.encode())
    return Fernet(base64.urlsafe_b64encode(hashlib.sha256(SECRET_KEY.encode()).digest()))


def encrypt_token(value: str) -> str:
    return _cipher().encrypt(value.encode()).decode()


def decrypt_token(value: str) -> str:
    """Raises cryptography.fernet.InvalidToken when the stored value is unreadable"""
    return _cipher().decrypt(value.encode()).decode()


class TokenVault:
    """Credential lifecycle for external calendar accounts"""

    def __init__(self, client: GoogleCalendarClient):
        self.client = client
        self._locks: dict[int, asyncio.Lock] = {}

    def _lock_for(self, user_id: int) -> asyncio.Lock:
        return self._locks.setdefault(user_id, asyncio.Lock())

    @staticmethod
    def get_account(db: Session, user_id: int) -> Optional[ExternalCalendarAccount]:
        return (
            db.query(ExternalCalendarAccount)
            .filter(ExternalCalendarAccount.user_id == user_id)
            .populate_existing()
            .first()
        )

    def require_account(self, db: Session, user_id: int) -> ExternalCalendarAccount:
        account = self.get_account(db, user_id)
        if not account:
            raise NotConnected()
        return account

    def authorization_url(self, user_id: int) -> str:
        return self.client.authorization_url(state=create_oauth_state(user_id))

    async def get_valid_token(self, db: Session, user_id: int) -> str:
        """
        Return an access token that stays valid past the refresh margin.

        Concurrent callers for the same user serialize on a per-user lock and the
        record is re-read under it, so a token is refreshed at most once.

        Raises:
            NotConnected: If the user has no external account
            ReauthRequired: If the refresh was rejected or stored tokens are unreadable
        """
        async with self._lock_for(user_id):
            account = self.require_account(db, user_id)
            if account.needs_reauth:
                raise ReauthRequired()

            try:
                if account.token_expires_at > utcnow() + timedelta(seconds=TOKEN_REFRESH_MARGIN_SECONDS):
                    return decrypt_token(account.access_token)
                refresh_token = decrypt_token(account.refresh_token)
            except InvalidToken as e:
                logger.error(f"❌ Stored calendar tokens for user {user_id} could not be decrypted")
                account.needs_reauth = True
                db.commit()
                raise ReauthRequired("Stored external calendar credentials are unreadable - please reconnect") from e

            logger.info(f"🔄 External calendar token for user {user_id} expiring, refreshing...")
            try:
                tokens = await self.client.refresh_access_token(refresh_token)
            except InvalidGrant as e:
                logger.warning(f"⚠️ Refresh token for user {user_id} rejected, reconnect required")
                account.needs_reauth = True
                db.commit()
                raise ReauthRequired() from e

            account.access_token = encrypt_token(tokens["access_token"])
            account.token_expires_at = utcnow() + timedelta(seconds=int(tokens.get("expires_in", 3600)))
            if tokens.get("refresh_token"):
                account.refresh_token = encrypt_token(tokens["refresh_token"])
            db.commit()

            logger.info(f"✅ External calendar token refreshed for user {user_id}")
            return tokens["access_token"]

    async def connect(self, db: Session, user_id: int, auth_code: str) -> ExternalCalendarAccount:
        """
        Exchange an authorization code and store the account, replacing any previous one.
        The shared calendar is found by name or created.
        """
        tokens = await self.client.exchange_code(auth_code)
        access_token = tokens["access_token"]
        email = await self.client.get_user_email(access_token)
        calendar_id = await self.client.get_or_create_calendar(
            access_token, SHARED_CALENDAR_NAME, DEFAULT_TIMEZONE
        )

        async with self._lock_for(user_id):
            account = self.get_account(db, user_id)
            if account is None:
                account = ExternalCalendarAccount(user_id=user_id)
                db.add(account)
            elif account.calendar_id and account.calendar_id != calendar_id:
                ExternalLinkRegistry(db).clear_calendar(user_id, account.calendar_id)

            account.access_token = encrypt_token(access_token)
            account.refresh_token = encrypt_token(tokens["refresh_token"])
            account.token_expires_at = utcnow() + timedelta(seconds=int(tokens.get("expires_in", 3600)))
            account.external_email = email
            account.calendar_id = calendar_id
            account.sync_enabled = True
            account.needs_reauth = False
            account.sync_token = None
            account.last_sync_error = None
            db.commit()
            db.refresh(account)

        logger.info(f"✅ External calendar connected for user {user_id}: {email}")
        return account

    async def disconnect(self, db: Session, user_id: int) -> None:
        """Revoke (best effort) and forget the account; external events are left in place"""
        async with self._lock_for(user_id):
            account = self.require_account(db, user_id)

            try:
                await self.client.revoke_token(decrypt_token(account.refresh_token))
            except (InvalidToken, ProviderError) as e:
                logger.warning(f"⚠️ Failed to revoke calendar tokens for user {user_id}: {str(e)}")

            ExternalLinkRegistry(db).clear_calendar(user_id, account.calendar_id)
            db.query(CalendarSelection).filter(CalendarSelection.user_id == user_id).delete(
                synchronize_session="fetch"
            )
            db.delete(account)
            db.commit()

        logger.info(f"✅ External calendar disconnected for user {user_id}")

    def set_sync_enabled(self, db: Session, user_id: int, enabled: bool) -> ExternalCalendarAccount:
        """Turn push/pull on or off; mappings and external events are kept"""
        account = self.require_account(db, user_id)
        account.sync_enabled = enabled
        db.commit()
        db.refresh(account)
        logger.info(f"🔁 Sync {'enabled' if enabled else 'disabled'} for user {user_id}")
        return account
