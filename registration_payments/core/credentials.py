"""
Processor credential selection.

An organizer's own connected account is always preferred because it lets
the platform fee be split at payment time. Without one, sandbox fallback
tokens from configuration are used: first the test seller token (split
supported), then the application token (no split).
"""
import asyncio
from collections import defaultdict
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Optional

import structlog
from pydantic import BaseModel, ConfigDict, SecretStr
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from registration_payments.config import Settings
from registration_payments.core.errors import CredentialError
from registration_payments.core.vault import CredentialVault
from registration_payments.database.models import ProcessorCredential, utcnow
from registration_payments.integrations.mercadopago_client import MercadoPagoClient, OAuthToken

logger = structlog.get_logger(__name__)

TEST_TOKEN_PREFIX = "TEST-"


class CredentialSource(str, Enum):
    ORGANIZER = "organizer"
    TEST_SELLER = "test_seller"
    TEST_APPLICATION = "test_application"


class ProcessorAccess(BaseModel):
    """A decrypted token ready for one outbound call. Never persisted or logged."""

    model_config = ConfigDict(frozen=True)

    access_token: SecretStr
    source: CredentialSource
    is_test: bool
    supports_split: bool

    @property
    def token(self) -> str:
        return self.access_token.get_secret_value()


class CredentialStore:
    """
    Stores organizer tokens encrypted and resolves the token to charge with.

    Resolution opens its own short sessions, so callers must not hold one
    while awaiting it. Refreshes are serialized per organizer: refresh
    tokens are single-use at the processor.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        vault: CredentialVault,
        client: MercadoPagoClient,
        settings: Settings,
    ):
        self.session_factory = session_factory
        self.vault = vault
        self.client = client
        self.settings = settings
        self._refresh_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def fallback_access(self) -> Optional[ProcessorAccess]:
        """Sandbox credential from configuration, seller token first."""
        if self.settings.mp_test_seller_token:
            return ProcessorAccess(
                access_token=self.settings.mp_test_seller_token,
                source=CredentialSource.TEST_SELLER,
                is_test=True,
                supports_split=True,
            )
        if self.settings.mp_test_access_token:
            return ProcessorAccess(
                access_token=self.settings.mp_test_access_token,
                source=CredentialSource.TEST_APPLICATION,
                is_test=True,
                supports_split=False,
            )
        return None

    async def _load(self, organizer_id: str) -> Optional[ProcessorCredential]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(ProcessorCredential).where(ProcessorCredential.organizer_id == organizer_id)
            )
            return result.scalar_one_or_none()

    @staticmethod
    def _is_expired(credential: ProcessorCredential, now: datetime) -> bool:
        return credential.expires_at is not None and credential.expires_at <= now

    async def resolve(self, organizer_id: str, now: Optional[datetime] = None) -> ProcessorAccess:
        """
        Pick the credential to act on behalf of an organizer.

        Args:
            organizer_id: Organizer owning the event
            now: Instant used for the expiry check

        Returns:
            ProcessorAccess: Selected credential

        Raises:
            CredentialError: If the organizer's stored token cannot be
                decrypted, or no credential is available at all
            GatewayError: If an expired token cannot be refreshed
        """
        now = now or utcnow()
        credential = await self._load(organizer_id)

        if credential is not None and credential.access_token.strip():
            if self._is_expired(credential, now):
                if credential.refresh_token:
                    credential = await self._refresh(organizer_id, now)
                else:
                    logger.warning("processor_token_expired_no_refresh", organizer_id=organizer_id)

            try:
                token = self.vault.decrypt(credential.access_token)
            except CredentialError:
                logger.error("organizer_credential_unreadable", organizer_id=organizer_id)
                raise

            return ProcessorAccess(
                access_token=token,
                source=CredentialSource.ORGANIZER,
                is_test=not credential.live_mode or token.startswith(TEST_TOKEN_PREFIX),
                supports_split=True,
            )

        fallback = self.fallback_access()
        if fallback is None:
            raise CredentialError(
                "Organizer must connect a Mercado Pago account before accepting payments"
            )
        logger.info(
            "using_fallback_credential",
            organizer_id=organizer_id,
            source=fallback.source.value,
        )
        return fallback

    async def _refresh(self, organizer_id: str, now: datetime) -> ProcessorCredential:
        async with self._refresh_locks[organizer_id]:
            # A concurrent caller may have refreshed while this one waited
            credential = await self._load(organizer_id)
            if credential is None:
                raise CredentialError(f"Credential of organizer {organizer_id} was removed")
            if not self._is_expired(credential, now) or not credential.refresh_token:
                return credential

            refresh_token = self.vault.decrypt(credential.refresh_token)
            token = await self.client.refresh_access_token(refresh_token)

            async with self.session_factory() as db:
                stored = await db.get(ProcessorCredential, credential.id)
                if stored is None:
                    raise CredentialError(f"Credential of organizer {organizer_id} was removed")
                self._apply_token(stored, token, now)
                await db.commit()

        logger.info("organizer_credential_refreshed", organizer_id=organizer_id)
        return stored

    def _apply_token(
        self, credential: ProcessorCredential, token: OAuthToken, now: datetime
    ) -> None:
        credential.access_token = self.vault.encrypt(token.access_token)
        if token.refresh_token:
            credential.refresh_token = self.vault.encrypt(token.refresh_token)
        credential.live_mode = token.live_mode
        credential.processor_user_id = token.user_id or credential.processor_user_id
        credential.expires_at = (
            now + timedelta(seconds=token.expires_in) if token.expires_in else None
        )
        credential.updated_at = now

    async def store_tokens(
        self,
        db: AsyncSession,
        organizer_id: str,
        token: OAuthToken,
        now: Optional[datetime] = None,
    ) -> ProcessorCredential:
        """
        Save an organizer's token pair encrypted, replacing any previous one.

        Returns:
            ProcessorCredential: Stored credential row
        """
        now = now or utcnow()
        result = await db.execute(
            select(ProcessorCredential).where(ProcessorCredential.organizer_id == organizer_id)
        )
        credential = result.scalar_one_or_none()
        if credential is None:
            credential = ProcessorCredential(organizer_id=organizer_id, created_at=now)
            db.add(credential)

        self._apply_token(credential, token, now)
        await db.commit()

        logger.info(
            "organizer_credential_stored",
            organizer_id=organizer_id,
            live_mode=token.live_mode,
        )
        return credential
