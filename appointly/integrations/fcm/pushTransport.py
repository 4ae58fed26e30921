"""
Firebase Cloud Messaging Push Transport
=======================================

Delivers push notifications to every active device token of a user through
the Firebase Admin SDK.

Initialization:
  The Firebase Admin SDK is initialised lazily on first send. Credentials
  come from ``Settings``:
    - firebase_service_account_path  -- path to a JSON service account file
    - firebase_credentials_json      -- raw JSON string of the service account

Failure classification:
  - no active tokens             -> nothing to do, counts as delivered
  - at least one device accepted -> delivered
  - every token invalid          -> tokens deactivated, PermanentDeliveryFailure
  - otherwise                    -> TransientDeliveryFailure (the queue retries)

The SDK call is blocking, so it runs in a worker thread.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Optional

import firebase_admin
from firebase_admin import credentials, messaging
from firebase_admin.exceptions import (
    InvalidArgumentError,
    NotFoundError,
    UnavailableError,
)
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from appointly.core.config import Settings
from appointly.core.exceptions import PermanentDeliveryFailure, TransientDeliveryFailure
from appointly.integrations.transport import OutboundMessage
from appointly.models.notification import DeviceToken

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------

def _is_transient_error(exc: Exception) -> bool:
    """Return True if the exception represents a transient/retryable error."""
    if isinstance(exc, UnavailableError):
        return True
    error_str = str(exc).lower()
    return any(
        indicator in error_str
        for indicator in ["unavailable", "deadline exceeded", "internal", "timeout", "503", "500"]
    )


def _is_invalid_token_error(exc: Exception) -> bool:
    """Return True if the error indicates the device token is invalid."""
    if isinstance(exc, (InvalidArgumentError, NotFoundError)):
        return True
    error_str = str(exc).lower()
    return any(
        indicator in error_str
        for indicator in ["unregistered", "not-registered", "invalid-registration"]
    )


def _build_message(token: str, message: OutboundMessage) -> messaging.Message:
    """Build a Firebase message with APNS/Android config for one device."""
    # FCM requires string data values
    str_data = {k: str(v) for k, v in message.data.items()}
    priority = "high" if message.is_urgent else "normal"

    apns_config = messaging.APNSConfig(
        headers={"apns-priority": "10" if message.is_urgent else "5"},
        payload=messaging.APNSPayload(aps=messaging.Aps(sound="default")),
    )
    android_config = messaging.AndroidConfig(
        priority=priority,
        notification=messaging.AndroidNotification(
            sound="default",
            channel_id="appointly_urgent" if message.is_urgent else "appointly_default",
        ),
    )

    return messaging.Message(
        token=token,
        notification=messaging.Notification(title=message.title, body=message.body),
        data=str_data or None,
        apns=apns_config,
        android=android_config,
    )


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------

class FcmPushTransport:

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._app: Optional[firebase_admin.App] = None

    def _ensure_app(self) -> firebase_admin.App:
        if self._app is not None:
            return self._app

        # Reuse a default app initialised elsewhere in the process
        try:
            self._app = firebase_admin.get_app()
            logger.info("Using existing Firebase Admin app")
            return self._app
        except ValueError:
            pass

        if self.settings.firebase_service_account_path:
            logger.info(
                "Initialising Firebase Admin SDK from service account file: %s",
                self.settings.firebase_service_account_path,
            )
            cred = credentials.Certificate(self.settings.firebase_service_account_path)
        elif self.settings.firebase_credentials_json:
            logger.info("Initialising Firebase Admin SDK from JSON credentials")
            cred = credentials.Certificate(json.loads(self.settings.firebase_credentials_json))
        else:
            raise PermanentDeliveryFailure(
                "Firebase credentials not configured. Set FIREBASE_SERVICE_ACCOUNT_PATH "
                "or FIREBASE_CREDENTIALS_JSON."
            )

        self._app = firebase_admin.initialize_app(cred)
        logger.info("Firebase Admin SDK initialised successfully")
        return self._app

    async def send_push(self, db: AsyncSession, message: OutboundMessage) -> None:
        result = await db.execute(
            select(DeviceToken.device_token).where(
                DeviceToken.user_id == message.user_id,
                DeviceToken.is_active.is_(True),
            )
        )
        tokens = list(result.scalars().all())
        if not tokens:
            logger.info("No active device tokens for user %s, push skipped", message.user_id)
            return

        app = self._ensure_app()
        delivered = 0
        invalid: list[str] = []
        errors: list[str] = []

        for token in tokens:
            try:
                message_id = await asyncio.to_thread(
                    messaging.send, _build_message(token, message), False, app,
                )
                delivered += 1
                logger.debug("Push delivered to user %s: %s", message.user_id, message_id)
            except Exception as exc:
                if _is_invalid_token_error(exc):
                    logger.warning("Invalid FCM token for user %s: %s", message.user_id, exc)
                    invalid.append(token)
                else:
                    level = logging.WARNING if _is_transient_error(exc) else logging.ERROR
                    logger.log(level, "FCM send failed for user %s: %s", message.user_id, exc)
                    errors.append(str(exc))

        if invalid:
            await db.execute(
                update(DeviceToken)
                .where(
                    DeviceToken.user_id == message.user_id,
                    DeviceToken.device_token.in_(invalid),
                )
                .values(is_active=False)
                .execution_options(synchronize_session=False)
            )
            # Keep the deactivation even when this attempt ends up failing
            await db.commit()
            logger.info("Deactivated %d invalid token(s) for user %s", len(invalid), message.user_id)

        if delivered:
            return
        if errors:
            raise TransientDeliveryFailure(f"FCM delivery failed: {errors[0]}")
        raise PermanentDeliveryFailure(f"All device tokens for user {message.user_id} are invalid")
