import json
import logging

import firebase_admin
from django.conf import settings
from firebase_admin import credentials, exceptions as firebase_exceptions, messaging

from .models import UserDevice

logger = logging.getLogger(__name__)

_firebase_app = None


def get_firebase_app():
    """Initialize Firebase from FCM_SERVICE_ACCOUNT_KEY on first use. Returns None when not configured."""
    global _firebase_app
    if _firebase_app is not None:
        return _firebase_app

    fcm_key_json = getattr(settings, 'FCM_SERVICE_ACCOUNT_KEY', None)
    if not fcm_key_json:
        logger.warning("FCM_SERVICE_ACCOUNT_KEY not set. Firebase not initialized.")
        return None

    try:
        cred = credentials.Certificate(json.loads(fcm_key_json))
        _firebase_app = firebase_admin.initialize_app(cred)
        logger.info("Firebase initialized successfully")
    except (ValueError, IOError) as e:
        logger.error(f"Error initializing Firebase: {e}")
        return None
    return _firebase_app


def build_message(device_token, title, body, data=None):
    # FCM data values must be strings. The mobile client builds its own local
    # notification from the data block, so the push is sent data-only.
    payload = {key: str(value) for key, value in (data or {}).items() if value is not None}
    payload.setdefault('title', title)
    payload.setdefault('body', body)
    return messaging.Message(
        token=device_token,
        data=payload,
        android=messaging.AndroidConfig(priority='high'),
        apns=messaging.APNSConfig(
            headers={'apns-priority': '10'},
            payload=messaging.APNSPayload(aps=messaging.Aps(content_available=True)),
        ),
    )


def send_fcm_to_user(user_id, title, body, data=None):
    """
    Send a push to every active device registered for a user.

    :param user_id: Recipient user id
    :param title: Notification title
    :param body: Notification body
    :param data: Additional data payload (dict)
    :return: Number of devices the message was accepted for
    """
    if not get_firebase_app():
        logger.warning(f"Firebase not initialized. Message for user {user_id} not sent.")
        return 0

    sent = 0
    for device in UserDevice.objects.filter(user_id=user_id, is_active=True):
        try:
            response = messaging.send(build_message(device.device_token, title, body, data))
            logger.info(f"Successfully sent FCM message to user {user_id}: {response}")
            sent += 1
        except messaging.UnregisteredError:
            logger.info(f"FCM token for device {device.id} is no longer registered; deactivating it")
            UserDevice.objects.filter(pk=device.pk).update(is_active=False)
        except firebase_exceptions.FirebaseError as e:
            logger.error(f"Error sending FCM message to user {user_id}: {e}")
    return sent
