# apps/services/auth_service.py
# Cancel-password handling: hashing, verification and the guard that gates
# the Cancel transition.
import logging

from django.contrib.auth.hashers import check_password, make_password

from apps.alerts_app.exceptions import BadPassword, NoPasswordConfigured

logger = logging.getLogger(__name__)


def hash_password(password):
    """Salted hash suitable for UserProfile.cancel_password_hash."""
    return make_password(password)


def verify_password(plain_password, hashed_password):
    if not plain_password or not hashed_password:
        return False
    return check_password(plain_password, hashed_password)


def set_cancel_password(user, password):
    from apps.alerts_app.models import UserProfile

    profile, _ = UserProfile.objects.get_or_create(user=user)
    profile.cancel_password_hash = hash_password(password)
    profile.save(update_fields=['cancel_password_hash', 'updated_at'])
    logger.info(f"Cancel password updated for user {user.username}")
    return profile


class CancelPasswordGuard:
    """
    Checks the alerting user's cancel password.

    Has no side effects: a failed check never touches the confirmation row.
    """

    def __init__(self, store):
        self.store = store

    def verify(self, user_id, password):
        stored_hash = self.store.get_user_cancel_password(user_id)
        if not stored_hash:
            logger.info(f"Cancel rejected for user {user_id}: no cancel password configured")
            raise NoPasswordConfigured()
        if not verify_password(password, stored_hash):
            logger.info(f"Cancel rejected for user {user_id}: incorrect password")
            raise BadPassword()
        return True
