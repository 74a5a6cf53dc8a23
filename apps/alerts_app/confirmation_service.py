"""
Alert confirmation state machine.

A guardian confirming an alert creates a ``confirmed`` row and opens the
cancellation window. From there exactly one transition wins:

* ``cancel`` (alerting user, password gated) while ``now < created_at + window``
* ``expire`` (either device, or the server) once ``now >= created_at + window``

Both are compare-and-swap updates on the status column with the time bound
pushed into the same statement, so the outcome is decided by the server
clock and never by message order.
"""
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

from django.conf import settings
from tenacity import Retrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_exponential

from apps.services.auth_service import CancelPasswordGuard

from . import countdown
from .clock import SystemClock
from .exceptions import (
    AlertNotFound,
    AlreadyTerminal,
    ConfirmationNotFound,
    GuardianUnreachable,
    StoreUnavailable,
    WindowExpired,
    WindowStillOpen,
)
from .models import AlertConfirmation
from .notifier import EVENT_CANCELLED, EVENT_CONFIRMED, EVENT_EXPIRED

logger = logging.getLogger(__name__)

CONFIRMED = AlertConfirmation.CONFIRMED
CANCELLED = AlertConfirmation.CANCELLED
EXPIRED = AlertConfirmation.EXPIRED


@dataclass
class ConfirmOutcome:
    confirmation: Any
    created: bool
    notified: bool


@dataclass
class ExpireOutcome:
    confirmation: Any
    transitioned: bool
    notified: bool = False


@dataclass
class ConfirmationState:
    confirmation: Any
    countdown: countdown.CountdownSnapshot
    expired_now: bool = False


def normalize_email(email):
    return (email or '').strip().lower()


class ConfirmationService:

    def __init__(self, store, notifier, clock, window=None, guard=None):
        self.store = store
        self.notifier = notifier
        self.clock = clock
        self.window = window or countdown.cancel_window()
        self.guard = guard or CancelPasswordGuard(store)

    @property
    def window_seconds(self):
        return countdown.window_seconds(self.window)

    # -- lookups ---------------------------------------------------------

    def _get_alert(self, alert_id):
        alert = self.store.get_alert(alert_id)
        if alert is None:
            raise AlertNotFound(alert_id=str(alert_id))
        return alert

    def _get_confirmation(self, alert_id, guardian_email):
        confirmation = self.store.get_confirmation(alert_id, normalize_email(guardian_email))
        if confirmation is None:
            raise ConfirmationNotFound(alert_id=str(alert_id), guardian_email=normalize_email(guardian_email))
        return confirmation

    def _refetch(self, confirmation):
        return self.store.get_confirmation_by_id(confirmation.id) or confirmation

    @staticmethod
    def _settle(confirmation, new_status, fields=None):
        # The row as the won update wrote it; no store read after the write.
        confirmation.status = new_status
        for key, value in (fields or {}).items():
            setattr(confirmation, key, value)
        return confirmation

    def _guardian_destination(self, alert, confirmation):
        if confirmation.guardian_user_id is not None:
            return confirmation.guardian_user_id
        return self.store.resolve_guardian_user_id(alert.user_id, confirmation.guardian_email)

    # -- notifications ---------------------------------------------------

    def _payload(self, alert_id, guardian_email, event_kind):
        if event_kind == EVENT_CONFIRMED:
            title = "Alert Confirmation"
            body = (f"Guardian {guardian_email} confirmed your alert. You have {self.window_seconds} "
                    f"seconds to cancel if this is a false alarm.")
        elif event_kind == EVENT_CANCELLED:
            title = "Alert Cancelled"
            body = "The user has cancelled the alert. It was a false alarm."
        else:
            title = "Alert Still Active"
            body = "User did not cancel the alert. This is a real emergency!"
        return {
            'alert_id': str(alert_id),
            'guardian_email': guardian_email,
            'title': title,
            'body': body,
        }

    def _dispatch(self, destination_user_id, event_kind, alert_id, guardian_email):
        payload = self._payload(alert_id, guardian_email, event_kind)
        try:
            self.notifier.send(destination_user_id, event_kind, payload)
        except GuardianUnreachable:
            logger.warning(f"No delivery destination for {event_kind} event on alert {alert_id} (user {destination_user_id})")
            return False
        except Exception as e:
            logger.error(f"Failed to dispatch {event_kind} event for alert {alert_id}: {e}", exc_info=True)
            return False
        return True

    # -- transitions -----------------------------------------------------

    def confirm(self, alert_id, guardian_email, guardian_user_id=None):
        """
        Record a guardian's confirmation and notify the alerting user.

        Re-confirming is safe to retry: the existing row is returned untouched
        and no second notification is sent.
        """
        alert = self._get_alert(alert_id)
        email = normalize_email(guardian_email)
        if guardian_user_id is None:
            guardian_user_id = self.store.resolve_guardian_user_id(alert.user_id, email)

        now = self.clock.now_utc()
        confirmation, created = self.store.create_confirmation(
            alert.id, email, guardian_user_id,
            created_at=now, expires_at=now + self.window,
        )
        if not created:
            logger.info(f"Guardian {email} already acted on alert {alert.id} (status {confirmation.status})")
            return ConfirmOutcome(confirmation, created=False, notified=False)

        logger.info(f"Guardian {email} confirmed alert {alert.id}; window closes at {confirmation.expires_at}")
        notified = self._dispatch(alert.user_id, EVENT_CONFIRMED, alert.id, email)
        return ConfirmOutcome(confirmation, created=True, notified=notified)

    def cancel(self, alert_id, guardian_email, password):
        """
        Cancel a confirmed alert as a false alarm.

        The password is checked before the row is read, so a failed check
        leaves it untouched. A cancel at or after the window boundary is
        rejected and converts the row to ``expired``.
        """
        alert = self._get_alert(alert_id)
        self.guard.verify(alert.user_id, password)

        confirmation = self._get_confirmation(alert.id, guardian_email)
        if confirmation.status != CONFIRMED:
            raise AlreadyTerminal(confirmation.status)

        now = self.clock.now_utc()
        if now >= countdown.expiry_boundary(confirmation.created_at, self.window):
            self._expire_lapsed(alert, confirmation, now)
            raise WindowExpired(self.window_seconds)

        # Resolved before the write so a store error here can still be retried.
        destination = self._guardian_destination(alert, confirmation)
        fields = {'cancelled_at': now}
        won = self.store.conditional_update_status(
            confirmation.id, CONFIRMED, CANCELLED, fields,
            created_after=now - self.window,
        )
        if not won:
            current = self._refetch(confirmation)
            if current.status == CONFIRMED:
                # The time bound failed inside the update: the window closed
                # between our check and the write.
                self._expire_lapsed(alert, current, now)
                raise WindowExpired(self.window_seconds)
            logger.info(f"Cancel of alert {alert.id} lost the race; row is already {current.status}")
            raise AlreadyTerminal(current.status)

        logger.info(f"Alert {alert.id} cancelled by its owner (guardian {confirmation.guardian_email})")
        self._dispatch(destination, EVENT_CANCELLED, alert.id, confirmation.guardian_email)
        return self._settle(confirmation, CANCELLED, fields)

    def expire(self, alert_id, guardian_email):
        """
        Mark a lapsed confirmation as expired and tell the guardian the alert stands.

        Idempotent: a row that is already ``expired`` or ``cancelled`` is left
        as it is. Elapsed time is re-verified from created_at, so a countdown
        that fired early raises WindowStillOpen instead.
        """
        alert = self._get_alert(alert_id)
        confirmation = self._get_confirmation(alert.id, guardian_email)
        return self._expire(alert, confirmation)

    def expire_by_id(self, confirmation_id):
        confirmation = self.store.get_confirmation_by_id(confirmation_id)
        if confirmation is None:
            raise ConfirmationNotFound(confirmation_id=confirmation_id)
        alert = self._get_alert(confirmation.alert_id)
        return self._expire(alert, confirmation)

    def _expire(self, alert, confirmation):
        if confirmation.status != CONFIRMED:
            logger.info(f"Expire on alert {alert.id} is a no-op; row is already {confirmation.status}")
            return ExpireOutcome(confirmation, transitioned=False)

        now = self.clock.now_utc()
        state = countdown.snapshot(confirmation.created_at, now, self.window)
        if not state.is_expired:
            raise WindowStillOpen(state.remaining_ms)
        return self._expire_lapsed(alert, confirmation, now)

    def _expire_lapsed(self, alert, confirmation, now):
        destination = self._guardian_destination(alert, confirmation)
        won = self.store.conditional_update_status(
            confirmation.id, CONFIRMED, EXPIRED,
            created_at_or_before=now - self.window,
        )
        if not won:
            current = self._refetch(confirmation)
            logger.info(f"Expire on alert {alert.id} lost the race; row is {current.status}")
            return ExpireOutcome(current, transitioned=False)

        logger.info(f"Confirmation by {confirmation.guardian_email} on alert {alert.id} expired without cancellation")
        notified = self._dispatch(destination, EVENT_EXPIRED, alert.id, confirmation.guardian_email)
        return ExpireOutcome(self._settle(confirmation, EXPIRED), transitioned=True, notified=notified)

    # -- views -----------------------------------------------------------

    def countdown_for(self, confirmation):
        return countdown.snapshot(confirmation.created_at, self.clock.now_utc(), self.window)

    def open_detail(self, alert_id, guardian_email):
        """
        State for a (re)opened detail view.

        The countdown is reseeded from created_at; if it has already run out
        while the row is still confirmed, Expire runs before returning.
        """
        alert = self._get_alert(alert_id)
        confirmation = self._get_confirmation(alert.id, guardian_email)
        state = self.countdown_for(confirmation)
        if confirmation.status == CONFIRMED and state.is_expired:
            outcome = self._expire(alert, confirmation)
            return ConfirmationState(outcome.confirmation, state, expired_now=outcome.transitioned)
        return ConfirmationState(confirmation, state)

    def sweep_lapsed(self):
        """Expire every confirmed row whose window has closed. Returns the number expired."""
        cutoff = self.clock.now_utc() - self.window
        expired = 0
        for confirmation_id in self.store.list_lapsed_confirmation_ids(cutoff):
            try:
                outcome = self.expire_by_id(confirmation_id)
            except (ConfirmationNotFound, AlertNotFound, WindowStillOpen) as e:
                logger.info(f"Skipping confirmation {confirmation_id} during sweep: {e}")
                continue
            if outcome.transitioned:
                expired += 1
        return expired


def get_confirmation_service(store=None, notifier=None, clock=None):
    from .notifier import PushNotifier
    from .stores import DjangoConfirmationStore

    return ConfirmationService(
        store=store or DjangoConfirmationStore(),
        notifier=notifier or PushNotifier(),
        clock=clock or SystemClock(),
    )


def retry_store_call(func, *args, attempts: Optional[int] = None, backoff: Optional[float] = None,
                     sleep=time.sleep, **kwargs):
    """
    Call ``func`` and retry StoreUnavailable with exponential backoff.

    Protocol rejections are returned to the caller on the first attempt;
    retrying them cannot change the outcome.
    """
    attempts = attempts or settings.ALERT_STORE_RETRY_ATTEMPTS
    backoff = settings.ALERT_STORE_RETRY_BACKOFF_SECONDS if backoff is None else backoff
    retrying = Retrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=backoff),
        retry=retry_if_exception_type(StoreUnavailable),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        sleep=sleep,
        reraise=True,
    )
    return retrying(func, *args, **kwargs)
