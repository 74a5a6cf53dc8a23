import asyncio
import json
import logging

from channels.db import database_sync_to_async
from channels.generic.websocket import AsyncWebsocketConsumer
from django.core.exceptions import ValidationError

from .clock import SystemClock
from .confirmation_service import get_confirmation_service, normalize_email
from .countdown import run_countdown
from .exceptions import AlertProtocolError
from .models import AlertConfirmation
from .serializers import AlertConfirmationSerializer
from .tasks import notification_group

logger = logging.getLogger(__name__)


class NotificationConsumer(AsyncWebsocketConsumer):
    """Per-user stream mirroring every push sent to that user."""

    async def connect(self):
        self.user = self.scope.get("user")
        if not self.user or not self.user.is_authenticated:
            await self.close()
            return

        self.room_group_name = notification_group(self.user.id)
        await self.channel_layer.group_add(self.room_group_name, self.channel_name)
        await self.accept()
        await self.send(text_data=json.dumps({
            'type': 'connection_established',
            'message': f'Connected to notification channel. Group: {self.room_group_name}!'
        }))

    async def disconnect(self, close_code):
        if hasattr(self, 'room_group_name'):
            await self.channel_layer.group_discard(self.room_group_name, self.channel_name)

    async def receive(self, text_data=None, bytes_data=None):
        await self.send(text_data=json.dumps({
            'type': 'info',
            'message': 'This channel is primarily for server-to-client notifications.'
        }))

    # group_send(..., {"type": "send_notification", "message": ...})
    async def send_notification(self, event):
        await self.send(text_data=json.dumps({
            'type': 'notification',
            'payload': event['message']
        }))


class CountdownStopped(Exception):
    pass


class ConfirmationCountdownConsumer(AsyncWebsocketConsumer):
    """
    Server-driven countdown for one confirmation.

    The countdown is reseeded from the stored created_at on every connect, so
    reconnecting mid-window shows the corrected time. At zero the Expire
    transition runs and ``countdown_expired`` is sent.
    """

    async def connect(self):
        self.countdown_task = None
        self.user = self.scope.get("user")
        if not self.user or not self.user.is_authenticated:
            await self.close()
            return

        kwargs = self.scope['url_route']['kwargs']
        self.alert_id = kwargs['alert_id']
        self.guardian_email = normalize_email(kwargs['guardian_email'])

        confirmation = await self.load_confirmation()
        if confirmation is None:
            await self.close()
            return

        await self.accept()
        if confirmation.status != AlertConfirmation.CONFIRMED:
            await self.send_state(confirmation)
            await self.close()
            return

        self.countdown_task = asyncio.ensure_future(self.drive(confirmation.created_at))

    async def disconnect(self, close_code):
        if self.countdown_task is not None and not self.countdown_task.done():
            self.countdown_task.cancel()

    async def drive(self, created_at):
        try:
            await run_countdown(created_at, SystemClock(), self.on_tick, self.on_expire)
        except CountdownStopped:
            await self.close()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Countdown stream for alert {self.alert_id} failed: {e}", exc_info=True)
            await self.close()

    async def on_tick(self, snapshot):
        # A cancel from the alerting device ends the countdown early.
        confirmation = await self.load_confirmation()
        if confirmation is None or confirmation.status != AlertConfirmation.CONFIRMED:
            if confirmation is not None:
                await self.send_state(confirmation)
            raise CountdownStopped()
        await self.send(text_data=json.dumps({'type': 'countdown_tick', **snapshot.as_dict()}))

    async def on_expire(self, snapshot):
        try:
            confirmation = await self.expire()
        except AlertProtocolError as e:
            # No further ticks follow; the client reconnects to reseed.
            logger.warning(f"Countdown expiry for alert {self.alert_id} was rejected: {e}")
            await self.send(text_data=json.dumps({'type': 'error', **e.as_response_data()}))
            await self.close()
            return
        await self.send(text_data=json.dumps({
            'type': 'countdown_expired',
            'status': confirmation.status,
            **snapshot.as_dict(),
        }))
        await self.close()

    async def send_state(self, confirmation):
        await self.send(text_data=json.dumps({
            'type': 'confirmation_state',
            'confirmation': await self.serialize(confirmation),
        }))

    @database_sync_to_async
    def serialize(self, confirmation):
        return json.loads(json.dumps(AlertConfirmationSerializer(confirmation).data, default=str))

    @database_sync_to_async
    def load_confirmation(self):
        try:
            confirmation = AlertConfirmation.objects.select_related('alert').filter(
                alert_id=self.alert_id, guardian_email__iexact=self.guardian_email
            ).first()
        except ValidationError:
            return None
        if confirmation is None:
            return None
        is_owner = confirmation.alert.user_id == self.user.id
        is_guardian = normalize_email(self.user.email) == self.guardian_email
        if not (is_owner or is_guardian):
            logger.warning(f"User {self.user.id} tried to follow a countdown on alert {self.alert_id} they are not part of")
            return None
        return confirmation

    @database_sync_to_async
    def expire(self):
        return get_confirmation_service().expire(self.alert_id, self.guardian_email).confirmation
