from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

from django.contrib.auth.models import User
from django.test import TestCase
from django.utils import timezone
from kombu.exceptions import OperationalError as BrokerUnavailable

from apps.alerts_app.exceptions import WindowStillOpen
from apps.alerts_app.models import Alert, AlertConfirmation, AlertRecipient, Guardian, UserDevice
from apps.alerts_app.tasks import (
    dispatch_alert_event,
    expire_confirmation_task,
    notify_guardians_of_alert,
    schedule_expiry,
    sweep_lapsed_confirmations,
)


def channel_layer_mock():
    layer = MagicMock()
    layer.group_send = AsyncMock()
    return layer


class DispatchAlertEventTests(TestCase):

    def setUp(self):
        self.user = User.objects.create_user(username='alerter', password='password')

    @patch('apps.alerts_app.tasks.get_channel_layer')
    @patch('apps.alerts_app.tasks.send_fcm_to_user', return_value=1)
    def test_push_and_websocket_mirror(self, mock_send_fcm, mock_get_channel_layer):
        layer = channel_layer_mock()
        mock_get_channel_layer.return_value = layer
        data = {'alert_id': 'abc', 'title': 'Alert Cancelled', 'body': 'false alarm', 'type': 'alert_cancelled'}

        sent = dispatch_alert_event(self.user.id, 'cancelled', data)

        self.assertEqual(sent, 1)
        mock_send_fcm.assert_called_once_with(self.user.id, title='Alert Cancelled', body='false alarm', data=data)
        group, message = layer.group_send.call_args[0]
        self.assertEqual(group, f'user_{self.user.id}_notifications')
        self.assertEqual(message['type'], 'send_notification')
        self.assertEqual(message['message']['event'], 'cancelled')

    @patch('apps.alerts_app.tasks.get_channel_layer')
    @patch('apps.alerts_app.tasks.send_fcm_to_user', return_value=0)
    def test_websocket_failure_is_swallowed(self, mock_send_fcm, mock_get_channel_layer):
        layer = MagicMock()
        layer.group_send = AsyncMock(side_effect=ConnectionError('redis down'))
        mock_get_channel_layer.return_value = layer

        self.assertEqual(dispatch_alert_event(self.user.id, 'expired', {'alert_id': 'abc'}), 0)


class NotifyGuardiansTests(TestCase):

    def setUp(self):
        self.owner = User.objects.create_user(username='alerter', first_name='Ana', password='password')
        self.guardian = User.objects.create_user(username='mum', email='mum@example.com', password='password')
        Guardian.objects.create(user=self.owner, guardian_email='mum@example.com')
        Guardian.objects.create(user=self.owner, guardian_email='unregistered@example.com')
        Guardian.objects.create(user=self.owner, guardian_email='old@example.com', status='inactive')
        self.alert = Alert.objects.create(user=self.owner, latitude='14.599500', longitude='120.984200')

    @patch('apps.alerts_app.tasks.get_channel_layer')
    @patch('apps.alerts_app.tasks.send_fcm_to_user', return_value=1)
    def test_fans_out_to_active_guardians(self, mock_send_fcm, mock_get_channel_layer):
        mock_get_channel_layer.return_value = channel_layer_mock()

        notified = notify_guardians_of_alert(str(self.alert.id))

        self.assertEqual(notified, 1)
        mock_send_fcm.assert_called_once()
        args, kwargs = mock_send_fcm.call_args
        self.assertEqual(args[0], self.guardian.id)
        self.assertEqual(kwargs['data']['type'], 'emergency_alert')
        self.assertIn('Ana needs help!', kwargs['body'])
        self.assertIn('14.59950', kwargs['body'])

        recipients = {r.guardian_email: r for r in AlertRecipient.objects.filter(alert=self.alert)}
        self.assertEqual(set(recipients), {'mum@example.com', 'unregistered@example.com'})
        self.assertTrue(recipients['mum@example.com'].notification_sent)
        self.assertFalse(recipients['unregistered@example.com'].notification_sent)

    @patch('apps.alerts_app.tasks.send_fcm_to_user')
    def test_unknown_alert(self, mock_send_fcm):
        self.assertEqual(notify_guardians_of_alert('00000000-0000-0000-0000-000000000000'), 0)
        mock_send_fcm.assert_not_called()


class ExpiryTaskTests(TestCase):

    def setUp(self):
        self.owner = User.objects.create_user(username='alerter', password='password')
        self.guardian = User.objects.create_user(username='mum', email='mum@example.com', password='password')
        UserDevice.objects.create(user=self.guardian, device_token='guardian-token')
        self.alert = Alert.objects.create(user=self.owner)

    def confirmation(self, seconds_ago, email='mum@example.com'):
        created_at = timezone.now() - timedelta(seconds=seconds_ago)
        return AlertConfirmation.objects.create(
            alert=self.alert, guardian_email=email, guardian_user=self.guardian,
            created_at=created_at, confirmed_at=created_at, expires_at=created_at + timedelta(seconds=60),
        )

    @patch('apps.alerts_app.tasks.dispatch_alert_event.delay')
    def test_expires_lapsed_confirmation(self, mock_dispatch):
        confirmation = self.confirmation(seconds_ago=90)

        self.assertEqual(expire_confirmation_task(confirmation.id), 'expired')

        confirmation.refresh_from_db()
        self.assertEqual(confirmation.status, 'expired')
        mock_dispatch.assert_called_once()
        user_id, kind, data = mock_dispatch.call_args[0]
        self.assertEqual((user_id, kind), (self.guardian.id, 'expired'))
        self.assertEqual(data['type'], 'alert_not_cancelled')

    @patch('apps.alerts_app.tasks.dispatch_alert_event.delay')
    def test_cancelled_confirmation_stays_cancelled(self, mock_dispatch):
        confirmation = self.confirmation(seconds_ago=90)
        AlertConfirmation.objects.filter(pk=confirmation.pk).update(status='cancelled', cancelled_at=timezone.now())

        self.assertEqual(expire_confirmation_task(confirmation.id), 'cancelled')
        mock_dispatch.assert_not_called()

    @patch('apps.alerts_app.tasks.dispatch_alert_event.delay')
    def test_early_run_does_not_expire(self, mock_dispatch):
        confirmation = self.confirmation(seconds_ago=5)

        # Called directly, Task.retry re-raises the original exception.
        with self.assertRaises(WindowStillOpen):
            expire_confirmation_task(confirmation.id)

        confirmation.refresh_from_db()
        self.assertEqual(confirmation.status, 'confirmed')
        mock_dispatch.assert_not_called()

    def test_missing_confirmation(self):
        self.assertIsNone(expire_confirmation_task(987654))

    @patch('apps.alerts_app.tasks.dispatch_alert_event.delay')
    def test_sweep(self, mock_dispatch):
        lapsed = self.confirmation(seconds_ago=75)
        open_window = self.confirmation(seconds_ago=10, email='dad@example.com')

        self.assertEqual(sweep_lapsed_confirmations(), 1)

        lapsed.refresh_from_db()
        open_window.refresh_from_db()
        self.assertEqual(lapsed.status, 'expired')
        self.assertEqual(open_window.status, 'confirmed')

    @patch('apps.alerts_app.tasks.expire_confirmation_task.apply_async')
    def test_schedule_expiry_at_window_close(self, mock_apply_async):
        confirmation = self.confirmation(seconds_ago=0)

        self.assertTrue(schedule_expiry(confirmation))

        kwargs = mock_apply_async.call_args[1]
        self.assertEqual(kwargs['args'], [confirmation.id])
        self.assertEqual(kwargs['eta'], confirmation.created_at + timedelta(seconds=60))

    @patch('apps.alerts_app.tasks.expire_confirmation_task.apply_async', side_effect=BrokerUnavailable('no broker'))
    def test_schedule_expiry_without_broker(self, mock_apply_async):
        self.assertFalse(schedule_expiry(self.confirmation(seconds_ago=0)))
