from datetime import timedelta
from unittest.mock import patch

from django.contrib.auth.models import User
from django.urls import reverse
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APITestCase

from apps.alerts_app.models import Alert, AlertConfirmation, Guardian, UserDevice
from apps.services.auth_service import set_cancel_password


class HealthCheckTests(APITestCase):

    def test_health_check(self):
        response = self.client.get(reverse('health-check-api'))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['status'], 'ok')


class AlertApiTestBase(APITestCase):

    @classmethod
    def setUpTestData(cls):
        cls.owner = User.objects.create_user(username='alerter', email='alerter@example.com', password='password')
        cls.guardian = User.objects.create_user(username='mum', email='mum@example.com', password='password')
        cls.stranger = User.objects.create_user(username='stranger', email='stranger@example.com', password='password')
        Guardian.objects.create(user=cls.owner, guardian_email='mum@example.com')
        UserDevice.objects.create(user=cls.owner, device_token='owner-token')
        UserDevice.objects.create(user=cls.guardian, device_token='guardian-token')
        set_cancel_password(cls.owner, 'cancel-me')

    def setUp(self):
        self.alert = Alert.objects.create(user=self.owner)
        dispatch_patcher = patch('apps.alerts_app.tasks.dispatch_alert_event.delay')
        schedule_patcher = patch('apps.alerts_app.views.schedule_expiry')
        self.mock_dispatch = dispatch_patcher.start()
        self.mock_schedule = schedule_patcher.start()
        self.addCleanup(dispatch_patcher.stop)
        self.addCleanup(schedule_patcher.stop)

    def confirm_url(self):
        return reverse('alert-confirm', kwargs={'alert_id': self.alert.id})

    def cancel_url(self):
        return reverse('alert-cancel', kwargs={'alert_id': self.alert.id})

    def detail_url(self, email='mum@example.com'):
        return reverse('confirmation-detail', kwargs={'alert_id': self.alert.id, 'guardian_email': email})

    def expire_url(self, email='mum@example.com'):
        return reverse('confirmation-expire', kwargs={'alert_id': self.alert.id, 'guardian_email': email})

    def make_confirmation(self, seconds_ago=0):
        created_at = timezone.now() - timedelta(seconds=seconds_ago)
        return AlertConfirmation.objects.create(
            alert=self.alert, guardian_email='mum@example.com', guardian_user=self.guardian,
            created_at=created_at, confirmed_at=created_at, expires_at=created_at + timedelta(seconds=60),
        )

    def dispatched_kinds(self):
        return [c[0][1] for c in self.mock_dispatch.call_args_list]


class TriggerAlertViewTests(AlertApiTestBase):

    @patch('apps.alerts_app.tasks.notify_guardians_of_alert.delay')
    def test_trigger_alert(self, mock_notify):
        self.client.force_authenticate(user=self.owner)
        data = {'alert_type': 'manual_sos', 'latitude': '14.599500', 'longitude': '120.984200'}

        with self.captureOnCommitCallbacks(execute=True):
            response = self.client.post(reverse('alert-list-create'), data, format='json')

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data['confirmation_status'], 'pending')
        self.assertEqual(response.data['guardians_notified'], 1)
        alert = Alert.objects.get(pk=response.data['id'])
        self.assertEqual(alert.alert_type, 'manual_sos')
        mock_notify.assert_called_once_with(str(alert.id))

    def test_latitude_without_longitude(self):
        self.client.force_authenticate(user=self.owner)
        response = self.client.post(reverse('alert-list-create'), {'latitude': '14.5'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_list_only_own_alerts(self):
        Alert.objects.create(user=self.stranger)
        self.make_confirmation()
        self.client.force_authenticate(user=self.owner)

        response = self.client.get(reverse('alert-list-create'))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['count'], 1)
        result = response.data['results'][0]
        self.assertEqual(result['confirmation_status'], 'confirmed')
        self.assertEqual(result['confirmations'][0]['guardian_email'], 'mum@example.com')

    def test_requires_authentication(self):
        response = self.client.get(reverse('alert-list-create'))
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)


class ConfirmAlertViewTests(AlertApiTestBase):

    def test_guardian_confirms(self):
        self.client.force_authenticate(user=self.guardian)

        response = self.client.post(self.confirm_url(), {'guardian_email': 'Mum@Example.com'}, format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response.data['created'])
        self.assertEqual(response.data['window_seconds'], 60)
        self.assertEqual(response.data['confirmation']['status'], 'confirmed')
        confirmation = AlertConfirmation.objects.get(alert=self.alert)
        self.assertEqual(confirmation.guardian_email, 'mum@example.com')
        self.assertEqual(confirmation.guardian_user, self.guardian)
        self.mock_schedule.assert_called_once()
        user_id, kind, data = self.mock_dispatch.call_args[0]
        self.assertEqual((user_id, kind, data['type']), (self.owner.id, 'confirmed', 'alert_confirmation'))

    def test_reconfirm_does_not_notify_twice(self):
        self.client.force_authenticate(user=self.guardian)
        self.client.post(self.confirm_url(), {'guardian_email': 'mum@example.com'}, format='json')
        response = self.client.post(self.confirm_url(), {'guardian_email': 'mum@example.com'}, format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertFalse(response.data['created'])
        self.assertEqual(self.mock_dispatch.call_count, 1)
        self.assertEqual(self.mock_schedule.call_count, 1)

    def test_cannot_confirm_as_someone_else(self):
        self.client.force_authenticate(user=self.stranger)
        response = self.client.post(self.confirm_url(), {'guardian_email': 'mum@example.com'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.assertFalse(AlertConfirmation.objects.exists())

    def test_unknown_alert(self):
        self.client.force_authenticate(user=self.guardian)
        url = reverse('alert-confirm', kwargs={'alert_id': '00000000-0000-0000-0000-000000000000'})
        response = self.client.post(url, {'guardian_email': 'mum@example.com'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(response.data['code'], 'alert_not_found')


class CancelAlertViewTests(AlertApiTestBase):

    def cancel(self, password='cancel-me', user=None):
        self.client.force_authenticate(user=user or self.owner)
        return self.client.post(self.cancel_url(), {'guardian_email': 'mum@example.com', 'password': password}, format='json')

    def test_cancel_within_window(self):
        self.make_confirmation(seconds_ago=20)

        response = self.cancel()

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['confirmation']['status'], 'cancelled')
        self.assertIsNotNone(response.data['confirmation']['cancelled_at'])
        user_id, kind, data = self.mock_dispatch.call_args[0]
        self.assertEqual((user_id, kind, data['type']), (self.guardian.id, 'cancelled', 'alert_cancelled'))

    def test_wrong_password(self):
        confirmation = self.make_confirmation(seconds_ago=20)

        response = self.cancel(password='wrong')

        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(response.data, {'error': 'Incorrect password.', 'code': 'bad_password'})
        confirmation.refresh_from_db()
        self.assertEqual(confirmation.status, 'confirmed')
        self.assertIsNone(confirmation.cancelled_at)

    def test_late_cancel_expires(self):
        confirmation = self.make_confirmation(seconds_ago=61)

        response = self.cancel()

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data['error'], 'Time expired. You had 60 seconds to cancel.')
        confirmation.refresh_from_db()
        self.assertEqual(confirmation.status, 'expired')
        self.assertEqual(self.dispatched_kinds(), ['expired'])

    def test_cancel_after_cancel(self):
        self.make_confirmation(seconds_ago=5)
        self.cancel()
        response = self.cancel()
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data['code'], 'already_terminal')
        self.assertEqual(response.data['status'], 'cancelled')

    def test_only_owner_can_cancel(self):
        self.make_confirmation(seconds_ago=5)
        response = self.cancel(user=self.guardian)
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_no_confirmation(self):
        response = self.cancel()
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(response.data['code'], 'confirmation_not_found')


class ConfirmationDetailAndExpireViewTests(AlertApiTestBase):

    def test_detail_has_countdown(self):
        self.make_confirmation(seconds_ago=15)
        self.client.force_authenticate(user=self.owner)

        response = self.client.get(self.detail_url())

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['confirmation']['status'], 'confirmed')
        self.assertLessEqual(response.data['countdown']['seconds_remaining'], 45)
        self.assertGreater(response.data['countdown']['seconds_remaining'], 30)
        self.assertEqual(response.data['countdown']['tier'], 'normal')
        self.assertFalse(response.data['expired_now'])

    def test_reopening_after_lapse_expires(self):
        self.make_confirmation(seconds_ago=120)
        self.client.force_authenticate(user=self.guardian)

        response = self.client.get(self.detail_url())

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response.data['expired_now'])
        self.assertEqual(response.data['confirmation']['status'], 'expired')
        self.assertEqual(response.data['countdown']['remaining_ms'], 0)

    def test_stranger_cannot_view(self):
        self.make_confirmation()
        self.client.force_authenticate(user=self.stranger)
        self.assertEqual(self.client.get(self.detail_url()).status_code, status.HTTP_403_FORBIDDEN)

    def test_expire_trigger_is_idempotent(self):
        self.make_confirmation(seconds_ago=65)
        self.client.force_authenticate(user=self.owner)

        first = self.client.post(self.expire_url())
        second = self.client.post(self.expire_url())

        self.assertEqual(first.status_code, status.HTTP_200_OK)
        self.assertTrue(first.data['transitioned'])
        self.assertEqual(second.status_code, status.HTTP_200_OK)
        self.assertFalse(second.data['transitioned'])
        self.assertEqual(self.dispatched_kinds(), ['expired'])

    def test_expire_trigger_before_window_closes(self):
        self.make_confirmation(seconds_ago=10)
        self.client.force_authenticate(user=self.owner)

        response = self.client.post(self.expire_url())

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data['code'], 'window_still_open')
        self.assertGreater(response.data['remaining_ms'], 0)

    def test_guardian_lists_own_confirmations(self):
        self.make_confirmation()
        self.client.force_authenticate(user=self.guardian)

        response = self.client.get(reverse('guardian-confirmations'))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['count'], 1)
        self.assertEqual(response.data['results'][0]['alert_id'], str(self.alert.id))


class DeviceRegistrationViewTests(APITestCase):

    def setUp(self):
        self.user = User.objects.create_user(username='device_user', password='password')
        self.other = User.objects.create_user(username='other_user', password='password')
        self.client.force_authenticate(user=self.user)
        self.url = reverse('device-register')

    def test_register_new_device(self):
        response = self.client.post(self.url, {'device_token': 'new-token', 'device_type': 'android'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertTrue(UserDevice.objects.filter(user=self.user, device_token='new-token', is_active=True).exists())

    def test_token_moves_to_new_owner(self):
        UserDevice.objects.create(user=self.other, device_token='shared-token', is_active=False)

        response = self.client.post(self.url, {'device_token': 'shared-token', 'device_type': 'ios'}, format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        device = UserDevice.objects.get(device_token='shared-token')
        self.assertEqual(device.user, self.user)
        self.assertTrue(device.is_active)

    def test_empty_token(self):
        response = self.client.post(self.url, {'device_token': '   '}, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
