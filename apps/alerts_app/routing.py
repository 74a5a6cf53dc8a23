from django.urls import re_path

from . import consumers

websocket_urlpatterns = [
    re_path(r'ws/notifications/$', consumers.NotificationConsumer.as_asgi()),
    re_path(
        r'ws/confirmations/(?P<alert_id>[0-9a-f-]+)/(?P<guardian_email>[^/]+)/$',
        consumers.ConfirmationCountdownConsumer.as_asgi()
    ),
]
