import os
from django.core.asgi import get_asgi_application
from channels.routing import ProtocolTypeRouter, URLRouter

# Set default settings module
os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'safeguard_config.settings')

# Initialize Django application
django_application = get_asgi_application()

# Import routing AFTER Django is set up
from apps.alerts_app import routing
from apps.alerts_app.middleware import JWTAuthMiddlewareStack

application = ProtocolTypeRouter({
    "http": django_application,
    "websocket": JWTAuthMiddlewareStack(
        URLRouter(
            routing.websocket_urlpatterns
        )
    ),
})
