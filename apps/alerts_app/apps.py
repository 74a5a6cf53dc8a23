from django.apps import AppConfig


class AlertsAppConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'apps.alerts_app'
    label = 'alerts_app'

    def ready(self):
        from . import signals  # noqa: F401
