"""
Batches — Application Configuration
"""

from django.apps import AppConfig


class BatchesConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'batches'
    verbose_name = 'Batch Registry'

    def ready(self):
        import batches.signals  # noqa: F401
