from django.apps import AppConfig


class DemokitConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'demokit'
    verbose_name = 'Demo Case Tracker'
