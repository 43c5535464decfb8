from django.apps import AppConfig


class ClinicalConfig(AppConfig):  # Application configuration for clinical intake records
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'clinical'
    verbose_name = 'Clinical Intake'
