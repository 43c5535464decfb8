from django.apps import AppConfig


class JaspelConfig(AppConfig):  # Fee settlement engine (jasa pelayanan)
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'jaspel'
    verbose_name = 'JASPEL'
