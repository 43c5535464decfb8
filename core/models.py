from django.db import models
from django.contrib.auth.models import (
    AbstractBaseUser,
    BaseUserManager,
    PermissionsMixin,
)
from django.utils import timezone
import uuid


class ParticipantManager(BaseUserManager):
    def create_user(self, email, password=None, **extra_fields):  # Creates a new participant with email and password
        if not email:
            raise ValueError("Email is required")
        email = self.normalize_email(email)
        participant = self.model(email=email, **extra_fields)
        participant.set_password(password)
        participant.save(using=self._db)
        return participant

    def create_superuser(self, email, password=None, **extra_fields):  # Creates a superuser with admin privileges
        extra_fields.setdefault("is_staff", True)
        extra_fields.setdefault("is_superuser", True)
        extra_fields.setdefault("role", "admin")
        return self.create_user(email, password, **extra_fields)


class Participant(AbstractBaseUser, PermissionsMixin):
    """Clinic staff member; performers of procedures are the fee beneficiaries."""

    ROLE_CHOICES = [
        ("doctor", "Dokter"),
        ("paramedic", "Paramedis"),
        ("non_paramedic", "Non-Paramedis"),
        ("treasurer", "Bendahara"),
        ("manager", "Manajer"),
        ("front_desk", "Petugas"),
        ("admin", "Admin"),
    ]

    PERFORMER_ROLES = ("doctor", "paramedic", "non_paramedic")

    uid = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    email = models.EmailField(unique=True)
    full_name = models.CharField(max_length=255, blank=True)
    phone_number = models.CharField(max_length=20, blank=True, null=True)
    role = models.CharField(max_length=30, choices=ROLE_CHOICES)
    employee_id = models.CharField(max_length=100, blank=True)
    is_active = models.BooleanField(default=True)
    is_staff = models.BooleanField(default=False)
    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)

    objects = ParticipantManager()

    USERNAME_FIELD = "email"
    REQUIRED_FIELDS = ["role"]

    class Meta:
        db_table = "participants"
        indexes = [
            models.Index(fields=["role"], name="participant_role_idx"),
            models.Index(fields=["role", "is_active"], name="participant_role_active_idx"),
        ]

    def __str__(self):
        return self.full_name or self.email

    @property
    def is_performer(self):
        return self.role in self.PERFORMER_ROLES
