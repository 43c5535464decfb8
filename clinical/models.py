from django.db import models, transaction
from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator, MaxValueValidator
from django.utils import timezone
from decimal import Decimal
import logging

logger = logging.getLogger(__name__)


class ValidationStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    APPROVED = "approved", "Disetujui"
    REJECTED = "rejected", "Ditolak"


class Patient(models.Model):
    medical_record_number = models.CharField(max_length=50, unique=True)
    full_name = models.CharField(max_length=255)
    date_of_birth = models.DateField(null=True, blank=True)
    gender = models.CharField(max_length=20, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "patients"
        ordering = ["full_name"]

    def __str__(self):
        return f"{self.medical_record_number} - {self.full_name}"


class ProcedureType(models.Model):
    """Catalogue entry for a medical act; carries the fee percentage used at settlement."""

    CATEGORY_CHOICES = [
        ("general", "Umum"),
        ("emergency", "Gawat Darurat"),
        ("specialist", "Spesialis"),
        ("consultation", "Konsultasi"),
        ("nursing", "Keperawatan"),
        ("laboratory", "Laboratorium"),
    ]

    code = models.CharField(max_length=30, unique=True)
    name = models.CharField(max_length=255)
    default_tariff = models.DecimalField(max_digits=15, decimal_places=2, default=0)
    fee_percentage = models.DecimalField(
        max_digits=5,
        decimal_places=2,
        default=0,
        validators=[MinValueValidator(0), MaxValueValidator(100)],
        help_text="Percentage of the tariff paid out as JASPEL",
    )
    category = models.CharField(max_length=30, choices=CATEGORY_CHOICES, default="general")
    is_active = models.BooleanField(default=True)

    class Meta:
        db_table = "procedure_types"
        ordering = ["name"]

    def __str__(self):
        return f"{self.code} - {self.name}"


class Procedure(models.Model):
    """A performed medical act (tindakan) subject to validation and fee settlement."""

    # Editing any of these on an approved procedure sends it back to validation
    CRITICAL_FIELDS = (
        "patient_id",
        "procedure_type_id",
        "doctor_id",
        "paramedic_id",
        "non_paramedic_id",
        "performed_at",
        "tariff",
        "doctor_fee",
        "paramedic_fee",
        "non_paramedic_fee",
    )

    patient = models.ForeignKey(Patient, on_delete=models.PROTECT, related_name="procedures")
    procedure_type = models.ForeignKey(ProcedureType, on_delete=models.PROTECT, related_name="procedures")
    doctor = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.PROTECT, null=True, blank=True, related_name="procedures_as_doctor"
    )
    paramedic = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.PROTECT, null=True, blank=True, related_name="procedures_as_paramedic"
    )
    non_paramedic = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.PROTECT, null=True, blank=True, related_name="procedures_as_non_paramedic"
    )
    performed_at = models.DateTimeField(default=timezone.now)

    tariff = models.DecimalField(max_digits=15, decimal_places=2, validators=[MinValueValidator(0)])
    doctor_fee = models.DecimalField(max_digits=15, decimal_places=2, default=0)
    paramedic_fee = models.DecimalField(max_digits=15, decimal_places=2, default=0)
    non_paramedic_fee = models.DecimalField(max_digits=15, decimal_places=2, default=0)

    validation_status = models.CharField(
        max_length=20, choices=ValidationStatus.choices, default=ValidationStatus.PENDING, db_index=True
    )
    validated_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="validated_procedures"
    )
    validated_at = models.DateTimeField(null=True, blank=True)
    validation_comment = models.TextField(blank=True)
    version = models.PositiveIntegerField(default=1, help_text="Incremented on every validation transition")

    input_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="entered_procedures"
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "procedures"
        ordering = ["-performed_at"]
        indexes = [
            models.Index(fields=["validation_status", "performed_at"], name="procedure_status_date_idx"),
            models.Index(fields=["doctor", "performed_at"], name="procedure_doctor_date_idx"),
        ]

    def __str__(self):
        return f"Tindakan #{self.pk} ({self.procedure_type_id}) - {self.validation_status}"

    @property
    def total_fee_shares(self):
        return (self.doctor_fee or Decimal("0")) + (self.paramedic_fee or Decimal("0")) + (
            self.non_paramedic_fee or Decimal("0")
        )

    @property
    def settlement_date(self):
        return timezone.localdate(self.performed_at) if timezone.is_aware(self.performed_at) else self.performed_at.date()

    def performer_shares(self):
        """(role, performer, share) triples in settlement priority order."""
        return [
            ("doctor", self.doctor, self.doctor_fee or Decimal("0")),
            ("paramedic", self.paramedic, self.paramedic_fee or Decimal("0")),
            ("non_paramedic", self.non_paramedic, self.non_paramedic_fee or Decimal("0")),
        ]

    def performer_ids(self):
        return [pid for pid in (self.doctor_id, self.paramedic_id, self.non_paramedic_id) if pid]

    def clean(self):
        if self.tariff is not None and self.tariff < 0:
            raise ValidationError({"tariff": "Tarif tidak boleh negatif."})
        if self.tariff is not None and self.total_fee_shares > self.tariff:
            raise ValidationError(
                f"Total jasa ({self.total_fee_shares}) melebihi tarif tindakan ({self.tariff})."
            )

    def save(self, *args, **kwargs):
        self.clean()
        reset_fields = self._reset_if_critical_fields_changed()
        super().save(*args, **kwargs)
        if reset_fields:
            _announce_reset(self, "procedure", reset_fields)

    def _reset_if_critical_fields_changed(self):
        if not self.pk or self.validation_status != ValidationStatus.APPROVED:
            return []
        original = type(self).objects.filter(pk=self.pk).values(*self.CRITICAL_FIELDS, "validation_status").first()
        if not original or original["validation_status"] != ValidationStatus.APPROVED:
            return []

        changed = [f for f in self.CRITICAL_FIELDS if original[f] != getattr(self, f)]
        if not changed:
            return []

        self.validation_status = ValidationStatus.PENDING
        self.validated_by = None
        self.validated_at = None
        self.version += 1
        self.validation_comment = (
            "Data diubah oleh petugas - perlu validasi ulang. Fields: " + ", ".join(changed)
        )
        logger.info(
            f"Procedure {self.pk} validation reset to pending after edit of critical fields {changed}"
        )
        return changed


class DailyPatientCount(models.Model):
    """Daily patient-count submission (jumlah pasien harian) for a doctor at a clinic unit."""

    UNIT_CHOICES = [
        ("general", "Poli Umum"),
        ("dental", "Poli Gigi"),
    ]

    SHIFT_CHOICES = [
        ("morning", "Pagi"),
        ("afternoon", "Sore"),
        ("public_holiday", "Hari Libur Besar"),
    ]

    CRITICAL_FIELDS = (
        "date",
        "doctor_id",
        "clinic_unit",
        "shift",
        "general_patients",
        "insurance_patients",
    )

    date = models.DateField()
    doctor = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name="patient_counts")
    clinic_unit = models.CharField(max_length=20, choices=UNIT_CHOICES, default="general")
    shift = models.CharField(max_length=20, choices=SHIFT_CHOICES, blank=True)
    general_patients = models.PositiveIntegerField(default=0, help_text="Pasien umum")
    insurance_patients = models.PositiveIntegerField(default=0, help_text="Pasien BPJS")

    validation_status = models.CharField(
        max_length=20, choices=ValidationStatus.choices, default=ValidationStatus.PENDING, db_index=True
    )
    validated_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="validated_patient_counts"
    )
    validated_at = models.DateTimeField(null=True, blank=True)
    validation_note = models.TextField(blank=True)

    input_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="entered_patient_counts"
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "daily_patient_counts"
        ordering = ["-date"]
        indexes = [
            models.Index(fields=["doctor", "date"], name="patient_count_doctor_date_idx"),
            models.Index(fields=["validation_status", "date"], name="patient_count_status_date_idx"),
        ]

    def __str__(self):
        return f"{self.date} - {self.doctor_id} ({self.total_patients} pasien)"

    @property
    def total_patients(self):
        return (self.general_patients or 0) + (self.insurance_patients or 0)

    @property
    def is_approved(self):
        return self.validation_status == ValidationStatus.APPROVED

    def save(self, *args, **kwargs):
        reset_fields = self._reset_if_critical_fields_changed()
        super().save(*args, **kwargs)
        if reset_fields:
            _announce_reset(self, "patient_count", reset_fields)

    def _reset_if_critical_fields_changed(self):
        if not self.pk or self.validation_status != ValidationStatus.APPROVED:
            return []
        original = type(self).objects.filter(pk=self.pk).values(*self.CRITICAL_FIELDS, "validation_status").first()
        if not original or original["validation_status"] != ValidationStatus.APPROVED:
            return []

        changed = [f for f in self.CRITICAL_FIELDS if original[f] != getattr(self, f)]
        if not changed:
            return []

        self.validation_status = ValidationStatus.PENDING
        self.validated_by = None
        self.validated_at = None
        self.validation_note = "Data diubah oleh petugas - perlu validasi ulang. Fields: " + ", ".join(changed)
        logger.info(
            f"DailyPatientCount {self.pk} validation reset to pending after edit of critical fields {changed}"
        )
        return changed


def _announce_reset(instance, model_type, changed_fields):
    from jaspel import cache as jaspel_cache
    from jaspel.events import ValidationStatusReset, publish, validation_status_reset

    publish(
        validation_status_reset,
        ValidationStatusReset(
            model_type=model_type,
            model_id=instance.pk,
            original_status=ValidationStatus.APPROVED,
            new_status=ValidationStatus.PENDING,
            changed_fields=tuple(changed_fields),
        ),
    )
    if model_type == "procedure":
        transaction.on_commit(lambda: jaspel_cache.invalidate_for_procedure(instance))
    else:
        transaction.on_commit(lambda: jaspel_cache.invalidate_beneficiaries([instance.doctor_id], [instance.date]))
