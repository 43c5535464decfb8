from django.db import models
from django.db.models import Q
from django.conf import settings
from django.core.validators import MinValueValidator
from decimal import Decimal

from .constants import FeeCategory, FeeStatus, PayerType, ShiftWindow


class FeeFormula(models.Model):
    """
    Threshold/tier table for daily patient-count settlement.

    Per-patient tiers are paid for every patient in a payer subgroup once the
    combined patient total for the day exceeds ``threshold``.
    """

    name = models.CharField(max_length=120, blank=True)
    shift_window = models.CharField(max_length=20, choices=ShiftWindow.choices, default=ShiftWindow.MORNING)
    threshold = models.PositiveIntegerField(help_text="Minimum total patients; fee is paid only above this")
    general_tier = models.DecimalField(
        max_digits=12, decimal_places=2, default=0, validators=[MinValueValidator(0)],
        help_text="Fee per general-payer patient",
    )
    insurance_tier = models.DecimalField(
        max_digits=12, decimal_places=2, default=0, validators=[MinValueValidator(0)],
        help_text="Fee per insurance (BPJS) patient",
    )
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "jaspel_fee_formulas"
        ordering = ["shift_window", "-updated_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["shift_window"],
                condition=Q(is_active=True),
                name="unique_active_formula_per_shift",
            ),
        ]

    def __str__(self):
        return self.name or f"Formula {self.get_shift_window_display()} (>{self.threshold} pasien)"

    def tier_for(self, payer_type):
        if payer_type == PayerType.GENERAL:
            return self.general_tier
        if payer_type == PayerType.INSURANCE:
            return self.insurance_tier
        return None


class FeeRecord(models.Model):
    """A settled performer fee (JASPEL) owed to a beneficiary."""

    beneficiary = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name="fee_records")
    source_procedure = models.ForeignKey(
        "clinical.Procedure", on_delete=models.PROTECT, null=True, blank=True, related_name="fee_records"
    )
    source_patient_count = models.ForeignKey(
        "clinical.DailyPatientCount", on_delete=models.SET_NULL, null=True, blank=True, related_name="fee_records"
    )
    settlement_date = models.DateField()
    category = models.CharField(max_length=40, choices=FeeCategory.choices)
    nominal = models.DecimalField(max_digits=15, decimal_places=2)
    total = models.DecimalField(max_digits=15, decimal_places=2, null=True, blank=True)

    validation_status = models.CharField(
        max_length=20, choices=FeeStatus.choices, default=FeeStatus.PENDING, db_index=True
    )
    validated_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="validated_fee_records"
    )
    validated_at = models.DateTimeField(null=True, blank=True)
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="created_fee_records"
    )
    note = models.TextField(blank=True)
    anomaly_flags = models.JSONField(default=list, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "jaspel_fee_records"
        ordering = ["-settlement_date", "-created_at"]
        constraints = [
            # One settlement per (procedure, beneficiary)
            models.UniqueConstraint(
                fields=["source_procedure", "beneficiary"],
                condition=Q(source_procedure__isnull=False),
                name="unique_fee_per_procedure_beneficiary",
            ),
            # One daily patient-count settlement per doctor and date
            models.UniqueConstraint(
                fields=["beneficiary", "settlement_date", "category"],
                condition=Q(category="patient_count_daily"),
                name="unique_daily_patient_count_fee",
            ),
        ]
        indexes = [
            models.Index(fields=["beneficiary", "settlement_date"], name="fee_beneficiary_date_idx"),
            models.Index(fields=["validation_status", "settlement_date"], name="fee_status_date_idx"),
        ]
        permissions = [
            ("validate_fee", "Can approve JASPEL fee records"),
            ("validate_procedure", "Can validate procedures and patient counts for settlement"),
        ]

    def __str__(self):
        return f"JASPEL #{self.pk} {self.category} {self.nominal} ({self.validation_status})"

    @property
    def is_approved(self):
        return self.validation_status == FeeStatus.APPROVED

    @property
    def effective_total(self):
        return self.total if self.total is not None else (self.nominal or Decimal("0"))
