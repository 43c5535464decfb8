"""
Daily patient-count settlement, fee previews and manual recalculation.
"""
from datetime import timedelta
from decimal import Decimal
from django.db import transaction
from django.db.models import Exists, OuterRef
from django.utils import timezone
import logging
import uuid

from clinical.models import DailyPatientCount, Procedure, ValidationStatus
from . import cache as jaspel_cache
from . import conf
from .calculator import FeeCalculationService, FormulaOverride
from .constants import FeeCategory, FeeStatus
from .exceptions import FeeValidationError, InvalidTransition
from .ledger import fee_record_writer
from .models import FeeRecord
from .validation import primary_performer

logger = logging.getLogger(__name__)

MAX_RECALCULATION_DAYS = 366


def _settled_patient_count_fee():
    return FeeRecord.objects.filter(
        beneficiary=OuterRef("doctor"),
        settlement_date=OuterRef("date"),
        category=FeeCategory.PATIENT_COUNT_DAILY,
    )


def unsettled_patient_counts(start_date, end_date, doctor_id=None):
    """Approved daily patient counts in a date range with no daily fee record yet."""
    queryset = DailyPatientCount.objects.filter(
        validation_status=ValidationStatus.APPROVED, date__range=(start_date, end_date)
    ).filter(~Exists(_settled_patient_count_fee()))
    if doctor_id is not None:
        queryset = queryset.filter(doctor_id=doctor_id)
    return queryset.order_by("date", "pk")


class PatientCountSettlementService:
    """Settles approved daily patient counts with the threshold formula"""

    def __init__(self, writer=None):
        self.writer = writer or fee_record_writer

    def formula_moment(self, patient_count, now=None):
        # Execution time by default; see JASPEL_FORMULA_CLOCK
        if conf.get("JASPEL_FORMULA_CLOCK") == "submission":
            return patient_count.created_at
        return now or timezone.now()

    def settle(self, patient_count_id, now=None):
        """
        Settle one daily patient count.

        Returns the created FeeRecord, or None when the count is not approved,
        is already settled, or does not reach the formula threshold.
        """
        patient_count = (
            DailyPatientCount.objects.select_related("doctor", "validated_by").filter(pk=patient_count_id).first()
        )
        if patient_count is None or not patient_count.is_approved:
            logger.info(f"Patient count {patient_count_id} is not approved (anymore); skipping settlement")
            return None

        already_settled = FeeRecord.objects.filter(
            beneficiary_id=patient_count.doctor_id,
            settlement_date=patient_count.date,
            category=FeeCategory.PATIENT_COUNT_DAILY,
        ).exists()
        if already_settled:
            logger.info(
                f"Daily JASPEL already exists for doctor {patient_count.doctor_id} on {patient_count.date}; skipping"
            )
            return None

        formula = FeeCalculationService.select_formula(as_of=self.formula_moment(patient_count, now))
        breakdown = FeeCalculationService.compute_patient_count_fee(
            patient_count.general_patients, patient_count.insurance_patients, formula
        )
        if breakdown["total"] <= 0:
            logger.info(
                f"Patient count {patient_count.pk}: {breakdown['total_patients']} patients does not exceed "
                f"threshold {breakdown['threshold']}; no JASPEL"
            )
            return None

        with transaction.atomic():
            record = self.writer.create(
                beneficiary=patient_count.doctor,
                settlement_date=patient_count.date,
                category=FeeCategory.PATIENT_COUNT_DAILY,
                nominal=breakdown["total"],
                actor=patient_count.validated_by,
                source_patient_count=patient_count,
                validation_status=FeeStatus.APPROVED,
                validated_by=patient_count.validated_by,
                validated_at=patient_count.validated_at or timezone.now(),
                note=(
                    f"Jaspel jumlah pasien {patient_count.date}: umum {patient_count.general_patients} x "
                    f"{breakdown['general_tier']} + BPJS {patient_count.insurance_patients} x "
                    f"{breakdown['insurance_tier']} (formula {formula.pk}, ambang {formula.threshold})"
                ),
                ignore_conflicts=True,
            )
        if record is not None:
            logger.info(
                f"Settled patient count {patient_count.pk}: JASPEL {record.pk} = {record.nominal} "
                f"for doctor {patient_count.doctor_id}"
            )
        return record


patient_count_settlement_service = PatientCountSettlementService()


def _transition_patient_count(patient_count_id, new_status, validator, note):
    with transaction.atomic():
        patient_count = DailyPatientCount.objects.select_for_update().get(pk=patient_count_id)
        previous_status = patient_count.validation_status
        now = timezone.now()
        DailyPatientCount.objects.filter(pk=patient_count.pk).update(
            validation_status=new_status,
            validated_by=validator,
            validated_at=now,
            validation_note=note or "",
            updated_at=now,
        )
        patient_count.refresh_from_db()
        logger.info(
            f"Patient count {patient_count.pk} {previous_status} -> {new_status} by {getattr(validator, 'pk', None)}"
        )
        return patient_count


def approve_patient_count(patient_count_id, validator, note=""):
    """Approve a daily patient count and queue its settlement after commit."""
    from .tasks import settle_daily_patient_count

    with transaction.atomic():
        patient_count = _transition_patient_count(patient_count_id, ValidationStatus.APPROVED, validator, note)
        transaction.on_commit(lambda: settle_daily_patient_count.delay(patient_count.pk))
        transaction.on_commit(
            lambda: jaspel_cache.invalidate_beneficiaries([patient_count.doctor_id], [patient_count.date])
        )
    return patient_count


def reject_patient_count(patient_count_id, validator, note=""):
    """Reject a daily patient count; a daily fee already settled from it is rejected with it."""
    with transaction.atomic():
        patient_count = _transition_patient_count(patient_count_id, ValidationStatus.REJECTED, validator, note)
        fee_record_writer.cascade_reject_patient_count(patient_count, validator, note)
        transaction.on_commit(
            lambda: jaspel_cache.invalidate_beneficiaries([patient_count.doctor_id], [patient_count.date])
        )
    return patient_count


def _formula_from_override(override):
    if override is None or isinstance(override, FormulaOverride):
        return override
    return FormulaOverride(
        threshold=int(override["threshold"]),
        general_tier=Decimal(str(override.get("general_tier", 0))),
        insurance_tier=Decimal(str(override.get("insurance_tier", 0))),
    )


def preview_procedure_fee(procedure, percentage_override=None):
    """Fee a procedure would settle for, without persisting anything."""
    formula = procedure.procedure_type if percentage_override is None else percentage_override
    amount = FeeCalculationService.compute_percentage_fee(procedure.tariff, formula)
    percentage = getattr(formula, "fee_percentage", formula)
    beneficiary, category = primary_performer(procedure)
    return {
        "kind": "procedure",
        "procedure": procedure.pk,
        "tariff": procedure.tariff,
        "percentage": Decimal(str(percentage)),
        "amount": amount,
        "category": category,
        "beneficiary": str(beneficiary.pk) if beneficiary is not None else None,
    }


def preview_patient_count_fee(general_patients, insurance_patients, formula_override=None, as_of=None):
    """Threshold fee for ad-hoc counts; uses the current formula unless overridden."""
    formula = _formula_from_override(formula_override) or FeeCalculationService.select_formula(as_of=as_of)
    breakdown = FeeCalculationService.compute_patient_count_fee(general_patients, insurance_patients, formula)
    breakdown["kind"] = "patient_count"
    breakdown["amount"] = breakdown["total"]
    return breakdown


def preview_fee(procedure=None, patient_count=None, formula_override=None, general_patients=None,
                insurance_patients=None):
    """
    PreviewFee: calculate without persisting.

    For a procedure ``formula_override`` is a percentage; for patient counts it is
    a mapping with threshold, general_tier and insurance_tier.
    """
    if procedure is not None:
        return preview_procedure_fee(procedure, formula_override)
    if patient_count is not None:
        result = preview_patient_count_fee(
            patient_count.general_patients, patient_count.insurance_patients, formula_override
        )
        result["patient_count"] = patient_count.pk
        return result
    if general_patients is not None or insurance_patients is not None:
        return preview_patient_count_fee(general_patients or 0, insurance_patients or 0, formula_override)
    raise FeeValidationError("Tidak ada data untuk dihitung.")


def unsettled_procedures(beneficiary_id, start_date, end_date):
    """Approved procedures in range where ``beneficiary_id`` is owed a fee that has no record."""
    procedures = (
        Procedure.objects.filter(validation_status=ValidationStatus.APPROVED)
        .filter(performed_at__date__range=(start_date, end_date))
        .select_related("doctor", "paramedic", "non_paramedic")
    )
    procedures = procedures.filter(doctor_id=beneficiary_id) | procedures.filter(
        paramedic_id=beneficiary_id
    ) | procedures.filter(non_paramedic_id=beneficiary_id)

    owed = []
    for procedure in procedures.distinct():
        beneficiary, _ = primary_performer(procedure)
        if beneficiary is None or beneficiary.pk != beneficiary_id:
            continue
        if not FeeRecord.objects.filter(source_procedure=procedure, beneficiary_id=beneficiary_id).exists():
            owed.append(procedure)
    return owed


def recalculate_settlement(beneficiary_id, start_date, end_date):
    """
    RecalculateSettlement: invalidate the beneficiary's caches over a date
    range and re-queue settlement for anything approved but not yet settled.
    """
    from .tasks import settle_approved_procedure, settle_daily_patient_count

    beneficiary_id = uuid.UUID(str(getattr(beneficiary_id, "pk", beneficiary_id)))
    if start_date > end_date:
        raise InvalidTransition("Tanggal awal harus sebelum tanggal akhir.")
    if (end_date - start_date).days > MAX_RECALCULATION_DAYS:
        raise FeeValidationError(f"Rentang tanggal maksimal {MAX_RECALCULATION_DAYS} hari.")

    days = [start_date + timedelta(days=offset) for offset in range((end_date - start_date).days + 1)]
    invalidated = jaspel_cache.invalidate_beneficiaries([beneficiary_id], days)

    patient_counts = list(unsettled_patient_counts(start_date, end_date, doctor_id=beneficiary_id))
    procedures = unsettled_procedures(beneficiary_id, start_date, end_date)

    def enqueue():
        for patient_count in patient_counts:
            settle_daily_patient_count.delay(patient_count.pk)
        for procedure in procedures:
            settle_approved_procedure.delay(procedure.pk)

    transaction.on_commit(enqueue)
    logger.info(
        f"Recalculated JASPEL for {beneficiary_id} {start_date}..{end_date}: {len(invalidated)} cache keys, "
        f"{len(patient_counts)} patient counts and {len(procedures)} procedures re-queued"
    )
    return {
        "beneficiary": str(beneficiary_id),
        "start_date": start_date,
        "end_date": end_date,
        "invalidated_keys": len(invalidated),
        "requeued_patient_counts": [pc.pk for pc in patient_counts],
        "requeued_procedures": [p.pk for p in procedures],
    }
