from datetime import time, timedelta
from decimal import Decimal
from io import StringIO
from unittest.mock import patch
from celery.exceptions import Retry
from django.core.cache import cache
from django.core.management import call_command
from django.db import IntegrityError
from django.db.models import Sum
from django.test import TestCase, override_settings
from django.urls import reverse
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APITestCase
from clinical.models import DailyPatientCount, Patient, Procedure, ProcedureType, ValidationStatus
from core.models import Participant
from .cache import beneficiary_month_summary, creation_counter_key, month_key
from .calculator import FeeCalculationService, FormulaOverride
from .constants import FeeCategory, FeeStatus, PayerType
from .events import fee_record_created, fee_record_rejected_cascade, settlement_failed
from .exceptions import (
    AmountOutOfRange,
    DateOutOfRange,
    FeeValidationError,
    InvalidCategory,
    InvalidFormula,
    InvalidTransition,
    NoActiveFormula,
    RecordImmutable,
    StaleProcedureError,
    SuspectedTestData,
    Unauthorized,
)
from .ledger import fee_record_writer
from .models import FeeFormula, FeeRecord
from .settlement import (
    PatientCountSettlementService,
    approve_patient_count,
    patient_count_settlement_service,
    preview_fee,
    recalculate_settlement,
    reject_patient_count,
)
from .tasks import requeue_unsettled_patient_counts, settle_approved_procedure, settle_daily_patient_count
from .validation import (
    ProcedureSettlementService,
    primary_performer,
    reset_procedure_validation,
    submit_procedure_validation,
)


class JaspelFixturesMixin:  # Shared participants, catalogue and helpers
    def setUp(self):  # Setup
        cache.clear()
        self.doctor = Participant.objects.create_user(
            email="doctor@test.com", password="test123", role="doctor", full_name="dr. Yaya"
        )
        self.paramedic = Participant.objects.create_user(
            email="paramedic@test.com", password="test123", role="paramedic"
        )
        self.treasurer = Participant.objects.create_user(
            email="treasurer@test.com", password="test123", role="treasurer"
        )
        self.patient = Patient.objects.create(medical_record_number="RM-0001", full_name="Pasien Uji")
        self.procedure_type = ProcedureType.objects.create(
            code="INJ", name="Injeksi", default_tariff=100000, fee_percentage=Decimal("40")
        )
        self.today = timezone.localdate()

    def make_procedure(self, **kwargs):
        fields = {
            "patient": self.patient,
            "procedure_type": self.procedure_type,
            "doctor": self.doctor,
            "tariff": Decimal("100000"),
            "doctor_fee": Decimal("40000"),
        }
        fields.update(kwargs)
        return Procedure.objects.create(**fields)

    def make_record(self, nominal=Decimal("50000"), beneficiary=None, **kwargs):
        fields = {
            "beneficiary": beneficiary or self.doctor,
            "settlement_date": self.today,
            "category": FeeCategory.GENERAL_DOCTOR,
            "nominal": nominal,
            "actor": self.treasurer,
        }
        fields.update(kwargs)
        return fee_record_writer.create(**fields)

    def make_formulas(self, threshold=40, general_tier=Decimal("5000"), insurance_tier=Decimal("3000")):
        for window in ("morning", "afternoon"):
            FeeFormula.objects.create(
                shift_window=window, threshold=threshold, general_tier=general_tier, insurance_tier=insurance_tier
            )

    def listen(self, signal):
        received = []

        def receiver(sender, event, **kwargs):
            received.append(event)

        signal.connect(receiver, weak=False)
        self.addCleanup(signal.disconnect, receiver)
        return received


class FeeCalculationServiceTest(TestCase):  # FeeCalculationServiceTest class implementation
    def setUp(self):  # Setup
        self.formula = FormulaOverride(threshold=40, general_tier=Decimal("5000"), insurance_tier=Decimal("3000"))

    def test_percentage_fee(self):  # Test percentage fee
        fee = FeeCalculationService.compute_percentage_fee(Decimal("100000"), Decimal("40"))
        self.assertEqual(fee, Decimal("40000.00"))

    def test_percentage_fee_rounds_half_up(self):  # Test percentage fee rounds half up
        self.assertEqual(FeeCalculationService.compute_percentage_fee(Decimal("0.05"), 50), Decimal("0.03"))
        fee = FeeCalculationService.compute_percentage_fee(Decimal("33333"), Decimal("33.33"))
        self.assertEqual(fee, Decimal("11109.89"))
        self.assertLessEqual(fee, Decimal("33333"))

    def test_percentage_fee_never_exceeds_tariff(self):  # Test percentage fee never exceeds tariff
        for tariff in (Decimal("0"), Decimal("1.01"), Decimal("99999.99")):
            self.assertLessEqual(FeeCalculationService.compute_percentage_fee(tariff, 100), tariff)

    def test_invalid_percentage(self):  # Test invalid percentage
        with self.assertRaises(InvalidFormula):
            FeeCalculationService.compute_percentage_fee(Decimal("100000"), Decimal("120"))
        with self.assertRaises(InvalidFormula):
            FeeCalculationService.compute_percentage_fee(Decimal("-1"), Decimal("10"))

    def test_threshold_fee_at_or_below_threshold(self):  # Test threshold fee at or below threshold
        for total in (0, 35, 40):
            fee = FeeCalculationService.compute_threshold_fee(total, total, self.formula, PayerType.GENERAL)
            self.assertEqual(fee, Decimal("0"))

    def test_threshold_fee_pays_whole_subgroup(self):  # Test threshold fee pays whole subgroup
        fee = FeeCalculationService.compute_threshold_fee(50, 30, self.formula, PayerType.GENERAL)
        self.assertEqual(fee, Decimal("150000.00"))

    def test_negative_counts(self):  # Test negative counts
        with self.assertRaises(ValueError):
            FeeCalculationService.compute_threshold_fee(-1, 0, self.formula, PayerType.GENERAL)

    def test_patient_count_breakdown(self):  # Test patient count breakdown
        breakdown = FeeCalculationService.compute_patient_count_fee(30, 20, self.formula)
        self.assertEqual(breakdown["total_patients"], 50)
        self.assertTrue(breakdown["threshold_met"])
        self.assertEqual(breakdown["general_fee"], Decimal("150000.00"))
        self.assertEqual(breakdown["insurance_fee"], Decimal("60000.00"))
        self.assertEqual(breakdown["total"], Decimal("210000.00"))

    def test_resolve_shift_window(self):  # Test resolve shift window
        self.assertEqual(FeeCalculationService.resolve_shift_window(time(8, 0)), "morning")
        self.assertEqual(FeeCalculationService.resolve_shift_window(time(15, 30)), "afternoon")
        self.assertEqual(FeeCalculationService.resolve_shift_window(time(23, 0)), "morning")

    def test_select_formula_falls_back_to_any_active(self):  # Test select formula falls back to any active
        morning = FeeFormula.objects.create(shift_window="morning", threshold=40, general_tier=5000, insurance_tier=3000)
        self.assertEqual(FeeCalculationService.select_formula("afternoon"), morning)

    def test_select_formula_ignores_inactive(self):  # Test select formula ignores inactive
        FeeFormula.objects.create(shift_window="morning", threshold=40, is_active=False)
        with self.assertRaises(NoActiveFormula):
            FeeCalculationService.select_formula("morning")


class IntegrityGuardTest(JaspelFixturesMixin, TestCase):  # IntegrityGuardTest class implementation
    def test_create_defaults(self):  # Test create defaults
        record = self.make_record()
        self.assertEqual(record.validation_status, FeeStatus.PENDING)
        self.assertEqual(record.total, record.nominal)
        self.assertEqual(record.created_by, self.treasurer)

    def test_amount_bounds(self):  # Test amount bounds
        with self.assertRaises(AmountOutOfRange):
            self.make_record(nominal=Decimal("0"))
        with self.assertRaises(AmountOutOfRange):
            self.make_record(nominal=Decimal("10000000.01"))
        self.assertEqual(FeeRecord.objects.count(), 0)

    def test_date_bounds(self):  # Test date bounds
        with self.assertRaises(DateOutOfRange):
            self.make_record(settlement_date=self.today + timedelta(days=30))
        with self.assertRaises(DateOutOfRange):
            self.make_record(settlement_date=self.today - timedelta(days=400))

    def test_invalid_category(self):  # Test invalid category
        with self.assertRaises(InvalidCategory):
            self.make_record(category="bonus")

    @override_settings(JASPEL_PRODUCTION_MODE=True)
    def test_dummy_amount_blocked_in_production(self):  # Test dummy amount blocked in production
        with self.assertRaises(SuspectedTestData):
            self.make_record(nominal=Decimal("123456"))
        self.assertEqual(FeeRecord.objects.count(), 0)

    def test_dummy_amount_flagged_outside_production(self):  # Test dummy amount flagged outside production
        with self.assertLogs("jaspel.integrity", level="WARNING"):
            record = self.make_record(nominal=Decimal("123456"))
        self.assertIn("dummy_pattern", record.anomaly_flags)

    def test_round_number_and_orphan_consultation_flags(self):  # Test round number and orphan consultation flags
        record = self.make_record(nominal=Decimal("200000"), category=FeeCategory.SPECIAL_CONSULTATION)
        self.assertIn("round_number", record.anomaly_flags)
        self.assertIn("orphan_consultation", record.anomaly_flags)

    def test_possible_duplicate_flag(self):  # Test possible duplicate flag
        self.make_record()
        second = self.make_record()
        second.refresh_from_db()
        self.assertIn("possible_duplicate", second.anomaly_flags)

    def test_rapid_creation_flag(self):  # Test rapid creation flag
        records = [self.make_record(nominal=Decimal("50000") + i) for i in range(7)]
        self.assertNotIn("rapid_creation", records[5].anomaly_flags)
        self.assertIn("rapid_creation", records[6].anomaly_flags)

    def test_creation_counter_alert(self):  # Test creation counter alert
        cache.set(creation_counter_key(self.doctor.pk), 20, 300)
        with self.assertLogs("jaspel.integrity", level="CRITICAL") as logs:
            self.make_record()
        self.assertIn("excessive JASPEL creation", logs.output[0])
        self.assertEqual(cache.get(creation_counter_key(self.doctor.pk)), 21)

    @override_settings(JASPEL_PRODUCTION_MODE=True)
    def test_blocked_create_does_not_count(self):  # Test blocked create does not count
        with self.assertRaises(SuspectedTestData):
            self.make_record(nominal=Decimal("123456"))
        self.assertIsNone(cache.get(creation_counter_key(self.doctor.pk)))
        self.make_record()
        self.assertEqual(cache.get(creation_counter_key(self.doctor.pk)), 1)

    def test_nominal_change_on_approved_record(self):  # Test nominal change on approved record
        record = self.make_record()
        fee_record_writer.update(record, {"validation_status": FeeStatus.APPROVED}, actor=self.treasurer)
        with self.assertRaises(RecordImmutable):
            fee_record_writer.update(record, {"nominal": Decimal("60000")}, actor=self.treasurer)
        record.refresh_from_db()
        self.assertEqual(record.nominal, Decimal("50000.00"))

    def test_approval_requires_capability(self):  # Test approval requires capability
        record = self.make_record()
        with self.assertRaises(Unauthorized):
            fee_record_writer.update(record, {"validation_status": FeeStatus.APPROVED}, actor=self.doctor)

        updated = fee_record_writer.update(record, {"validation_status": FeeStatus.APPROVED}, actor=self.treasurer)
        self.assertEqual(updated.validated_by, self.treasurer)
        self.assertIsNotNone(updated.validated_at)

    def test_pending_update_syncs_total(self):  # Test pending update syncs total
        record = self.make_record()
        updated = fee_record_writer.update(record, {"nominal": Decimal("55000")}, actor=self.treasurer)
        self.assertEqual(updated.total, Decimal("55000"))

    def test_unknown_field_rejected(self):  # Test unknown field rejected
        record = self.make_record()
        with self.assertRaises(FeeValidationError):
            fee_record_writer.update(record, {"beneficiary": self.paramedic}, actor=self.treasurer)

    def test_records_past_retention_are_protected(self):  # Test records past retention are protected
        record = self.make_record()
        FeeRecord.objects.filter(pk=record.pk).update(created_at=timezone.now() - timedelta(days=40))
        with self.assertRaises(RecordImmutable):
            fee_record_writer.update(record, {"note": "koreksi"}, actor=self.treasurer)

    def test_delete_approved_record(self):  # Test delete approved record
        record = self.make_record()
        fee_record_writer.update(record, {"validation_status": FeeStatus.APPROVED}, actor=self.treasurer)
        with self.assertRaises(RecordImmutable):
            fee_record_writer.delete(record, actor=self.treasurer)
        self.assertTrue(FeeRecord.objects.filter(pk=record.pk).exists())

    def test_reset_status_bypasses_protection(self):  # Test reset status bypasses protection
        record = self.make_record()
        fee_record_writer.update(record, {"validation_status": FeeStatus.APPROVED}, actor=self.treasurer)
        reset = fee_record_writer.reset_status(record, actor=self.treasurer, note="audit")
        self.assertEqual(reset.validation_status, FeeStatus.PENDING)
        self.assertIsNone(reset.validated_by)
        self.assertIn("audit", reset.note)


class FeeRecordWriterConflictTest(JaspelFixturesMixin, TestCase):  # FeeRecordWriterConflictTest class implementation
    def test_procedure_key_insert_or_ignore(self):  # Test procedure key insert or ignore
        procedure = self.make_procedure()
        first = self.make_record(source_procedure=procedure, ignore_conflicts=True)
        second = self.make_record(source_procedure=procedure, ignore_conflicts=True)
        self.assertIsNotNone(first)
        self.assertIsNone(second)
        self.assertEqual(FeeRecord.objects.filter(source_procedure=procedure, beneficiary=self.doctor).count(), 1)

    def test_daily_patient_count_key_insert_or_ignore(self):  # Test daily patient count key insert or ignore
        fields = {"category": FeeCategory.PATIENT_COUNT_DAILY, "nominal": Decimal("210000"), "ignore_conflicts": True}
        self.assertIsNotNone(self.make_record(**fields))
        self.assertIsNone(self.make_record(**fields))
        self.assertEqual(
            FeeRecord.objects.filter(beneficiary=self.doctor, category=FeeCategory.PATIENT_COUNT_DAILY).count(), 1
        )

    def test_conflict_propagates_without_ignore(self):  # Test conflict propagates without ignore
        procedure = self.make_procedure()
        self.make_record(source_procedure=procedure)
        with self.assertRaises(IntegrityError):
            self.make_record(source_procedure=procedure)
        self.assertEqual(FeeRecord.objects.filter(source_procedure=procedure).count(), 1)

        self.make_record(category=FeeCategory.PATIENT_COUNT_DAILY)
        with self.assertRaises(IntegrityError):
            self.make_record(category=FeeCategory.PATIENT_COUNT_DAILY)

    def test_ignored_conflict_publishes_nothing(self):  # Test ignored conflict publishes nothing
        procedure = self.make_procedure()
        self.make_record(source_procedure=procedure)
        created = self.listen(fee_record_created)
        with self.captureOnCommitCallbacks(execute=True):
            self.make_record(source_procedure=procedure, ignore_conflicts=True)
        self.assertEqual(created, [])
        self.assertEqual(cache.get(creation_counter_key(self.doctor.pk)), 1)


class FeeCacheTest(JaspelFixturesMixin, TestCase):  # FeeCacheTest class implementation
    def summary(self):
        return beneficiary_month_summary(self.doctor.pk, self.today.year, self.today.month)

    def test_create_increments_cached_summary(self):  # Test create increments cached summary
        self.assertEqual(self.summary()["count"], 0)
        with self.captureOnCommitCallbacks(execute=True):
            self.make_record(nominal=Decimal("50000"))
        summary = self.summary()
        self.assertEqual(summary["count"], 1)
        self.assertEqual(summary["total"], Decimal("50000"))
        self.assertEqual(summary["pending_count"], 1)

    def test_create_leaves_uncached_summary_absent(self):  # Test create leaves uncached summary absent
        with self.captureOnCommitCallbacks(execute=True):
            self.make_record()
        self.assertIsNone(cache.get(month_key(self.doctor.pk, self.today.year, self.today.month)))

    def test_delete_decrements_cached_summary(self):  # Test delete decrements cached summary
        with self.captureOnCommitCallbacks(execute=True):
            record = self.make_record(nominal=Decimal("50000"))
        self.assertEqual(self.summary()["total"], Decimal("50000"))

        with self.captureOnCommitCallbacks(execute=True):
            fee_record_writer.delete(record, actor=self.treasurer)
        summary = self.summary()
        self.assertEqual(summary["count"], 0)
        self.assertEqual(summary["total"], Decimal("0"))
        self.assertFalse(FeeRecord.objects.filter(pk=record.pk).exists())

    def test_status_change_invalidates_summary(self):  # Test status change invalidates summary
        record = self.make_record()
        self.summary()
        with self.captureOnCommitCallbacks(execute=True):
            fee_record_writer.update(record, {"validation_status": FeeStatus.APPROVED}, actor=self.treasurer)
        self.assertIsNone(cache.get(month_key(self.doctor.pk, self.today.year, self.today.month)))
        self.assertEqual(self.summary()["approved_count"], 1)


class ProcedureValidationTest(JaspelFixturesMixin, TestCase):  # ProcedureValidationTest class implementation
    def test_approval_settles_fee(self):  # Test approval settles fee
        procedure = self.make_procedure()
        created_events = self.listen(fee_record_created)

        with self.captureOnCommitCallbacks(execute=True):
            result = submit_procedure_validation(procedure.pk, "approve", self.treasurer)

        self.assertEqual(result["validation_status"], ValidationStatus.APPROVED)
        self.assertEqual(result["version"], 2)
        self.assertIsNone(result["settlement_error"])

        record = FeeRecord.objects.get(source_procedure=procedure)
        self.assertEqual(record.nominal, Decimal("40000.00"))
        self.assertEqual(record.beneficiary, self.doctor)
        self.assertEqual(record.category, FeeCategory.GENERAL_DOCTOR)
        self.assertEqual(record.validation_status, FeeStatus.APPROVED)
        self.assertEqual(record.validated_by, self.treasurer)
        self.assertTrue(record.note.startswith("AUTO-CREATED"))
        self.assertEqual(len(created_events), 1)
        self.assertEqual(created_events[0].amount, Decimal("40000.00"))

    def test_reapproval_is_idempotent(self):  # Test reapproval is idempotent
        procedure = self.make_procedure()
        submit_procedure_validation(procedure.pk, "approve", self.treasurer)
        result = submit_procedure_validation(procedure.pk, "approve", self.treasurer)
        self.assertEqual(result["fee_records"], [])
        self.assertEqual(FeeRecord.objects.filter(source_procedure=procedure).count(), 1)

    def test_direct_resettlement_creates_nothing(self):  # Test direct resettlement creates nothing
        procedure = self.make_procedure()
        submit_procedure_validation(procedure.pk, "approve", self.treasurer)
        procedure.refresh_from_db()
        self.assertEqual(ProcedureSettlementService().settle(procedure), [])

    def test_rejection_cascades_to_approved_records(self):  # Test rejection cascades to approved records
        procedure = self.make_procedure()
        submit_procedure_validation(procedure.pk, "approve", self.treasurer)
        cascade_events = self.listen(fee_record_rejected_cascade)

        with self.captureOnCommitCallbacks(execute=True):
            result = submit_procedure_validation(procedure.pk, "reject", self.treasurer, comment="Data ganda")

        self.assertEqual(result["rejected_fee_records"], 1)
        record = FeeRecord.objects.get(source_procedure=procedure)
        self.assertEqual(record.validation_status, FeeStatus.REJECTED)
        self.assertIn("Ditolak otomatis", record.note)
        self.assertIn("Data ganda", record.note)
        self.assertEqual(len(cascade_events), 1)
        self.assertEqual(cascade_events[0].affected_count, 1)

    def test_rejection_without_records_emits_no_cascade(self):  # Test rejection without records emits no cascade
        procedure = self.make_procedure()
        cascade_events = self.listen(fee_record_rejected_cascade)
        with self.captureOnCommitCallbacks(execute=True):
            submit_procedure_validation(procedure.pk, "reject", self.treasurer, comment="Salah input")
        self.assertEqual(cascade_events, [])

    def test_stale_version(self):  # Test stale version
        procedure = self.make_procedure()
        with self.assertRaises(StaleProcedureError):
            submit_procedure_validation(procedure.pk, "approve", self.treasurer, expected_version=5)
        procedure.refresh_from_db()
        self.assertEqual(procedure.validation_status, ValidationStatus.PENDING)

    def test_unknown_decision(self):  # Test unknown decision
        procedure = self.make_procedure()
        with self.assertRaises(InvalidTransition):
            submit_procedure_validation(procedure.pk, "maybe", self.treasurer)

    def test_only_primary_performer_is_settled(self):  # Test only primary performer is settled
        non_paramedic = Participant.objects.create_user(
            email="staff@test.com", password="test123", role="non_paramedic"
        )
        procedure = self.make_procedure(
            doctor_fee=Decimal("30000"),
            paramedic=self.paramedic, paramedic_fee=Decimal("30000"),
            non_paramedic=non_paramedic, non_paramedic_fee=Decimal("30000"),
        )
        submit_procedure_validation(procedure.pk, "approve", self.treasurer)

        records = FeeRecord.objects.filter(source_procedure=procedure)
        self.assertEqual(records.count(), 1)
        record = records.get()
        self.assertEqual(record.beneficiary, self.doctor)
        self.assertEqual(record.category, FeeCategory.GENERAL_DOCTOR)
        settled = records.aggregate(total=Sum("nominal"))["total"]
        self.assertLessEqual(settled, procedure.tariff)
        self.assertEqual(settled, Decimal("40000.00"))

    def test_primary_performer_without_shares(self):  # Test primary performer without shares
        procedure = self.make_procedure(doctor_fee=Decimal("0"))
        self.assertEqual(primary_performer(procedure), (self.doctor, FeeCategory.GENERAL_DOCTOR))

    def test_category_follows_first_paid_role(self):  # Test category follows first paid role
        procedure = self.make_procedure(
            doctor_fee=Decimal("0"), paramedic=self.paramedic, paramedic_fee=Decimal("10000")
        )
        self.assertEqual(primary_performer(procedure), (self.paramedic, FeeCategory.PARAMEDIC))
        submit_procedure_validation(procedure.pk, "approve", self.treasurer)
        record = FeeRecord.objects.get(source_procedure=procedure)
        self.assertEqual(record.beneficiary, self.paramedic)
        self.assertEqual(record.category, FeeCategory.PARAMEDIC)

    def test_unexpected_settlement_failure_is_deferred(self):  # Test unexpected settlement failure is deferred
        procedure = self.make_procedure()
        with patch.object(ProcedureSettlementService, "settle", side_effect=RuntimeError("database hiccup")), \
                patch.object(settle_approved_procedure, "delay") as delay:
            with self.captureOnCommitCallbacks(execute=True):
                result = submit_procedure_validation(procedure.pk, "approve", self.treasurer)

        self.assertEqual(result["settlement_error"], "settlement_deferred")
        self.assertEqual(result["validation_status"], ValidationStatus.APPROVED)
        delay.assert_called_once_with(procedure.pk)

    def test_deferred_procedure_task_settles(self):  # Test deferred procedure task settles
        procedure = self.make_procedure()
        Procedure.objects.filter(pk=procedure.pk).update(
            validation_status=ValidationStatus.APPROVED, validated_by=self.treasurer
        )
        result = settle_approved_procedure.apply(args=[procedure.pk]).get()
        self.assertEqual(result["settled"], 1)
        self.assertEqual(FeeRecord.objects.filter(source_procedure=procedure).count(), 1)

    def test_reset_returns_to_pending(self):  # Test reset returns to pending
        procedure = self.make_procedure()
        submit_procedure_validation(procedure.pk, "approve", self.treasurer)
        reset = reset_procedure_validation(procedure.pk, self.treasurer, "Koreksi tarif")
        self.assertEqual(reset.validation_status, ValidationStatus.PENDING)
        self.assertEqual(reset.version, 3)
        self.assertIsNone(reset.validated_by)


class PatientCountSettlementTest(JaspelFixturesMixin, TestCase):  # PatientCountSettlementTest class implementation
    def setUp(self):  # Setup
        super().setUp()
        self.date = self.today - timedelta(days=1)

    def make_count(self, general=30, insurance=20, **kwargs):
        return DailyPatientCount.objects.create(
            date=self.date, doctor=self.doctor, general_patients=general, insurance_patients=insurance, **kwargs
        )

    def test_approval_settles_daily_fee(self):  # Test approval settles daily fee
        self.make_formulas()
        count = self.make_count()
        with self.captureOnCommitCallbacks(execute=True):
            approve_patient_count(count.pk, self.treasurer)

        record = FeeRecord.objects.get(category=FeeCategory.PATIENT_COUNT_DAILY)
        self.assertEqual(record.nominal, Decimal("210000.00"))
        self.assertEqual(record.beneficiary, self.doctor)
        self.assertEqual(record.settlement_date, self.date)
        self.assertEqual(record.validation_status, FeeStatus.APPROVED)
        self.assertEqual(record.validated_by, self.treasurer)
        self.assertEqual(record.source_patient_count_id, count.pk)

        self.assertIsNone(patient_count_settlement_service.settle(count.pk))
        self.assertEqual(FeeRecord.objects.filter(category=FeeCategory.PATIENT_COUNT_DAILY).count(), 1)

    def test_below_threshold_creates_nothing(self):  # Test below threshold creates nothing
        self.make_formulas()
        count = self.make_count(general=20, insurance=15)
        with self.captureOnCommitCallbacks(execute=True):
            approve_patient_count(count.pk, self.treasurer)
        count.refresh_from_db()
        self.assertTrue(count.is_approved)
        self.assertFalse(FeeRecord.objects.exists())

    def test_pending_count_is_not_settled(self):  # Test pending count is not settled
        self.make_formulas()
        count = self.make_count()
        self.assertIsNone(patient_count_settlement_service.settle(count.pk))

    def test_rejection_cascades_to_daily_fee(self):  # Test rejection cascades to daily fee
        self.make_formulas()
        count = self.make_count()
        with self.captureOnCommitCallbacks(execute=True):
            approve_patient_count(count.pk, self.treasurer)
        reject_patient_count(count.pk, self.treasurer, "Jumlah salah")
        record = FeeRecord.objects.get(source_patient_count=count)
        self.assertEqual(record.validation_status, FeeStatus.REJECTED)

    def test_missing_formula_reports_failure(self):  # Test missing formula reports failure
        count = self.make_count(validation_status=ValidationStatus.APPROVED, validated_by=self.treasurer)
        failures = self.listen(settlement_failed)
        with self.captureOnCommitCallbacks(execute=True):
            result = settle_daily_patient_count.apply(args=[count.pk]).get()
        self.assertEqual(result["error"], "no_active_formula")
        self.assertEqual(len(failures), 1)
        self.assertFalse(FeeRecord.objects.exists())

    def test_transient_failure_is_retried(self):  # Test transient failure is retried
        count = self.make_count(validation_status=ValidationStatus.APPROVED)
        with patch.object(PatientCountSettlementService, "settle", side_effect=RuntimeError("connection reset")), \
                patch.object(settle_daily_patient_count, "retry", side_effect=Retry()) as retry:
            result = settle_daily_patient_count.apply(args=[count.pk], throw=False)
        self.assertEqual(result.state, "RETRY")
        retry.assert_called_once()
        self.assertEqual(retry.call_args.kwargs["countdown"], 10)
        self.assertEqual(retry.call_args.kwargs["args"], (count.pk,))
        self.assertIn("first_attempt_at", retry.call_args.kwargs["kwargs"])
        self.assertEqual(retry.call_args.kwargs["max_retries"], 2)

    def test_exhausted_attempts_report_failure(self):  # Test exhausted attempts report failure
        count = self.make_count(validation_status=ValidationStatus.APPROVED)
        failures = self.listen(settlement_failed)
        with patch.object(PatientCountSettlementService, "settle", side_effect=RuntimeError("connection reset")):
            with self.captureOnCommitCallbacks(execute=True):
                with self.assertRaises(RuntimeError):
                    settle_daily_patient_count.apply(args=[count.pk], retries=2, throw=True)
        self.assertEqual(len(failures), 1)
        self.assertEqual(failures[0].patient_count_id, count.pk)
        self.assertEqual(failures[0].attempts, 3)

    def test_deadline_stops_retries(self):  # Test deadline stops retries
        count = self.make_count(validation_status=ValidationStatus.APPROVED)
        started = (timezone.now() - timedelta(minutes=10)).isoformat()
        with patch.object(PatientCountSettlementService, "settle", side_effect=RuntimeError("timeout")) as settle:
            with self.assertRaises(RuntimeError):
                settle_daily_patient_count.apply(
                    args=[count.pk], kwargs={"first_attempt_at": started}, throw=True
                )
        self.assertEqual(settle.call_count, 1)

    @override_settings(JASPEL_SETTLEMENT_MAX_ATTEMPTS=1)
    def test_max_attempts_read_at_run_time(self):  # Test max attempts read at run time
        count = self.make_count(validation_status=ValidationStatus.APPROVED)
        failures = self.listen(settlement_failed)
        with patch.object(PatientCountSettlementService, "settle", side_effect=RuntimeError("connection reset")), \
                patch.object(settle_daily_patient_count, "retry") as retry:
            with self.captureOnCommitCallbacks(execute=True):
                with self.assertRaises(RuntimeError):
                    settle_daily_patient_count.apply(args=[count.pk], throw=True)
        retry.assert_not_called()
        self.assertEqual(len(failures), 1)
        self.assertEqual(failures[0].attempts, 1)

    def test_requeue_unsettled(self):  # Test requeue unsettled
        count = self.make_count(validation_status=ValidationStatus.APPROVED)
        with patch.object(settle_daily_patient_count, "delay") as delay:
            result = requeue_unsettled_patient_counts()
        self.assertEqual(result["requeued"], [count.pk])
        delay.assert_called_once_with(count.pk)


class PreviewAndRecalculationTest(JaspelFixturesMixin, TestCase):  # PreviewAndRecalculationTest class implementation
    def test_preview_procedure(self):  # Test preview procedure
        procedure = self.make_procedure()
        result = preview_fee(procedure=procedure)
        self.assertEqual(result["amount"], Decimal("40000.00"))
        self.assertEqual(result["beneficiary"], str(self.doctor.pk))
        self.assertEqual(preview_fee(procedure=procedure, formula_override=Decimal("10"))["amount"], Decimal("10000.00"))
        self.assertFalse(FeeRecord.objects.exists())

    def test_preview_counts_with_override(self):  # Test preview counts with override
        result = preview_fee(
            general_patients=30,
            insurance_patients=20,
            formula_override={"threshold": 40, "general_tier": 5000, "insurance_tier": 3000},
        )
        self.assertEqual(result["amount"], Decimal("210000.00"))
        self.assertIsNone(result["formula"])

    def test_preview_without_input(self):  # Test preview without input
        with self.assertRaises(FeeValidationError):
            preview_fee()

    def test_recalculate_requeues_missing_settlements(self):  # Test recalculate requeues missing settlements
        count = DailyPatientCount.objects.create(
            date=self.today, doctor=self.doctor, general_patients=30, insurance_patients=20,
            validation_status=ValidationStatus.APPROVED,
        )
        procedure = self.make_procedure()
        Procedure.objects.filter(pk=procedure.pk).update(validation_status=ValidationStatus.APPROVED)
        beneficiary_month_summary(self.doctor.pk, self.today.year, self.today.month)

        with patch.object(settle_daily_patient_count, "delay") as settle_count, \
                patch.object(settle_approved_procedure, "delay") as settle_procedure:
            with self.captureOnCommitCallbacks(execute=True):
                result = recalculate_settlement(self.doctor.pk, self.today - timedelta(days=3), self.today)

        self.assertEqual(result["requeued_patient_counts"], [count.pk])
        self.assertEqual(result["requeued_procedures"], [procedure.pk])
        settle_count.assert_called_once_with(count.pk)
        settle_procedure.assert_called_once_with(procedure.pk)
        self.assertIsNone(cache.get(month_key(self.doctor.pk, self.today.year, self.today.month)))

    def test_recalculate_rejects_inverted_range(self):  # Test recalculate rejects inverted range
        with self.assertRaises(InvalidTransition):
            recalculate_settlement(self.doctor.pk, self.today, self.today - timedelta(days=1))


class IntegrityCommandTest(JaspelFixturesMixin, TestCase):  # IntegrityCommandTest class implementation
    def test_reports_and_fixes_total_mismatch(self):  # Test reports and fixes total mismatch
        record = self.make_record()
        FeeRecord.objects.filter(pk=record.pk).update(total=Decimal("1"))

        out = StringIO()
        call_command("validate_jaspel_integrity", stdout=out)
        self.assertIn("Total differs from nominal", out.getvalue())
        record.refresh_from_db()
        self.assertEqual(record.total, Decimal("1.00"))

        call_command("validate_jaspel_integrity", "--fix", stdout=StringIO())
        record.refresh_from_db()
        self.assertEqual(record.total, record.nominal)

    def test_recalculate_command(self):  # Test recalculate command
        out = StringIO()
        with patch.object(settle_daily_patient_count, "delay"):
            call_command(
                "recalculate_jaspel",
                "--beneficiary", str(self.doctor.pk),
                "--start", str(self.today - timedelta(days=1)),
                "--end", str(self.today),
                stdout=out,
            )
        self.assertIn("cache keys invalidated", out.getvalue())


class JaspelAPITest(JaspelFixturesMixin, APITestCase):  # JaspelAPITest class implementation
    def test_validation_requires_capability(self):  # Test validation requires capability
        procedure = self.make_procedure()
        self.client.force_authenticate(user=self.doctor)
        url = reverse("jaspel:procedure-validation", kwargs={"pk": procedure.pk})
        response = self.client.post(url, {"decision": "approve"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_approve_procedure(self):  # Test approve procedure
        procedure = self.make_procedure()
        self.client.force_authenticate(user=self.treasurer)
        url = reverse("jaspel:procedure-validation", kwargs={"pk": procedure.pk})
        response = self.client.post(url, {"decision": "approve", "expected_version": 1}, format="json")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data["fee_records"]), 1)

    def test_reject_requires_comment(self):  # Test reject requires comment
        procedure = self.make_procedure()
        self.client.force_authenticate(user=self.treasurer)
        url = reverse("jaspel:procedure-validation", kwargs={"pk": procedure.pk})
        response = self.client.post(url, {"decision": "reject"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_stale_version_is_bad_request(self):  # Test stale version is bad request
        procedure = self.make_procedure()
        self.client.force_authenticate(user=self.treasurer)
        url = reverse("jaspel:procedure-validation", kwargs={"pk": procedure.pk})
        response = self.client.post(url, {"decision": "approve", "expected_version": 4}, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["code"], "stale_procedure")

    def test_patch_approved_nominal_conflicts(self):  # Test patch approved nominal conflicts
        procedure = self.make_procedure()
        submit_procedure_validation(procedure.pk, "approve", self.treasurer)
        record = FeeRecord.objects.get(source_procedure=procedure)

        self.client.force_authenticate(user=self.treasurer)
        url = reverse("jaspel:fee-record-detail", kwargs={"pk": record.pk})
        response = self.client.patch(url, {"nominal": "45000.00"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data["code"], "record_immutable")

    def test_performer_cannot_patch_own_nominal(self):  # Test performer cannot patch own nominal
        record = self.make_record()
        self.client.force_authenticate(user=self.doctor)
        url = reverse("jaspel:fee-record-detail", kwargs={"pk": record.pk})

        response = self.client.patch(url, {"nominal": "90000.00"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(response.data["code"], "unauthorized")
        record.refresh_from_db()
        self.assertEqual(record.nominal, Decimal("50000.00"))

        response = self.client.patch(url, {"note": "Shift pengganti"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["note"], "Shift pengganti")

    def test_treasurer_can_patch_pending_nominal(self):  # Test treasurer can patch pending nominal
        record = self.make_record()
        self.client.force_authenticate(user=self.treasurer)
        url = reverse("jaspel:fee-record-detail", kwargs={"pk": record.pk})
        response = self.client.patch(url, {"nominal": "55000.00"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        record.refresh_from_db()
        self.assertEqual(record.nominal, Decimal("55000.00"))
        self.assertEqual(record.total, Decimal("55000.00"))

    def test_delete_approved_conflicts(self):  # Test delete approved conflicts
        procedure = self.make_procedure()
        submit_procedure_validation(procedure.pk, "approve", self.treasurer)
        record = FeeRecord.objects.get(source_procedure=procedure)

        self.client.force_authenticate(user=self.treasurer)
        response = self.client.delete(reverse("jaspel:fee-record-detail", kwargs={"pk": record.pk}))
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)

    def test_performer_only_sees_own_records(self):  # Test performer only sees own records
        own = self.make_record()
        self.make_record(beneficiary=self.paramedic, category=FeeCategory.PARAMEDIC)

        self.client.force_authenticate(user=self.doctor)
        response = self.client.get(reverse("jaspel:fee-record-list"))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual([r["id"] for r in response.data["results"]], [own.pk])

    def test_summary_of_other_beneficiary_forbidden(self):  # Test summary of other beneficiary forbidden
        self.client.force_authenticate(user=self.doctor)
        url = reverse("jaspel:fee-record-summary")
        response = self.client.get(url, {"beneficiary": str(self.paramedic.pk)})
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

        response = self.client.get(url)
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["count"], 0)

    def test_preview(self):  # Test preview
        procedure = self.make_procedure()
        self.client.force_authenticate(user=self.doctor)
        response = self.client.post(reverse("jaspel:fee-preview"), {"procedure": procedure.pk}, format="json")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["amount"], Decimal("40000.00"))

    def test_preview_without_formula(self):  # Test preview without formula
        self.client.force_authenticate(user=self.doctor)
        response = self.client.post(
            reverse("jaspel:fee-preview"), {"general_patients": 30, "insurance_patients": 20}, format="json"
        )
        self.assertEqual(response.status_code, status.HTTP_422_UNPROCESSABLE_ENTITY)

    def test_recalculate(self):  # Test recalculate
        url = reverse("jaspel:recalculate")
        payload = {"beneficiary": str(self.doctor.pk), "start_date": str(self.today), "end_date": str(self.today)}

        self.client.force_authenticate(user=self.doctor)
        self.assertEqual(self.client.post(url, payload, format="json").status_code, status.HTTP_403_FORBIDDEN)

        self.client.force_authenticate(user=self.treasurer)
        response = self.client.post(url, payload, format="json")
        self.assertEqual(response.status_code, status.HTTP_202_ACCEPTED)
        self.assertEqual(response.data["requeued_patient_counts"], [])
