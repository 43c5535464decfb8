from decimal import Decimal
from django.core.cache import cache
from django.core.exceptions import ValidationError
from django.test import TestCase
from django.utils import timezone
from core.models import Participant
from jaspel.events import validation_status_reset
from .models import DailyPatientCount, Patient, Procedure, ProcedureType, ValidationStatus


class ProcedureModelTest(TestCase):  # ProcedureModelTest class implementation
    def setUp(self):  # Setup
        cache.clear()
        self.doctor = Participant.objects.create_user(
            email="doctor@test.com", password="test123", role="doctor"
        )
        self.paramedic = Participant.objects.create_user(
            email="paramedic@test.com", password="test123", role="paramedic"
        )
        self.validator = Participant.objects.create_user(
            email="treasurer@test.com", password="test123", role="treasurer"
        )
        self.patient = Patient.objects.create(medical_record_number="RM-0001", full_name="Pasien Uji")
        self.procedure_type = ProcedureType.objects.create(
            code="INJ", name="Injeksi", default_tariff=100000, fee_percentage=Decimal("40")
        )

    def _procedure(self, **kwargs):
        fields = {
            "patient": self.patient,
            "procedure_type": self.procedure_type,
            "doctor": self.doctor,
            "tariff": Decimal("100000"),
            "doctor_fee": Decimal("40000"),
        }
        fields.update(kwargs)
        return Procedure.objects.create(**fields)

    def test_defaults(self):  # Test defaults
        procedure = self._procedure()
        self.assertEqual(procedure.validation_status, ValidationStatus.PENDING)
        self.assertEqual(procedure.version, 1)
        self.assertEqual(procedure.settlement_date, timezone.localdate())

    def test_shares_cannot_exceed_tariff(self):  # Test shares cannot exceed tariff
        with self.assertRaises(ValidationError):
            self._procedure(doctor_fee=Decimal("60000"), paramedic=self.paramedic, paramedic_fee=Decimal("50000"))
        self.assertEqual(Procedure.objects.count(), 0)

    def test_performer_shares_priority(self):  # Test performer shares priority
        procedure = self._procedure(paramedic=self.paramedic, paramedic_fee=Decimal("10000"))
        roles = [role for role, _, _ in procedure.performer_shares()]
        self.assertEqual(roles, ["doctor", "paramedic", "non_paramedic"])
        self.assertEqual(procedure.performer_ids(), [self.doctor.pk, self.paramedic.pk])

    def test_critical_edit_resets_approved_procedure(self):  # Test critical edit resets approved procedure
        procedure = self._procedure()
        Procedure.objects.filter(pk=procedure.pk).update(
            validation_status=ValidationStatus.APPROVED, validated_by=self.validator, validated_at=timezone.now()
        )
        procedure.refresh_from_db()

        received = []

        def receiver(sender, event, **kwargs):
            received.append(event)

        validation_status_reset.connect(receiver)
        try:
            with self.captureOnCommitCallbacks(execute=True):
                procedure.tariff = Decimal("120000")
                procedure.save()
        finally:
            validation_status_reset.disconnect(receiver)

        procedure.refresh_from_db()
        self.assertEqual(procedure.validation_status, ValidationStatus.PENDING)
        self.assertIsNone(procedure.validated_by)
        self.assertEqual(procedure.version, 2)
        self.assertIn("tariff", procedure.validation_comment)
        self.assertEqual(len(received), 1)
        self.assertEqual(received[0].model_type, "procedure")
        self.assertEqual(received[0].changed_fields, ("tariff",))

    def test_non_critical_edit_keeps_approval(self):  # Test non critical edit keeps approval
        procedure = self._procedure()
        Procedure.objects.filter(pk=procedure.pk).update(validation_status=ValidationStatus.APPROVED)
        procedure.refresh_from_db()
        procedure.validation_comment = "Catatan tambahan"
        procedure.save()
        procedure.refresh_from_db()
        self.assertEqual(procedure.validation_status, ValidationStatus.APPROVED)
        self.assertEqual(procedure.version, 1)


class DailyPatientCountModelTest(TestCase):  # DailyPatientCountModelTest class implementation
    def setUp(self):  # Setup
        cache.clear()
        self.doctor = Participant.objects.create_user(
            email="doctor@test.com", password="test123", role="doctor"
        )

    def test_total_patients(self):  # Test total patients
        count = DailyPatientCount.objects.create(
            date=timezone.localdate(), doctor=self.doctor, general_patients=30, insurance_patients=20
        )
        self.assertEqual(count.total_patients, 50)
        self.assertFalse(count.is_approved)

    def test_critical_edit_resets_approved_count(self):  # Test critical edit resets approved count
        count = DailyPatientCount.objects.create(
            date=timezone.localdate(), doctor=self.doctor, general_patients=30, insurance_patients=20,
            validation_status=ValidationStatus.APPROVED,
        )
        count.insurance_patients = 25
        with self.captureOnCommitCallbacks(execute=True):
            count.save()
        count.refresh_from_db()
        self.assertEqual(count.validation_status, ValidationStatus.PENDING)
        self.assertIn("insurance_patients", count.validation_note)
