from django.db import models


class FeeCategory(models.TextChoices):
    DOCTOR_SHIFT_MORNING = "doctor_shift_morning", "Dokter Jaga Pagi"
    DOCTOR_SHIFT_AFTERNOON = "doctor_shift_afternoon", "Dokter Jaga Siang"
    DOCTOR_SHIFT_NIGHT = "doctor_shift_night", "Dokter Jaga Malam"
    EMERGENCY_PROCEDURE = "emergency_procedure", "Tindakan Emergency"
    SPECIAL_CONSULTATION = "special_consultation", "Konsultasi Khusus"
    PARAMEDIC = "paramedic", "Paramedis"
    NON_PARAMEDIC = "non_paramedic", "Non-Paramedis"
    GENERAL_DOCTOR = "general_doctor", "Dokter Umum"
    SPECIALIST_DOCTOR = "specialist_doctor", "Dokter Spesialis"
    PATIENT_COUNT_DAILY = "patient_count_daily", "Jaspel Jumlah Pasien Harian"


class FeeStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    APPROVED = "approved", "Disetujui"
    REJECTED = "rejected", "Ditolak"


class ShiftWindow(models.TextChoices):
    MORNING = "morning", "Pagi"
    AFTERNOON = "afternoon", "Sore"


class PayerType(models.TextChoices):
    GENERAL = "general", "Umum"
    INSURANCE = "insurance", "BPJS"


class Decision(models.TextChoices):
    APPROVE = "approve", "Setujui"
    REJECT = "reject", "Tolak"


# Performer role -> settlement category, in attribution priority order
ROLE_CATEGORY_PRIORITY = (
    ("doctor", FeeCategory.GENERAL_DOCTOR),
    ("paramedic", FeeCategory.PARAMEDIC),
    ("non_paramedic", FeeCategory.NON_PARAMEDIC),
)

# Anomaly flag names stored on FeeRecord.anomaly_flags
FLAG_ROUND_NUMBER = "round_number"
FLAG_DUMMY_PATTERN = "dummy_pattern"
FLAG_ORPHAN_CONSULTATION = "orphan_consultation"
FLAG_RAPID_CREATION = "rapid_creation"
FLAG_POSSIBLE_DUPLICATE = "possible_duplicate"

# Fields whose change counts as significant for logging and cache invalidation
SIGNIFICANT_FIELDS = ("validation_status", "category", "nominal")
