from rest_framework import serializers
from clinical.models import DailyPatientCount, Procedure
from .constants import Decision, FeeCategory, FeeStatus
from .models import FeeRecord


class FeeRecordSerializer(serializers.ModelSerializer):
    beneficiary_name = serializers.CharField(source='beneficiary.full_name', read_only=True)
    validated_by_name = serializers.CharField(source='validated_by.full_name', read_only=True, allow_null=True)
    category_display = serializers.CharField(source='get_category_display', read_only=True)

    class Meta:
        model = FeeRecord
        fields = [
            'id', 'beneficiary', 'beneficiary_name', 'source_procedure', 'source_patient_count',
            'settlement_date', 'category', 'category_display', 'nominal', 'total', 'validation_status',
            'validated_by', 'validated_by_name', 'validated_at', 'created_by', 'note', 'anomaly_flags',
            'created_at', 'updated_at',
        ]
        read_only_fields = fields


class FeeRecordUpdateSerializer(serializers.Serializer):
    """Fields a PATCH may change; the integrity guard decides whether it is allowed."""
    nominal = serializers.DecimalField(max_digits=15, decimal_places=2, required=False)
    total = serializers.DecimalField(max_digits=15, decimal_places=2, required=False)
    category = serializers.ChoiceField(choices=FeeCategory.choices, required=False)
    settlement_date = serializers.DateField(required=False)
    validation_status = serializers.ChoiceField(choices=FeeStatus.choices, required=False)
    note = serializers.CharField(required=False, allow_blank=True)


class ProcedureValidationSerializer(serializers.Serializer):
    decision = serializers.ChoiceField(choices=Decision.choices)
    comment = serializers.CharField(required=False, allow_blank=True, default='')
    expected_version = serializers.IntegerField(required=False, min_value=1, allow_null=True)

    def validate(self, attrs):
        if attrs['decision'] == Decision.REJECT and not attrs.get('comment'):
            raise serializers.ValidationError({'comment': 'Alasan penolakan wajib diisi.'})
        return attrs


class ValidationNoteSerializer(serializers.Serializer):
    note = serializers.CharField(required=False, allow_blank=True, default='')


class ProcedureStatusSerializer(serializers.ModelSerializer):
    class Meta:
        model = Procedure
        fields = ['id', 'validation_status', 'validated_by', 'validated_at', 'validation_comment', 'version']
        read_only_fields = fields


class PatientCountStatusSerializer(serializers.ModelSerializer):
    total_patients = serializers.IntegerField(read_only=True)

    class Meta:
        model = DailyPatientCount
        fields = [
            'id', 'date', 'doctor', 'clinic_unit', 'shift', 'general_patients', 'insurance_patients',
            'total_patients', 'validation_status', 'validated_by', 'validated_at', 'validation_note',
        ]
        read_only_fields = fields


class FormulaOverrideSerializer(serializers.Serializer):
    threshold = serializers.IntegerField(min_value=0)
    general_tier = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0)
    insurance_tier = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0)


class FeePreviewSerializer(serializers.Serializer):
    procedure = serializers.PrimaryKeyRelatedField(queryset=Procedure.objects.all(), required=False)
    patient_count = serializers.PrimaryKeyRelatedField(queryset=DailyPatientCount.objects.all(), required=False)
    general_patients = serializers.IntegerField(min_value=0, required=False)
    insurance_patients = serializers.IntegerField(min_value=0, required=False)
    percentage_override = serializers.DecimalField(
        max_digits=5, decimal_places=2, min_value=0, max_value=100, required=False
    )
    formula_override = FormulaOverrideSerializer(required=False)

    def validate(self, attrs):
        sources = [
            attrs.get('procedure') is not None,
            attrs.get('patient_count') is not None,
            'general_patients' in attrs or 'insurance_patients' in attrs,
        ]
        if sum(sources) != 1:
            raise serializers.ValidationError(
                'Isi tepat satu dari: procedure, patient_count, atau jumlah pasien.'
            )
        return attrs


class RecalculateSerializer(serializers.Serializer):
    beneficiary = serializers.UUIDField()
    start_date = serializers.DateField()
    end_date = serializers.DateField()

    def validate(self, attrs):
        if attrs['start_date'] > attrs['end_date']:
            raise serializers.ValidationError({'end_date': 'Tanggal akhir harus setelah tanggal awal.'})
        return attrs


class SummaryQuerySerializer(serializers.Serializer):
    beneficiary = serializers.UUIDField(required=False)
    year = serializers.IntegerField(min_value=2000, max_value=2100, required=False)
    month = serializers.IntegerField(min_value=1, max_value=12, required=False)
