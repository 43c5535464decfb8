from django.contrib import admin
from .models import Patient, ProcedureType, Procedure, DailyPatientCount


@admin.register(Patient)
class PatientAdmin(admin.ModelAdmin):
    list_display = ['medical_record_number', 'full_name', 'date_of_birth', 'gender']
    search_fields = ['medical_record_number', 'full_name']


@admin.register(ProcedureType)
class ProcedureTypeAdmin(admin.ModelAdmin):
    list_display = ['code', 'name', 'category', 'default_tariff', 'fee_percentage', 'is_active']
    list_filter = ['category', 'is_active']
    search_fields = ['code', 'name']


@admin.register(Procedure)
class ProcedureAdmin(admin.ModelAdmin):
    list_display = ['id', 'procedure_type', 'patient', 'doctor', 'tariff', 'validation_status', 'performed_at']
    list_filter = ['validation_status', 'procedure_type__category', 'performed_at']
    search_fields = ['patient__full_name', 'patient__medical_record_number', 'doctor__full_name']
    readonly_fields = ['validation_status', 'validated_by', 'validated_at', 'version', 'created_at', 'updated_at']
    raw_id_fields = ['patient', 'doctor', 'paramedic', 'non_paramedic', 'input_by']

    fieldsets = (
        ('Tindakan', {
            'fields': ('patient', 'procedure_type', 'performed_at')
        }),
        ('Pelaksana', {
            'fields': ('doctor', 'paramedic', 'non_paramedic')
        }),
        ('Tarif & Jasa', {
            'fields': ('tariff', 'doctor_fee', 'paramedic_fee', 'non_paramedic_fee')
        }),
        ('Validasi', {
            'fields': ('validation_status', 'validated_by', 'validated_at', 'validation_comment', 'version')
        }),
        ('Audit', {
            'fields': ('input_by', 'created_at', 'updated_at'),
            'classes': ('collapse',)
        }),
    )


@admin.register(DailyPatientCount)
class DailyPatientCountAdmin(admin.ModelAdmin):
    list_display = ['date', 'doctor', 'clinic_unit', 'shift', 'general_patients', 'insurance_patients', 'validation_status']
    list_filter = ['validation_status', 'clinic_unit', 'shift', 'date']
    search_fields = ['doctor__full_name', 'doctor__email']
    readonly_fields = ['validation_status', 'validated_by', 'validated_at', 'created_at', 'updated_at']
    raw_id_fields = ['doctor', 'input_by']
