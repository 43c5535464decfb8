from copy import copy
from django import forms
from django.contrib import admin, messages
from .constants import FeeStatus
from .exceptions import JaspelError
from .integrity import IntegrityGuard, snapshot
from .ledger import UPDATABLE_FIELDS, fee_record_writer
from .models import FeeFormula, FeeRecord


@admin.register(FeeFormula)
class FeeFormulaAdmin(admin.ModelAdmin):
    list_display = ['__str__', 'shift_window', 'threshold', 'general_tier', 'insurance_tier', 'is_active', 'updated_at']
    list_filter = ['shift_window', 'is_active']
    readonly_fields = ['created_at', 'updated_at']


class FeeRecordAdminForm(forms.ModelForm):
    class Meta:
        model = FeeRecord
        fields = [
            'beneficiary', 'source_procedure', 'source_patient_count', 'settlement_date', 'category',
            'nominal', 'total', 'validation_status', 'note',
        ]

    def clean(self):
        cleaned_data = super().clean()
        if self.errors:
            return cleaned_data

        guard = IntegrityGuard()
        try:
            if self.instance.pk is None:
                guard.validate_fields(FeeRecord(
                    settlement_date=cleaned_data.get('settlement_date'),
                    category=cleaned_data.get('category'),
                    nominal=cleaned_data.get('nominal'),
                ))
            else:
                stored = FeeRecord.objects.get(pk=self.instance.pk)
                candidate = copy(stored)
                for field in UPDATABLE_FIELDS:
                    if field in cleaned_data:
                        setattr(candidate, field, cleaned_data[field])
                guard.validate_update(candidate, snapshot(stored), getattr(self, 'actor', None))
        except JaspelError as e:
            raise forms.ValidationError(e.message, code=e.code)
        return cleaned_data


@admin.register(FeeRecord)
class FeeRecordAdmin(admin.ModelAdmin):
    form = FeeRecordAdminForm
    list_display = ['id', 'beneficiary', 'category', 'nominal', 'settlement_date', 'validation_status', 'created_at']
    list_filter = ['validation_status', 'category', 'settlement_date']
    search_fields = ['beneficiary__full_name', 'beneficiary__email', 'note']
    readonly_fields = ['validated_by', 'validated_at', 'created_by', 'anomaly_flags', 'created_at', 'updated_at']
    raw_id_fields = ['beneficiary', 'source_procedure', 'source_patient_count']
    date_hierarchy = 'settlement_date'

    fieldsets = (
        ('JASPEL', {
            'fields': ('beneficiary', 'category', 'settlement_date', 'nominal', 'total')
        }),
        ('Sumber', {
            'fields': ('source_procedure', 'source_patient_count')
        }),
        ('Validasi', {
            'fields': ('validation_status', 'validated_by', 'validated_at', 'note')
        }),
        ('Audit', {
            'fields': ('created_by', 'anomaly_flags', 'created_at', 'updated_at'),
            'classes': ('collapse',)
        }),
    )

    def get_form(self, request, obj=None, **kwargs):
        form_class = super().get_form(request, obj, **kwargs)

        class ActorForm(form_class):
            actor = request.user

        return ActorForm

    def has_delete_permission(self, request, obj=None):
        if obj is not None and obj.validation_status == FeeStatus.APPROVED:
            return False
        return super().has_delete_permission(request, obj)

    def save_model(self, request, obj, form, change):
        if change:
            changes = {f: form.cleaned_data[f] for f in form.changed_data if f in UPDATABLE_FIELDS}
            if changes:
                fee_record_writer.update(obj, changes, actor=request.user)
            return

        created = fee_record_writer.create(
            beneficiary=obj.beneficiary,
            settlement_date=obj.settlement_date,
            category=obj.category,
            nominal=obj.nominal,
            total=obj.total,
            actor=request.user,
            source_procedure=obj.source_procedure,
            source_patient_count=obj.source_patient_count,
            note=obj.note,
        )
        obj.pk = created.pk

    def delete_model(self, request, obj):
        fee_record_writer.delete(obj, actor=request.user)

    def delete_queryset(self, request, queryset):
        skipped = 0
        for record in queryset:
            try:
                fee_record_writer.delete(record, actor=request.user)
            except JaspelError:
                skipped += 1
        if skipped:
            self.message_user(
                request, f"{skipped} JASPEL yang sudah disetujui tidak dihapus.", level=messages.WARNING
            )
