from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as BaseUserAdmin
from .models import Participant


@admin.register(Participant)
class ParticipantAdmin(BaseUserAdmin):
    list_display = ("email", "full_name", "role", "is_fee_beneficiary", "is_active")
    list_filter = ("role", "is_active")
    search_fields = ("email", "full_name", "employee_id")
    ordering = ("role", "email")
    readonly_fields = ("created_at", "updated_at", "last_login")

    fieldsets = (
        (None, {"fields": ("email", "password")}),
        ("Staf klinik", {"fields": ("full_name", "phone_number", "role", "employee_id")}),
        ("Hak akses", {"fields": ("is_active", "is_staff", "is_superuser", "groups", "user_permissions")}),
        ("Riwayat", {"fields": ("last_login", "created_at", "updated_at")}),
    )
    add_fieldsets = (
        (None, {"classes": ("wide",), "fields": ("email", "full_name", "role", "password1", "password2")}),
    )

    @admin.display(boolean=True, description="Penerima JASPEL")
    def is_fee_beneficiary(self, obj):
        return obj.is_performer
