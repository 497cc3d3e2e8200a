from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as DjangoUserAdmin

from .models import AuditLog, User


@admin.register(User)
class UserAdmin(DjangoUserAdmin):
    list_display = ('username', 'email', 'role', 'is_active', 'is_staff')
    list_filter = ('role', 'is_active', 'is_staff')
    fieldsets = DjangoUserAdmin.fieldsets + (('Role', {'fields': ('role',)}),)
    add_fieldsets = DjangoUserAdmin.add_fieldsets + (('Role', {'fields': ('role',)}),)


@admin.register(AuditLog)
class AuditLogAdmin(admin.ModelAdmin):
    list_display = ('created_at', 'entity_type', 'entity_id', 'action', 'actor_label')
    list_filter = ('entity_type', 'action')
    search_fields = ('entity_id', 'actor_label')
    readonly_fields = (
        'entity_type',
        'entity_id',
        'action',
        'user',
        'actor_label',
        'details',
        'method',
        'path',
        'ip_address',
        'user_agent',
        'created_at',
    )

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
