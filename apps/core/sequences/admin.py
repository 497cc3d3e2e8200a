from django.contrib import admin

from .models import Sequence


@admin.register(Sequence)
class SequenceAdmin(admin.ModelAdmin):
    list_display = ('counter_id', 'value', 'prefix', 'updated_at')
    search_fields = ('counter_id',)
    readonly_fields = ('counter_id', 'value', 'updated_at')

    def has_delete_permission(self, request, obj=None):
        return False
