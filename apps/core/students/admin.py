from django.contrib import admin

from .models import Student


@admin.register(Student)
class StudentAdmin(admin.ModelAdmin):
    list_display = (
        'admission_number',
        'first_name',
        'last_name',
        'current_class',
        'current_section',
        'monthly_fee',
        'status',
        'is_archived',
    )
    list_filter = ('status', 'is_archived', 'current_class')
    search_fields = ('admission_number', 'first_name', 'last_name')
