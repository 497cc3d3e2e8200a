from django.contrib import admin

from .models import SchoolClass, Section


class SectionInline(admin.TabularInline):
    model = Section
    extra = 0


@admin.register(SchoolClass)
class SchoolClassAdmin(admin.ModelAdmin):
    list_display = ('name', 'code', 'display_order', 'is_active')
    list_filter = ('is_active',)
    search_fields = ('name', 'code')
    inlines = [SectionInline]
