from decimal import Decimal

from django.core.exceptions import ValidationError
from django.db import models
from django.db.models import Q
from django.utils import timezone

from apps.core.academics.models import SchoolClass, Section
from apps.core.utils.managers import StudentQuerySet


class Student(models.Model):
    STATUS_ACTIVE = 'active'
    STATUS_TRANSFERRED = 'transferred'
    STATUS_PASSED = 'passed'
    STATUS_DROPPED = 'dropped'
    STATUS_ALUMNI = 'alumni'
    STATUS_CHOICES = (
        (STATUS_ACTIVE, 'Active'),
        (STATUS_TRANSFERRED, 'Transferred'),
        (STATUS_PASSED, 'Passed'),
        (STATUS_DROPPED, 'Dropped'),
        (STATUS_ALUMNI, 'Alumni'),
    )

    objects = StudentQuerySet.as_manager()

    admission_number = models.CharField(max_length=50, unique=True)
    first_name = models.CharField(max_length=100)
    last_name = models.CharField(max_length=100, blank=True)
    admission_date = models.DateField(default=timezone.localdate)

    current_class = models.ForeignKey(
        SchoolClass,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='students',
    )
    current_section = models.ForeignKey(
        Section,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='students',
    )

    # Standing fee billed by the monthly voucher run.
    monthly_fee = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_ACTIVE)
    is_archived = models.BooleanField(default=False)
    archived_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['admission_number', 'id']
        constraints = [
            models.CheckConstraint(
                condition=Q(monthly_fee__gte=0),
                name='student_monthly_fee_non_negative',
            ),
        ]
        indexes = [
            models.Index(fields=['status', 'is_archived'], name='students_status_idx'),
            models.Index(fields=['current_class', 'current_section'], name='students_scope_idx'),
        ]

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def is_billable(self):
        return self.status == self.STATUS_ACTIVE and not self.is_archived

    def clean(self):
        super().clean()
        if self.current_section_id:
            if not self.current_class_id:
                raise ValidationError({'current_section': 'Select class before section.'})
            if self.current_section.school_class_id != self.current_class_id:
                raise ValidationError({'current_section': 'Selected section does not belong to selected class.'})

        if self.monthly_fee is None or self.monthly_fee < 0:
            raise ValidationError({'monthly_fee': 'Monthly fee cannot be negative.'})

    def delete(self, *args, **kwargs):
        if self.is_archived:
            return
        self.is_archived = True
        self.status = self.STATUS_ALUMNI
        self.archived_at = timezone.now()
        self.save(update_fields=['is_archived', 'status', 'archived_at', 'updated_at'])

    def __str__(self):
        return f"{self.admission_number} - {self.full_name}"
