from django.db import models


class StudentQuerySet(models.QuerySet):
    def billable(self):
        return self.filter(status='active', is_archived=False)

    def in_scope(self, school_class=None, section=None):
        queryset = self
        if school_class is not None:
            queryset = queryset.filter(current_class=school_class)
        if section is not None:
            queryset = queryset.filter(current_section=section)
        return queryset


class FeeVoucherQuerySet(models.QuerySet):
    def for_period(self, month, year):
        return self.filter(month=month, year=year)

    def for_student(self, student):
        return self.filter(student=student)

    def outstanding(self):
        return self.filter(status__in=self.model.OUTSTANDING_STATUSES)

    def sweepable(self, as_of):
        return self.filter(
            status__in=self.model.SWEEPABLE_STATUSES,
            due_date__lt=as_of,
        )
