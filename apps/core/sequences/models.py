from django.core.exceptions import ValidationError
from django.db import models
from django.db.models import Q


class Sequence(models.Model):
    counter_id = models.CharField(max_length=40, primary_key=True)
    value = models.PositiveBigIntegerField(default=0)
    prefix = models.CharField(max_length=20, blank=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['counter_id']
        constraints = [
            models.CheckConstraint(
                condition=Q(value__gte=0),
                name='sequence_value_non_negative',
            ),
        ]

    def delete(self, *args, **kwargs):
        raise ValidationError('Sequences cannot be deleted; issued numbers must never be reused.')

    def __str__(self):
        return f"{self.counter_id}={self.value}"
