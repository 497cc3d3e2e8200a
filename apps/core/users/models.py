from django.contrib.auth.models import AbstractUser, UserManager as DjangoUserManager
from django.core.exceptions import ValidationError
from django.core.serializers.json import DjangoJSONEncoder
from django.db import models


class UserManager(DjangoUserManager):
    def create_superuser(self, username, email=None, password=None, **extra_fields):
        extra_fields.setdefault('role', 'superadmin')
        return super().create_superuser(username, email=email, password=password, **extra_fields)


class User(AbstractUser):
    ROLE_SUPERADMIN = 'superadmin'
    ROLE_SCHOOLADMIN = 'schooladmin'
    ROLE_ACCOUNTANT = 'accountant'
    ROLE_TEACHER = 'teacher'
    ROLE_STAFF = 'staff'
    ROLE_PARENT = 'parent'

    ROLE_CHOICES = (
        (ROLE_SUPERADMIN, 'Super Admin'),
        (ROLE_SCHOOLADMIN, 'School Admin'),
        (ROLE_ACCOUNTANT, 'Accountant'),
        (ROLE_TEACHER, 'Teacher'),
        (ROLE_STAFF, 'Staff'),
        (ROLE_PARENT, 'Parent'),
    )

    role = models.CharField(max_length=20, choices=ROLE_CHOICES, default=ROLE_TEACHER)

    objects = UserManager()

    class Meta:
        indexes = [
            models.Index(fields=['role'], name='users_user_role_idx'),
        ]

    def save(self, *args, **kwargs):
        if self.is_superuser and self.role != self.ROLE_SUPERADMIN:
            self.role = self.ROLE_SUPERADMIN
        super().save(*args, **kwargs)

    def __str__(self):
        return f"{self.username} ({self.role})"


class AuditLog(models.Model):
    ENTITY_FEE = 'FEE'
    ENTITY_PAYMENT = 'PAYMENT'
    ENTITY_STUDENT = 'STUDENT'
    ENTITY_USER = 'USER'
    ENTITY_SEQUENCE = 'SEQUENCE'
    ENTITY_TYPE_CHOICES = (
        (ENTITY_FEE, 'Fee Voucher'),
        (ENTITY_PAYMENT, 'Payment'),
        (ENTITY_STUDENT, 'Student'),
        (ENTITY_USER, 'User'),
        (ENTITY_SEQUENCE, 'Sequence'),
    )

    ACTION_CREATE = 'CREATE'
    ACTION_UPDATE = 'UPDATE'
    ACTION_PAYMENT_RECEIVED = 'PAYMENT_RECEIVED'
    ACTION_STATUS_CHANGE = 'STATUS_CHANGE'
    ACTION_FEE_GENERATED = 'FEE_GENERATED'
    ACTION_LOGIN = 'LOGIN'
    ACTION_LOGOUT = 'LOGOUT'
    ACTION_CHOICES = (
        (ACTION_CREATE, 'Create'),
        (ACTION_UPDATE, 'Update'),
        (ACTION_PAYMENT_RECEIVED, 'Payment Received'),
        (ACTION_STATUS_CHANGE, 'Status Change'),
        (ACTION_FEE_GENERATED, 'Fee Generated'),
        (ACTION_LOGIN, 'Login'),
        (ACTION_LOGOUT, 'Logout'),
    )

    entity_type = models.CharField(max_length=30, choices=ENTITY_TYPE_CHOICES)
    entity_id = models.CharField(max_length=64)
    action = models.CharField(max_length=50, choices=ACTION_CHOICES)
    user = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='audit_entries',
    )
    actor_label = models.CharField(max_length=150, blank=True)
    details = models.JSONField(default=dict, blank=True, encoder=DjangoJSONEncoder)

    method = models.CharField(max_length=10, blank=True)
    path = models.CharField(max_length=255, blank=True)
    ip_address = models.GenericIPAddressField(null=True, blank=True)
    user_agent = models.CharField(max_length=255, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_at', '-id']
        indexes = [
            models.Index(fields=['entity_type', 'entity_id'], name='users_audit_entity_idx'),
            models.Index(fields=['user', '-created_at'], name='users_audit_user_idx'),
            models.Index(fields=['action'], name='users_audit_action_idx'),
        ]

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValidationError('Audit log entries are append-only.')
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValidationError('Audit log entries cannot be deleted.')

    def __str__(self):
        return f"{self.action} {self.entity_type}:{self.entity_id} by {self.actor_label or self.user_id or 'system'}"
