from django.contrib.auth.signals import user_logged_in, user_logged_out
from django.dispatch import receiver

from apps.core.users.audit import log_audit_event
from apps.core.users.models import AuditLog


@receiver(user_logged_in)
def log_login(sender, request, user, **kwargs):
    log_audit_event(
        entity_type=AuditLog.ENTITY_USER,
        entity_id=user.pk,
        action=AuditLog.ACTION_LOGIN,
        actor=user,
        details={'role': user.role},
        request=request,
    )


@receiver(user_logged_out)
def log_logout(sender, request, user, **kwargs):
    if user is None:
        return

    log_audit_event(
        entity_type=AuditLog.ENTITY_USER,
        entity_id=user.pk,
        action=AuditLog.ACTION_LOGOUT,
        actor=user,
        details={'role': user.role},
        request=request,
    )
