import logging

from django.db import transaction

from apps.core.users.models import AuditLog


logger = logging.getLogger(__name__)

SYSTEM_ACTOR = 'system'


def _extract_ip(request):
    forwarded_for = request.META.get('HTTP_X_FORWARDED_FOR', '')
    if forwarded_for:
        return forwarded_for.split(',')[0].strip()
    return request.META.get('REMOTE_ADDR')


def _resolve_actor(actor, request):
    if actor is None and request is not None and request.user.is_authenticated:
        actor = request.user

    if actor is None:
        return None, SYSTEM_ACTOR
    if isinstance(actor, str):
        return None, actor[:150]
    return actor, actor.get_username()[:150]


def log_audit_event(*, entity_type, entity_id, action, actor=None, details=None, request=None):
    """Append one audit entry. Failures are logged and never raised."""
    try:
        user, actor_label = _resolve_actor(actor, request)
        entry = AuditLog(
            entity_type=entity_type,
            entity_id=str(entity_id)[:64],
            action=action,
            user=user,
            actor_label=actor_label,
            details=details or {},
        )
        if request is not None:
            entry.method = request.method or ''
            entry.path = request.path[:255]
            entry.ip_address = _extract_ip(request)
            entry.user_agent = request.META.get('HTTP_USER_AGENT', '')[:255]

        with transaction.atomic():
            entry.save()
        return entry
    except Exception:
        # Logging must never break business actions.
        logger.exception(
            'Failed to write audit entry %s for %s:%s',
            action,
            entity_type,
            entity_id,
        )
        return None
