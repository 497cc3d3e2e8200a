from unittest import mock

from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError
from django.http import HttpResponse
from django.test import RequestFactory, TestCase

from apps.core.users.audit import SYSTEM_ACTOR, log_audit_event
from apps.core.users.decorators import role_required
from apps.core.users.models import AuditLog


class AuditLogTests(TestCase):
    def setUp(self):
        self.user_model = get_user_model()
        self.accountant = self.user_model.objects.create_user(
            username='audit_accountant',
            password='pass12345',
            role='accountant',
        )
        self.factory = RequestFactory()

    def test_entry_records_actor_and_details(self):
        entry = log_audit_event(
            entity_type=AuditLog.ENTITY_FEE,
            entity_id=42,
            action=AuditLog.ACTION_FEE_GENERATED,
            actor=self.accountant,
            details={'voucher_number': 'FV-2026-00042'},
        )

        entry.refresh_from_db()
        self.assertEqual(entry.entity_id, '42')
        self.assertEqual(entry.user, self.accountant)
        self.assertEqual(entry.actor_label, 'audit_accountant')
        self.assertEqual(entry.details, {'voucher_number': 'FV-2026-00042'})

    def test_missing_actor_is_recorded_as_system(self):
        entry = log_audit_event(
            entity_type=AuditLog.ENTITY_FEE,
            entity_id=1,
            action=AuditLog.ACTION_STATUS_CHANGE,
        )

        self.assertIsNone(entry.user)
        self.assertEqual(entry.actor_label, SYSTEM_ACTOR)

    def test_request_metadata_and_user_are_captured(self):
        request = self.factory.post(
            '/fees/payments/',
            HTTP_USER_AGENT='ledger-tests',
            HTTP_X_FORWARDED_FOR='203.0.113.9, 10.0.0.1',
        )
        request.user = self.accountant

        entry = log_audit_event(
            entity_type=AuditLog.ENTITY_PAYMENT,
            entity_id=7,
            action=AuditLog.ACTION_PAYMENT_RECEIVED,
            request=request,
        )

        self.assertEqual(entry.user, self.accountant)
        self.assertEqual(entry.method, 'POST')
        self.assertEqual(entry.path, '/fees/payments/')
        self.assertEqual(entry.ip_address, '203.0.113.9')
        self.assertEqual(entry.user_agent, 'ledger-tests')

    def test_write_failure_is_logged_and_swallowed(self):
        with mock.patch.object(AuditLog, 'save', side_effect=RuntimeError('disk full')):
            with self.assertLogs('apps.core.users.audit', level='ERROR') as logs:
                entry = log_audit_event(
                    entity_type=AuditLog.ENTITY_FEE,
                    entity_id=1,
                    action=AuditLog.ACTION_FEE_GENERATED,
                )

        self.assertIsNone(entry)
        self.assertIn('Failed to write audit entry', logs.output[0])

    def test_entries_are_append_only(self):
        entry = log_audit_event(
            entity_type=AuditLog.ENTITY_FEE,
            entity_id=1,
            action=AuditLog.ACTION_FEE_GENERATED,
        )

        entry.action = AuditLog.ACTION_UPDATE
        with self.assertRaises(ValidationError):
            entry.save()
        with self.assertRaises(ValidationError):
            entry.delete()

    def test_login_and_logout_are_audited(self):
        self.client.login(username='audit_accountant', password='pass12345')
        self.client.logout()

        actions = list(
            AuditLog.objects.filter(
                entity_type=AuditLog.ENTITY_USER,
                entity_id=str(self.accountant.pk),
            ).order_by('id').values_list('action', flat=True)
        )
        self.assertEqual(actions, [AuditLog.ACTION_LOGIN, AuditLog.ACTION_LOGOUT])


class RoleRequiredTests(TestCase):
    def setUp(self):
        self.user_model = get_user_model()
        self.factory = RequestFactory()

        @role_required(['schooladmin', 'accountant'])
        def ledger_view(request):
            return HttpResponse('ok')

        self.view = ledger_view

    def _request_as(self, user):
        request = self.factory.get('/fees/vouchers/')
        request.user = user
        return request

    def test_anonymous_user_gets_401(self):
        from django.contrib.auth.models import AnonymousUser

        response = self.view(self._request_as(AnonymousUser()))
        self.assertEqual(response.status_code, 401)

    def test_teacher_gets_403(self):
        teacher = self.user_model.objects.create_user(username='teacher1', password='pass12345', role='teacher')
        response = self.view(self._request_as(teacher))
        self.assertEqual(response.status_code, 403)

    def test_accountant_is_allowed(self):
        accountant = self.user_model.objects.create_user(username='acc1', password='pass12345', role='accountant')
        response = self.view(self._request_as(accountant))
        self.assertEqual(response.status_code, 200)

    def test_superuser_role_is_forced_to_superadmin(self):
        admin = self.user_model.objects.create_superuser('root', 'root@example.com', 'pass12345')
        self.assertEqual(admin.role, 'superadmin')
