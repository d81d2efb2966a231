from pharmdx.audit import BestEffortAudit, SqlAuditSink
from pharmdx.domain import AuditEvent, RequestStatus
from pharmdx.notifications import BestEffortNotifier, NotificationService
from pharmdx.service import build_services

from helpers import PATIENT, REQUESTER, TENANT, FakeSDK, reference_payload


class ExplodingSink:
    def log_event(self, event):
        raise RuntimeError('boom')

    def notify(self, recipient, channel, payload):
        raise RuntimeError('boom')


def test_notification_service_persists_and_caches(engine):
    service = NotificationService(engine, history_limit=2)
    for index in range(3):
        service.notify('user-1', 'in_app', {'kind': 'diagnostic_critical_alert', 'message': f'm{index}', 'tenant_id': TENANT})
    recent = service.recent('user-1')
    assert [item['message'] for item in recent] == ['m2', 'm1']
    assert recent[0]['title'] == 'Diagnostic Critical Alert'
    assert recent[0]['createdAt'].endswith('Z')
    assert service.unread_count('user-1') == 3
    assert service.unread_count('user-1', tenant_id='other') == 0
    assert service.recent('nobody') == []


def test_best_effort_wrappers_swallow_errors():
    assert BestEffortNotifier(ExplodingSink()).notify('u', 'in_app', {'kind': 'x'}) is False
    BestEffortAudit(ExplodingSink()).log_event(AuditEvent(event_type='x', tenant_id=TENANT))


def test_sql_audit_sink_round_trip(engine):
    sink = SqlAuditSink(engine)
    sink.log_event(
        AuditEvent(
            event_type='diagnostic_request_created',
            tenant_id=TENANT,
            actor_id=REQUESTER,
            entity_id='req-1',
            patient_id=PATIENT,
            details={'kind': 'diagnostic'},
        )
    )
    sink.log_event(AuditEvent(event_type='diagnostic_request_cancelled', tenant_id=TENANT, entity_id='req-1'))
    events = sink.events_for('req-1', tenant_id=TENANT)
    assert [e.event_type for e in events] == ['diagnostic_request_created', 'diagnostic_request_cancelled']
    assert events[0].details == {'kind': 'diagnostic'}
    assert events[0].timestamp.tzinfo is not None
    assert sink.events_for('req-1', tenant_id='other') == []


def test_build_services_end_to_end(seeded_engine, settings, snapshot):
    sdk = FakeSDK().push(
        reference_payload(redFlags=[{'flag': 'Hypoxia', 'severity': 'critical', 'action': 'ED'}])
    )
    services = build_services(seeded_engine, settings, ai_sdk=sdk)

    request = services.orchestrator.create_request(PATIENT, REQUESTER, TENANT, snapshot, True)
    outcome = services.orchestrator.process(request.id, TENANT)
    assert outcome.request.status is RequestStatus.COMPLETED

    trail = [e.event_type for e in services.audit.events_for(request.id, tenant_id=TENANT)]
    assert trail == [
        'diagnostic_request_created',
        'diagnostic_processing_started',
        'diagnostic_request_completed',
    ]
    assert services.notifications.unread_count(REQUESTER, tenant_id=TENANT) == 1

    reviewed = services.reviews.review(outcome.result.id, TENANT, 'rph-1', 'approve')
    assert reviewed.pharmacist_review.signed_off
    assert [e.event_type for e in services.audit.events_for(outcome.result.id)] == ['pharmacist_review_recorded']
