import itertools
import threading
from datetime import datetime, timezone

import pytest
import sqlalchemy as sa

from pharmdx.config import Settings
from pharmdx.db.models import create_tables
from pharmdx.domain import (
    AnalysisKind,
    CheckType,
    DiagnosticRequest,
    FindingSeverity,
    RequestStatus,
)
from pharmdx.errors import ErrorCode, PharmDxError, RequestCancelled
from pharmdx.orchestrator import CRITICAL_ALERT_KIND, DiagnosticOrchestrator
from pharmdx.schemas import InputSnapshot
from pharmdx.store import SqlDataStore

from helpers import (
    OTHER_PATIENT,
    PATIENT,
    REQUESTER,
    TENANT,
    make_response,
    as_response_text,
    reference_payload,
    seed_reference_data,
    status_error,
)


def _create(orchestrator, snapshot, patient_id=PATIENT, **kwargs):
    return orchestrator.create_request(patient_id, REQUESTER, TENANT, snapshot, True, **kwargs)


# ---------------------------------------------------------------------------
# create_request
# ---------------------------------------------------------------------------


def test_create_requires_consent(orchestrator, snapshot, store):
    with pytest.raises(PharmDxError) as excinfo:
        orchestrator.create_request(PATIENT, REQUESTER, TENANT, snapshot, False)
    assert excinfo.value.code is ErrorCode.NO_CONSENT
    assert store.find_active_request(TENANT, PATIENT) is None


def test_create_unknown_patient(orchestrator, snapshot):
    with pytest.raises(PharmDxError) as excinfo:
        _create(orchestrator, snapshot, patient_id='nobody')
    assert excinfo.value.code is ErrorCode.PATIENT_NOT_FOUND


def test_create_rejects_invalid_snapshot(orchestrator, snapshot):
    snapshot['symptoms']['subjective'] = []
    snapshot['vitals']['heart_rate'] = 400
    with pytest.raises(PharmDxError) as excinfo:
        _create(orchestrator, snapshot)
    assert excinfo.value.code is ErrorCode.INVALID_INPUT
    assert len(excinfo.value.details['issues']) == 2


def test_create_persists_pending_request(orchestrator, snapshot, audit):
    request = _create(orchestrator, snapshot, priority='urgent', location_id='ward-3')
    stored = orchestrator.get_request(request.id, TENANT)
    assert stored.status is RequestStatus.PENDING
    assert stored.is_active
    assert stored.priority.value == 'urgent'
    assert stored.location_id == 'ward-3'
    assert stored.consent_timestamp is not None
    assert stored.input_snapshot.symptoms.subjective == ['productive cough', 'fever']
    assert audit.types() == ['diagnostic_request_created']


def test_duplicate_active_request_is_rejected(orchestrator, snapshot):
    first = _create(orchestrator, snapshot)
    with pytest.raises(PharmDxError) as excinfo:
        _create(orchestrator, snapshot)
    assert excinfo.value.code is ErrorCode.DUPLICATE_ACTIVE_REQUEST
    assert excinfo.value.as_dict() == {
        'code': 'DUPLICATE_ACTIVE_REQUEST',
        'message': 'An active diagnostic request already exists for this patient',
        'details': {'request_id': first.id},
    }
    # other patients are unaffected
    assert _create(orchestrator, snapshot, patient_id=OTHER_PATIENT).patient_id == OTHER_PATIENT


def test_unique_index_rejects_second_active_request(orchestrator, snapshot, store):
    _create(orchestrator, snapshot)
    racing = DiagnosticRequest(
        id='racing-request',
        tenant_id=TENANT,
        patient_id=PATIENT,
        requester_id=REQUESTER,
        input_snapshot=InputSnapshot.model_validate(snapshot),
        consent_obtained=True,
    )
    with pytest.raises(PharmDxError) as excinfo:
        store.insert_request(racing)
    assert excinfo.value.code is ErrorCode.DUPLICATE_ACTIVE_REQUEST


def test_new_request_allowed_after_cancel(orchestrator, snapshot):
    first = _create(orchestrator, snapshot)
    orchestrator.cancel(first.id, TENANT, REQUESTER, 'entered in error')
    second = _create(orchestrator, snapshot)
    assert second.id != first.id


# ---------------------------------------------------------------------------
# process
# ---------------------------------------------------------------------------


def test_happy_path(orchestrator, snapshot, sdk, notifier, audit):
    request = _create(orchestrator, snapshot)
    sdk.push(reference_payload())

    outcome = orchestrator.process(request.id, TENANT)

    assert outcome.succeeded
    assert outcome.request.status is RequestStatus.COMPLETED
    assert outcome.request.processing_completed_at is not None
    result = outcome.result
    assert [d.probability for d in result.diagnoses] == pytest.approx([0.65, 0.25])
    assert [d.confidence for d in result.diagnoses] == ['medium', 'low']
    assert result.diagnoses[0].evidence_level == 'probable'
    assert result.suggested_tests[0].test_name == 'Chest X-ray'
    assert result.medication_suggestions[0].drug_name == 'Doxycycline'
    assert result.ai_metadata.confidence_score == pytest.approx(0.8)
    assert result.ai_metadata.attempts == 1
    assert result.ai_metadata.provider_request_id == 'gen-1'
    assert result.ai_metadata.model_version == 'v3.1'
    assert result.ai_metadata.total_tokens == 460
    assert result.safety_findings == []
    assert not result.critical_safety_issues
    assert result.risk_assessment.overall_risk == 'medium'
    assert result.clinical_impression.startswith('Most likely Community-acquired pneumonia')
    assert result.disclaimer == 'Consult a physician.'
    assert notifier.sent == []
    assert audit.types() == [
        'diagnostic_request_created',
        'diagnostic_processing_started',
        'diagnostic_request_completed',
    ]

    stored = orchestrator.get_result(result.id, TENANT)
    assert stored.id == result.id
    assert orchestrator.get_result_for_request(request.id, TENANT).id == result.id

    user_prompt = sdk.completions.calls[0]['messages'][1]['content']
    assert 'Penicillin' in user_prompt
    assert 'Warfarin' in user_prompt


def test_transient_provider_errors_then_success(orchestrator, snapshot, sdk, sleeps):
    request = _create(orchestrator, snapshot)
    sdk.push(status_error(503), status_error(503), reference_payload())
    outcome = orchestrator.process(request.id, TENANT)
    assert outcome.request.status is RequestStatus.COMPLETED
    assert outcome.result.ai_metadata.attempts == 3
    assert sleeps == [1.0, 2.0]


def test_provider_failure_marks_request_failed(orchestrator, snapshot, sdk):
    request = _create(orchestrator, snapshot)
    sdk.push(status_error(401))
    outcome = orchestrator.process(request.id, TENANT)
    assert not outcome.succeeded
    assert outcome.request.status is RequestStatus.FAILED
    assert outcome.request.error_code == ErrorCode.PROVIDER_ERROR.value
    assert outcome.request.retry_count == 0


def test_critical_red_flag_sends_exactly_one_alert(orchestrator, snapshot, sdk, notifier):
    request = _create(orchestrator, snapshot)
    sdk.push(
        reference_payload(
            redFlags=[
                {'flag': 'Hypoxia', 'severity': 'critical', 'action': 'Refer to emergency department'},
                {'flag': 'Confusion', 'severity': 'high', 'action': 'Urgent physician review'},
            ]
        )
    )
    outcome = orchestrator.process(request.id, TENANT)

    assert outcome.result.risk_assessment.overall_risk == 'critical'
    assert outcome.result.follow_up_required
    assert len(notifier.sent) == 1
    recipient, channel, payload = notifier.sent[0]
    assert recipient == REQUESTER
    assert channel == 'in_app'
    assert payload['kind'] == CRITICAL_ALERT_KIND
    assert payload['severity'] == 'critical'
    assert len(payload['red_flags']) == 2


def test_allergy_conflict_is_flagged_critical(orchestrator, snapshot, sdk, notifier):
    request = _create(orchestrator, snapshot)
    option = {
        'medication': 'Penicillin V',
        'dosage': '500mg',
        'frequency': 'four times daily',
        'reasoning': 'Streptococcal coverage',
    }
    sdk.push(reference_payload(therapeuticOptions=[option]))
    result = orchestrator.process(request.id, TENANT).result

    assert len(result.safety_findings) == 1
    finding = result.safety_findings[0]
    assert finding.check_type is CheckType.ALLERGY
    assert finding.severity is FindingSeverity.CRITICAL
    assert result.critical_safety_issues
    assert not result.auto_approvable
    assert len(notifier.sent) == 1


def test_therapy_recommendations_are_safety_checked(orchestrator, snapshot, sdk):
    request = _create(orchestrator, snapshot, kind=AnalysisKind.LAB_INTERPRETATION)
    sdk.push(
        reference_payload(
            therapeuticOptions=[],
            interpretation='INR above range',
            therapyRecommendations=[
                {'medicationName': 'Aspirin', 'action': 'start', 'rationale': 'Secondary prevention'},
            ],
        )
    )
    result = orchestrator.process(request.id, TENANT).result
    assert result.therapy_recommendations[0].medication_name == 'Aspirin'
    assert [f.severity for f in result.safety_findings] == [FindingSeverity.CRITICAL]
    system_prompt = sdk.completions.calls[0]['messages'][0]['content']
    assert 'therapyRecommendations' in system_prompt


def test_out_of_range_confidence_falls_back_to_default(orchestrator, snapshot, sdk):
    request = _create(orchestrator, snapshot)
    sdk.push(reference_payload(confidenceScore=150))
    result = orchestrator.process(request.id, TENANT).result
    assert result.ai_metadata.confidence_score == pytest.approx(0.75)


def test_zero_diagnoses_fails_validation(orchestrator, snapshot, sdk, audit, store):
    request = _create(orchestrator, snapshot)
    sdk.push(reference_payload(differentialDiagnoses=[]))
    outcome = orchestrator.process(request.id, TENANT)

    assert outcome.request.status is RequestStatus.FAILED
    assert outcome.request.error_code == ErrorCode.VALIDATION_FAILED.value
    assert 'differentialDiagnoses' in outcome.request.error_message
    assert outcome.result is None
    assert store.get_result_for_request(TENANT, request.id) is None
    failed = [e for e in audit.events if e.event_type == 'diagnostic_request_failed']
    assert len(failed) == 1
    assert failed[0].details['issues']


def test_unparseable_response_fails(orchestrator, snapshot, sdk):
    request = _create(orchestrator, snapshot)
    sdk.push(make_response('I cannot produce JSON today.'))
    outcome = orchestrator.process(request.id, TENANT)
    assert outcome.request.error_code == ErrorCode.NO_JSON_FOUND.value


def test_process_twice_is_rejected(orchestrator, snapshot, sdk):
    request = _create(orchestrator, snapshot)
    sdk.push(reference_payload())
    orchestrator.process(request.id, TENANT)
    with pytest.raises(PharmDxError) as excinfo:
        orchestrator.process(request.id, TENANT)
    assert excinfo.value.code is ErrorCode.INVALID_STATE
    assert len(sdk.completions.calls) == 1


def test_process_unknown_request(orchestrator):
    with pytest.raises(PharmDxError) as excinfo:
        orchestrator.process('missing', TENANT)
    assert excinfo.value.code is ErrorCode.REQUEST_NOT_FOUND


def test_unexpected_error_is_internal_error(store, ai_client, settings, snapshot):
    class BrokenAggregator:
        def aggregate(self, request):
            raise RuntimeError('disk on fire')

    orchestrator = DiagnosticOrchestrator(store, ai_client, settings=settings, aggregator=BrokenAggregator())
    request = _create(orchestrator, snapshot)
    outcome = orchestrator.process(request.id, TENANT)
    assert outcome.request.status is RequestStatus.FAILED
    assert outcome.request.error_code == ErrorCode.INTERNAL_ERROR.value
    assert 'disk on fire' in outcome.request.error_message


def test_processing_budget_exceeded(store, ai_client, settings, snapshot, sdk):
    ticks = itertools.count(step=100)
    orchestrator = DiagnosticOrchestrator(
        store,
        ai_client,
        settings=settings,
        processing_budget=150,
        clock=lambda: next(ticks),
    )
    request = _create(orchestrator, snapshot)
    sdk.push(reference_payload())
    outcome = orchestrator.process(request.id, TENANT)
    assert outcome.request.status is RequestStatus.FAILED
    assert outcome.request.error_code == ErrorCode.PROCESSING_TIMEOUT.value
    assert sdk.completions.calls == []


def test_default_budget_is_adapter_worst_case(store, ai_client, settings):
    orchestrator = DiagnosticOrchestrator(store, ai_client, settings=settings)
    assert orchestrator.processing_budget == ai_client.worst_case_seconds()


def test_audit_failure_does_not_break_processing(store, ai_client, settings, snapshot, sdk):
    class BrokenAudit:
        def log_event(self, event):
            raise RuntimeError('audit store down')

    orchestrator = DiagnosticOrchestrator(store, ai_client, settings=settings, audit=BrokenAudit())
    request = _create(orchestrator, snapshot)
    sdk.push(reference_payload())
    assert orchestrator.process(request.id, TENANT).succeeded


# ---------------------------------------------------------------------------
# retry and cancel
# ---------------------------------------------------------------------------


def test_retry_ceiling_is_idempotent(orchestrator, snapshot, sdk, settings):
    request = _create(orchestrator, snapshot)
    sdk.completions.default = make_response('not json')
    assert orchestrator.process(request.id, TENANT).request.status is RequestStatus.FAILED

    for expected in range(1, settings.max_request_retries + 1):
        outcome = orchestrator.retry(request.id, TENANT)
        assert outcome.request.status is RequestStatus.FAILED
        assert outcome.request.retry_count == expected

    calls_before = len(sdk.completions.calls)
    for _ in range(2):
        with pytest.raises(PharmDxError) as excinfo:
            orchestrator.retry(request.id, TENANT)
        assert excinfo.value.code is ErrorCode.MAX_RETRIES_EXCEEDED

    with pytest.raises(PharmDxError) as excinfo:
        orchestrator.process(request.id, TENANT)
    assert excinfo.value.code is ErrorCode.INVALID_STATE

    stored = orchestrator.get_request(request.id, TENANT)
    assert stored.status is RequestStatus.FAILED
    assert stored.retry_count == settings.max_request_retries
    assert len(sdk.completions.calls) == calls_before


def test_retry_succeeds_after_failure(orchestrator, snapshot, sdk):
    request = _create(orchestrator, snapshot)
    sdk.push(make_response('garbage'), reference_payload())
    orchestrator.process(request.id, TENANT)
    outcome = orchestrator.retry(request.id, TENANT)
    assert outcome.succeeded
    assert outcome.request.retry_count == 1


def test_retry_requires_failed_status(orchestrator, snapshot):
    request = _create(orchestrator, snapshot)
    with pytest.raises(PharmDxError) as excinfo:
        orchestrator.retry(request.id, TENANT)
    assert excinfo.value.code is ErrorCode.INVALID_STATE


def test_cancel_pending_request(orchestrator, snapshot, audit):
    request = _create(orchestrator, snapshot)
    orchestrator.cancel(request.id, TENANT, 'supervisor-1', '<b>Patient</b> declined')
    stored = orchestrator.get_request(request.id, TENANT)
    assert stored.status is RequestStatus.CANCELLED
    assert stored.cancelled_by == 'supervisor-1'
    assert not stored.is_active
    assert stored.cancellation_reason == 'Patient declined'
    assert audit.types()[-1] == 'diagnostic_request_cancelled'

    with pytest.raises(PharmDxError) as excinfo:
        orchestrator.process(request.id, TENANT)
    assert excinfo.value.code is ErrorCode.INVALID_STATE


def test_cancel_completed_request_is_rejected(orchestrator, snapshot, sdk):
    request = _create(orchestrator, snapshot)
    sdk.push(reference_payload())
    orchestrator.process(request.id, TENANT)
    with pytest.raises(PharmDxError) as excinfo:
        orchestrator.cancel(request.id, TENANT, REQUESTER)
    assert excinfo.value.code is ErrorCode.INVALID_STATE


def test_cancel_during_ai_call_abandons_processing(orchestrator, snapshot, sdk, store):
    request = _create(orchestrator, snapshot)

    def cancel_then_answer():
        orchestrator.cancel(request.id, TENANT, 'supervisor-1', 'duplicate visit')
        return make_response(as_response_text(reference_payload()))

    sdk.push(cancel_then_answer)
    with pytest.raises(RequestCancelled):
        orchestrator.process(request.id, TENANT)

    stored = orchestrator.get_request(request.id, TENANT)
    assert stored.status is RequestStatus.CANCELLED
    assert stored.error_code is None
    assert store.get_result_for_request(TENANT, request.id) is None


def test_cancel_event_stops_processing(orchestrator, snapshot, sdk):
    request = _create(orchestrator, snapshot)
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(RequestCancelled):
        orchestrator.process(request.id, TENANT, cancel_event=cancel)
    assert orchestrator.get_request(request.id, TENANT).status is RequestStatus.CANCELLED
    assert sdk.completions.calls == []


# ---------------------------------------------------------------------------
# reads
# ---------------------------------------------------------------------------


def test_patient_history_pages(orchestrator, snapshot):
    ids = []
    for _ in range(3):
        request = _create(orchestrator, snapshot)
        orchestrator.cancel(request.id, TENANT, REQUESTER)
        ids.append(request.id)

    page = orchestrator.get_patient_history(PATIENT, TENANT, page=1, limit=2)
    assert page.total == 3
    assert page.total_pages == 2
    assert len(page.items) == 2
    second = orchestrator.get_patient_history(PATIENT, TENANT, page=2, limit=2)
    assert len(second.items) == 1
    assert {r.id for r in page.items + second.items} == set(ids)

    with pytest.raises(PharmDxError) as excinfo:
        orchestrator.get_patient_history(PATIENT, TENANT, page=0)
    assert excinfo.value.code is ErrorCode.INVALID_INPUT


def test_missing_records_raise_not_found(orchestrator):
    with pytest.raises(PharmDxError) as excinfo:
        orchestrator.get_result('nope', TENANT)
    assert excinfo.value.code is ErrorCode.RESULT_NOT_FOUND
    with pytest.raises(PharmDxError) as excinfo:
        orchestrator.get_request('nope', TENANT)
    assert excinfo.value.code is ErrorCode.REQUEST_NOT_FOUND


def test_tenant_isolation(orchestrator, snapshot):
    request = _create(orchestrator, snapshot)
    with pytest.raises(PharmDxError) as excinfo:
        orchestrator.get_request(request.id, 'another-tenant')
    assert excinfo.value.code is ErrorCode.REQUEST_NOT_FOUND


# ---------------------------------------------------------------------------
# concurrent callers
# ---------------------------------------------------------------------------


@pytest.fixture
def file_store(tmp_path):
    eng = sa.create_engine(
        f"sqlite:///{tmp_path / 'pharmdx.db'}",
        connect_args={'check_same_thread': False, 'timeout': 30},
        future=True,
    )
    create_tables(eng)
    seed_reference_data(eng)
    yield SqlDataStore(eng)
    eng.dispose()


def _run_together(count, target):
    barrier = threading.Barrier(count)
    outcomes = []
    lock = threading.Lock()

    def worker():
        barrier.wait()
        try:
            value = target()
        except Exception as exc:
            value = exc
        with lock:
            outcomes.append(value)

    threads = [threading.Thread(target=worker) for _ in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)
    assert len(outcomes) == count
    return outcomes


def test_concurrent_creates_admit_one_active_request(file_store, ai_client, settings, snapshot):
    orchestrator = DiagnosticOrchestrator(file_store, ai_client, settings=settings)
    outcomes = _run_together(8, lambda: _create(orchestrator, snapshot))

    created = [o for o in outcomes if isinstance(o, DiagnosticRequest)]
    errors = [o for o in outcomes if isinstance(o, BaseException)]
    assert len(created) == 1
    assert len(errors) == 7
    assert all(isinstance(e, PharmDxError) for e in errors)
    assert {e.code for e in errors} == {ErrorCode.DUPLICATE_ACTIVE_REQUEST}
    assert file_store.find_active_request(TENANT, PATIENT).id == created[0].id


def test_concurrent_claims_begin_processing_once(file_store, ai_client, settings, snapshot):
    orchestrator = DiagnosticOrchestrator(file_store, ai_client, settings=settings)
    request = _create(orchestrator, snapshot)
    outcomes = _run_together(
        2, lambda: file_store.begin_processing(TENANT, request.id, max_retries=settings.max_request_retries)
    )
    assert sorted(outcomes) == [False, True]
    assert file_store.get_request(TENANT, request.id).status is RequestStatus.PROCESSING
