from datetime import date

import pytest

from pharmdx.domain import DiagnosticRequest
from pharmdx.errors import ErrorCode, PharmDxError
from pharmdx.patient_context import PatientDataAggregator
from pharmdx.schemas import InputSnapshot

from helpers import OTHER_PATIENT, PATIENT, REQUESTER, TENANT


def _request(snapshot, patient_id=PATIENT, tenant_id=TENANT):
    return DiagnosticRequest(
        id='req-ctx',
        tenant_id=tenant_id,
        patient_id=patient_id,
        requester_id=REQUESTER,
        input_snapshot=InputSnapshot.model_validate(snapshot),
        consent_obtained=True,
    )


def test_context_merges_all_sources(store, snapshot):
    aggregator = PatientDataAggregator(store, today=lambda: date(2024, 6, 14))
    context = aggregator.aggregate(_request(snapshot))

    assert context.age == 53
    assert context.sex == 'female'
    assert context.allergies == ['Penicillin', 'Sulfa']
    assert context.conditions == ['Atrial fibrillation']
    assert context.medication_names == ['Warfarin', 'Metoprolol', 'Paracetamol']
    warfarin = context.current_medications[0]
    assert warfarin.dosage == '5mg 1 tablet'
    assert warfarin.source == 'medications'
    assert context.vitals['heart_rate'] == 96
    assert context.weight_kg == 68.0


def test_lab_results_follow_requested_order_and_flags(store, snapshot):
    snapshot['lab_result_ids'] = ['lab-k', 'missing-lab', 'lab-inr']
    context = PatientDataAggregator(store).aggregate(_request(snapshot))
    assert [lab.id for lab in context.lab_results] == ['lab-k', 'lab-inr']
    potassium, inr = context.lab_results
    assert potassium.critical and potassium.abnormal
    assert potassium.reference_range == '3.5-5.1'
    assert inr.abnormal and not inr.critical
    assert inr.performed_at.tzinfo is not None


def test_other_patient_has_no_inherited_data(store, snapshot):
    snapshot['lab_result_ids'] = ['lab-inr']
    context = PatientDataAggregator(store).aggregate(_request(snapshot, patient_id=OTHER_PATIENT))
    assert context.lab_results == []
    assert context.medication_names == ['Paracetamol']


def test_unknown_patient_raises(store, snapshot):
    with pytest.raises(PharmDxError) as excinfo:
        PatientDataAggregator(store).aggregate(_request(snapshot, tenant_id='other-tenant'))
    assert excinfo.value.code is ErrorCode.PATIENT_NOT_FOUND
