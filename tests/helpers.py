"""Shared constants and fakes for the test suite."""

import json
from collections import deque
from datetime import datetime, timezone
from types import SimpleNamespace

import httpx
import openai

from pharmdx.db.models import lab_results, medication_records, medications, patients

TENANT = 'tenant-1'
PATIENT = 'patient-1'
OTHER_PATIENT = 'patient-2'
REQUESTER = 'pharmacist-1'


def reference_payload(**overrides):
    """A well-formed model response on the 0-100 probability scale."""

    payload = {
        'differentialDiagnoses': [
            {
                'condition': 'Community-acquired pneumonia',
                'probability': 65,
                'reasoning': 'Productive cough with fever and crackles',
                'severity': 'medium',
            },
            {
                'condition': 'Acute bronchitis',
                'probability': 25,
                'reasoning': 'Cough without consolidation on exam',
                'severity': 'low',
            },
        ],
        'recommendedTests': [
            {'testName': 'Chest X-ray', 'priority': 'urgent', 'reasoning': 'Confirm consolidation'},
        ],
        'therapeuticOptions': [
            {
                'medication': 'Doxycycline',
                'dosage': '100mg',
                'frequency': 'twice daily',
                'duration': '5 days',
                'reasoning': 'Covers atypical organisms',
                'safetyNotes': ['Take with water'],
            },
        ],
        'redFlags': [],
        'referralRecommendation': {'recommended': False},
        'disclaimer': 'Consult a physician.',
        'confidenceScore': 80,
    }
    payload.update(overrides)
    return payload


def as_response_text(payload):
    return 'Here is my assessment:\n```json\n' + json.dumps(payload) + '\n```'


def make_response(content, *, response_id='gen-1', model='deepseek/deepseek-chat-v3.1'):
    return SimpleNamespace(
        id=response_id,
        model=model,
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(prompt_tokens=120, completion_tokens=340, total_tokens=460),
    )


def status_error(status, message='provider error'):
    request = httpx.Request('POST', 'https://openrouter.test/api/v1/chat/completions')
    response = httpx.Response(status, request=request)
    return openai.APIStatusError(message, response=response, body=None)


def timeout_error():
    request = httpx.Request('POST', 'https://openrouter.test/api/v1/chat/completions')
    return openai.APITimeoutError(request=request)


class FakeCompletions:
    def __init__(self):
        self.queue = deque()
        self.calls = []
        self.default = None

    def create(self, **kwargs):
        self.calls.append(kwargs)
        item = self.queue.popleft() if self.queue else self.default
        if item is None:
            raise AssertionError('unexpected completion call')
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            item = item()
        if isinstance(item, dict):
            return make_response(as_response_text(item))
        if isinstance(item, str):
            return make_response(item)
        return item


class FakeSDK:
    """Stands in for ``openai.OpenAI``; queue responses or exceptions on ``completions``."""

    def __init__(self):
        self.completions = FakeCompletions()
        self.chat = SimpleNamespace(completions=self.completions)

    def push(self, *items):
        self.completions.queue.extend(items)
        return self


class RecordingAudit:
    def __init__(self):
        self.events = []

    def log_event(self, event):
        self.events.append(event)

    def types(self):
        return [event.event_type for event in self.events]


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def notify(self, recipient, channel, payload):
        self.sent.append((recipient, channel, dict(payload)))


def seed_reference_data(engine):
    """Two patients for ``TENANT``; the first has allergies, medications and labs."""

    with engine.begin() as conn:
        conn.execute(
            patients.insert(),
            [
                {
                    'id': PATIENT,
                    'tenant_id': TENANT,
                    'first_name': 'Ada',
                    'last_name': 'Lovelace',
                    'date_of_birth': '1970-06-15',
                    'gender': 'female',
                    'weight_kg': 68.0,
                    'allergies': json.dumps([{'allergen': 'Penicillin', 'reaction': 'rash'}]),
                    'chronic_conditions': json.dumps(
                        [
                            {'condition': 'Atrial fibrillation', 'status': 'active'},
                            {'condition': 'Appendicitis', 'status': 'resolved'},
                        ]
                    ),
                    'created_at': datetime(2024, 1, 1, tzinfo=timezone.utc),
                },
                {
                    'id': OTHER_PATIENT,
                    'tenant_id': TENANT,
                    'first_name': 'Grace',
                    'last_name': 'Hopper',
                    'date_of_birth': '1985-12-09',
                    'gender': 'female',
                    'weight_kg': None,
                    'allergies': '[]',
                    'chronic_conditions': '[]',
                    'created_at': datetime(2024, 1, 1, tzinfo=timezone.utc),
                },
            ],
        )
        conn.execute(
            medications.insert(),
            [
                {
                    'id': 'med-warfarin',
                    'tenant_id': TENANT,
                    'patient_id': PATIENT,
                    'drug_name': 'Warfarin',
                    'strength': '5mg',
                    'dosage': '1 tablet',
                    'frequency': 'once daily',
                    'status': 'active',
                },
                {
                    'id': 'med-old',
                    'tenant_id': TENANT,
                    'patient_id': PATIENT,
                    'drug_name': 'Simvastatin',
                    'strength': '20mg',
                    'dosage': None,
                    'frequency': 'nightly',
                    'status': 'discontinued',
                },
            ],
        )
        conn.execute(
            medication_records.insert(),
            [
                {
                    'id': 'rec-1',
                    'tenant_id': TENANT,
                    'patient_id': PATIENT,
                    'medication_name': 'Metoprolol',
                    'dose': '25mg',
                    'frequency': 'twice daily',
                    'phase': 'current',
                    'is_deleted': False,
                },
                {
                    'id': 'rec-2',
                    'tenant_id': TENANT,
                    'patient_id': PATIENT,
                    'medication_name': 'warfarin',
                    'dose': '5mg',
                    'frequency': 'daily',
                    'phase': 'current',
                    'is_deleted': False,
                },
                {
                    'id': 'rec-3',
                    'tenant_id': TENANT,
                    'patient_id': PATIENT,
                    'medication_name': 'Lisinopril',
                    'dose': '10mg',
                    'frequency': None,
                    'phase': 'current',
                    'is_deleted': True,
                },
            ],
        )
        conn.execute(
            lab_results.insert(),
            [
                {
                    'id': 'lab-inr',
                    'tenant_id': TENANT,
                    'patient_id': PATIENT,
                    'test_code': 'INR',
                    'test_name': 'International normalized ratio',
                    'value': '4.2',
                    'numeric_value': 4.2,
                    'reference_low': 2.0,
                    'unit': None,
                    'reference_high': 3.0,
                    'interpretation': None,
                    'critical_value': False,
                    'performed_at': datetime(2024, 3, 1, 8, 30),
                },
                {
                    'id': 'lab-k',
                    'tenant_id': TENANT,
                    'patient_id': PATIENT,
                    'test_code': 'K',
                    'test_name': 'Potassium',
                    'value': '6.8',
                    'numeric_value': 6.8,
                    'unit': 'mmol/L',
                    'reference_low': 3.5,
                    'reference_high': 5.1,
                    'interpretation': 'CRITICAL',
                    'critical_value': True,
                    'performed_at': None,
                },
            ],
        )
