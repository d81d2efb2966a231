import pytest
import sqlalchemy as sa
from sqlalchemy.pool import StaticPool

from pharmdx.ai_client import ChatCompletionClient, RetryPolicy
from pharmdx.config import Settings
from pharmdx.db.models import create_tables
from pharmdx.orchestrator import DiagnosticOrchestrator
from pharmdx.review import ReviewWorkflow
from pharmdx.store import SqlDataStore

from helpers import FakeSDK, RecordingAudit, RecordingNotifier, seed_reference_data


@pytest.fixture
def engine():
    eng = sa.create_engine(
        'sqlite://',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
        future=True,
    )
    create_tables(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def seeded_engine(engine):
    seed_reference_data(engine)
    return engine


@pytest.fixture
def store(seeded_engine):
    return SqlDataStore(seeded_engine)


@pytest.fixture
def settings():
    return Settings(
        ai_api_key='test-key',
        ai_base_delay=0.0,
        ai_max_delay=0.0,
        alert_channel='in_app',
    )


@pytest.fixture
def sdk():
    return FakeSDK()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def ai_client(settings, sdk, sleeps):
    return ChatCompletionClient(
        settings,
        client=sdk,
        retry_policy=RetryPolicy(max_retries=3, base_delay=1.0, multiplier=2.0, max_delay=10.0),
        sleep=sleeps.append,
    )


@pytest.fixture
def audit():
    return RecordingAudit()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def orchestrator(store, ai_client, settings, audit, notifier):
    return DiagnosticOrchestrator(
        store,
        ai_client,
        settings=settings,
        audit=audit,
        notifier=notifier,
    )


@pytest.fixture
def workflow(store, settings, audit, notifier):
    return ReviewWorkflow(store, settings=settings, audit=audit, notifier=notifier)


@pytest.fixture
def snapshot():
    return {
        'symptoms': {
            'subjective': ['productive cough', 'fever'],
            'objective': ['crackles right base'],
            'duration': '4 days',
            'severity': 'moderate',
            'onset': 'acute',
        },
        'vitals': {'blood_pressure': '128/82', 'heart_rate': 96, 'temperature': 38.4},
        'current_medications': [{'name': 'Paracetamol', 'dosage': '1g', 'frequency': 'qid'}],
        'allergies': ['Sulfa'],
        'lab_result_ids': ['lab-inr'],
        'clinical_question': 'Is antibiotic therapy indicated?',
    }
