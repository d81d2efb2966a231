"""SQLAlchemy table metadata for the diagnostic pipeline.

Patient, medication and lab tables are the read side consumed by the
aggregator; ``diagnostic_requests`` and ``diagnostic_results`` hold the
request lifecycle.  JSON payloads are stored as text so the schema stays
portable between SQLite and PostgreSQL.
"""

from __future__ import annotations

from typing import Dict

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Engine,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.sql import text

metadata = MetaData()

patients = Table(
    "patients",
    metadata,
    Column("id", String, primary_key=True),
    Column("tenant_id", String, nullable=False),
    Column("first_name", String, nullable=True),
    Column("last_name", String, nullable=True),
    Column("date_of_birth", String, nullable=True),
    Column("gender", String, nullable=True),
    Column("weight_kg", Float, nullable=True),
    Column("allergies", Text, nullable=False, server_default=text("'[]'")),
    Column("chronic_conditions", Text, nullable=False, server_default=text("'[]'")),
    Column("created_at", DateTime(timezone=True), nullable=True),
)
Index("idx_patients_tenant", patients.c.tenant_id)

medications = Table(
    "medications",
    metadata,
    Column("id", String, primary_key=True),
    Column("tenant_id", String, nullable=False),
    Column("patient_id", String, ForeignKey("patients.id"), nullable=False),
    Column("drug_name", String, nullable=False),
    Column("generic_name", String, nullable=True),
    Column("strength", String, nullable=True),
    Column("dosage", String, nullable=True),
    Column("frequency", String, nullable=True),
    Column("route", String, nullable=True),
    Column("dosage_form", String, nullable=True),
    Column("status", String, nullable=False, server_default=text("'active'")),
    Column("special_instructions", Text, nullable=True),
    Column("updated_at", DateTime(timezone=True), nullable=True),
)
Index("idx_medications_patient", medications.c.tenant_id, medications.c.patient_id)

medication_records = Table(
    "medication_records",
    metadata,
    Column("id", String, primary_key=True),
    Column("tenant_id", String, nullable=False),
    Column("patient_id", String, ForeignKey("patients.id"), nullable=False),
    Column("medication_name", String, nullable=False),
    Column("dose", String, nullable=True),
    Column("frequency", String, nullable=True),
    Column("route", String, nullable=True),
    Column("phase", String, nullable=False, server_default=text("'current'")),
    Column("is_deleted", Boolean, nullable=False, server_default=text("0")),
)
Index(
    "idx_medication_records_patient",
    medication_records.c.tenant_id,
    medication_records.c.patient_id,
)

lab_results = Table(
    "lab_results",
    metadata,
    Column("id", String, primary_key=True),
    Column("tenant_id", String, nullable=False),
    Column("patient_id", String, ForeignKey("patients.id"), nullable=False),
    Column("test_code", String, nullable=True),
    Column("test_name", String, nullable=False),
    Column("value", String, nullable=True),
    Column("numeric_value", Float, nullable=True),
    Column("unit", String, nullable=True),
    Column("reference_low", Float, nullable=True),
    Column("reference_high", Float, nullable=True),
    Column("reference_text", String, nullable=True),
    Column("interpretation", String, nullable=True),
    Column("critical_value", Boolean, nullable=False, server_default=text("0")),
    Column("performed_at", DateTime(timezone=True), nullable=True),
)
Index("idx_lab_results_patient", lab_results.c.tenant_id, lab_results.c.patient_id)

diagnostic_requests = Table(
    "diagnostic_requests",
    metadata,
    Column("id", String, primary_key=True),
    Column("tenant_id", String, nullable=False),
    Column("patient_id", String, ForeignKey("patients.id"), nullable=False),
    Column("requester_id", String, nullable=False),
    Column("location_id", String, nullable=True),
    Column("kind", String, nullable=False, server_default=text("'diagnostic'")),
    Column("priority", String, nullable=False, server_default=text("'routine'")),
    Column("input_snapshot", Text, nullable=False),
    Column("consent_obtained", Boolean, nullable=False),
    Column("consent_timestamp", DateTime(timezone=True), nullable=True),
    Column("status", String, nullable=False, server_default=text("'pending'")),
    Column("retry_count", Integer, nullable=False, server_default=text("0")),
    Column("prompt_version", String, nullable=False),
    Column("error_code", String, nullable=True),
    Column("error_message", Text, nullable=True),
    Column("cancelled_by", String, nullable=True),
    Column("cancellation_reason", Text, nullable=True),
    Column("processing_started_at", DateTime(timezone=True), nullable=True),
    Column("processing_completed_at", DateTime(timezone=True), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)
Index(
    "idx_diagnostic_requests_patient",
    diagnostic_requests.c.tenant_id,
    diagnostic_requests.c.patient_id,
    diagnostic_requests.c.created_at,
)
# One pending/processing request per patient per tenant.
Index(
    "uq_diagnostic_requests_active",
    diagnostic_requests.c.tenant_id,
    diagnostic_requests.c.patient_id,
    unique=True,
    sqlite_where=text("status IN ('pending', 'processing')"),
    postgresql_where=text("status IN ('pending', 'processing')"),
)

diagnostic_results = Table(
    "diagnostic_results",
    metadata,
    Column("id", String, primary_key=True),
    Column("tenant_id", String, nullable=False),
    Column("request_id", String, ForeignKey("diagnostic_requests.id"), nullable=False),
    Column("patient_id", String, nullable=False),
    Column("diagnoses", Text, nullable=False),
    Column("suggested_tests", Text, nullable=False, server_default=text("'[]'")),
    Column("medication_suggestions", Text, nullable=False, server_default=text("'[]'")),
    Column("therapy_recommendations", Text, nullable=False, server_default=text("'[]'")),
    Column("red_flags", Text, nullable=False, server_default=text("'[]'")),
    Column("referral_recommendation", Text, nullable=True),
    Column("ai_metadata", Text, nullable=False),
    Column("safety_findings", Text, nullable=False, server_default=text("'[]'")),
    Column("critical_safety_issues", Boolean, nullable=False, server_default=text("0")),
    Column("incomplete_safety_checks", Text, nullable=False, server_default=text("'[]'")),
    Column("risk_assessment", Text, nullable=True),
    Column("clinical_impression", Text, nullable=True),
    Column("follow_up_required", Boolean, nullable=False, server_default=text("0")),
    Column("follow_up_date", DateTime(timezone=True), nullable=True),
    Column("raw_response", Text, nullable=False),
    Column("disclaimer", Text, nullable=False),
    Column("pharmacist_review", Text, nullable=True),
    Column("escalation", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("request_id", name="uq_diagnostic_results_request"),
)
Index("idx_diagnostic_results_tenant", diagnostic_results.c.tenant_id, diagnostic_results.c.created_at)

# Append-only; one row per attempted medication adjustment.
adjustment_outcomes = Table(
    "adjustment_outcomes",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("tenant_id", String, nullable=False),
    Column("result_id", String, ForeignKey("diagnostic_results.id"), nullable=False),
    Column("medication_name", String, nullable=False),
    Column("adjustment_type", String, nullable=False),
    Column("status", String, nullable=False),
    Column("detail", Text, nullable=True),
    Column("medication_id", String, nullable=True),
    Column("applied_by", String, nullable=True),
    Column("applied_at", DateTime(timezone=True), nullable=False),
    sqlite_autoincrement=True,
)
Index("idx_adjustment_outcomes_result", adjustment_outcomes.c.tenant_id, adjustment_outcomes.c.result_id)

audit_log = Table(
    "audit_log",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("tenant_id", String, nullable=True),
    Column("event_type", String, nullable=False),
    Column("actor_id", String, nullable=True),
    Column("entity_id", String, nullable=True),
    Column("patient_id", String, nullable=True),
    Column("details", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    sqlite_autoincrement=True,
)
Index("idx_audit_log_entity", audit_log.c.entity_id)

notifications = Table(
    "notifications",
    metadata,
    Column("id", String, primary_key=True),
    Column("tenant_id", String, nullable=True),
    Column("recipient_id", String, nullable=False),
    Column("channel", String, nullable=False),
    Column("kind", String, nullable=False),
    Column("title", String, nullable=False),
    Column("message", Text, nullable=True),
    Column("severity", String, nullable=False, server_default=text("'info'")),
    Column("payload", Text, nullable=True),
    Column("is_read", Boolean, nullable=False, server_default=text("0")),
    Column("created_at", DateTime(timezone=True), nullable=False),
)
Index("idx_notifications_recipient", notifications.c.recipient_id, notifications.c.created_at)


TABLES_BY_NAME: Dict[str, Table] = {table.name: table for table in metadata.sorted_tables}


def create_tables(engine: Engine) -> None:
    """Create every table and index that does not exist yet."""

    with engine.begin() as conn:
        metadata.create_all(conn)


__all__ = [
    "metadata",
    "patients",
    "medications",
    "medication_records",
    "lab_results",
    "diagnostic_requests",
    "diagnostic_results",
    "adjustment_outcomes",
    "audit_log",
    "notifications",
    "create_tables",
    "TABLES_BY_NAME",
]
