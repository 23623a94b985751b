"""
Alert API Router

Inbound commands for alert instances (acknowledge, resolve, snooze, cancel),
instance lookup with its audit trail, and draft rule validation for the
rule-authoring workflow (draft -> validate -> commit).
"""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime

from clinical_alerts.database import get_db
from clinical_alerts.services.alert_engine.alert_manager import (
    AlertInstanceManager,
    AlertNotFoundError,
    InvalidTransitionError,
    SnoozeDurationError,
)
from clinical_alerts.services.alert_engine.condition_registry import get_condition_registry
from clinical_alerts.services.alert_engine.rule_definitions import validate_rule_draft

router = APIRouter(prefix="/api/alerts", tags=["alerts"])
rules_router = APIRouter(prefix="/api/alert-rules", tags=["alert-rules"])


class AcknowledgeRequest(BaseModel):
    actor_id: str = Field(..., min_length=1)


class ResolveRequest(BaseModel):
    actor_id: str = Field(..., min_length=1)
    notes: Optional[str] = Field(None, max_length=5000)


class SnoozeRequest(BaseModel):
    actor_id: str = Field(..., min_length=1)
    duration_minutes: int


class CancelRequest(BaseModel):
    actor_id: str = Field(..., min_length=1)
    reason: Optional[str] = Field(None, max_length=2000)


class AuditEntryResponse(BaseModel):
    action: str
    from_status: Optional[str]
    to_status: Optional[str]
    actor: str
    details: Optional[Dict[str, Any]]
    created_at: datetime


class AlertInstanceResponse(BaseModel):
    """Alert instance as exposed to UI and notification layers"""
    id: str
    rule_id: str
    enrollment_id: str
    patient_id: Optional[str]
    severity: str
    status: str
    dedupe_key: str
    message: Optional[str]
    evidence: Optional[Dict[str, Any]]
    triggered_at: datetime
    last_triggered_at: datetime
    trigger_count: int
    sla_breach_time: Optional[datetime]
    acknowledged_at: Optional[datetime]
    acknowledged_by: Optional[str]
    resolved_at: Optional[datetime]
    resolved_by: Optional[str]
    resolution_notes: Optional[str]
    snooze_until: Optional[datetime]
    escalated_at: Optional[datetime]
    escalation_level: int
    audit_trail: List[AuditEntryResponse] = []


class RuleValidationResponse(BaseModel):
    valid: bool
    errors: List[str]


def _to_response(manager: AlertInstanceManager, instance) -> AlertInstanceResponse:
    trail = manager.get_audit_trail(instance.id)
    return AlertInstanceResponse(
        id=instance.id,
        rule_id=instance.rule_id,
        enrollment_id=instance.enrollment_id,
        patient_id=instance.patient_id,
        severity=instance.severity,
        status=instance.status,
        dedupe_key=instance.dedupe_key,
        message=instance.message,
        evidence=instance.evidence,
        triggered_at=instance.triggered_at,
        last_triggered_at=instance.last_triggered_at,
        trigger_count=instance.trigger_count or 0,
        sla_breach_time=instance.sla_breach_time,
        acknowledged_at=instance.acknowledged_at,
        acknowledged_by=instance.acknowledged_by,
        resolved_at=instance.resolved_at,
        resolved_by=instance.resolved_by,
        resolution_notes=instance.resolution_notes,
        snooze_until=instance.snooze_until,
        escalated_at=instance.escalated_at,
        escalation_level=instance.escalation_level or 0,
        audit_trail=[
            AuditEntryResponse(
                action=entry.action,
                from_status=entry.from_status,
                to_status=entry.to_status,
                actor=entry.actor,
                details=entry.details,
                created_at=entry.created_at
            )
            for entry in trail
        ]
    )


async def _run(manager: AlertInstanceManager, command):
    try:
        instance = await command
    except AlertNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransitionError as e:
        raise HTTPException(
            status_code=409,
            detail={
                "message": str(e),
                "current_status": e.current_status,
                "allowed_transitions": e.allowed
            }
        )
    except SnoozeDurationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return _to_response(manager, instance)


@router.get("/{alert_id}", response_model=AlertInstanceResponse)
async def get_alert(alert_id: str, db: Session = Depends(get_db)):
    """Get an alert instance with its full audit trail"""
    manager = AlertInstanceManager(db)
    try:
        instance = manager.get_instance(alert_id)
    except AlertNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return _to_response(manager, instance)


@router.post("/{alert_id}/acknowledge", response_model=AlertInstanceResponse)
async def acknowledge_alert(alert_id: str, request: AcknowledgeRequest, db: Session = Depends(get_db)):
    """Acknowledge a PENDING or ESCALATED alert"""
    manager = AlertInstanceManager(db)
    return await _run(manager, manager.acknowledge(alert_id, request.actor_id))


@router.post("/{alert_id}/resolve", response_model=AlertInstanceResponse)
async def resolve_alert(alert_id: str, request: ResolveRequest, db: Session = Depends(get_db)):
    """Resolve an open alert with optional notes"""
    manager = AlertInstanceManager(db)
    return await _run(manager, manager.resolve(alert_id, request.actor_id, request.notes))


@router.post("/{alert_id}/snooze", response_model=AlertInstanceResponse)
async def snooze_alert(alert_id: str, request: SnoozeRequest, db: Session = Depends(get_db)):
    """
    Snooze an open alert for up to one week.

    Triggers during the snooze are suppressed; the alert returns to its prior
    state on the first trigger after the snooze ends.
    """
    manager = AlertInstanceManager(db)
    return await _run(manager, manager.snooze(alert_id, request.actor_id, request.duration_minutes))


@router.post("/{alert_id}/cancel", response_model=AlertInstanceResponse)
async def cancel_alert(alert_id: str, request: CancelRequest, db: Session = Depends(get_db)):
    """Manually cancel an open alert"""
    manager = AlertInstanceManager(db)
    return await _run(manager, manager.cancel(alert_id, request.actor_id, request.reason))


@rules_router.post("/validate", response_model=RuleValidationResponse)
async def validate_rule(rule: Dict[str, Any]):
    """
    Validate a draft rule definition.

    Returns every configuration error so the author can fix them before
    committing the rule.
    """
    errors = validate_rule_draft(rule)
    return RuleValidationResponse(valid=not errors, errors=errors)


@rules_router.get("/conditions")
async def list_conditions():
    """Catalog of conditions rules can monitor"""
    return {"conditions": get_condition_registry().catalog()}
