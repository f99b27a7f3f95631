"""Service types offered in the booking flow and their intake questionnaires."""

import logging
from datetime import datetime

from sqlalchemy.orm import Session, sessionmaker

from therapy_booking.core.clock import Clock, system_clock
from therapy_booking.core.errors import ValidationFailed
from therapy_booking.database import SessionLocal, session_scope
from therapy_booking.models.intake import IntakeQuestionnaire
from therapy_booking.schemas import ServiceTypeOption

logger = logging.getLogger(__name__)

SERVICE_TYPES: dict[str, ServiceTypeOption] = {
    option.service_type: option
    for option in (
        ServiceTypeOption(service_type='individual', name='Individual Therapy', duration_minutes=50, requires_questionnaire=True),
        ServiceTypeOption(service_type='couple', name='Couples Therapy', duration_minutes=60, requires_questionnaire=True),
        ServiceTypeOption(service_type='family', name='Family Therapy', duration_minutes=75, requires_questionnaire=True),
        ServiceTypeOption(service_type='group', name='Group Session', duration_minutes=90, requires_questionnaire=True),
        ServiceTypeOption(service_type='consultation', name='Initial Consultation', duration_minutes=15, requires_questionnaire=False),
        ServiceTypeOption(service_type='crisis', name='Crisis Support', duration_minutes=30, requires_questionnaire=False),
    )
}

_INDIVIDUAL_INTAKE = ('full_name', 'age', 'preferred_language', 'reason_for_therapy', 'currently_unsafe')
REQUIRED_INTAKE_ANSWERS: dict[str, tuple[str, ...]] = {
    'individual': _INDIVIDUAL_INTAKE,
    'couple': _INDIVIDUAL_INTAKE,
    'family': _INDIVIDUAL_INTAKE,
    'group': ('full_name', 'age', 'preferred_language', 'motivation', 'goals'),
}


def get_service_type(service_type: str | None) -> ServiceTypeOption | None:
    if not service_type:
        return None
    return SERVICE_TYPES.get(service_type.strip().lower())


def list_service_types() -> list[ServiceTypeOption]:
    return list(SERVICE_TYPES.values())


def requires_questionnaire(service_type: str) -> bool:
    option = get_service_type(service_type)
    return bool(option and option.requires_questionnaire)


def missing_intake_answers(service_type: str, responses: dict) -> list[str]:
    required = REQUIRED_INTAKE_ANSWERS.get(service_type, ())
    return [
        name for name in required
        if responses.get(name) is None or (isinstance(responses.get(name), str) and not responses[name].strip())
    ]


def has_completed_questionnaire(db: Session, user_id: str, service_type: str) -> bool:
    return db.query(IntakeQuestionnaire.id).filter(
        IntakeQuestionnaire.user_id == user_id,
        IntakeQuestionnaire.service_type == service_type,
    ).first() is not None


def record_questionnaire_completion(
    db: Session,
    user_id: str,
    service_type: str,
    responses: dict,
    completed_at: datetime,
) -> IntakeQuestionnaire:
    """Store a completed intake form, replacing any earlier one for the service."""
    missing = missing_intake_answers(service_type, responses)
    if missing:
        raise ValidationFailed([f'{name} is required' for name in missing])

    questionnaire = db.query(IntakeQuestionnaire).filter(
        IntakeQuestionnaire.user_id == user_id,
        IntakeQuestionnaire.service_type == service_type,
    ).first()
    if questionnaire is None:
        questionnaire = IntakeQuestionnaire(user_id=user_id, service_type=service_type)
        db.add(questionnaire)

    questionnaire.responses = dict(responses)
    questionnaire.completed_at = completed_at
    db.commit()
    db.refresh(questionnaire)
    logger.info('Intake questionnaire recorded for user %s service %s', user_id, service_type)
    return questionnaire


class IntakeRecords:
    """Questionnaire completion lookups for the booking controller."""

    def __init__(self, session_factory: sessionmaker = SessionLocal, clock: Clock = system_clock):
        self.session_factory = session_factory
        self.clock = clock

    def has_completed(self, user_id: str, service_type: str) -> bool:
        with session_scope(self.session_factory) as db:
            return has_completed_questionnaire(db, user_id, service_type)

    def record(self, user_id: str, service_type: str, responses: dict) -> None:
        with session_scope(self.session_factory) as db:
            record_questionnaire_completion(db, user_id, service_type, responses, self.clock())
