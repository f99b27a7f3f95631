from datetime import datetime

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel

from therapy_booking.auth.dependencies import get_current_user
from therapy_booking.core.errors import BookingError, ValidationFailed, booking_error_to_http
from therapy_booking.models.user import User
from therapy_booking.routes.deps import ensure_database_ready, get_committer, get_intake_records
from therapy_booking.schemas import BookingRequest, BookingView
from therapy_booking.services.booking_committer import BookingCommitter
from therapy_booking.services.catalog import IntakeRecords, get_service_type, requires_questionnaire

router = APIRouter(tags=['bookings'])


class CreateBookingRequest(BaseModel):
    therapist_id: str
    service_type: str
    scheduled_at: datetime
    duration_minutes: int | None = None
    session_mode: str = 'video'
    notes: str | None = None


class CancelBookingRequest(BaseModel):
    reason: str | None = None


class QuestionnaireSubmission(BaseModel):
    service_type: str
    responses: dict


class QuestionnaireStatusResponse(BaseModel):
    service_type: str
    required: bool
    completed: bool


def _questionnaire_status(intake: IntakeRecords, user_id: str, service_type: str) -> QuestionnaireStatusResponse:
    option = get_service_type(service_type)
    required = requires_questionnaire(service_type)
    completed = bool(option) and (not required or intake.has_completed(user_id, option.service_type))
    return QuestionnaireStatusResponse(
        service_type=option.service_type if option else service_type,
        required=required,
        completed=completed,
    )


@router.post('', response_model=BookingView, status_code=status.HTTP_201_CREATED)
def create_booking(
    data: CreateBookingRequest,
    current_user: User = Depends(get_current_user),
    committer: BookingCommitter = Depends(get_committer),
    intake: IntakeRecords = Depends(get_intake_records),
):
    """Commit the slot the caller holds. The client is always the caller."""
    ensure_database_ready()
    try:
        questionnaire = _questionnaire_status(intake, current_user.id, data.service_type)
        request = BookingRequest(
            client_id=current_user.id,
            questionnaire_completed=questionnaire.completed,
            **data.model_dump(),
        )
        return committer.commit_booking(request)
    except BookingError as exc:
        raise booking_error_to_http(exc) from exc


@router.post('/{booking_id}/cancel', response_model=BookingView)
def cancel_booking(
    booking_id: str,
    data: CancelBookingRequest | None = None,
    current_user: User = Depends(get_current_user),
    committer: BookingCommitter = Depends(get_committer),
):
    ensure_database_ready()
    try:
        return committer.cancel_booking(booking_id, current_user.id, data.reason if data else None)
    except BookingError as exc:
        raise booking_error_to_http(exc) from exc


@router.get('/questionnaires/{service_type}', response_model=QuestionnaireStatusResponse)
def get_questionnaire_status(
    service_type: str,
    current_user: User = Depends(get_current_user),
    intake: IntakeRecords = Depends(get_intake_records),
):
    ensure_database_ready()
    try:
        return _questionnaire_status(intake, current_user.id, service_type)
    except BookingError as exc:
        raise booking_error_to_http(exc) from exc


@router.post('/questionnaires', response_model=QuestionnaireStatusResponse, status_code=status.HTTP_201_CREATED)
def submit_questionnaire(
    data: QuestionnaireSubmission,
    current_user: User = Depends(get_current_user),
    intake: IntakeRecords = Depends(get_intake_records),
):
    ensure_database_ready()
    try:
        option = get_service_type(data.service_type)
        if option is None:
            raise ValidationFailed('Please select a service.')
        if requires_questionnaire(option.service_type):
            intake.record(current_user.id, option.service_type, data.responses)
        return _questionnaire_status(intake, current_user.id, option.service_type)
    except BookingError as exc:
        raise booking_error_to_http(exc) from exc
