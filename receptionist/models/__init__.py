"""Database models."""

from receptionist.models.appointment import Appointment, AppointmentStatus
from receptionist.models.blackout_date import BlackoutDate
from receptionist.models.call_record import CallRecord
from receptionist.models.conversation_message import ConversationMessage
from receptionist.models.customer import Customer
from receptionist.models.service import Service
from receptionist.models.tenant import Tenant, default_working_hours

__all__ = [
    "Appointment",
    "AppointmentStatus",
    "BlackoutDate",
    "CallRecord",
    "ConversationMessage",
    "Customer",
    "Service",
    "Tenant",
    "default_working_hours",
]
