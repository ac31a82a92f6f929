from .tenancy import Tenant, TenantSettings
from .auth import User, SessionToken
from .catalog import Service
from .appointments import Appointment, RecurringAppointment, PaymentEvent
from .waitlist import WaitlistEntry
from .notifications import Notification

__all__ = [
    'Tenant', 'TenantSettings',
    'User', 'SessionToken',
    'Service',
    'Appointment', 'RecurringAppointment', 'PaymentEvent',
    'WaitlistEntry',
    'Notification',
]
