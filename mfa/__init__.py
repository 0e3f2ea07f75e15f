"""Multi-factor authentication."""

from .models import EnrollmentStatus, MFAEnrollment, MFAMethod
from .service import MFAService
