from estatecrm.models.audit import ActivityLog
from estatecrm.platform.security.models import User
from estatecrm.crm.models import (
	Appointment,
	AvailabilitySlot,
	CalendarSyncLog,
	Contact,
	Deal,
	DealStageHistory,
	LeadActivity,
	Property,
)

__all__ = [
	"ActivityLog",
	"Appointment",
	"AvailabilitySlot",
	"CalendarSyncLog",
	"Contact",
	"Deal",
	"DealStageHistory",
	"LeadActivity",
	"Property",
	"User",
]
