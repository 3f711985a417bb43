from .announcements import Announcement, AnnouncementRecipient
from .activity import ActivityLogEntry
from .customers import Customer
from .notification import NotificationDelivery
from .templates import MaintenanceTemplate


__all__ = [
    "Announcement",
    "AnnouncementRecipient",
    "ActivityLogEntry",
    "Customer",
    "NotificationDelivery",
    "MaintenanceTemplate",
]
