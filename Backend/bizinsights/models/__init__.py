from bizinsights.models.alert import Alert
from bizinsights.models.base import Base
from bizinsights.models.data_point import DataPoint
from bizinsights.models.integration import Integration
from bizinsights.models.organization import Organization
from bizinsights.models.organization_member import OrganizationMember
from bizinsights.models.user import User
from bizinsights.models.webhook_event import WebhookEvent

__all__ = [
    "Alert",
    "Base",
    "DataPoint",
    "Integration",
    "Organization",
    "OrganizationMember",
    "User",
    "WebhookEvent",
]
