import enum


class Platform(str, enum.Enum):
    SHOPIFY = "SHOPIFY"
    STRIPE = "STRIPE"
    WOOCOMMERCE = "WOOCOMMERCE"
    GOOGLE_ANALYTICS = "GOOGLE_ANALYTICS"
    FACEBOOK_ADS = "FACEBOOK_ADS"

    @property
    def slug(self) -> str:
        """URL form used in routes and redirects, e.g. ``facebook-ads``."""
        return self.value.lower().replace("_", "-")

    @classmethod
    def from_slug(cls, slug: str) -> "Platform":
        try:
            return cls(slug.upper().replace("-", "_"))
        except ValueError:
            raise ValueError(f"Unknown platform: {slug}") from None


class IntegrationStatus(str, enum.Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTED = "CONNECTED"
    ERROR = "ERROR"


class MemberRole(str, enum.Enum):
    OWNER = "OWNER"
    ADMIN = "ADMIN"
    MEMBER = "MEMBER"


class AlertType(str, enum.Enum):
    INVENTORY = "INVENTORY"
    PERFORMANCE = "PERFORMANCE"
    INTEGRATION = "INTEGRATION"
    CUSTOMER = "CUSTOMER"
    SECURITY = "SECURITY"
    SYSTEM = "SYSTEM"


class AlertSeverity(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    AlertSeverity.LOW: 0,
    AlertSeverity.MEDIUM: 1,
    AlertSeverity.HIGH: 2,
    AlertSeverity.CRITICAL: 3,
}


class AlertStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    RESOLVED = "RESOLVED"
    DISMISSED = "DISMISSED"
