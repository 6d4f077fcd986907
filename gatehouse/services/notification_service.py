"""Notification service for sending templated emails through the mail API"""

import structlog
from typing import Optional, Dict, Any

import httpx

from gatehouse.config import settings

logger = structlog.get_logger()

# Default notification settings when organization has no custom configuration
DEFAULT_NOTIFICATION_SETTINGS = {
    "brand_name": "Gatehouse",
    "from_name": "Gatehouse",
    "from_email": None,  # Falls back to settings.EMAIL_FROM if not set
    "support_email": None,
}


class NotificationService:
    """Fire-and-forget email dispatch.

    Every method returns the delivery response or None; no method raises.
    Callers never depend on delivery for the outcome of their operation.
    """

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None, timeout: float = 10.0):
        self.base_url = (base_url or settings.MAIL_API_URL).rstrip('/')
        self.api_key = settings.MAIL_API_KEY if api_key is None else api_key
        self.enabled = bool(self.api_key)
        self.timeout = timeout

    @staticmethod
    def get_notification_settings(organization: Optional[Any]) -> Dict[str, Any]:
        """
        Extract notification settings from organization with defaults.

        Args:
            organization: Organization model instance or None

        Returns:
            Notification settings dict with defaults applied
        """
        if not organization or not organization.settings:
            return DEFAULT_NOTIFICATION_SETTINGS.copy()

        org_notification = organization.settings.get("notification", {})
        return {
            key: org_notification.get(key, default)
            for key, default in DEFAULT_NOTIFICATION_SETTINGS.items()
        }

    def send_template(
        self,
        recipient: str,
        template_name: str,
        variables: Dict[str, Any],
        organization: Optional[Any] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Send a templated email.

        Args:
            recipient: Email address of the recipient
            template_name: Template name (e.g., "invitation", "welcome")
            variables: Template variables for substitution
            organization: Organization whose notification settings apply

        Returns:
            Delivery response, or None if disabled or failed
        """
        if not self.enabled:
            logger.warning(
                "notification_skipped",
                reason="mail_api_not_configured",
                template=template_name,
            )
            return None

        ns = self.get_notification_settings(organization)
        payload = {
            "recipient": recipient,
            "template_name": template_name,
            "variables": {"brand_name": ns["brand_name"], **variables},
            "from_email": ns.get("from_email") or settings.EMAIL_FROM,
            "from_name": ns.get("from_name"),
        }

        try:
            response = httpx.post(
                f"{self.base_url}/api/v1/send/template",
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
            response.raise_for_status()
            result = response.json()
            logger.info(
                "notification_sent",
                delivery_id=result.get("delivery_id"),
                template=template_name,
                status=result.get("status"),
            )
            return result
        except (httpx.HTTPError, ValueError) as e:
            logger.error(
                "notification_failed",
                template=template_name,
                error=str(e),
            )
            return None

    def send_welcome_email(self, email: str, name: str, organization: Optional[Any] = None):
        return self.send_template(email, "welcome", {"name": name, "login_url": f"{settings.FRONTEND_URL}/login"}, organization)

    def send_organization_created_email(self, email: str, name: str, organization: Any):
        return self.send_template(
            email,
            "organization_created",
            {"name": name, "organization_name": organization.name, "subdomain": organization.domain},
            organization,
        )

    def send_email_verification(self, email: str, name: str, verification_url: str):
        return self.send_template(email, "email_verification", {"name": name, "verification_url": verification_url})

    def send_password_reset_email(self, email: str, name: str, reset_token: str, organization: Optional[Any] = None):
        reset_url = f"{settings.FRONTEND_URL}/reset-password?token={reset_token}"
        return self.send_template(
            email,
            "password_reset",
            {"name": name, "reset_url": reset_url, "expires_minutes": settings.PASSWORD_RESET_EXPIRE_MINUTES},
            organization,
        )

    def send_two_fa_enabled_email(self, email: str, name: str, organization: Optional[Any] = None):
        return self.send_template(email, "two_fa_enabled", {"name": name}, organization)

    def send_two_fa_disabled_email(self, email: str, name: str, organization: Optional[Any] = None):
        return self.send_template(email, "two_fa_disabled", {"name": name}, organization)

    def send_new_login_email(self, email: str, name: str, ip_address: Optional[str], organization: Optional[Any] = None):
        return self.send_template(
            email,
            "new_login",
            {"name": name, "ip_address": ip_address or "unknown"},
            organization,
        )

    def send_invitation_email(
        self,
        email: str,
        token: str,
        organization: Any,
        inviter_name: Optional[str] = None,
        role_name: Optional[str] = None,
    ):
        invitation_url = f"{settings.FRONTEND_URL}/invitations/accept?token={token}"
        return self.send_template(
            email,
            "invitation",
            {
                "organization_name": organization.name,
                "inviter_name": inviter_name or "A team member",
                "role_name": role_name,
                "invitation_url": invitation_url,
                "expires_days": settings.INVITATION_EXPIRY_DAYS,
            },
            organization,
        )

    def send_invitation_accepted_email(self, email: str, member_email: str, organization: Any):
        return self.send_template(
            email,
            "invitation_accepted",
            {"organization_name": organization.name, "member_email": member_email},
            organization,
        )
