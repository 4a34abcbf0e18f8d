"""External integrations for alert delivery."""
from .alert_client import AlertClient, AlertDeliveryError, format_alert

__all__ = ["AlertClient", "AlertDeliveryError", "format_alert"]
