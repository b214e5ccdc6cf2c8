from .webhooks import GmailNotification, GmailPushEnvelope, NotificationResponse, OutlookNotificationBatch

__all__ = ["GmailNotification", "GmailPushEnvelope", "NotificationResponse", "OutlookNotificationBatch"]
