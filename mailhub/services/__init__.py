"""Backend services module."""

from mailhub.services.mail_actions import MailActions

__all__ = ["MailActions"]
