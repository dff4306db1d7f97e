"""
accounts/notifier.py -- Outbound notification interface.

Flows do not send mail. They build a Notification (template name, recipient,
template variables) and hand it to a Notifier after their transaction has
committed. Delivery (templating, SMTP, a queue) belongs to whatever object
is wired into app.state.notifier.

Templates emitted:
  email_verification           variables: username, link
  password_reset               variables: username, link
  password_reset_unregistered  variables: email
  account_deletion             variables: username, link
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol

logger = logging.getLogger("gatehouse.accounts.notifier")


@dataclass(frozen=True)
class Notification:
    template: str
    to: str
    variables: dict = field(default_factory=dict)


class Notifier(Protocol):
    def send(self, notification: Notification) -> None: ...


class LoggingNotifier:
    """Default notifier: records that a message would be sent.

    Variables are not logged because links carry raw tokens.
    """

    def send(self, notification: Notification) -> None:
        logger.info("Notification %r queued for %s", notification.template, notification.to)
