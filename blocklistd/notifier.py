"""Operator notifications sent through the local sendmail executable."""

import logging
import socket
import subprocess  # nosec B404 - subprocess usage is intentional and controlled
from email.message import EmailMessage
from typing import List, Optional

logger = logging.getLogger(__name__)


class Notifier:
    """Mails lifecycle and update events to the administrator."""

    def __init__(self, sendmail: str, admin_email: str, from_email: str,
                 timeout: int = 30, dry_run: bool = False, hostname: Optional[str] = None):
        self.sendmail = sendmail
        self.admin_email = admin_email
        self.from_email = from_email
        self.timeout = timeout or None
        self.dry_run = dry_run
        self.hostname = hostname or socket.gethostname()

    def _build_message(self, subject: str, body: str) -> EmailMessage:
        message = EmailMessage()
        message['Subject'] = f"[blocklistd {self.hostname}] {subject}"
        message['From'] = self.from_email
        message['To'] = self.admin_email
        message.set_content(body)
        return message

    def send(self, subject: str, body: str) -> bool:
        """
        Send a notification.

        Delivery failures are logged and reported through the return value,
        never raised.
        """
        message = self._build_message(subject, body)

        if self.dry_run:
            logger.info(f"DRY RUN: Would mail {self.admin_email}: {message['Subject']}")
            return True

        command = [self.sendmail, '-t', '-oi']
        try:
            subprocess.run(  # nosec B603 - controlled input, no shell
                command,
                input=message.as_bytes(),
                check=True,
                timeout=self.timeout,
                capture_output=True
            )
        except subprocess.CalledProcessError as e:
            stderr = e.stderr.decode('utf-8', 'replace').strip() if e.stderr else ''
            logger.warning(f"Could not send notification '{subject}': exit {e.returncode} {stderr}")
            return False
        except subprocess.TimeoutExpired:
            logger.warning(f"Timeout while sending notification '{subject}'")
            return False
        except OSError as e:
            logger.warning(f"Could not execute {self.sendmail}: {e}")
            return False

        logger.debug(f"Sent notification '{subject}' to {self.admin_email}")
        return True

    def daemon_started(self, entry_count: int) -> bool:
        return self.send("daemon started", f"blocklistd started with {entry_count} blocked networks.\n")

    def rules_updated(self, entries: List[str]) -> bool:
        body = f"Applied {len(entries)} rules:\n\n" + ''.join(f"{entry}\n" for entry in entries)
        return self.send(f"rules updated ({len(entries)} entries)", body)

    def update_failed(self, error: Exception) -> bool:
        return self.send("rule update failed", f"{error}\n\nThe chain may be partially updated.\n")

    def status(self, report: str) -> bool:
        return self.send("status", report)

    def daemon_stopped(self) -> bool:
        return self.send("daemon stopped", "blocklistd stopped and removed its chain.\n")

    def teardown_failed(self, error: Exception) -> bool:
        return self.send("could not remove chain", f"{error}\n\nManual cleanup may be required.\n")
