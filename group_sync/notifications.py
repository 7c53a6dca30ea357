"""
Email notifications for Group Sync runs.

A message goes out when a run aborts or finishes with errors, and, when asked
for, after every clean run with the run summary.
"""

import smtplib
import logging
from datetime import datetime
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Any, Dict, List, Optional

from group_sync.report import RunReport

logger = logging.getLogger(__name__)

SUBJECT_PREFIX = "Group Sync"
FOOTER = "This is an automated message from Group Sync."


def _recipients(config: Dict[str, Any]) -> List[str]:
    email_to = config.get('email_to') or []
    if isinstance(email_to, str):
        email_to = email_to.split(',')
    return [address.strip() for address in email_to if address.strip()]


def _connect(server_name: str, port: int, use_tls: bool) -> smtplib.SMTP:
    # Port 465 speaks TLS from the first byte, the others upgrade with STARTTLS
    if port == 465:
        return smtplib.SMTP_SSL(server_name, port)
    server = smtplib.SMTP(server_name, port)
    if use_tls:
        server.starttls()
    return server


def _report_body(title: str, sections: List[List[str]]) -> str:
    lines = [title, f"Timestamp: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}", ""]
    for section in sections:
        lines.extend(section)
        lines.append("")
    lines.append(FOOTER)
    return '\n'.join(lines)


def send_email(subject: str, body: str, config: Dict[str, Any]) -> bool:
    """
    Send a plain text message to the configured recipients.

    Args:
        subject: Email subject line
        body: Email body content
        config: Notification settings ('enable_email', 'smtp_*', 'email_from', 'email_to')

    Returns:
        True if the message was handed to the SMTP server
    """
    if not config.get('enable_email', False):
        logger.debug("Email notifications disabled")
        return False

    server_name = config.get('smtp_server')
    recipients = _recipients(config)
    if not server_name:
        logger.error("Cannot send notification: SMTP server not configured")
        return False
    if not recipients:
        logger.error("Cannot send notification: no email recipients configured")
        return False

    port = int(config.get('smtp_port') or 587)
    username = config.get('smtp_username')
    password = config.get('smtp_password')
    sender = config.get('email_from') or username

    message = MIMEMultipart()
    message['From'] = sender
    message['To'] = ', '.join(recipients)
    message['Subject'] = subject
    message.attach(MIMEText(body, 'plain'))

    logger.debug(f"Sending '{subject}' to {len(recipients)} recipients via {server_name}:{port}")
    try:
        server = _connect(server_name, port, config.get('smtp_tls', True))
        try:
            if username and password:
                server.login(username, password)
            server.sendmail(sender, recipients, message.as_string())
        finally:
            server.quit()
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send email notification '{subject}': {e}")
        return False

    logger.info(f"Email notification sent: {subject}")
    return True


def send_failure_notification(title: str, error_message: str, config: Dict[str, Any],
                              additional_info: Optional[Dict[str, Any]] = None) -> bool:
    """Report a run that was aborted before it could finish."""
    if not config.get('email_on_failure', True):
        logger.debug("Failure email notifications disabled")
        return False

    sections = [[f"Failure Type: {title}", f"Error Message: {error_message}"]]
    if additional_info:
        sections.append(["Additional Information:"] +
                        [f"  {key}: {value}" for key, value in additional_info.items()])
    sections.append(["Please check the application logs for more detailed information."])

    body = _report_body("Group Sync Failure Report", sections)
    return send_email(f"{SUBJECT_PREFIX} Alert: {title}", body, config)


def send_run_summary(report: RunReport, config: Dict[str, Any]) -> bool:
    """
    Mail the summary of a finished run.

    Runs with errors go out whenever failure mails are on; clean runs only
    when success mails are enabled.
    """
    if report.has_errors:
        if not config.get('email_on_failure', True):
            return False
        subject = f"{SUBJECT_PREFIX} Alert: Run Finished With Errors"
        outcome = "Group sync finished with errors."
    elif config.get('email_on_success', False):
        subject = f"{SUBJECT_PREFIX}: Successful Completion"
        outcome = "Group sync completed successfully."
    else:
        logger.debug("Success email notifications disabled")
        return False

    if report.preview:
        outcome += " Preview mode, nothing was changed."
    sections = [[outcome], report.summary().splitlines()]
    if report.failed_tasks:
        sections.append([f"Tasks aborted by errors: {report.failed_tasks}"])

    return send_email(subject, _report_body("Group Sync Summary Report", sections), config)
