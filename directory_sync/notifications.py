"""
E-mail notifications for Directory Sync.

Failed phases, remove-limit aborts and start-up failures are reported when
``email_on_failure`` is set; summaries of clean passes when
``email_on_success`` is set. Nothing is sent unless ``enable_email`` is on.
A notification that can't be delivered is logged and reported as ``False``.
"""

import smtplib
import logging
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Dict, Any, List, Optional
from datetime import datetime

from directory_sync.errors import RemoveLimitExceeded

logger = logging.getLogger(__name__)

APP_NAME = "Directory Sync"
MAX_LISTED_NAMES = 20
IMPLICIT_TLS_PORT = 465


def _recipients(config: Dict[str, Any]) -> List[str]:
    email_to = config.get('email_to') or []
    return [email_to] if isinstance(email_to, str) else list(email_to)


def send_email(subject: str, body: str, config: Dict[str, Any]) -> bool:
    """
    Send a plain-text e-mail through the configured SMTP server.

    Port 465 uses implicit TLS. Other ports use STARTTLS when ``smtp_tls`` is on.

    Args:
        subject: Email subject line
        body: Email body content
        config: ``notifications`` configuration section

    Returns:
        True if the message was handed to the server
    """
    if not config.get('enable_email', False):
        logger.debug(f"Email notifications disabled, not sending: {subject}")
        return False

    smtp_server = config.get('smtp_server')
    smtp_port = config.get('smtp_port', 587)
    username = config.get('smtp_username')
    password = config.get('smtp_password')
    sender = config.get('email_from') or username
    recipients = _recipients(config)

    if not smtp_server or not recipients:
        logger.error("Email notifications need smtp_server and email_to")
        return False

    message = MIMEMultipart()
    message['From'] = sender
    message['To'] = ', '.join(recipients)
    message['Subject'] = subject
    message.attach(MIMEText(body, 'plain'))

    try:
        if smtp_port == IMPLICIT_TLS_PORT:
            server = smtplib.SMTP_SSL(smtp_server, smtp_port)
        else:
            server = smtplib.SMTP(smtp_server, smtp_port)
            if config.get('smtp_tls', True):
                server.starttls()
        if username and password:
            server.login(username, password)
        server.sendmail(sender, recipients, message.as_string())
        server.quit()
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send email '{subject}' via {smtp_server}:{smtp_port}: {e}")
        return False

    logger.info(f"Sent email '{subject}' to {len(recipients)} recipient(s)")
    return True


def _render_report(title: str, sections: List[List[str]]) -> str:
    lines = [f"{APP_NAME} {title}", f"Timestamp: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}", ""]
    for section in sections:
        lines.extend(section)
        lines.append("")
    lines.append(f"This is an automated message from {APP_NAME}.")
    return '\n'.join(lines)


def send_failure_notification(
    title: str,
    error_message: str,
    config: Dict[str, Any],
    additional_info: Optional[Dict[str, Any]] = None
) -> bool:
    """
    Report a failure.

    Args:
        title: Short failure description, used in the subject
        error_message: Error description
        config: ``notifications`` configuration section
        additional_info: Extra ``key: value`` lines for the body
    """
    if not config.get('email_on_failure', True):
        logger.debug(f"Failure emails disabled, not reporting: {title}")
        return False

    sections = [[f"Failure Type: {title}", f"Error Message: {error_message}"]]
    if additional_info:
        sections.append(["Additional Information:"] + [f"  {key}: {value}" for key, value in additional_info.items()])
    sections.append(["Please check the application logs for more detailed information."])

    return send_email(f"{APP_NAME} Alert: {title}", _render_report("Failure Report", sections), config)


def send_phase_failure(phase: str, error_message: str, config: Dict[str, Any]) -> bool:
    """Report that the users or groups phase of a pass failed."""
    impact = 'No changes were applied for this phase in the current pass'
    if phase == 'users':
        impact += '; group sync was skipped'
    return send_failure_notification(f"{phase.capitalize()} Sync Failed", error_message, config,
                                     {'Phase': phase, 'Impact': impact})


def send_remove_limit_notification(error: RemoveLimitExceeded, config: Dict[str, Any]) -> bool:
    """Report a phase aborted by the remove limit, listing the first candidates."""
    listed = ', '.join(error.names[:MAX_LISTED_NAMES])
    hidden = len(error.names) - MAX_LISTED_NAMES
    if hidden > 0:
        listed += f" ... and {hidden} more"

    return send_failure_notification("Remove Limit Reached", str(error), config, {
        'Phase': error.kind,
        'Remove candidates': error.count,
        'Remove limit': error.limit,
        'Candidates': listed,
        'Impact': 'No changes were applied for this phase; check the directory filters',
    })


def _format_runtime(seconds: float) -> str:
    if seconds > 60:
        return f"{int(seconds // 60)}m {seconds % 60:.1f}s"
    return f"{seconds:.2f} seconds"


def send_success_summary(sync_stats: Dict[str, Any], config: Dict[str, Any]) -> bool:
    """
    Send the counters of a clean pass.

    Args:
        sync_stats: Statistics returned by the engine
        config: ``notifications`` configuration section
    """
    if not config.get('email_on_success', False):
        logger.debug("Success emails disabled")
        return False

    users = sync_stats['users']
    groups = sync_stats['groups']
    memberships = sync_stats['memberships']

    sections = [
        ["Sync completed successfully!", f"Total runtime: {_format_runtime(sync_stats.get('runtime_seconds', 0))}"],
        [
            "Users:",
            f"  Created: {users['created']} ({users['create_errors']} errors)",
            f"  Updated: {users['updated']} ({users['update_errors']} errors)",
            f"  Banned: {users['banned']}",
            f"  Removed: {users['removed']}",
            f"  Ban/remove errors: {users['ban_or_remove_errors']}",
        ],
        [
            "Groups:",
            f"  Created: {groups['created']} ({groups['create_errors']} errors)",
            f"  Updated: {groups['updated']} ({groups['update_errors']} errors)",
            f"  Removed: {groups['removed']} ({groups['remove_errors']} errors)",
        ],
        [
            "Memberships:",
            f"  Added: {memberships['added']} ({memberships['add_errors']} errors)",
            f"  Removed: {memberships['removed']} ({memberships['remove_errors']} errors)",
        ],
    ]
    return send_email(f"{APP_NAME}: Successful Completion", _render_report("Summary Report", sections), config)


def send_configuration_error(error_message: str, config_path: Optional[str], config: Dict[str, Any]) -> bool:
    return send_failure_notification("Configuration Error", error_message, config, {
        'Component': 'Configuration',
        'Config Path': config_path or 'default',
        'Impact': 'Application startup failed',
    })


def test_notification_config(config: Dict[str, Any]) -> bool:
    """Send a test e-mail describing the SMTP settings in use."""
    body = '\n'.join([
        f"This is a test email from {APP_NAME}.",
        "",
        "If you receive this message, e-mail notifications are configured correctly.",
        "",
        f"SMTP server: {config.get('smtp_server', 'not configured')}:{config.get('smtp_port', 587)}",
        f"From: {config.get('email_from', 'not configured')}",
        f"Recipients: {', '.join(_recipients(config))}",
    ])

    sent = send_email(f"{APP_NAME}: Configuration Test", body, config)
    if sent:
        logger.info("Test notification sent")
    else:
        logger.error("Test notification failed")
    return sent
