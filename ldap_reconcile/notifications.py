"""
Email notification utilities for LDAP Reconcile.

Sends e-mail for failed, partial and directory-unavailable runs, and an
optional summary after successful runs.
"""

import smtplib
import logging
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Dict, List, Any, Optional
from datetime import datetime

logger = logging.getLogger(__name__)

MAX_LISTED_ERRORS = 10
FOOTER = "This is an automated message from LDAP Reconcile."


def send_email(subject: str, body: str, config: Dict[str, Any]) -> bool:
    """
    Send email notification using SMTP.

    Args:
        subject: Email subject line
        body: Email body content
        config: The ``notifications`` configuration section

    Returns:
        True if email sent successfully, False otherwise
    """
    if not config.get('enable_email', False):
        logger.debug("Email notifications disabled")
        return False

    smtp_server = config.get('smtp_server')
    smtp_port = config.get('smtp_port', 587)
    smtp_username = config.get('smtp_username')
    smtp_password = config.get('smtp_password')
    smtp_tls = config.get('smtp_tls', True)
    email_from = config.get('email_from', smtp_username)
    email_to = config.get('email_to', [])

    if not smtp_server:
        logger.error("SMTP server not configured")
        return False
    if not email_to:
        logger.error("No email recipients configured")
        return False
    if isinstance(email_to, str):
        email_to = [email_to]

    msg = MIMEMultipart()
    msg['From'] = email_from
    msg['To'] = ', '.join(email_to)
    msg['Subject'] = subject
    msg.attach(MIMEText(body, 'plain'))

    logger.debug(f"Sending email to {len(email_to)} recipients via {smtp_server}:{smtp_port}")
    try:
        if smtp_port == 465:
            server = smtplib.SMTP_SSL(smtp_server, smtp_port)
        else:
            server = smtplib.SMTP(smtp_server, smtp_port)
            if smtp_tls:
                server.starttls()

        try:
            if smtp_username and smtp_password:
                server.login(smtp_username, smtp_password)
            server.sendmail(email_from, email_to, msg.as_string())
        finally:
            server.quit()
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send email notification: {e}")
        return False

    logger.info(f"Email notification sent successfully: {subject}")
    return True


def _timestamp() -> str:
    return datetime.now().strftime('%Y-%m-%d %H:%M:%S')


def _format_runtime(runtime_seconds: float) -> str:
    if runtime_seconds > 60:
        return f"{int(runtime_seconds // 60)}m {runtime_seconds % 60:.1f}s"
    return f"{runtime_seconds:.2f} seconds"


def _error_lines(errors: List[str]) -> List[str]:
    lines = [f"  {i}. {error}" for i, error in enumerate(errors[:MAX_LISTED_ERRORS], 1)]
    if len(errors) > MAX_LISTED_ERRORS:
        lines.append(f"  ... and {len(errors) - MAX_LISTED_ERRORS} more errors")
    return lines


def send_failure_notification(
    title: str,
    error_message: str,
    config: Dict[str, Any],
    additional_info: Optional[Dict[str, Any]] = None
) -> bool:
    """
    Send notification for a failed run.

    Args:
        title: Failure title/type
        error_message: Error description
        config: Notification configuration
        additional_info: Optional additional context

    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_failure', True):
        logger.debug("Failure email notifications disabled")
        return False

    body_lines = [
        "LDAP Reconcile Failure Report",
        f"Timestamp: {_timestamp()}",
        "",
        f"Failure Type: {title}",
        f"Error Message: {error_message}",
        ""
    ]

    if additional_info:
        body_lines.append("Additional Information:")
        for key, value in additional_info.items():
            body_lines.append(f"  {key}: {value}")
        body_lines.append("")

    body_lines.extend([
        "Please check the application logs for more detailed information.",
        "",
        FOOTER
    ])

    return send_email(f"LDAP Reconcile Alert: {title}", '\n'.join(body_lines), config)


def send_partial_run_notification(run_summary: Dict[str, Any], config: Dict[str, Any]) -> bool:
    """
    Send notification for a run that stopped before processing every page.

    Args:
        run_summary: ``RunResult.as_dict()`` of the aborted or cancelled run
        config: Notification configuration

    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_failure', True):
        logger.debug("Failure email notifications disabled")
        return False

    kind = run_summary.get('kind', 'unknown')
    counters = run_summary.get('counters', {})
    errors = run_summary.get('errors', [])

    body_lines = [
        "LDAP Reconcile Partial Run Report",
        f"Timestamp: {_timestamp()}",
        "",
        f"Import of {kind} ended with status '{run_summary.get('status')}'.",
        "Records processed before the stop remain committed.",
        "",
        f"  Pages fetched: {run_summary.get('pages_fetched', 0)}",
        f"  Entries seen: {run_summary.get('entries_seen', 0)}",
        f"  Records added: {counters.get('added', 0)}",
        f"  Records updated: {counters.get('updated', 0)}",
        ""
    ]
    if errors:
        body_lines.append("Errors:")
        body_lines.extend(_error_lines(errors))
        body_lines.append("")
    body_lines.append(FOOTER)

    return send_email(f"LDAP Reconcile Alert: {kind} import incomplete", '\n'.join(body_lines), config)


def send_directory_unavailable(error_message: str, config: Dict[str, Any], retry_count: int = 0) -> bool:
    """
    Send notification when the directory cannot be reached.

    Args:
        error_message: Connection error description
        config: Notification configuration
        retry_count: Number of connection retries attempted
    """
    additional_info = {
        'Component': 'LDAP Directory',
        'Retry Attempts': retry_count,
        'Impact': 'Import aborted before any record was processed'
    }
    return send_failure_notification("Directory Unavailable", error_message, config, additional_info)


def send_run_summary(run_stats: Dict[str, Any], config: Dict[str, Any]) -> bool:
    """
    Send summary notification after a completed run.

    Only sent when ``email_on_success`` is enabled.

    Args:
        run_stats: Orchestrator statistics with ``runtime_seconds`` and per-kind ``runs``
        config: Notification configuration

    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_success', False):
        logger.debug("Success email notifications disabled")
        return False

    body_lines = [
        "LDAP Reconcile Summary Report",
        f"Timestamp: {_timestamp()}",
        "",
        "Import completed successfully!",
        "",
        f"Total runtime: {_format_runtime(run_stats.get('runtime_seconds', 0))}",
        ""
    ]

    for kind, run in run_stats.get('runs', {}).items():
        counters = run.get('counters', {})
        outcomes = run.get('outcomes', {})
        body_lines.extend([
            f"{kind}:",
            f"  Status: {run.get('status')}",
            f"  Entries seen: {run.get('entries_seen', 0)}",
            f"  Added: {counters.get('added', 0)}",
            f"  Updated: {counters.get('updated', 0)}",
            f"  Unchanged: {outcomes.get('unchanged', 0)}",
            f"  Rejected: {outcomes.get('rejected', 0)}",
            f"  Failed: {outcomes.get('failed', 0)}",
            ""
        ])

    body_lines.append(FOOTER)
    return send_email("LDAP Reconcile: Successful Completion", '\n'.join(body_lines), config)


def test_notification_config(config: Dict[str, Any]) -> bool:
    """
    Test email notification configuration by sending a test email.

    Returns:
        True if test email sent successfully
    """
    recipients = config.get('email_to', [])
    if isinstance(recipients, str):
        recipients = [recipients]

    test_body = "\n".join([
        "This is a test email from LDAP Reconcile.",
        "",
        "If you receive this message, your email notification configuration is working correctly.",
        "",
        "Test details:",
        f"- SMTP Server: {config.get('smtp_server', 'not configured')}",
        f"- SMTP Port: {config.get('smtp_port', 'not configured')}",
        f"- From Address: {config.get('email_from', 'not configured')}",
        f"- Recipients: {', '.join(recipients)}",
        "",
        "This is an automated test message."
    ])

    result = send_email("LDAP Reconcile: Configuration Test", test_body, config)
    if result:
        logger.info("Test notification sent successfully")
    else:
        logger.error("Test notification failed")
    return result
