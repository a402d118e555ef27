from __future__ import annotations

import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from .report import RunReport
from .settings import settings


def send_email(subject: str, body: str) -> bool:
    """Send an email if SMTP settings are configured.

    Environment variables:
      - DBO_ENABLE_EMAIL=true
      - DBO_SMTP_HOST / DBO_SMTP_PORT
      - DBO_SMTP_USER / DBO_SMTP_PASSWORD
      - DBO_EMAIL_FROM / DBO_EMAIL_TO
    """
    if not settings.enable_email:
        return False
    if not all(
        [
            settings.smtp_host,
            settings.smtp_port,
            settings.smtp_user,
            settings.smtp_password,
            settings.email_from,
            settings.email_to,
        ]
    ):
        return False

    try:
        msg = MIMEMultipart()
        msg["From"] = settings.email_from
        msg["To"] = settings.email_to
        msg["Subject"] = subject
        msg.attach(MIMEText(body, "plain"))

        server = smtplib.SMTP(settings.smtp_host, settings.smtp_port)
        server.starttls()
        server.login(settings.smtp_user, settings.smtp_password)
        server.sendmail(settings.email_from, [settings.email_to], msg.as_string())
        server.quit()
        return True
    except (smtplib.SMTPException, OSError):
        return False


def format_failure(report: RunReport) -> tuple[str, str]:
    failed = report.failures()
    first = failed[0].node_id if failed else "?"
    subject = f"🚨 RUN FAILED: {report.name} ({report.run_id}) at {first}"
    lines = [f"Run: {report.name} ({report.run_id})", f"Started: {report.started_at}", f"Finished: {report.finished_at}", ""]
    for o in report.outcomes:
        dur = f"{o.duration_s:.1f}s" if o.duration_s is not None else "-"
        detail = f" ({o.failure_kind.value}: {o.reason})" if o.failure_kind else ""
        lines.append(f"{o.node_id:<24} {o.state.value:<12} {dur:>8}{detail}")
    return subject, "\n".join(lines)


def notify_run_failure(report: RunReport) -> bool:
    if report.success:
        return False
    subject, body = format_failure(report)
    return send_email(subject, body)
