import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import List, Optional

from config import EMAIL_CONFIG
from logger import get_logger

log = get_logger("emailer")


def send_email(to_addrs: List[str], subject: str, html: str, smtp_config: Optional[dict] = None) -> bool:
    """HTML mail to the admins. Never raises; returns False when nothing went out."""
    cfg = smtp_config or EMAIL_CONFIG

    if not to_addrs:
        log.warning(f"No recipients for email '{subject}'; skipping.")
        return False

    if not cfg.get("from_addr"):
        log.warning(f"FROM_EMAIL not configured; email '{subject}' not sent.")
        return False

    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = cfg["from_addr"]
    msg["To"] = ", ".join(to_addrs)

    msg.attach(MIMEText(html, "html", "utf-8"))

    try:
        with smtplib.SMTP(cfg["smtp_server"], cfg["smtp_port"], timeout=30) as server:
            server.starttls()
            if cfg.get("smtp_password"):
                server.login(cfg["smtp_username"], cfg["smtp_password"])
            server.sendmail(msg["From"], to_addrs, msg.as_string())
        log.info(f"Email sent: {subject} -> {to_addrs}")
        return True
    except (smtplib.SMTPException, OSError) as e:
        log.error(f"Failed sending email: {e}")
        return False
