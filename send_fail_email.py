import os
import socket
import sys
import smtplib
from email.message import EmailMessage
from datetime import datetime
from typing import Optional, Tuple

from config import EMAIL_CONFIG, load_settings

# Each entry: (start_marker, end_marker, subject_label)
MARKER_SETS = [
    ("===== CYCLE START:", "===== CYCLE END:", "Pardini Sync Cycle"),
    ("===== ADMIN START:", "===== ADMIN EXIT:", "Pardini Sync Admin"),
]


def extract_last_marked_block(log_file: str, max_lines: int = 2000) -> Tuple[str, str]:
    """
    Returns (chunk_text, subject_label) for the most recent marked block.
    No markers at all -> last 200 lines, labelled "Pardini Sync".
    """
    try:
        with open(log_file, "r", encoding="utf-8", errors="ignore") as f:
            lines = f.readlines()
    except OSError as e:
        return f"(Could not read log file: {e})", "Pardini Sync"

    if not lines:
        return "(Log file empty)", "Pardini Sync"

    best_start_idx = None
    best_marker_set = None

    for start_marker, end_marker, label in MARKER_SETS:
        for i in range(len(lines) - 1, -1, -1):
            if start_marker in lines[i]:
                if best_start_idx is None or i > best_start_idx:
                    best_start_idx = i
                    best_marker_set = (start_marker, end_marker, label)
                break

    if best_start_idx is None:
        return "".join(lines[-200:]), "Pardini Sync"

    _, end_marker, label = best_marker_set

    end_idx = len(lines) - 1
    for j in range(best_start_idx, len(lines)):
        if end_marker in lines[j]:
            end_idx = j
            break

    chunk_lines = lines[best_start_idx:end_idx + 1]
    if len(chunk_lines) > max_lines:
        chunk_lines = chunk_lines[-max_lines:]

    return "".join(chunk_lines), label


def build_message(log_file: str, exit_code: str, to_addrs, now: Optional[datetime] = None) -> EmailMessage:
    chunk, label = extract_last_marked_block(log_file)
    when = (now or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")

    body = f"""
{label} FAILED

Time: {when}
Host: {socket.gethostname()}
User: {os.environ.get("USER") or os.environ.get("USERNAME", "unknown")}
Exit Code: {exit_code}

Log File:
{log_file}

--- Last Cycle Block Output ---
{chunk}
"""

    msg = EmailMessage()
    msg["Subject"] = f"{label} FAILED (Exit={exit_code})"
    msg["From"] = EMAIL_CONFIG["from_addr"]
    msg["To"] = ", ".join(to_addrs)
    msg.set_content(body)
    return msg


def send_fail_email(log_file: str, exit_code: str) -> None:
    to_addrs = load_settings().admin_emails
    if not to_addrs:
        raise SystemExit("ADMIN_EMAILS not configured")

    msg = build_message(log_file, exit_code, to_addrs)

    with smtplib.SMTP(EMAIL_CONFIG["smtp_server"], EMAIL_CONFIG["smtp_port"], timeout=30) as smtp:
        smtp.starttls()
        if EMAIL_CONFIG["smtp_password"]:
            smtp.login(EMAIL_CONFIG["smtp_username"], EMAIL_CONFIG["smtp_password"])
        smtp.send_message(msg)


if __name__ == "__main__":
    # Usage: send_fail_email.py <logfile> <exit_code>
    log_file = sys.argv[1] if len(sys.argv) > 1 else ""
    exit_code = sys.argv[2] if len(sys.argv) > 2 else "unknown"

    if not log_file:
        print("ERROR: log file not provided")
        sys.exit(2)

    send_fail_email(log_file, exit_code)
    print(f"Fail email sent to ADMIN_EMAILS. ExitCode={exit_code}")
