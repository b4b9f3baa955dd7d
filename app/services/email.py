import logging
import os
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

logger = logging.getLogger(__name__)


def _env_value(name: str) -> str | None:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    return value


def _env_int(name: str, default: int) -> int:
    raw = _env_value(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = _env_value(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "on"}


def smtp_config() -> dict:
    username = _env_value("SMTP_USERNAME") or _env_value("SMTP_USER")
    return {
        "host": _env_value("SMTP_HOST") or "localhost",
        "port": _env_int("SMTP_PORT", 587),
        "username": username,
        "password": _env_value("SMTP_PASSWORD"),
        "use_tls": _env_bool("SMTP_USE_TLS", True),
        "use_ssl": _env_bool("SMTP_USE_SSL", False),
        "timeout": _env_int("SMTP_TIMEOUT_SECONDS", 10),
        "from_email": _env_value("SMTP_FROM_EMAIL") or "noreply@example.com",
        "from_name": _env_value("SMTP_FROM_NAME") or "Fan Club Store",
    }


def _create_smtp_client(host: str, port: int, use_ssl: bool, timeout: int | None = None):
    if use_ssl:
        return smtplib.SMTP_SSL(host, port, timeout=timeout)
    return smtplib.SMTP(host, port, timeout=timeout)


def send_email(
    to_email: str,
    subject: str,
    body_html: str,
    body_text: str | None = None,
    config: dict | None = None,
) -> bool:
    """Send one email via SMTP.

    Returns:
        True if the message was accepted by the SMTP server, False otherwise.
    """
    config = config or smtp_config()
    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = f"{config['from_name']} <{config['from_email']}>"
    msg["To"] = to_email

    if body_text:
        msg.attach(MIMEText(body_text, "plain"))
    msg.attach(MIMEText(body_html, "html"))

    server = None
    try:
        server = _create_smtp_client(
            config["host"], config["port"], bool(config["use_ssl"]), config.get("timeout")
        )
        if config["use_tls"] and not config["use_ssl"]:
            server.starttls()
        if config["username"] and config["password"]:
            server.login(config["username"], config["password"])
        server.sendmail(config["from_email"], to_email, msg.as_string())
        logger.info("Email sent successfully to %s", to_email)
        return True
    except smtplib.SMTPAuthenticationError as exc:
        logger.error("SMTP authentication failed for %s: %s", to_email, exc)
        return False
    except (smtplib.SMTPException, OSError) as exc:
        logger.error("Failed to send email to %s: %s", to_email, exc)
        return False
    finally:
        if server is not None:
            try:
                server.quit()
            except (smtplib.SMTPException, OSError) as exc:
                logger.debug("SMTP quit failed, closing connection: %s", exc)
                server.close()
