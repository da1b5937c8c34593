import base64
import html
import io
import logging
import os
import smtplib
import zipfile
from datetime import date
from email.message import EmailMessage
from email.utils import make_msgid


logger = logging.getLogger(__name__)

RECEIPT_EXTENSIONS = (".jpg", ".jpeg", ".png", ".webp", ".pdf")
DEFAULT_EMAIL_MESSAGE = "Please find attached the expense report with receipts."


class EmailConfigError(RuntimeError):
    """Raised when SMTP settings are incomplete."""


def is_receipt_file(filename):
    return os.path.splitext(filename)[1].lower() in RECEIPT_EXTENSIONS


def get_mime_type(filename):
    ext = os.path.splitext(filename)[1].lower()
    if ext == ".pdf":
        return "application/pdf"
    if ext == ".png":
        return "image/png"
    if ext == ".webp":
        return "image/webp"
    return "image/jpeg"


def list_receipt_files(folder_path):
    """Visible receipt files directly inside ``folder_path``, sorted by name."""
    names = []
    for name in sorted(os.listdir(folder_path)):
        if name.startswith(".") or not is_receipt_file(name):
            continue
        if os.path.isfile(os.path.join(folder_path, name)):
            names.append(name)
    return names


def read_receipt_files(folder_path):
    documents = []
    for name in list_receipt_files(folder_path):
        full_path = os.path.join(folder_path, name)
        with open(full_path, "rb") as handle:
            documents.append(
                {
                    "name": name,
                    "mime_type": get_mime_type(name),
                    "data": handle.read(),
                    "path": full_path,
                }
            )
    return documents


def dated_file_name(extension, today=None):
    today = today or date.today()
    return f"expenses_{today.isoformat()}.{extension}"


def build_zip(csv_name, csv_content, receipts):
    """Return ZIP bytes with the CSV at the root and ``receipts`` under ``receipts/``.

    ``receipts`` is an iterable of ``(file_name, bytes)`` pairs. ``csv_content``
    may be None to omit the CSV.
    """
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        if csv_content is not None:
            if isinstance(csv_content, str):
                csv_content = csv_content.encode("utf-8")
            archive.writestr(csv_name, csv_content)
        for file_name, data in receipts:
            archive.writestr(f"receipts/{os.path.basename(file_name)}", data)
    return buffer.getvalue()


def zip_folder(folder_path, csv_content=None, today=None):
    receipts = []
    for name in list_receipt_files(folder_path):
        with open(os.path.join(folder_path, name), "rb") as handle:
            receipts.append((name, handle.read()))
    return build_zip(dated_file_name("csv", today), csv_content, receipts)


def email_settings(config):
    settings = {
        "host": config.get("EMAIL_HOST") or "",
        "port": int(config.get("EMAIL_PORT") or 587),
        "secure": bool(config.get("EMAIL_SECURE")),
        "user": config.get("EMAIL_USER") or "",
        "password": config.get("EMAIL_PASSWORD") or "",
    }
    if not settings["host"] or not settings["user"] or not settings["password"]:
        raise EmailConfigError(
            "Email configuration not set. Please configure EMAIL_HOST, EMAIL_USER, and EMAIL_PASSWORD"
        )
    return settings


def send_email(config, recipient, zip_data, file_name, subject=None, message=None):
    """Send the base64 ``zip_data`` as an attachment and return the Message-ID."""
    if not recipient:
        raise ValueError("Recipient is required")

    settings = email_settings(config)
    body = message or DEFAULT_EMAIL_MESSAGE

    msg = EmailMessage()
    msg["From"] = settings["user"]
    msg["To"] = recipient
    msg["Subject"] = subject or f"Expense Report - {date.today().strftime('%d/%m/%Y')}"
    msg["Message-ID"] = make_msgid()
    msg.set_content(body)
    msg.add_alternative(f"<p>{html.escape(body)}</p>", subtype="html")
    if zip_data and file_name:
        msg.add_attachment(
            base64.b64decode(zip_data),
            maintype="application",
            subtype="zip",
            filename=file_name,
        )

    if settings["secure"]:
        smtp = smtplib.SMTP_SSL(settings["host"], settings["port"])
    else:
        smtp = smtplib.SMTP(settings["host"], settings["port"])
    with smtp:
        if not settings["secure"]:
            smtp.ehlo()
            if smtp.has_extn("starttls"):
                smtp.starttls()
                smtp.ehlo()
        smtp.login(settings["user"], settings["password"])
        smtp.send_message(msg)

    logger.info("Sent email to %s with attachment %s", recipient, file_name)
    return msg["Message-ID"]
