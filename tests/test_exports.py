import base64
import io
import zipfile
from datetime import date

import pytest

from finance_assistant import exports
from finance_assistant.exports import (
    EmailConfigError,
    build_zip,
    get_mime_type,
    is_receipt_file,
    list_receipt_files,
    send_email,
    zip_folder,
)


class FakeSMTP:
    instances = []

    def __init__(self, host, port):
        self.host = host
        self.port = port
        self.started_tls = False
        self.logged_in = None
        self.sent = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def ehlo(self):
        return (250, b"ok")

    def has_extn(self, name):
        return name == "starttls"

    def starttls(self):
        self.started_tls = True

    def login(self, user, password):
        self.logged_in = (user, password)

    def send_message(self, msg):
        self.sent.append(msg)


@pytest.fixture()
def fake_smtp(monkeypatch):
    FakeSMTP.instances = []
    monkeypatch.setattr(exports.smtplib, "SMTP", FakeSMTP)
    monkeypatch.setattr(exports.smtplib, "SMTP_SSL", FakeSMTP)
    return FakeSMTP


EMAIL_CONFIG = {
    "EMAIL_HOST": "smtp.example.com",
    "EMAIL_PORT": 587,
    "EMAIL_SECURE": False,
    "EMAIL_USER": "me@example.com",
    "EMAIL_PASSWORD": "secret",
}


def test_receipt_file_rules():
    assert is_receipt_file("a.JPG")
    assert is_receipt_file("scan.pdf")
    assert not is_receipt_file("notes.txt")
    assert get_mime_type("x.pdf") == "application/pdf"
    assert get_mime_type("x.PNG") == "image/png"
    assert get_mime_type("x.webp") == "image/webp"
    assert get_mime_type("x.jpeg") == "image/jpeg"
    assert get_mime_type("x.heic") == "image/jpeg"


def test_list_receipt_files_skips_hidden_and_other_files(tmp_path):
    for name in ["b.png", "a.jpg", ".hidden.jpg", "readme.txt"]:
        (tmp_path / name).write_bytes(b"x")
    (tmp_path / "nested.pdf").mkdir()
    assert list_receipt_files(str(tmp_path)) == ["a.jpg", "b.png"]


def test_build_zip_layout():
    data = build_zip("expenses.csv", "a,b\n", [("one.jpg", b"1"), ("dir/two.pdf", b"2")])
    with zipfile.ZipFile(io.BytesIO(data)) as archive:
        assert sorted(archive.namelist()) == ["expenses.csv", "receipts/one.jpg", "receipts/two.pdf"]
        assert archive.read("expenses.csv") == b"a,b\n"


def test_zip_folder_names_csv_by_date(tmp_path):
    (tmp_path / "r.jpg").write_bytes(b"img")
    data = zip_folder(str(tmp_path), "csv", today=date(2025, 2, 1))
    with zipfile.ZipFile(io.BytesIO(data)) as archive:
        assert sorted(archive.namelist()) == ["expenses_2025-02-01.csv", "receipts/r.jpg"]

    data = zip_folder(str(tmp_path))
    with zipfile.ZipFile(io.BytesIO(data)) as archive:
        assert archive.namelist() == ["receipts/r.jpg"]


def test_send_email_requires_configuration():
    with pytest.raises(EmailConfigError, match="EMAIL_HOST, EMAIL_USER, and EMAIL_PASSWORD"):
        send_email({"EMAIL_HOST": "smtp.example.com"}, "you@example.com", "", "x.zip")


def test_send_email_attaches_zip(fake_smtp):
    zip_data = base64.b64encode(b"PK-fake").decode("ascii")
    message_id = send_email(EMAIL_CONFIG, "you@example.com", zip_data, "expenses.zip")

    smtp = fake_smtp.instances[0]
    assert (smtp.host, smtp.port) == ("smtp.example.com", 587)
    assert smtp.started_tls is True
    assert smtp.logged_in == ("me@example.com", "secret")

    msg = smtp.sent[0]
    assert msg["Message-ID"] == message_id
    assert msg["From"] == "me@example.com"
    assert msg["Subject"].startswith("Expense Report - ")
    attachments = list(msg.iter_attachments())
    assert attachments[0].get_filename() == "expenses.zip"
    assert attachments[0].get_content() == b"PK-fake"
    body = msg.get_body(preferencelist=("plain",)).get_content()
    assert "Please find attached the expense report with receipts." in body


def test_send_email_escapes_html_body(fake_smtp):
    send_email(EMAIL_CONFIG, "you@example.com", "", "x.zip", message="<b>Q1</b> & Q2")

    msg = fake_smtp.instances[0].sent[0]
    assert msg.get_body(preferencelist=("plain",)).get_content().strip() == "<b>Q1</b> & Q2"
    html_body = msg.get_body(preferencelist=("html",)).get_content()
    assert "<p>&lt;b&gt;Q1&lt;/b&gt; &amp; Q2</p>" in html_body
