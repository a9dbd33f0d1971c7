import asyncio
import logging
import smtplib
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Optional

import phonenumbers
from twilio.rest import Client

from errors import UpstreamError, ValidationError

logger = logging.getLogger(__name__)


def to_e164(raw: str, default_prefix: str = "+1") -> str:
    cleaned = "".join(c for c in raw if c.isdigit() or c == "+")
    if not cleaned.startswith("+"):
        cleaned = default_prefix + cleaned
    try:
        num = phonenumbers.parse(cleaned, None)
    except phonenumbers.NumberParseException as e:
        raise ValidationError("Invalid phone number") from e
    if not phonenumbers.is_valid_number(num):
        raise ValidationError("Invalid phone number")
    return phonenumbers.format_number(num, phonenumbers.PhoneNumberFormat.E164)


def otp_message(app_name: str, code: str, ttl_minutes: int) -> str:
    return f"Your {app_name} verification code is {code}. It expires in {ttl_minutes} minutes."


class TwilioSmsSender:
    def __init__(self, sid: Optional[str], token: Optional[str], from_number: Optional[str],
                 default_prefix: str = "+1"):
        self.sid = sid
        self.token = token
        self.from_number = from_number
        self.default_prefix = default_prefix

    async def send(self, destination: str, message: str, subject: Optional[str] = None) -> None:
        if not (self.sid and self.token and self.from_number):
            raise UpstreamError("Twilio is not configured")
        to = to_e164(destination, self.default_prefix)
        sender = to_e164(self.from_number, self.default_prefix)
        client = Client(self.sid, self.token)
        try:
            await asyncio.to_thread(client.messages.create, to=to, from_=sender, body=message)
        except Exception as e:
            raise UpstreamError(f"SMS to {to} failed: {e}") from e


class SmtpEmailSender:
    def __init__(self, host: str, port: int, user: Optional[str], password: Optional[str]):
        self.host = host
        self.port = port
        self.user = user
        self.password = password

    def _send(self, to_email: str, subject: str, text_body: str, html_body: str) -> None:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.user
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        if self.port == 465:
            with smtplib.SMTP_SSL(self.host, self.port) as server:
                server.login(self.user, self.password)
                server.sendmail(self.user, to_email, msg.as_string())
        else:
            with smtplib.SMTP(self.host, self.port) as server:
                server.starttls()
                server.login(self.user, self.password)
                server.sendmail(self.user, to_email, msg.as_string())

    async def send(self, destination: str, message: str, subject: Optional[str] = None) -> None:
        if not (self.user and self.password):
            raise UpstreamError("SMTP is not configured")
        html = f"<p>{message}</p>"
        try:
            await asyncio.to_thread(self._send, destination, subject or message, message, html)
        except (smtplib.SMTPException, OSError) as e:
            raise UpstreamError(f"email to {destination} failed: {e}") from e
