"""
Notification Service — メール送信

Mailer は送信手段の差し替え口。
  - LoggingMailer: 送らずにログへ出す (ローカル実行・テスト)
  - SmtpMailer:    smtplib で SMTP サーバーへ送る

MAIL_TRANSPORT=smtp のときだけ SMTP を使う。
"""

import asyncio
import logging
import os
import smtplib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

logger = logging.getLogger(__name__)

DEFAULT_SENDER = "E-Commerce App <no-reply@ecommerce.example>"


@dataclass(frozen=True)
class EmailMessage:
    to: str
    subject: str
    body: str


class Mailer(ABC):
    @abstractmethod
    async def send(self, message: EmailMessage) -> None:
        """送信に失敗したら OSError (smtplib の例外を含む) を送出する。"""


class LoggingMailer(Mailer):
    def __init__(self) -> None:
        self.sent: list[EmailMessage] = []

    async def send(self, message: EmailMessage) -> None:
        self.sent.append(message)
        logger.info("Email to %s: %s\n%s", message.to, message.subject, message.body)


class SmtpMailer(Mailer):
    def __init__(
        self,
        host: str,
        port: int = 587,
        username: str = "",
        password: str = "",
        sender: str = DEFAULT_SENDER,
        use_tls: bool = True,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender
        self.use_tls = use_tls

    @classmethod
    def from_env(cls) -> "SmtpMailer":
        return cls(
            host=os.environ.get("MAIL_HOST", "localhost"),
            port=int(os.environ.get("MAIL_PORT", "587")),
            username=os.environ.get("MAIL_USER", ""),
            password=os.environ.get("MAIL_PASS", ""),
            sender=os.environ.get("MAIL_FROM", DEFAULT_SENDER),
            use_tls=os.environ.get("MAIL_USE_TLS", "true").lower() == "true",
        )

    def _build(self, message: EmailMessage) -> MIMEMultipart:
        mime = MIMEMultipart("alternative")
        mime["Subject"] = message.subject
        mime["From"] = self.sender
        mime["To"] = message.to
        mime.attach(MIMEText(message.body, "plain"))
        return mime

    def _send_blocking(self, message: EmailMessage) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=10) as server:
            if self.use_tls:
                server.starttls()
            if self.username and self.password:
                server.login(self.username, self.password)
            server.send_message(self._build(message))

    async def send(self, message: EmailMessage) -> None:
        # smtplib はブロッキングなのでスレッドで実行する
        await asyncio.to_thread(self._send_blocking, message)
        logger.info("Email sent to %s: %s", message.to, message.subject)


def create_mailer(transport: str | None = None) -> Mailer:
    transport = transport or os.environ.get("MAIL_TRANSPORT", "log")
    if transport == "smtp":
        return SmtpMailer.from_env()
    return LoggingMailer()
