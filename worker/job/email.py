"""
이메일 발송 핸들러

JOBLINE_SMTP_HOST가 설정되어 있으면 SMTP로 발송하고,
없으면 발송 내용을 로그로 남기고 처리 시간만 흉내 냅니다 (mock 모드).

payload 예시:
{
    "to": "user@example.com",
    "subject": "Welcome",
    "html": "<p>Hello</p>"
}
"""

import asyncio
import logging
import os
import smtplib
from email.message import EmailMessage

from pydantic import BaseModel, Field

from common.model.job import Job

logger = logging.getLogger(__name__)

MOCK_SEND_SECONDS = 0.5
DEFAULT_SENDER = "jobline <noreply@localhost>"


class EmailPayload(BaseModel):
    """이메일 잡 payload"""
    to: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+$", max_length=320)
    subject: str = Field(..., min_length=1, max_length=998)
    html: str = Field(..., min_length=1)


def _send_smtp(host: str, port: int, payload: EmailPayload) -> None:
    message = EmailMessage()
    message["From"] = os.environ.get("JOBLINE_SMTP_SENDER", DEFAULT_SENDER)
    message["To"] = payload.to
    message["Subject"] = payload.subject
    message.set_content(payload.html, subtype="html")

    with smtplib.SMTP(host, port, timeout=30) as smtp:
        smtp.send_message(message)


async def send_email(job: Job) -> dict:
    payload = EmailPayload.model_validate(job.payload)
    logger.info(f"[email] Processing job {job.id}: sending to {payload.to}")

    host = os.environ.get("JOBLINE_SMTP_HOST")
    if host:
        port = int(os.environ.get("JOBLINE_SMTP_PORT", "25"))
        await asyncio.to_thread(_send_smtp, host, port, payload)
        logger.info(f"[email] Job {job.id}: email sent to {payload.to}")
        return {"to": payload.to, "mock": False}

    logger.info(
        f"[email] Job {job.id}: (mock) would send to {payload.to}, "
        f"subject={payload.subject!r}, html_length={len(payload.html)}"
    )
    await asyncio.sleep(MOCK_SEND_SECONDS)
    return {"to": payload.to, "mock": True}
