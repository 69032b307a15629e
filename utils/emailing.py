import os
from typing import Optional
import httpx
from jinja2 import Environment, FileSystemLoader, select_autoescape

from core.config import (
    APP_NAME,
    APP_BASE_URL,
    EMAIL_TIMEOUT_SEC,
    RESEND_API_URL,
    TEMPLATES_DIR,
    get_webhook_settings,
    logger,
)

# Jinja env
_jinja_env = Environment(
    loader=FileSystemLoader(TEMPLATES_DIR),
    autoescape=select_autoescape(["html", "xml"]),
)

EMAIL_BRAND_BUTTON_BG = os.getenv("EMAIL_BRAND_BUTTON_BG", "#0F172A")
EMAIL_BRAND_BUTTON_TEXT = os.getenv("EMAIL_BRAND_BUTTON_TEXT", "#FFFFFF")
EMAIL_BRAND_BG = os.getenv("EMAIL_BRAND_BG", "#F1F5F9")
EMAIL_LOGO_URL = os.getenv("EMAIL_LOGO_URL", (APP_BASE_URL + "/logo.png") if APP_BASE_URL else "")


class EmailDeliveryError(Exception):
    pass


def render_email(template_name: str, **context) -> str:
    base = {
        "app_name": APP_NAME,
        "brand_bg": EMAIL_BRAND_BG,
        "button_bg": EMAIL_BRAND_BUTTON_BG,
        "button_text": EMAIL_BRAND_BUTTON_TEXT,
        "logo_url": EMAIL_LOGO_URL,
    }
    base.update(context or {})
    return _jinja_env.get_template(template_name).render(**base)


class ResendMailer:
    """Sends single-recipient HTML email through the Resend HTTP API."""

    def __init__(self, api_key: str, from_addr: str, api_url: str = RESEND_API_URL, timeout: float = EMAIL_TIMEOUT_SEC):
        self.api_key = api_key
        self.from_addr = from_addr
        self.api_url = api_url
        self.timeout = timeout

    def send(self, to_addr: str, subject: str, html: str, text: Optional[str] = None) -> None:
        if not self.api_key:
            raise EmailDeliveryError("Missing RESEND_API_KEY")
        if not self.from_addr:
            raise EmailDeliveryError("Missing RESEND_FROM_EMAIL")
        body = {
            "from": self.from_addr,
            "to": [to_addr],
            "subject": subject,
            "html": html,
        }
        if text:
            body["text"] = text
        try:
            resp = httpx.post(
                self.api_url,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json=body,
                timeout=self.timeout,
            )
        except httpx.HTTPError as ex:
            raise EmailDeliveryError(f"Resend unreachable: {ex}") from ex
        if resp.status_code >= 400:
            raise EmailDeliveryError(f"Resend error: {resp.status_code} {resp.text[:300]}")
        logger.info(f"[emailing] sent '{subject}' to {to_addr}")


def get_mailer() -> ResendMailer:
    settings = get_webhook_settings()
    return ResendMailer(settings.resend_api_key, settings.resend_from_email)
