"""
Verification mail delivery through the MailChannels transactional API
"""
import asyncio
import base64
import logging
from typing import Callable

import requests

from common.circuit_breaker import CircuitBreaker, CircuitBreakerException, mail_circuit_breaker
from common.error_handling import GatewayNotConfigured, GatewayUnreachable
from common.retry import MAIL_RETRY_CONFIG, RetryConfig, retry_async
from common.settings import settings
from common.tracing import get_trace_headers

logger = logging.getLogger(__name__)

def build_verification_url(token: str, base_url: str = None) -> str:
    base = (base_url or settings.app_base_url).rstrip("/")
    return f"{base}/auth/verify-email?token={token}"

class VerificationMailer:
    def __init__(self, config=settings, breaker: CircuitBreaker = mail_circuit_breaker,
                 retry_config: RetryConfig = MAIL_RETRY_CONFIG, post: Callable = None):
        self.config = config
        self.breaker = breaker
        self.retry_config = retry_config
        self.post = post or requests.post

    @property
    def endpoint(self) -> str:
        return f"{self.config.mailchannels_api_base.rstrip('/')}/send"

    def build_payload(self, to: str, verification_url: str, subject: str = "Verify your email address") -> dict:
        from_address = (self.config.email_from or "").strip()
        if not from_address:
            raise GatewayNotConfigured("EMAIL_FROM must be configured to send verification emails.")
        app_name = self.config.app_name
        minutes = self.config.email_verification_ttl_seconds // 60

        text_body = "\n".join([
            app_name,
            "",
            "Hello,",
            "",
            "Please open the link below to verify your email address:",
            verification_url,
            "",
            f"The link expires in {minutes} minutes. If it is not clickable, copy it into your browser.",
            "",
            f"The {app_name} team",
        ])
        html_body = (
            '<div style="font-family: Arial, sans-serif; line-height: 1.6;">'
            f"<h2>{app_name}</h2>"
            "<p>Hello,</p>"
            "<p>Please click the button below to verify your email address:</p>"
            f'<p style="text-align:center; margin: 24px 0;"><a href="{verification_url}" '
            'style="background-color:#2563eb;color:#ffffff;padding:12px 24px;border-radius:6px;'
            'text-decoration:none;display:inline-block;">Verify email</a></p>'
            f'<p>If the button does not work, open this link: <a href="{verification_url}">{verification_url}</a></p>'
            f"<p>The link expires in {minutes} minutes.</p>"
            f"<p>The {app_name} team</p>"
            "</div>"
        )

        return {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": from_address, "name": self.config.email_from_name or app_name},
            "subject": subject,
            "content": [
                {"type": "text/plain", "value": text_body},
                {"type": "text/html", "value": html_body},
            ],
        }

    def _headers(self) -> dict:
        api_key = (self.config.mailchannels_api_key or "").strip()
        if not api_key:
            raise GatewayNotConfigured("MAILCHANNELS_API_KEY must be configured to send verification emails.")
        credentials = base64.b64encode(f"api:{api_key}".encode()).decode()
        return {
            "content-type": "application/json",
            "authorization": f"Basic {credentials}",
            **get_trace_headers(),
        }

    def _deliver(self, payload: dict, headers: dict):
        try:
            response = self.post(self.endpoint, json=payload, headers=headers,
                                 timeout=self.config.http_timeout_seconds)
        except requests.RequestException as e:
            raise GatewayUnreachable(f"MailChannels request failed: {e}", original_error=e)

        if not response.ok:
            snippet = (response.text or "")[:500]
            raise GatewayUnreachable(f"MailChannels responded with {response.status_code}: {snippet}")
        return response.status_code

    async def _guarded(self, payload: dict, headers: dict):
        try:
            return await self.breaker.call(self._deliver, payload, headers)
        except CircuitBreakerException as e:
            raise GatewayUnreachable(str(e), original_error=e)
        except asyncio.TimeoutError as e:
            raise GatewayUnreachable("MailChannels request timed out", original_error=e)

    async def send_verification(self, to: str, verification_url: str):
        payload = self.build_payload(to, verification_url)
        headers = self._headers()
        logger.info(f"Sending verification email to {to}", extra={"endpoint": self.endpoint})
        try:
            await retry_async(self._guarded, self.retry_config, payload, headers)
        except GatewayUnreachable as e:
            logger.error(f"Verification mail to {to} failed: {e.message}")
            raise
        logger.info(f"Verification mail to {to} accepted by MailChannels")
