"""
Alert delivery over email (SMTP) and signed webhooks.
"""
from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
import smtplib
import sqlite3
import threading
import time
from datetime import datetime, timedelta
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Callable

import httpx

from sentinel.alerting import Alert
from sentinel.errors import DispatchFailure, StoreUnavailable
from sentinel.models import AlertSettings, DispatchResult, to_iso, utc_now
from sentinel.storage import last_successful_delivery, log_delivery

LOGGER = logging.getLogger(__name__)

USER_AGENT = "WorkflowSentinel-Webhook/1.0"
CHANNEL_EMAIL = "email"
CHANNEL_WEBHOOK = "webhook"


def generate_signature(payload: str, secret: str) -> str:
    """HMAC-SHA256 signature of a webhook body."""
    return hmac.new(secret.encode(), payload.encode(), hashlib.sha256).hexdigest()


class AlertDispatcher:
    def __init__(
        self,
        db_path: str,
        smtp: dict[str, Any] | None = None,
        webhook_timeout_seconds: float = 10,
        webhook_retry_count: int = 3,
        webhook_secret: str | None = None,
        cooldown_minutes: int = 60,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db_path = db_path
        self.smtp = smtp or {}
        self.webhook_timeout_seconds = webhook_timeout_seconds
        self.webhook_retry_count = max(1, webhook_retry_count)
        self.webhook_secret = webhook_secret
        self.cooldown_minutes = cooldown_minutes
        self._clock = clock
        self._claims_lock = threading.Lock()
        self._claims: set[tuple[str, str]] = set()

    @classmethod
    def from_settings(cls, settings: dict[str, Any]) -> "AlertDispatcher":
        webhooks = settings.get("webhooks", {})
        return cls(
            db_path=settings["paths"]["db_path"],
            smtp=settings.get("smtp", {}),
            webhook_timeout_seconds=float(webhooks.get("timeout_seconds", 10)),
            webhook_retry_count=int(webhooks.get("retry_count", 3)),
            webhook_secret=webhooks.get("secret") or None,
            cooldown_minutes=int(settings.get("alerts", {}).get("cooldown_minutes", 60)),
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def dispatch(self, alert: Alert, settings: AlertSettings, dedup: bool = True) -> list[DispatchResult]:
        """Deliver ``alert`` on every channel configured in ``settings``.

        Channels are attempted independently; failures come back as results and
        are never raised. A duplicate of an alert already delivered within the
        cooldown returns an empty list.
        """
        if not settings.alert_email and not settings.webhook_url:
            LOGGER.info("Tenant %s has no alert channel configured, alert %s dropped", alert.tenant_id, alert.type)
            return []
        if dedup and not self._claim(alert):
            LOGGER.info(
                "Alert %s for tenant %s suppressed (delivered within the last %s minutes)",
                alert.type,
                alert.tenant_id,
                self.cooldown_minutes,
            )
            return []

        try:
            attempts = []
            if settings.alert_email:
                attempts.append(self._send_email(alert, settings.alert_email))
            if settings.webhook_url:
                attempts.append(self._send_webhook(alert, settings.webhook_url))
            results = list(await asyncio.gather(*attempts))
            for result in results:
                self._record(alert, result)
        finally:
            if dedup:
                self._release(alert)
        delivered = sum(1 for result in results if result.success)
        LOGGER.info(
            "Alert %s for tenant %s delivered on %d/%d channels",
            alert.type,
            alert.tenant_id,
            delivered,
            len(results),
        )
        return results

    async def send_test_alert(self, alert: Alert, settings: AlertSettings) -> list[DispatchResult]:
        return await self.dispatch(alert, settings, dedup=False)

    def dispatch_sync(self, alert: Alert, settings: AlertSettings, dedup: bool = True) -> list[DispatchResult]:
        """Run ``dispatch`` to completion from a worker thread."""
        return asyncio.run(self.dispatch(alert, settings, dedup=dedup))

    # ------------------------------------------------------------------
    # Dedup / delivery log
    # ------------------------------------------------------------------

    def _in_cooldown(self, alert: Alert) -> bool:
        if self.cooldown_minutes <= 0:
            return False
        try:
            last = last_successful_delivery(self.db_path, alert.tenant_id, alert.fingerprint)
        except (sqlite3.Error, StoreUnavailable) as exc:
            LOGGER.warning("Cannot read delivery log, dispatching without dedup: %s", exc)
            return False
        return last is not None and self._clock() - last < timedelta(minutes=self.cooldown_minutes)

    def _claim(self, alert: Alert) -> bool:
        """Reserve the alert fingerprint until its deliveries are logged.

        Concurrent dispatches of the same fingerprint see the reservation; later
        ones see the logged delivery through the cooldown check.
        """
        key = (alert.tenant_id, alert.fingerprint)
        with self._claims_lock:
            if key in self._claims or self._in_cooldown(alert):
                return False
            self._claims.add(key)
            return True

    def _release(self, alert: Alert) -> None:
        with self._claims_lock:
            self._claims.discard((alert.tenant_id, alert.fingerprint))

    def _record(self, alert: Alert, result: DispatchResult) -> None:
        try:
            log_delivery(self.db_path, alert.tenant_id, alert.fingerprint, result, alert.to_dict(), self._clock())
        except (sqlite3.Error, StoreUnavailable) as exc:
            LOGGER.warning("Cannot record %s delivery for tenant %s: %s", result.channel, alert.tenant_id, exc)

    # ------------------------------------------------------------------
    # Email
    # ------------------------------------------------------------------

    def _build_message(self, alert: Alert, recipient: str) -> str:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = f"[{alert.severity.upper()}] {alert.title}"
        msg["From"] = self.smtp.get("from_address") or "alerts@localhost"
        msg["To"] = recipient

        text = f"""
{alert.severity.upper()}: {alert.title}

Tenant: {alert.tenant_id}
Workflow: {alert.workflow_name or alert.workflow_id or "N/A"}
Time: {to_iso(alert.created_at)}

{alert.message}
"""
        msg.attach(MIMEText(text, "plain"))
        return msg.as_string()

    def _smtp_send(self, alert: Alert, recipient: str) -> None:
        host = self.smtp.get("host")
        if not host:
            raise DispatchFailure(CHANNEL_EMAIL, "SMTP host is not configured")
        port = int(self.smtp.get("port", 587))
        try:
            server = smtplib.SMTP(host, port, timeout=self.webhook_timeout_seconds)
            try:
                if self.smtp.get("use_tls", True):
                    server.starttls()
                if self.smtp.get("user") and self.smtp.get("password"):
                    server.login(self.smtp["user"], self.smtp["password"])
                server.sendmail(
                    self.smtp.get("from_address") or "alerts@localhost",
                    [recipient],
                    self._build_message(alert, recipient),
                )
            finally:
                server.quit()
        except (smtplib.SMTPException, OSError) as exc:
            raise DispatchFailure(CHANNEL_EMAIL, str(exc)) from exc

    async def _send_email(self, alert: Alert, recipient: str) -> DispatchResult:
        try:
            await asyncio.to_thread(self._smtp_send, alert, recipient)
        except DispatchFailure as exc:
            LOGGER.warning("Email alert to %s failed: %s", recipient, exc)
            return DispatchResult(CHANNEL_EMAIL, False, str(exc))
        LOGGER.info("Email alert sent to %s", recipient)
        return DispatchResult(CHANNEL_EMAIL, True)

    # ------------------------------------------------------------------
    # Webhook
    # ------------------------------------------------------------------

    async def _send_webhook(self, alert: Alert, url: str) -> DispatchResult:
        start_time = time.time()
        payload_str = json.dumps(alert.to_dict(), default=str)
        headers = {"Content-Type": "application/json", "User-Agent": USER_AGENT}
        if self.webhook_secret:
            headers["X-Webhook-Signature"] = f"sha256={generate_signature(payload_str, self.webhook_secret)}"

        error_msg = None
        async with httpx.AsyncClient(timeout=self.webhook_timeout_seconds) as client:
            for attempt in range(self.webhook_retry_count):
                try:
                    response = await client.post(url, content=payload_str, headers=headers)
                    if response.is_success:
                        LOGGER.info(
                            "Webhook alert delivered to %s (attempt %d/%d, %d ms)",
                            url,
                            attempt + 1,
                            self.webhook_retry_count,
                            int((time.time() - start_time) * 1000),
                        )
                        return DispatchResult(CHANNEL_WEBHOOK, True)
                    error_msg = f"HTTP {response.status_code}: {response.text[:200]}"
                except httpx.HTTPError as exc:
                    error_msg = str(exc) or exc.__class__.__name__
                LOGGER.warning(
                    "Webhook delivery to %s failed (attempt %d/%d): %s",
                    url,
                    attempt + 1,
                    self.webhook_retry_count,
                    error_msg,
                )
                # exponential backoff
                if attempt < self.webhook_retry_count - 1:
                    await asyncio.sleep(2**attempt)

        return DispatchResult(CHANNEL_WEBHOOK, False, error_msg)
