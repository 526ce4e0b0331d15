"""
HTTP gateway client for the WhatsApp channel.

Talks to a self-hosted WhatsApp HTTP gateway (WAHA-style REST API) that
runs the browser session next to the Lambda container and keeps its
session files under the shared session directory. Session progress is
polled until the session is working; afterwards connectivity is checked
on demand by the session verification loop. Delivery acks come from the
sendText response; the adapter produces no inbound-message events.
"""

import logging
import threading
import time
from typing import Any

import httpx

from sinoe_common.channels.base import (
    ChannelClient,
    DeliveryAck,
    PairingArtifact,
)
from sinoe_common.exceptions import ChannelUnavailableError

logger = logging.getLogger(__name__)

STATUS_STARTING = "STARTING"
STATUS_SCAN_QR = "SCAN_QR_CODE"
STATUS_WORKING = "WORKING"
STATUS_FAILED = "FAILED"
STATUS_STOPPED = "STOPPED"


class GatewayClient(ChannelClient):
    """ChannelClient backed by an HTTP WhatsApp gateway."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 30.0,
        poll_interval: float = 2.0,
        qr_refresh: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        """
        Initialize the gateway client.

        Args:
            base_url: Gateway base URL, e.g. "http://localhost:3000"
            api_key: Optional value for the X-Api-Key header
            timeout: Per-request timeout in seconds
            poll_interval: Seconds between session status polls while pairing
            qr_refresh: Seconds before a new QR code is fetched
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        super().__init__()
        headers = {"Accept": "application/json"}
        if api_key:
            headers["X-Api-Key"] = api_key
        self.http = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers=headers,
            transport=transport,
        )
        self.poll_interval = poll_interval
        self.qr_refresh = qr_refresh
        self.session_name: str | None = None
        self.last_status: str | None = None
        self._stop = threading.Event()
        self._poller: threading.Thread | None = None
        self._qr_attempts = 0
        self._last_qr_at = 0.0

    # ------------------------------------------------------------------
    # ChannelClient
    # ------------------------------------------------------------------

    def start(self, session_name: str, session_dir: str) -> None:
        self.session_name = session_name
        self._stop.clear()
        logger.info(f"Starting gateway session {session_name} (session files in {session_dir})")

        try:
            response = self.http.post("/api/sessions/start", json={"name": session_name})
            # 422 means the gateway already runs this session
            if response.status_code != 422:
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise ChannelUnavailableError(f"Gateway refused to start session {session_name}: {e}") from e

        self._poller = threading.Thread(
            target=self._poll_until_settled, name=f"gateway-poll-{session_name}", daemon=True
        )
        self._poller.start()

    def send(self, address: str, text: str) -> str:
        if not self.session_name:
            raise ChannelUnavailableError("Gateway session not started")

        try:
            response = self.http.post(
                "/api/sendText",
                json={"session": self.session_name, "chatId": address, "text": text},
            )
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ChannelUnavailableError(f"Gateway send failed: {e}") from e

        message_id = _message_id(body)
        if not message_id:
            raise ChannelUnavailableError("Gateway accepted the message without an id")

        ack = body.get("ack") if isinstance(body, dict) else None
        if isinstance(ack, int) and ack >= 1:
            self.events.on_ack(DeliveryAck(message_id=message_id, ack=ack, recipient=address))
        return message_id

    def is_connected(self) -> bool:
        status = self.fetch_status()
        return status == STATUS_WORKING

    def close(self) -> None:
        self._stop.set()
        if self._poller and self._poller.is_alive() and self._poller is not threading.current_thread():
            self._poller.join(timeout=self.poll_interval + 1)

        if self.session_name:
            try:
                self.http.post("/api/sessions/stop", json={"name": self.session_name})
            except httpx.HTTPError as e:
                logger.warning(f"Failed to stop gateway session {self.session_name}: {e}")
        self.http.close()

    # ------------------------------------------------------------------
    # Gateway API
    # ------------------------------------------------------------------

    def fetch_status(self) -> str:
        """
        Current session status reported by the gateway.

        Raises:
            ChannelUnavailableError: If the gateway cannot be reached
        """
        try:
            response = self.http.get(f"/api/sessions/{self.session_name}")
            response.raise_for_status()
            status = str(response.json().get("status", "")).upper()
        except (httpx.HTTPError, ValueError) as e:
            raise ChannelUnavailableError(f"Cannot read gateway session status: {e}") from e
        return status

    def fetch_qr(self) -> bytes:
        try:
            response = self.http.get(
                f"/api/{self.session_name}/auth/qr",
                params={"format": "image"},
                headers={"Accept": "image/png"},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ChannelUnavailableError(f"Cannot fetch pairing QR: {e}") from e
        return response.content

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _poll_until_settled(self) -> None:
        while not self._stop.is_set():
            try:
                status = self.fetch_status()
            except ChannelUnavailableError as e:
                logger.warning(f"Gateway status poll failed: {e}")
                self._stop.wait(self.poll_interval)
                continue

            if self.dispatch_status(status):
                return
            self._stop.wait(self.poll_interval)

    def dispatch_status(self, status: str) -> bool:
        """
        Translate a gateway session status into events.

        Returns:
            True once pairing has settled (working, failed or stopped)
        """
        previous = self.last_status
        self.last_status = status
        if status != previous:
            logger.info(f"Gateway session {self.session_name}: {previous} -> {status}")

        if status == STATUS_SCAN_QR:
            if status != previous or time.monotonic() - self._last_qr_at >= self.qr_refresh:
                self._emit_pairing()
            return False

        if status == STATUS_WORKING:
            if previous != STATUS_WORKING:
                self.events.on_authenticated()
                self.events.on_ready()
            return True

        if status == STATUS_FAILED:
            self.events.on_auth_failure(f"Gateway session {self.session_name} failed")
            return True

        if status == STATUS_STOPPED and previous not in (None, STATUS_STOPPED):
            self.events.on_disconnect(f"Gateway session {self.session_name} stopped")
            return True

        return False

    def _emit_pairing(self) -> None:
        try:
            qr = self.fetch_qr()
        except ChannelUnavailableError as e:
            logger.warning(str(e))
            return
        self._qr_attempts += 1
        self._last_qr_at = time.monotonic()
        self.events.on_pairing(
            PairingArtifact(session_name=self.session_name or "", attempt=self._qr_attempts, qr_png=qr)
        )


def _message_id(body: Any) -> str | None:
    """Message id from a gateway message object ("id" may be a string or {"_serialized": ...})."""
    if not isinstance(body, dict):
        return None
    message_id = body.get("id")
    if isinstance(message_id, dict):
        message_id = message_id.get("_serialized") or message_id.get("id")
    return str(message_id) if message_id else None
