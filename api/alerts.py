import asyncio
import logging
import time
import aiohttp
from typing import Any, Dict, Optional, Set
from config import config
from config.settings import get_config_section


logger = logging.getLogger(__name__)

NEW_LISTING = 'new_listing'
BUY_EXECUTED = 'buy_executed'
POSITION_CLOSED = 'position_closed'
ERROR = 'error'
WARNING = 'warning'
ENVIRONMENT_SWITCHED = 'environment_switched'
BOT_STOPPED = 'bot_stopped'

_SEVERITY = {
    ERROR: 'critical',
    WARNING: 'warning',
}


class AlertWebhook:
    """Notification collaborator. ``send`` never blocks or raises into the trading path."""

    def __init__(self, webhook_url: Optional[str] = None):
        url = webhook_url
        if url is None:
            url = get_config_section(config, 'monitoring').get('alert_webhook')
        # Treat empty or placeholder URLs as disabled
        if url and 'your-webhook-url' not in str(url):
            self.webhook_url = url
            self.enabled = True
        else:
            self.webhook_url = None
            self.enabled = False
        self._pending: Set[asyncio.Task] = set()
        self.sent = 0

    def send(self, event_type: str, payload: Optional[Dict[str, Any]] = None) -> None:
        """Fire-and-forget dispatch of a notification event."""
        payload = payload or {}
        message = payload.get('message') or event_type.replace('_', ' ')
        severity = _SEVERITY.get(event_type, 'info')
        try:
            task = asyncio.get_running_loop().create_task(
                self.send_alert(event_type, message, severity, payload)
            )
        except RuntimeError:
            logger.warning("[Alert] %s: %s (no running loop)", event_type, message)
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def send_alert(self, alert_type: str, message: str, severity: str = 'warning',
                         metadata: Dict = None):
        if not self.enabled:
            log = logger.warning if severity in ('warning', 'critical') else logger.info
            log(
                "[Alert] %s: %s - %s",
                severity.upper(),
                alert_type,
                message,
            )
            return

        payload = {
            'type': alert_type,
            'message': message,
            'severity': severity,
            'timestamp': time.time(),
            'metadata': metadata or {}
        }

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.webhook_url,
                    json=payload,
                    headers={'Content-Type': 'application/json'},
                    timeout=aiohttp.ClientTimeout(total=5)
                ) as response:
                    if response.status >= 300:
                        logger.error(
                            "[Alert] Webhook failed with status %s",
                            response.status,
                        )
                    else:
                        self.sent += 1
        except Exception as e:
            logger.error("[Alert] Webhook error: %s", e)

alert_webhook = AlertWebhook()
