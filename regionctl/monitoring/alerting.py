"""
Alert Manager

Sends controller alerts (failovers, unsafe states, fatal rollbacks) to a
Prometheus Alertmanager and keeps a local record of them.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

import aiohttp

logger = logging.getLogger(__name__)


@dataclass
class Alert:
    """Alert definition"""
    name: str
    severity: str  # critical, warning, info
    message: str
    region: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)
    alert_id: str = field(default_factory=lambda: f"alert-{uuid.uuid4().hex[:12]}")
    triggered_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    delivered: bool = False


class AlertManager:
    """
    Controller Alert Manager

    Alerts are always logged; they are also posted to Alertmanager when
    `alertmanager_url` is configured.
    """

    def __init__(self, alertmanager_url: Optional[str] = None, timeout_seconds: float = 10.0):
        self.alertmanager_url = alertmanager_url
        self.timeout_seconds = timeout_seconds
        self.alert_history: List[Alert] = []

    async def send_alert(self, alert: Alert) -> Alert:
        """Send alert notification"""
        log = logger.error if alert.severity == 'critical' else logger.warning
        log(f"ALERT [{alert.severity}]: {alert.name} - {alert.message}")

        if self.alertmanager_url:
            payload = [{
                "labels": {
                    "alertname": alert.name,
                    "severity": alert.severity,
                    "region": alert.region or "global",
                    **alert.labels
                },
                "annotations": {
                    "summary": alert.message
                }
            }]
            url = f"{self.alertmanager_url.rstrip('/')}/api/v2/alerts"
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)

            try:
                async with aiohttp.ClientSession(timeout=timeout) as session:
                    async with session.post(url, json=payload) as response:
                        if response.status == 200:
                            alert.delivered = True
                            logger.info(f"Alert sent successfully: {alert.name}")
                        else:
                            logger.error(f"Failed to send alert: {response.status}")
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.error(f"Error sending alert {alert.name}: {e}")

        self.alert_history.append(alert)
        return alert
