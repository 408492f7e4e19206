"""Malware scanning through a ClamAV daemon (clamd INSTREAM).

Scanning is a deployment-time toggle. When disabled the scan is skipped and
every buffer is reported clean. When the daemon cannot be reached the result
is also clean but carries ``error``; the orchestrator decides whether that
blocks the upload (VIRUS_SCAN_FAIL_CLOSED).
"""
import asyncio
import io
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from file_service.config import Settings
from file_service.models.base import utcnow

logger = logging.getLogger(__name__)


@dataclass
class ScanResult:
    is_infected: bool
    virus_name: str | None = None
    error: str | None = None
    scanned_at: datetime = field(default_factory=utcnow)
    skipped: bool = False


def _default_client_factory(host: str, port: int, timeout: float):
    def factory():
        from clamav_client.clamd import ClamdNetworkSocket

        return ClamdNetworkSocket(host=host, port=port, timeout=timeout)
    return factory


class VirusScanService:
    """Adapter over a clamd client exposing ``instream(fileobj)``."""

    def __init__(self, enabled: bool, client_factory: Callable[[], object] | None = None,
                 host: str = "localhost", port: int = 3310, timeout: float = 30.0):
        self.enabled = enabled
        self._client_factory = client_factory or _default_client_factory(host, port, timeout)

    @classmethod
    def from_settings(cls, settings: Settings) -> "VirusScanService":
        return cls(
            enabled=settings.VIRUS_SCAN_ENABLED,
            host=settings.CLAMAV_HOST,
            port=settings.CLAMAV_PORT,
            timeout=settings.CLAMAV_TIMEOUT,
        )

    def is_enabled(self) -> bool:
        return self.enabled

    async def scan_buffer(self, buffer: bytes) -> ScanResult:
        if not self.enabled:
            return ScanResult(is_infected=False, skipped=True)

        try:
            response = await asyncio.to_thread(self._instream, buffer)
        except Exception as e:
            logger.warning(f"Virus scan unavailable, allowing file through: {e}")
            return ScanResult(is_infected=False, error=str(e) or type(e).__name__)

        status, detail = response.get("stream", ("ERROR", "empty response"))
        if status == "FOUND":
            logger.warning(f"Virus scan detected {detail}")
            return ScanResult(is_infected=True, virus_name=detail)
        if status == "OK":
            return ScanResult(is_infected=False)

        logger.warning(f"Virus scan returned {status}: {detail}")
        return ScanResult(is_infected=False, error=f"{status}: {detail}")

    def _instream(self, buffer: bytes) -> dict:
        client = self._client_factory()
        return client.instream(io.BytesIO(buffer))
