# coding: utf-8
"""
IPFS content store (Pinata pinning API)

Pins certificate documents and artwork, returning the content hash (CID).
Transport errors are retried with exponential backoff; an HTTP error
response from Pinata (bad credentials, payload rejected) is not.
"""
import json
import logging  # Needed for tenacity before_sleep_log level constants
from dataclasses import dataclass
from typing import Any, Optional

import aiohttp
from loguru import logger
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log,
)

from src.services.certificates.config import ContentStoreConfig


std_logger = logging.getLogger(__name__)


class ContentStoreError(Exception):
    """Pinning failed (not configured, rejected or unreachable)"""


@dataclass
class PinResult:
    """Pinata pin response"""
    ipfs_hash: str
    pin_size: Optional[int] = None
    timestamp: Optional[str] = None


class IPFSService:
    """
    Pinata client

    Features:
    - Pin raw bytes (artwork, uploads)
    - Pin JSON documents (certificate metadata)
    - Gateway URL construction
    - Automatic retries on network failures
    """

    PIN_FILE_PATH = "/pinning/pinFileToIPFS"

    def __init__(self, config: ContentStoreConfig):
        self.config = config

    @property
    def is_configured(self) -> bool:
        return self.config.is_configured

    def gateway_url(self, ipfs_hash: str) -> str:
        gateway = self.config.gateway if self.config.gateway.endswith("/") else f"{self.config.gateway}/"
        return f"{gateway}{ipfs_hash}"

    async def pin(self, data: bytes, filename: str, content_type: str = "application/octet-stream") -> PinResult:
        """
        Pin bytes to IPFS

        Args:
            data: File contents
            filename: Name recorded in Pinata metadata
            content_type: MIME type of the upload

        Returns:
            PinResult with the IPFS hash

        Raises:
            ContentStoreError: Not configured, Pinata rejected the upload,
                or the network stayed unreachable after retries
        """
        if not self.is_configured:
            raise ContentStoreError("Pinata credentials are not configured")

        try:
            payload = await self._post_file(data, filename, content_type)
        except (aiohttp.ClientError, TimeoutError) as e:
            raise ContentStoreError(f"Pinata unreachable: {e}") from e

        ipfs_hash = payload.get("IpfsHash")
        if not ipfs_hash:
            raise ContentStoreError(f"Pinata response has no IpfsHash: {payload}")

        logger.info(f"Pinned {filename} to IPFS: {ipfs_hash}")
        return PinResult(
            ipfs_hash=ipfs_hash,
            pin_size=payload.get("PinSize"),
            timestamp=payload.get("Timestamp"),
        )

    async def pin_json(self, document: Any, filename: str) -> PinResult:
        """Pin a JSON-serializable document"""
        data = json.dumps(document, ensure_ascii=False, indent=2).encode("utf-8")
        return await self.pin(data, filename, content_type="application/json")

    @retry(
        retry=retry_if_exception_type((aiohttp.ClientConnectionError, TimeoutError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        before_sleep=before_sleep_log(std_logger, logging.WARNING),
        reraise=True,
    )
    async def _post_file(self, data: bytes, filename: str, content_type: str) -> dict:
        form = aiohttp.FormData()
        form.add_field("file", data, filename=filename, content_type=content_type)
        form.add_field("pinataMetadata", json.dumps({"name": filename}))

        headers = {
            "pinata_api_key": self.config.api_key,
            "pinata_secret_api_key": self.config.secret_key,
        }
        timeout = aiohttp.ClientTimeout(total=self.config.timeout_sec)

        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(
                f"{self.config.api_url}{self.PIN_FILE_PATH}", data=form, headers=headers
            ) as response:
                if response.status != 200:
                    body = await response.text()
                    logger.error(f"Pinata error {response.status}: {body[:200]}")
                    raise ContentStoreError(f"Pinata returned HTTP {response.status}")
                return await response.json()
