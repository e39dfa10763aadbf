"""
Blob Store Adapter.

Uploads a payload to an external content-addressed store and returns a
stable reference. The Pinata implementation pins files to IPFS.
"""

import json
import logging
from abc import ABC, abstractmethod

import requests

from config import BLOB_UPLOAD_TIMEOUT, PINATA_API_URL, PINATA_GATEWAY_URL, PINATA_JWT
from errors import UpstreamError
from storage.models import utcnow
from transfer.models import BlobReference

logger = logging.getLogger(__name__)


class BlobStore(ABC):
    """Content-addressed store. ``upload`` blocks until the blob is durable."""

    @abstractmethod
    def upload(
        self,
        data: bytes,
        file_name: str,
        content_type: str | None = None,
        metadata: dict | None = None,
    ) -> BlobReference:
        ...

    @abstractmethod
    def url_for(self, reference: str) -> str:
        ...

    def close(self) -> None:
        pass


class PinataBlobStore(BlobStore):
    """Pins uploads to IPFS through the Pinata API."""

    def __init__(
        self,
        jwt: str = PINATA_JWT,
        api_url: str = PINATA_API_URL,
        gateway_url: str = PINATA_GATEWAY_URL,
        timeout: float = BLOB_UPLOAD_TIMEOUT,
        session: requests.Session | None = None,
    ) -> None:
        self._jwt = jwt
        self._api_url = api_url
        self._gateway_url = gateway_url.rstrip("/")
        self._timeout = timeout
        self._session = session or requests.Session()

    def url_for(self, reference: str) -> str:
        return f"{self._gateway_url}/ipfs/{reference}"

    def upload(
        self,
        data: bytes,
        file_name: str,
        content_type: str | None = None,
        metadata: dict | None = None,
    ) -> BlobReference:
        if not self._jwt:
            logger.error("Pinata JWT not configured")
            raise UpstreamError("Blob store is not configured")

        pinata_metadata = {
            "name": file_name,
            "keyvalues": {
                **(metadata or {}),
                "timestamp": utcnow().isoformat(),
            },
        }
        files = {
            "file": (file_name, data, content_type or "application/octet-stream"),
        }
        form = {"pinataMetadata": json.dumps(pinata_metadata)}

        logger.info(f"Uploading {file_name} ({len(data)} bytes) to IPFS")
        try:
            resp = self._session.post(
                self._api_url,
                files=files,
                data=form,
                headers={"Authorization": f"Bearer {self._jwt}"},
                timeout=self._timeout,
            )
            resp.raise_for_status()
            body = resp.json()
        except requests.Timeout as e:
            raise UpstreamError(f"IPFS upload timed out after {self._timeout}s") from e
        except requests.RequestException as e:
            raise UpstreamError(f"IPFS upload failed: {e}") from e
        except ValueError as e:
            raise UpstreamError("IPFS upload returned a malformed response") from e

        ipfs_hash = body.get("IpfsHash") if isinstance(body, dict) else None
        if not ipfs_hash:
            logger.error(f"No IPFS hash in Pinata response: {body}")
            raise UpstreamError("IPFS upload returned no content hash")

        logger.info(f"Uploaded {file_name} to IPFS as {ipfs_hash}")
        return BlobReference(reference=ipfs_hash, url=self.url_for(ipfs_hash))

    def close(self) -> None:
        self._session.close()
