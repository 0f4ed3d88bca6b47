"""
Azure Blob Backend — State in a storage account container, locked by blob lease.

Mirrors how the azurerm Terraform backend works:
- state document = one block blob per key
- lock = an infinite lease on that blob
- lock metadata = base64 JSON in the blob's metadata, so other runs can see
  who holds it

Authentication:
1. AZURE_STORAGE_CONNECTION_STRING, if set
2. DefaultAzureCredential against https://{location}.blob.core.windows.net
   (managed identity on pipeline agents, Azure CLI login locally)
"""

from __future__ import annotations

import base64
import json
import logging
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

from azure.core.exceptions import (
    ClientAuthenticationError,
    HttpResponseError,
    ResourceExistsError,
    ResourceNotFoundError,
)
from azure.identity import DefaultAzureCredential
from azure.storage.blob import BlobClient, BlobLeaseClient, BlobServiceClient

from ..errors import AuthenticationError, IacSyncError
from ..models.state import InfraState, LockInfo, RemoteStateRef
from .base import LockHandle, StateBackend, decode_state, encode_state

logger = logging.getLogger(__name__)

LOCK_METADATA_KEY = "iacsynclock"


def _encode_lock(info: LockInfo) -> str:
    return base64.b64encode(json.dumps(info.model_dump()).encode("utf-8")).decode("ascii")


def _decode_lock(value: str) -> LockInfo:
    return LockInfo(**json.loads(base64.b64decode(value)))


@contextmanager
def _azure_errors(action: str) -> Iterator[None]:
    """Translate SDK auth failures into AuthenticationError."""
    try:
        yield
    except ClientAuthenticationError as e:
        raise AuthenticationError(f"Azure storage rejected credentials during {action}: {e.message}") from e
    except HttpResponseError as e:
        if e.status_code in (401, 403):
            raise AuthenticationError(f"Azure storage denied {action}: {e.message}") from e
        raise


class AzureBlobBackend(StateBackend):
    """State backend on Azure Blob Storage."""

    name = "azurerm"

    def __init__(
        self,
        connection_string: Optional[str] = None,
        account_url: Optional[str] = None,
        poll_interval: float = 2.0,
        service_client: Optional[BlobServiceClient] = None,
    ):
        super().__init__(poll_interval=poll_interval)
        self._connection_string = connection_string
        self._account_url = account_url
        self._services: Dict[str, BlobServiceClient] = {}
        self._credential = None
        if service_client is not None:
            self._services["*"] = service_client
        # Leases this process holds, by env key
        self._leases: Dict[str, BlobLeaseClient] = {}

    def _service(self, ref: RemoteStateRef) -> BlobServiceClient:
        if "*" not in self._services and self._connection_string:
            self._services["*"] = BlobServiceClient.from_connection_string(
                self._connection_string
            )
        if "*" in self._services:
            return self._services["*"]

        url = self._account_url or f"https://{ref.location}.blob.core.windows.net"
        if url not in self._services:
            if self._credential is None:
                self._credential = DefaultAzureCredential()
            logger.info(f"Connecting to {url} with DefaultAzureCredential")
            self._services[url] = BlobServiceClient(account_url=url, credential=self._credential)
        return self._services[url]

    def _blob(self, ref: RemoteStateRef) -> BlobClient:
        return self._service(ref).get_blob_client(container=ref.container, blob=ref.key)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def read_state(self, ref: RemoteStateRef) -> InfraState:
        blob = self._blob(ref)
        with _azure_errors(f"read of {ref}"):
            try:
                data = blob.download_blob().readall()
            except ResourceNotFoundError:
                logger.debug(f"No state blob for {ref}, starting fresh")
                return InfraState()
        return decode_state(data, str(ref))

    def _write_state(self, ref: RemoteStateRef, state: InfraState, handle: LockHandle) -> None:
        lease = self._leases.get(ref.env_key)
        if lease is None:
            raise IacSyncError(f"No lease held in this process for {ref}")

        blob = self._blob(ref)
        with _azure_errors(f"write of {ref}"):
            # upload_blob replaces metadata, so carry the lock record over
            blob.upload_blob(
                encode_state(state),
                overwrite=True,
                lease=lease,
                metadata={LOCK_METADATA_KEY: _encode_lock(handle.info)},
            )

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    def lock_holder(self, ref: RemoteStateRef) -> Optional[LockInfo]:
        blob = self._blob(ref)
        with _azure_errors(f"lock check of {ref}"):
            try:
                props = blob.get_blob_properties()
            except ResourceNotFoundError:
                return None

        if props.lease.state != "leased":
            return None

        raw = (props.metadata or {}).get(LOCK_METADATA_KEY)
        if not raw:
            return LockInfo(lock_id="unknown", who="unknown")
        try:
            return _decode_lock(raw)
        except (ValueError, TypeError):
            logger.warning(f"Unreadable lock metadata on {ref}")
            return LockInfo(lock_id="unknown", who="unknown")

    def _ensure_blob(self, blob: BlobClient) -> None:
        """Leases need an existing blob; create an empty one if missing."""
        try:
            blob.upload_blob(b"", overwrite=False)
        except ResourceExistsError:
            pass

    def _try_lock(self, ref: RemoteStateRef, info: LockInfo) -> Optional[LockInfo]:
        blob = self._blob(ref)
        with _azure_errors(f"lock of {ref}"):
            self._ensure_blob(blob)

            lease = BlobLeaseClient(blob)
            try:
                lease.acquire(lease_duration=-1)
            except HttpResponseError as e:
                if e.status_code == 409:
                    return self.lock_holder(ref) or LockInfo(lock_id="unknown", who="unknown")
                raise

            try:
                props = blob.get_blob_properties()
                metadata = dict(props.metadata or {})
                metadata[LOCK_METADATA_KEY] = _encode_lock(info)
                blob.set_blob_metadata(metadata, lease=lease)
            except Exception:
                lease.release()
                raise

        self._leases[ref.env_key] = lease
        return None

    def _unlock(self, ref: RemoteStateRef, info: LockInfo, force: bool = False) -> None:
        blob = self._blob(ref)
        lease = self._leases.pop(ref.env_key, None)

        with _azure_errors(f"unlock of {ref}"):
            if lease is not None:
                # A stale lock record on an unleased blob is ignored by lock_holder
                try:
                    props = blob.get_blob_properties()
                    metadata = dict(props.metadata or {})
                    metadata.pop(LOCK_METADATA_KEY, None)
                    blob.set_blob_metadata(metadata, lease=lease)
                finally:
                    lease.release()
                return

            if not force:
                logger.warning(f"No lease held in this process for {ref}, nothing to release")
                return

            # Lease belongs to another (probably crashed) process
            BlobLeaseClient(blob).break_lease(lease_break_period=0)
            props = blob.get_blob_properties()
            metadata = dict(props.metadata or {})
            metadata.pop(LOCK_METADATA_KEY, None)
            blob.set_blob_metadata(metadata)
