"""
Generic transfer engine for remote destinations.

One Destination class serves every provider: the provider adapter supplies
the wire protocol, the engine supplies the shared behaviour.

- upload: single-shot or chunked with per-block retries and in-process resume
- list_remote_backups: fail-soft listing of backup archives
- delete_remote_backup_by_name: idempotent delete ("already gone" succeeds)
- get_storage_usage: provider quota, or an estimate from the listing
- prune_remote_backups: retention enforcement that reports partial failures
"""

import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from .chunking import Chunk, plan_chunks, read_chunk
from .errors import DestinationError, NotConfigured, TransferError, TransportError
from .providers.base import Provider, is_backup_name
from .retention import select_for_deletion
from .types import DeleteResult, PruneResult, RemoteObject, StorageUsage


logger = logging.getLogger(__name__)


@dataclass
class UploadSession:
    """Progress of a chunked upload, kept in memory for resume."""
    handle: Any
    chunks: List[Chunk]
    tokens: Dict[int, Any] = field(default_factory=dict)

    @property
    def remaining(self) -> List[Chunk]:
        return [chunk for chunk in self.chunks if chunk.index not in self.tokens]


class Destination:
    """
    A configured remote destination.

    Args:
        destination_id: Registry slug (e.g. 'aws_s3')
        name: Human-readable name
        provider: Provider adapter implementing the wire protocol
        clock: Callable returning epoch seconds
        max_chunk_retries: Attempts per chunk before the upload fails
    """

    def __init__(self, destination_id: str, name: str, provider: Provider,
                 clock: Optional[Callable[[], float]] = None, max_chunk_retries: int = 3):
        self.id = destination_id
        self.name = name
        self.provider = provider
        self.clock = clock or time.time
        self.max_chunk_retries = max(1, max_chunk_retries)
        self._sessions: Dict[Tuple[str, int, int], UploadSession] = {}

    def __repr__(self):
        return f'<Destination {self.id} connected={self.connected}>'

    def close(self):
        """Release the provider's connections."""
        self.provider.close()

    def __enter__(self) -> 'Destination':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @property
    def connected(self) -> bool:
        """True when every required setting is present."""
        return self.provider.is_configured()

    def _require_configured(self):
        if not self.connected:
            raise NotConfigured(f"{self.name} is not configured")

    def _now(self) -> int:
        return int(self.clock())

    # Upload

    def upload(self, local_path: str, task_id: Optional[str] = None) -> RemoteObject:
        """
        Upload a local archive.

        Files the provider wants chunked are split into fixed-size blocks;
        each block is retried on its own. If the upload still fails, the
        completed blocks are remembered and calling upload() again with the
        same unchanged file resumes from the first missing block.

        Args:
            local_path: Path to the archive
            task_id: Optional caller task id, used for logging

        Returns:
            RemoteObject describing the uploaded archive

        Raises:
            NotConfigured: If the destination lacks credentials
            TransferError: If the provider rejects a request
            TransportError: If the provider cannot be reached
            DestinationError: If the local file does not exist
        """
        if not os.path.isfile(local_path):
            raise DestinationError(f"Local file not found: {local_path}")
        self._require_configured()

        remote_name = os.path.basename(local_path)
        size = os.path.getsize(local_path)
        task = f" (task {task_id})" if task_id else ''

        if self.provider.should_chunk(size):
            logger.info("Uploading %s to %s in chunks%s", remote_name, self.name, task)
            self._upload_chunked(local_path, remote_name, size)
        else:
            logger.info("Uploading %s to %s%s", remote_name, self.name, task)
            self.provider.upload_single(local_path, remote_name, size)

        return RemoteObject(name=remote_name, size_bytes=size, modified_at=self._now())

    def _session_key(self, local_path: str, size: int) -> Tuple[str, int, int]:
        return os.path.abspath(local_path), size, int(os.path.getmtime(local_path))

    def _upload_chunked(self, local_path: str, remote_name: str, size: int):
        key = self._session_key(local_path, size)
        session = self._sessions.get(key)

        if session is None:
            handle = self.provider.begin_chunked(remote_name, size)
            session = UploadSession(handle=handle, chunks=plan_chunks(size, self.provider.chunk_size))
            self._sessions[key] = session
        else:
            logger.info(
                "Resuming upload of %s: %d of %d chunks remaining",
                remote_name, len(session.remaining), len(session.chunks)
            )

        for chunk in session.remaining:
            data = read_chunk(local_path, chunk)
            session.tokens[chunk.index] = self._upload_chunk_with_retry(session.handle, chunk, data, size)

        tokens = [session.tokens[chunk.index] for chunk in session.chunks]
        self.provider.commit_chunked(session.handle, tokens)
        del self._sessions[key]

    def _upload_chunk_with_retry(self, handle: Any, chunk: Chunk, data: bytes, total_size: int) -> Any:
        for attempt in range(1, self.max_chunk_retries + 1):
            try:
                return self.provider.upload_chunk(handle, chunk, data, total_size)
            except (TransferError, TransportError) as e:
                if attempt >= self.max_chunk_retries:
                    logger.error("Chunk %d failed after %d attempts: %s", chunk.index, attempt, e)
                    raise
                logger.warning("Chunk %d attempt %d failed, retrying: %s", chunk.index, attempt, e)

    def abort_upload(self, local_path: str) -> bool:
        """
        Abandon a pending chunked upload of local_path.

        Returns:
            True if a pending session existed
        """
        size = os.path.getsize(local_path)
        session = self._sessions.pop(self._session_key(local_path, size), None)
        if session is None:
            return False
        self.provider.abort_chunked(session.handle)
        return True

    @property
    def pending_uploads(self) -> int:
        return len(self._sessions)

    # Listing

    def list_remote_backups(self) -> List[RemoteObject]:
        """
        List backup archives on the destination.

        Never raises: on any failure the error is logged and an empty
        list is returned.
        """
        if not self.connected:
            return []
        try:
            objects = self.provider.list_objects()
        except Exception as e:
            logger.error("Failed to list backups on %s: %s", self.name, e)
            return []
        return [obj for obj in objects if is_backup_name(obj.name)]

    # Deletion

    def delete_remote_backup_by_name(self, filename: str) -> DeleteResult:
        """
        Delete a backup archive by file name.

        An archive that is already absent counts as deleted.

        Raises:
            NotConfigured: If the destination lacks credentials
            TransferError: If the provider rejects the delete
            TransportError: If the provider cannot be reached
        """
        self._require_configured()
        filename = os.path.basename(filename)

        obj = self.provider.locate(filename)
        if obj is None:
            logger.info("%s already absent from %s", filename, self.name)
            return DeleteResult(success=True, message=f"{filename} already absent")

        self._delete_object(obj)
        logger.info("Deleted %s from %s", filename, self.name)
        return DeleteResult(success=True, message=f"{filename} deleted", quota=self._quota_after_delete())

    def _delete_object(self, obj: RemoteObject):
        try:
            self.provider.delete_object(obj)
        except TransferError as e:
            if not e.is_not_found:
                raise

    def _quota_after_delete(self) -> Optional[StorageUsage]:
        if not self.provider.report_quota:
            return None
        try:
            usage = self.provider.fetch_usage()
        except DestinationError as e:
            logger.warning("Could not refresh quota for %s after delete: %s", self.name, e)
            return None
        if usage is not None:
            usage.refreshed_at = self._now()
        return usage

    # Usage

    def get_storage_usage(self) -> StorageUsage:
        """
        Report storage usage.

        Prefers the provider's own usage endpoint and falls back to the sum
        of the listed archive sizes (source='estimate').

        Raises:
            NotConfigured: If the destination lacks credentials
        """
        self._require_configured()
        started = time.monotonic()

        usage = None
        try:
            usage = self.provider.fetch_usage()
        except NotConfigured:
            raise
        except DestinationError as e:
            logger.warning("Usage endpoint failed for %s, estimating from listing: %s", self.name, e)

        if usage is None:
            used = sum(obj.size_bytes for obj in self.list_remote_backups())
            usage = StorageUsage(used_bytes=used, source='estimate')

        usage.refreshed_at = self._now()
        usage.latency_ms = int((time.monotonic() - started) * 1000)
        return usage

    # Retention

    def prune_remote_backups(self, retain_by_number: int, retain_by_age_days: int) -> PruneResult:
        """
        Delete remote archives outside the retention policy.

        Individual delete failures are collected in the result and do not
        stop the prune. When both limits are 0 retention is treated as
        disabled and nothing is deleted.

        Args:
            retain_by_number: Number of newest archives to keep
            retain_by_age_days: Keep archives younger than this many days

        Returns:
            PruneResult with counts, deleted names and errors
        """
        result = PruneResult()

        if int(retain_by_number or 0) <= 0 and int(retain_by_age_days or 0) <= 0:
            logger.info("Retention disabled for %s, nothing pruned", self.name)
            return result

        if not self.connected:
            result.errors.append(f"{self.name} is not configured")
            return result

        try:
            objects = [obj for obj in self.provider.list_objects() if is_backup_name(obj.name)]
        except Exception as e:
            logger.error("Prune listing failed on %s: %s", self.name, e)
            result.errors.append(f"Listing failed: {e}")
            return result

        result.inspected = len(objects)

        for obj in select_for_deletion(objects, retain_by_number, retain_by_age_days, self._now()):
            try:
                self._delete_object(obj)
                result.deleted += 1
                result.deleted_items.append(obj.name)
            except DestinationError as e:
                logger.warning("Failed to prune %s from %s: %s", obj.name, self.name, e)
                result.errors.append(f"{obj.name}: {e}")

        logger.info(
            "Pruned %s: inspected=%d deleted=%d errors=%d",
            self.name, result.inspected, result.deleted, len(result.errors)
        )
        return result

    def test_connection(self) -> bool:
        """
        Make a cheap authenticated call.

        Raises:
            DestinationError: If the destination is unreachable or misconfigured
        """
        self._require_configured()
        self.provider.test_connection()
        return True
