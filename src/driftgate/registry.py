from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path

from .canonical import DIGEST_ALGORITHM, content_digest
from .errors import ArtifactIntegrityError
from .models import ArtifactRef
from .state_store import atomic_write_bytes, locked_file

logger = logging.getLogger(__name__)


class ArtifactRegistry:
    """Append-only, content-addressed artifact registry on local disk.

    Blobs live at ``blobs/sha256/<hex>``; pushing the same bytes twice is a
    no-op.  Every push and pull is logged to ``events.jsonl``.
    """

    def __init__(self, root: Path, *, name: str = "local") -> None:
        self.root = root
        self.name = name
        self.blobs_dir = self.root / "blobs" / DIGEST_ALGORITHM
        self.blobs_dir.mkdir(parents=True, exist_ok=True)
        self.events_path = self.root / "events.jsonl"

    def _blob_path(self, digest: str) -> Path:
        algorithm, _, hex_digest = digest.partition(":")
        if algorithm != DIGEST_ALGORITHM or not hex_digest or not hex_digest.isalnum():
            raise ValueError(f"unsupported artifact digest: {digest!r}")
        return self.blobs_dir / hex_digest

    def _log_event(self, event: dict[str, object]) -> None:
        with locked_file(self.events_path):
            with self.events_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps({"at": datetime.now(UTC).isoformat(), **event}, sort_keys=True) + "\n")

    def exists(self, digest: str) -> bool:
        """Return True when a blob for ``digest`` is stored.

        Raises:
            ValueError: If ``digest`` is not a ``sha256:<hex>`` digest.
        """
        return self._blob_path(digest).is_file()

    def push(self, content: bytes, digest: str) -> ArtifactRef:
        """Store ``content`` under ``digest`` and return its reference.

        Pushing bytes that are already present only logs the event.

        Args:
            content: Artifact bytes.
            digest: Expected ``sha256:<hex>`` content digest.

        Returns:
            An ``ArtifactRef`` naming this registry and the digest.

        Raises:
            ArtifactIntegrityError: If ``digest`` is not the hash of ``content``.
            ValueError: If ``digest`` is not a ``sha256:<hex>`` digest.
        """
        actual = content_digest(content)
        if actual != digest:
            raise ArtifactIntegrityError(f"refusing to push: content hashes to {actual}, not {digest}")
        path = self._blob_path(digest)
        with locked_file(path):
            if path.is_file():
                logger.info("Artifact %s already present in registry %s", digest, self.name)
            else:
                atomic_write_bytes(path, content)
        self._log_event({"event": "push", "digest": digest, "size": len(content)})
        return ArtifactRef(registry=self.name, digest=digest, size=len(content))

    def pull(self, ref: ArtifactRef | str) -> tuple[bytes, str]:
        """Return ``(content, digest)`` for ``ref``, verifying the content hash.

        Args:
            ref: An ``ArtifactRef`` or a bare ``sha256:<hex>`` digest.

        Returns:
            The stored bytes and the digest they were verified against.

        Raises:
            FileNotFoundError: If the registry holds no blob for the digest.
            ArtifactIntegrityError: If the stored bytes no longer match.
        """
        digest = ref.digest if isinstance(ref, ArtifactRef) else ref
        path = self._blob_path(digest)
        if not path.is_file():
            raise FileNotFoundError(f"artifact not found in registry {self.name}: {digest}")
        content = path.read_bytes()
        actual = content_digest(content)
        if actual != digest:
            raise ArtifactIntegrityError(f"artifact {digest} is corrupt: stored bytes hash to {actual}")
        self._log_event({"event": "pull", "digest": digest})
        return content, digest

    def list_events(self) -> list[dict[str, object]]:
        """Return every push and pull event in append order.

        Returns:
            Decoded ``events.jsonl`` entries; empty when nothing was logged.
        """
        if not self.events_path.is_file():
            return []
        return [json.loads(line) for line in self.events_path.read_text(encoding="utf-8").splitlines() if line.strip()]
