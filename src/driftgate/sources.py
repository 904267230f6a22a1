from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from .canonical import fingerprint
from .errors import ManifestError
from .graph import parse_manifest
from .models import ArtifactRef, DesiredState
from .state_store import atomic_write_text, locked_file

logger = logging.getLogger(__name__)


@runtime_checkable
class DesiredStateSource(Protocol):
    """Where the desired state comes from (a manifest file, a git checkout, an API)."""

    def fetch(self) -> DesiredState: ...


class ManifestFileSource:
    """Desired state read from a JSON manifest on disk.

    The revision is the fingerprint of the manifest's canonical JSON, so
    reformatting the file does not produce a new revision but any change in
    content does.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def _read_payload(self) -> Any:
        if not self.path.is_file():
            raise ManifestError(f"manifest not found: {self.path}")
        try:
            return json.loads(self.path.read_text(encoding="utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ManifestError(f"manifest at {self.path} is not valid JSON: {exc}") from exc

    def fetch(self) -> DesiredState:
        with locked_file(self.path):
            payload = self._read_payload()
        declarations = parse_manifest(payload, origin=str(self.path))
        return DesiredState(revision=fingerprint(payload), declarations=declarations, source=str(self.path))

    def promote_artifact(self, resource_id: str, ref: ArtifactRef, *, attribute: str = "image") -> str:
        """Point ``resource_id``'s ``attribute`` at a published artifact.

        Returns:
            The manifest's new revision.

        Raises:
            ManifestError: If the manifest does not declare ``resource_id``.
        """
        with locked_file(self.path):
            payload = self._read_payload()
            parse_manifest(payload, origin=str(self.path))
            for raw in payload["resources"]:
                if raw.get("id") == resource_id:
                    raw.setdefault("attributes", {})[attribute] = str(ref)
                    break
            else:
                raise ManifestError(f"{self.path} does not declare resource {resource_id}")
            atomic_write_text(self.path, json.dumps(payload, indent=2, sort_keys=True) + "\n")
        revision = fingerprint(payload)
        logger.info("Promoted %s into %s.%s (revision %s)", ref, resource_id, attribute, revision[:12])
        return revision
