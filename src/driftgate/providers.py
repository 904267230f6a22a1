from __future__ import annotations

import logging
import uuid
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from pydantic import TypeAdapter, ValidationError

from .errors import ResourceAlreadyExists, ResourceNotFound
from .models import ObservedResource, ResourceKind
from .state_store import atomic_write_text, locked_file, safe_read_json

logger = logging.getLogger(__name__)


@runtime_checkable
class ResourceProvider(Protocol):
    """Typed CRUD surface of a cloud resource provider.

    ``resource_id`` is the engine's identifier and doubles as the idempotency
    key: ``lookup`` must find a resource created under that identifier even if
    the engine never learned its ``external_id``.
    """

    name: str

    def create(self, kind: ResourceKind, resource_id: str, attributes: dict[str, Any]) -> ObservedResource: ...

    def read(self, kind: ResourceKind, resource_id: str, external_id: str) -> ObservedResource | None: ...

    def update(
        self,
        kind: ResourceKind,
        resource_id: str,
        external_id: str,
        attributes: dict[str, Any],
    ) -> ObservedResource: ...

    def delete(self, kind: ResourceKind, resource_id: str, external_id: str) -> None: ...

    def lookup(self, kind: ResourceKind, resource_id: str) -> ObservedResource | None: ...

    def list_resources(self) -> list[ObservedResource]: ...


_INVENTORY = TypeAdapter(dict[str, ObservedResource])


class LocalResourceProvider:
    """Provider that keeps its resources in a JSON document on local disk.

    Intended for development, CI dry runs and tests.  It behaves like a strict
    cloud API: creating an identifier that already exists raises
    ``ResourceAlreadyExists`` and touching an unknown resource raises
    ``ResourceNotFound``, so the engine's duplicate-adoption path is exercised.
    """

    name = "local"

    def __init__(self, root: Path) -> None:
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)
        self.inventory_path = self.root / "resources.json"

    def _load(self) -> dict[str, ObservedResource]:
        if not self.inventory_path.is_file():
            return {}
        text = safe_read_json(self.inventory_path, "provider inventory")
        try:
            return _INVENTORY.validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"provider inventory at {self.inventory_path} failed validation: {exc}") from exc

    def _save(self, inventory: dict[str, ObservedResource]) -> None:
        atomic_write_text(self.inventory_path, _INVENTORY.dump_json(inventory, indent=2).decode("utf-8"))

    @staticmethod
    def _matching(inventory: dict[str, ObservedResource], resource_id: str, external_id: str) -> ObservedResource:
        current = inventory.get(resource_id)
        if current is None or current.external_id != external_id:
            raise ResourceNotFound(resource_id)
        return current

    def create(self, kind: ResourceKind, resource_id: str, attributes: dict[str, Any]) -> ObservedResource:
        """Create a resource and assign it a fresh external id.

        Args:
            kind: Resource kind.
            resource_id: Engine identifier, unique within the inventory.
            attributes: Attributes to store verbatim.

        Returns:
            The created resource as the provider now reports it.

        Raises:
            ResourceAlreadyExists: If ``resource_id`` is already in the inventory.
        """
        with locked_file(self.inventory_path):
            inventory = self._load()
            if resource_id in inventory:
                raise ResourceAlreadyExists(resource_id)
            resource = ObservedResource(
                resource_id=resource_id,
                kind=kind,
                external_id=f"{kind.value}-{uuid.uuid4().hex[:12]}",
                attributes=dict(attributes),
            )
            inventory[resource_id] = resource
            self._save(inventory)
        logger.info("Created %s %s as %s", kind.value, resource_id, resource.external_id)
        return resource

    def read(self, kind: ResourceKind, resource_id: str, external_id: str) -> ObservedResource | None:
        """Return the live resource, or None if it is gone or was recreated under another external id."""
        with locked_file(self.inventory_path):
            current = self._load().get(resource_id)
        if current is None or current.external_id != external_id:
            return None
        return current

    def update(
        self,
        kind: ResourceKind,
        resource_id: str,
        external_id: str,
        attributes: dict[str, Any],
    ) -> ObservedResource:
        """Replace the attributes of an existing resource.

        Returns:
            The updated resource.

        Raises:
            ResourceNotFound: If no resource matches both identifiers.
        """
        with locked_file(self.inventory_path):
            inventory = self._load()
            current = self._matching(inventory, resource_id, external_id)
            updated = current.model_copy(update={"kind": kind, "attributes": dict(attributes)})
            inventory[resource_id] = updated
            self._save(inventory)
        logger.info("Updated %s %s", kind.value, resource_id)
        return updated

    def delete(self, kind: ResourceKind, resource_id: str, external_id: str) -> None:
        """Remove a resource.

        Raises:
            ResourceNotFound: If no resource matches both identifiers.
        """
        with locked_file(self.inventory_path):
            inventory = self._load()
            self._matching(inventory, resource_id, external_id)
            del inventory[resource_id]
            self._save(inventory)
        logger.info("Deleted %s %s", kind.value, resource_id)

    def lookup(self, kind: ResourceKind, resource_id: str) -> ObservedResource | None:
        """Find a resource by engine identifier alone (used to adopt ambiguous creates)."""
        with locked_file(self.inventory_path):
            return self._load().get(resource_id)

    def list_resources(self) -> list[ObservedResource]:
        with locked_file(self.inventory_path):
            inventory = self._load()
        return [inventory[resource_id] for resource_id in sorted(inventory)]
