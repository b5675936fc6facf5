"""Template and supplier store.

The router and learner receive a TemplateStore handle; nothing here is a
global. InMemoryTemplateStore satisfies the contract for tests and for the
worker, which persists it as a JSON snapshot between runs.

Reads return copies: a caller mutating a returned Template does not change
the store until it calls update_template (last writer wins).
"""

import logging
import threading
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, Field

from docengine.templates.models import Supplier, Template, utcnow

logger = logging.getLogger(__name__)


class TemplateStore(Protocol):
    """Keyed CRUD over suppliers and templates."""

    def get_supplier(self, supplier_id: str) -> Supplier | None: ...

    def find_supplier(self, tax_id: str | None, normalized_name: str | None) -> Supplier | None:
        """Look up by tax id first, then by normalized name."""
        ...

    def find_or_create_supplier(
        self, tax_id: str | None, name: str | None, normalized_name: str | None
    ) -> Supplier | None:
        """Find a supplier, backfilling its tax id, or create one when a name is given."""
        ...

    def get_templates_by_supplier(
        self, supplier_id: str, active_only: bool = True
    ) -> list[Template]: ...

    def get_template(self, template_id: str) -> Template | None: ...

    def create_template(self, template: Template) -> Template: ...

    def update_template(self, template: Template) -> Template: ...

    def list_templates(self) -> list[Template]: ...


class StoreSnapshot(BaseModel):
    """Serialized form of an InMemoryTemplateStore."""

    suppliers: list[Supplier] = Field(default_factory=list)
    templates: list[Template] = Field(default_factory=list)


class InMemoryTemplateStore:
    """Thread-safe in-memory TemplateStore."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._suppliers: dict[str, Supplier] = {}
        self._templates: dict[str, Template] = {}

    def get_supplier(self, supplier_id: str) -> Supplier | None:
        with self._lock:
            supplier = self._suppliers.get(supplier_id)
            return supplier.model_copy(deep=True) if supplier else None

    def find_supplier(self, tax_id: str | None, normalized_name: str | None) -> Supplier | None:
        with self._lock:
            supplier = self._find(tax_id, normalized_name)
            return supplier.model_copy(deep=True) if supplier else None

    def _find(self, tax_id: str | None, normalized_name: str | None) -> Supplier | None:
        if tax_id:
            for supplier in self._suppliers.values():
                if supplier.tax_id == tax_id:
                    return supplier
        if normalized_name:
            for supplier in self._suppliers.values():
                if supplier.normalized_name == normalized_name:
                    return supplier
        return None

    def find_or_create_supplier(
        self, tax_id: str | None, name: str | None, normalized_name: str | None
    ) -> Supplier | None:
        with self._lock:
            supplier = self._find(tax_id, normalized_name)
            if supplier is not None:
                if tax_id and supplier.tax_id != tax_id:
                    logger.info(f"Backfilling tax id {tax_id} on supplier '{supplier.name}'")
                    supplier = supplier.model_copy(update={"tax_id": tax_id})
                    self._suppliers[supplier.id] = supplier
                return supplier.model_copy(deep=True)

            if not name or not normalized_name:
                return None

            supplier = Supplier(name=name, normalized_name=normalized_name, tax_id=tax_id)
            self._suppliers[supplier.id] = supplier
            logger.info(f"Created supplier '{name}' (tax id: {tax_id})")
            return supplier.model_copy(deep=True)

    def get_templates_by_supplier(
        self, supplier_id: str, active_only: bool = True
    ) -> list[Template]:
        with self._lock:
            templates = [
                t.model_copy(deep=True)
                for t in self._templates.values()
                if t.supplier_id == supplier_id and (t.is_active or not active_only)
            ]
        return sorted(templates, key=lambda t: t.confidence_score, reverse=True)

    def get_template(self, template_id: str) -> Template | None:
        with self._lock:
            template = self._templates.get(template_id)
            return template.model_copy(deep=True) if template else None

    def create_template(self, template: Template) -> Template:
        with self._lock:
            if template.supplier_id not in self._suppliers:
                raise KeyError(f"Unknown supplier: {template.supplier_id}")
            if template.id in self._templates:
                raise ValueError(f"Template already exists: {template.id}")
            self._templates[template.id] = template.model_copy(deep=True)
        return template

    def update_template(self, template: Template) -> Template:
        with self._lock:
            if template.id not in self._templates:
                raise KeyError(f"Unknown template: {template.id}")
            stored = template.model_copy(update={"updated_at": utcnow()}, deep=True)
            self._templates[template.id] = stored
            return stored.model_copy(deep=True)

    def list_templates(self) -> list[Template]:
        with self._lock:
            return [t.model_copy(deep=True) for t in self._templates.values()]

    def snapshot(self) -> StoreSnapshot:
        with self._lock:
            return StoreSnapshot(
                suppliers=list(self._suppliers.values()),
                templates=list(self._templates.values()),
            )

    def save(self, path: str | Path) -> None:
        """Write a JSON snapshot, replacing the target file atomically."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        snapshot = self.snapshot()
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(snapshot.model_dump_json(indent=2), encoding="utf-8")
        tmp.replace(path)
        logger.info(
            f"Saved template store: {len(snapshot.suppliers)} suppliers, "
            f"{len(snapshot.templates)} templates -> {path}"
        )

    @classmethod
    def load(cls, path: str | Path) -> "InMemoryTemplateStore":
        """Load a JSON snapshot; a missing file yields an empty store."""
        path = Path(path)
        store = cls()
        if not path.exists():
            logger.info(f"No template store snapshot at {path}, starting empty")
            return store

        snapshot = StoreSnapshot.model_validate_json(path.read_text(encoding="utf-8"))
        store._suppliers = {s.id: s for s in snapshot.suppliers}
        store._templates = {t.id: t for t in snapshot.templates}
        logger.info(
            f"Loaded template store: {len(store._suppliers)} suppliers, "
            f"{len(store._templates)} templates from {path}"
        )
        return store
