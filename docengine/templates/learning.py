"""Template learning: creation, refinement, variants and usage statistics.

Every AI extraction that passes validation teaches the store something:
the first document of a supplier creates its template, later documents
refine the matching template or spin off a variant for a new layout.

Refinement and statistics updates for one supplier are serialized with a
per-supplier lock, so merges inside one process are never lost. Across
processes the store is last-writer-wins. No lock is held across a provider
call: the router only learns after extraction has finished.
"""

import logging
import re
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel

from docengine.extraction.schema import ParsedDocument
from docengine.shared.config import Settings
from docengine.templates.fingerprint import FingerprintEngine
from docengine.templates.matcher import SupplierMatcher
from docengine.templates.models import (
    ColumnSpec,
    Fingerprint,
    HeaderConfig,
    Supplier,
    TableConfig,
    Template,
)
from docengine.templates.store import TemplateStore

logger = logging.getLogger(__name__)

MAX_REQUIRED_KEYWORDS = 8
MAX_OPTIONAL_KEYWORDS = 10
INITIAL_CONFIDENCE = 50.0
REFINE_STEP = 5.0
REFINE_CEILING = 95.0
TOTAL_TOLERANCE = Decimal("0.01")
LINE_COUNT_TOLERANCE = 2

_NUM = r"(\d+(?:[.,]\d+)*)"
DEFAULT_ROW_PATTERN = rf"^(.+?)\s+{_NUM}\s+(?:([A-Za-z]{{1,3}})\s+)?{_NUM}\s+{_NUM}$"
DEFAULT_COLUMNS = [
    ColumnSpec(name="descricao", index=0),
    ColumnSpec(name="qtd", index=1),
    ColumnSpec(name="unidade", index=2),
    ColumnSpec(name="preco_unit", index=3),
    ColumnSpec(name="total", index=4),
]
DEFAULT_END_MARKER = r"^\s*(?:RESUMO|SUBTOTAL|TOTAL|OBSERVA[ÇC])"

_SEP = r"[ \t]*[:.]?[ \t]*"
_CURRENCY = r"(?:€|EUR)?[ \t]*"
_AMOUNT = r"(\d(?:[\d.,]*\d)?)"
VALUE_PATTERNS = {
    "tax_id": r"(?:PT[ \t]*)?(\d{9})",
    "doc_number": r"(\S+(?:[ \t]+\S*\d\S*)?)",
    "date": r"(\d{1,2}[/.\-]\d{1,2}[/.\-]\d{4}|\d{4}[/.\-]\d{1,2}[/.\-]\d{1,2})",
    "amount": _CURRENCY + _AMOUNT,
}

GENERIC_HEADER = HeaderConfig(
    tax_id_pattern=r"(NIF|NIPC|CONTRIBUINTE)[^\d\n]{0,15}(\d{9})",
    supplier_name_pattern=None,
    doc_number_pattern=r"(FATURA|FT|FR|FS|N\.?º)[ \t]*[:.]?[ \t]*([A-Z]{0,4}[ \t]?\d[\w/.\-]*)",
    date_pattern=(
        r"(DATA(?:[ \t]+(?:DE[ \t]+)?EMISS[ÃA]O)?)" + _SEP + r"(\d{2}[/.\-]\d{2}[/.\-]\d{4})"
    ),
    subtotal_pattern=(
        r"(SUBTOTAL|TOTAL[ \t]+S/?[ \t]*IVA|BASE[ \t]+TRIBUT[ÁA]VEL|TOTAL[ \t]+IL[ÍI]QUIDO)"
        + _SEP
        + _CURRENCY
        + _AMOUNT
    ),
    tax_amount_pattern=(
        r"(TOTAL[ \t]+IVA|IVA(?:[ \t]+\d{1,2}[ \t]*%)?)" + _SEP + _CURRENCY + _AMOUNT
    ),
    total_pattern=(
        r"(?<!\w)(TOTAL(?:[ \t]+(?:A[ \t]+PAGAR|C/?[ \t]*IVA|DOCUMENTO))?)"
        + _SEP
        + _CURRENCY
        + _AMOUNT
    ),
)

DATE_RENDERINGS = ["%d/%m/%Y", "%d-%m-%Y", "%d.%m.%Y", "%Y-%m-%d", "%Y/%m/%d"]

LearningAction = Literal["created", "backfilled", "refined", "variant", "skipped"]


class LearningEvent(BaseModel):
    """What learning did with one document."""

    action: LearningAction
    template_id: str | None = None
    supplier_id: str | None = None


def similarity(a: ParsedDocument, b: ParsedDocument) -> float:
    """Agreement between two extractions of the same document (0-1).

    Only fields present in both are compared: tax id, document number,
    grand total (within 0.01) and line count (within 2, always comparable).
    """
    comparable = 0
    matches = 0

    if a.header.tax_id and b.header.tax_id:
        comparable += 1
        matches += a.header.tax_id == b.header.tax_id
    if a.header.doc_number and b.header.doc_number:
        comparable += 1
        matches += a.header.doc_number.strip() == b.header.doc_number.strip()
    if a.header.grand_total is not None and b.header.grand_total is not None:
        comparable += 1
        matches += abs(a.header.grand_total - b.header.grand_total) <= TOTAL_TOLERANCE

    comparable += 1
    matches += abs(len(a.line_items) - len(b.line_items)) <= LINE_COUNT_TOLERANCE

    return matches / comparable if comparable else 0.0


def _amount_renderings(value: Decimal) -> list[str]:
    plain = f"{value:.2f}"
    grouped = f"{value:,.2f}"
    portuguese = grouped.replace(",", "_").replace(".", ",").replace("_", ".")
    return list(dict.fromkeys([portuguese, plain.replace(".", ","), plain, grouped]))


def _date_renderings(value: date) -> list[str]:
    return [value.strftime(fmt) for fmt in DATE_RENDERINGS]


def _label_before(text: str, rendering: str, last: bool) -> str | None:
    """Text preceding a value on its line, when that text is a usable label."""
    occurrence = re.compile(rf"(?<![\w.,]){re.escape(rendering)}(?![\d])")
    lines = text.splitlines()
    for line in reversed(lines) if last else lines:
        match = occurrence.search(line)
        if match is None:
            continue
        label = line[: match.start()].rstrip(" \t:.-€")
        tokens = label.split()[-3:]
        if tokens and re.search(r"[^\W\d_]", " ".join(tokens)):
            return " ".join(tokens)
        return None
    return None


def _label_regex(label: str) -> str:
    return r"(?<!\w)" + r"[ \t]+".join(re.escape(token) for token in label.split())


def _learned_pattern(
    text: str, renderings: list[str], value_pattern: str, last: bool = False
) -> str | None:
    for rendering in renderings:
        label = _label_before(text, rendering, last)
        if label:
            return _label_regex(label) + _SEP + value_pattern
    return None


def derive_header_config(text: str, document: ParsedDocument) -> HeaderConfig:
    """Learn header patterns from the labels in front of known values.

    Fields whose label cannot be found fall back to generic Portuguese
    invoice patterns.
    """
    header = document.header
    learned: dict[str, str | None] = {}

    if header.supplier_name and header.supplier_name.strip() in text:
        name_tokens = header.supplier_name.split()
        learned["supplier_name_pattern"] = (
            r"^[ \t]*(" + r"[ \t]+".join(re.escape(t) for t in name_tokens) + ")"
        )
    if header.tax_id:
        learned["tax_id_pattern"] = _learned_pattern(
            text, [header.tax_id], VALUE_PATTERNS["tax_id"]
        )
    if header.doc_number:
        learned["doc_number_pattern"] = _learned_pattern(
            text, [header.doc_number.strip()], VALUE_PATTERNS["doc_number"]
        )
    if header.doc_date:
        learned["date_pattern"] = _learned_pattern(
            text, _date_renderings(header.doc_date), VALUE_PATTERNS["date"]
        )
    amounts = {
        "subtotal_pattern": header.subtotal,
        "tax_amount_pattern": header.tax_amount,
        "total_pattern": header.grand_total,
    }
    for key, value in amounts.items():
        if value is not None:
            learned[key] = _learned_pattern(
                text, _amount_renderings(value), VALUE_PATTERNS["amount"], last=True
            )

    values = GENERIC_HEADER.model_dump()
    values.update({key: pattern for key, pattern in learned.items() if pattern})
    return HeaderConfig(**values)


def derive_table_config(fingerprint: Fingerprint) -> TableConfig:
    """Generic table recipe starting at the fingerprint's table marker."""
    return TableConfig(
        start_marker=re.escape(fingerprint.structure_markers.table_start_marker),
        end_marker=DEFAULT_END_MARKER,
        row_pattern=DEFAULT_ROW_PATTERN,
        columns=[column.model_copy() for column in DEFAULT_COLUMNS],
    )


def merge_fingerprints(old: Fingerprint, new: Fingerprint) -> Fingerprint:
    """Merge a fresh fingerprint into a stored one.

    Required keywords keep what both agree on plus everything new (max 8)
    and never end up empty while the old list had entries. Optional keywords
    are unioned (max 10). Structure markers are replaced; layout hints are
    merged with the new values winning.
    """
    common = [kw for kw in old.required_keywords if kw in new.required_keywords]
    required = list(dict.fromkeys(common + new.required_keywords))[:MAX_REQUIRED_KEYWORDS]
    if not required:
        required = list(old.required_keywords)

    optional = list(dict.fromkeys(old.optional_keywords + new.optional_keywords))
    layout = old.layout_hints.model_copy(
        update=new.layout_hints.model_dump(exclude_none=True)
    )
    return Fingerprint(
        required_keywords=required,
        optional_keywords=optional[:MAX_OPTIONAL_KEYWORDS],
        structure_markers=new.structure_markers.model_copy(),
        layout_hints=layout,
    )


class TemplateLearner:
    """Creates and refines templates from validated extractions."""

    def __init__(
        self,
        store: TemplateStore,
        settings: Settings | None = None,
        fingerprint_engine: FingerprintEngine | None = None,
        matcher: SupplierMatcher | None = None,
    ) -> None:
        self.store = store
        self.settings = settings or Settings()
        self.fingerprints = fingerprint_engine or FingerprintEngine(self.settings)
        self.matcher = matcher or SupplierMatcher(store)
        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def supplier_lock(self, supplier_id: str) -> Iterator[None]:
        """Serialize learning for one supplier."""
        with self._locks_guard:
            lock = self._locks.setdefault(supplier_id, threading.RLock())
        with lock:
            yield

    def refine(self, template: Template, document: ParsedDocument, text: str) -> Template:
        """Merge a new extraction into an existing template.

        Backfills empty header/table configs and raises confidence by 5
        (capped at 95; a score already at or above 95 is left alone).

        Args:
            template: Template to refine
            document: Validated extraction of the new document
            text: OCR text of the new document

        Returns:
            The updated template as stored
        """
        with self.supplier_lock(template.supplier_id):
            current = self.store.get_template(template.id) or template
            new_fp = self.fingerprints.generate(text, document)
            fingerprint = (
                merge_fingerprints(current.fingerprint, new_fp) if current.fingerprint else new_fp
            )

            updates: dict[str, object] = {"fingerprint": fingerprint}
            if current.header_config.is_empty():
                updates["header_config"] = derive_header_config(text, document)
            if current.table_config is None:
                updates["table_config"] = derive_table_config(fingerprint)
            if current.confidence_score < REFINE_CEILING:
                updates["confidence_score"] = min(
                    current.confidence_score + REFINE_STEP, REFINE_CEILING
                )

            refined = self.store.update_template(current.model_copy(update=updates))
        logger.info(
            f"Refined template {refined.id} ({refined.name}): "
            f"confidence {current.confidence_score:.0f} -> {refined.confidence_score:.0f}"
        )
        return refined

    def create_variant(self, document: ParsedDocument, text: str, supplier: Supplier) -> Template:
        """Create a new template (layout variant) for a supplier.

        Args:
            document: Validated extraction the template is learnt from
            text: OCR text of the document
            supplier: Owner of the new template

        Returns:
            The created template, confidence 50
        """
        with self.supplier_lock(supplier.id):
            existing = self.store.get_templates_by_supplier(supplier.id, active_only=False)
            version = max((t.version for t in existing), default=0) + 1
            fingerprint = self.fingerprints.generate(text, document)
            template = Template(
                supplier_id=supplier.id,
                name=f"{supplier.name} v{version}",
                version=version,
                header_config=derive_header_config(text, document),
                table_config=derive_table_config(fingerprint),
                fingerprint=fingerprint,
                confidence_score=INITIAL_CONFIDENCE,
                created_from_ai=True,
            )
            created = self.store.create_template(template)
        logger.info(f"Created template {created.id} ({created.name}) for supplier {supplier.id}")
        return created

    def update_stats(self, template_id: str, success: bool) -> Template | None:
        """Record one use of a template; confidence becomes the success ratio."""
        template = self.store.get_template(template_id)
        if template is None:
            logger.warning(f"Cannot update stats of unknown template {template_id}")
            return None

        with self.supplier_lock(template.supplier_id):
            current = self.store.get_template(template_id) or template
            times_used = current.times_used + 1
            times_successful = current.times_successful + (1 if success else 0)
            updated = self.store.update_template(
                current.model_copy(
                    update={
                        "times_used": times_used,
                        "times_successful": times_successful,
                        "confidence_score": 100 * times_successful / times_used,
                    }
                )
            )
        logger.info(
            f"Template {template_id} stats: {times_successful}/{times_used} "
            f"(success={success}, confidence {updated.confidence_score:.1f})"
        )
        return updated

    def learn(
        self,
        document: ParsedDocument,
        text: str,
        tax_id: str | None = None,
        supplier_name: str | None = None,
    ) -> LearningEvent:
        """Teach the store from a validated extraction.

        Args:
            document: Validated extraction
            text: OCR text of the document
            tax_id: Tax id read from the text, if any
            supplier_name: Supplier name read from the text, if any

        Returns:
            LearningEvent describing the change made
        """
        name = document.header.supplier_name or supplier_name
        supplier = self.matcher.find_or_create_supplier(tax_id or document.header.tax_id, name)
        if supplier is None:
            logger.info("Skipping learning: no supplier name available")
            return LearningEvent(action="skipped")

        with self.supplier_lock(supplier.id):
            templates = self.store.get_templates_by_supplier(supplier.id)
            if not templates:
                template = self.create_variant(document, text, supplier)
                return LearningEvent(
                    action="created", template_id=template.id, supplier_id=supplier.id
                )

            incomplete = next(
                (t for t in templates if t.fingerprint is None or not t.is_parse_capable), None
            )
            if incomplete is not None:
                template = self.refine(incomplete, document, text)
                return LearningEvent(
                    action="backfilled", template_id=template.id, supplier_id=supplier.id
                )

            scored = [
                (self.fingerprints.score(text, t.fingerprint).score, t)
                for t in templates
                if t.fingerprint is not None
            ]
            best_score, best = max(scored, key=lambda pair: pair[0])
            if best_score >= self.settings.router_medium_tier:
                template = self.refine(best, document, text)
                return LearningEvent(
                    action="refined", template_id=template.id, supplier_id=supplier.id
                )

            template = self.create_variant(document, text, supplier)
            return LearningEvent(action="variant", template_id=template.id, supplier_id=supplier.id)

    def regenerate_fingerprint(self, template: Template) -> Template | None:
        """Rebuild a template's identity keywords from its supplier record.

        Used after the fingerprint algorithm changes. The original document
        text is not kept, so identity keywords are regenerated from a
        synthetic header while learnt structure and layout are preserved.

        Returns:
            Updated template, or None when the supplier no longer exists
        """
        supplier = self.store.get_supplier(template.supplier_id)
        if supplier is None:
            logger.warning(f"Template {template.id} has no supplier, skipping")
            return None

        synthetic_text = "\n".join(
            [
                supplier.name,
                f"NIF: {supplier.tax_id}" if supplier.tax_id else "",
                "FATURA FT",
                "Designação Quantidade Preço",
            ]
        )
        document = ParsedDocument.model_validate(
            {"header": {"supplier_name": supplier.name, "tax_id": supplier.tax_id}}
        )
        fresh = self.fingerprints.generate(synthetic_text, document)

        with self.supplier_lock(supplier.id):
            current = self.store.get_template(template.id) or template
            if current.fingerprint is not None:
                fresh = current.fingerprint.model_copy(
                    update={"required_keywords": fresh.required_keywords}
                )
            updated = self.store.update_template(current.model_copy(update={"fingerprint": fresh}))
        logger.info(f"Regenerated fingerprint of template {template.id}: {fresh.required_keywords}")
        return updated
