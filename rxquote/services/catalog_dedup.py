"""Duplicate detection and catalog suggestions for new catalog / stock entries.

Two jobs share the same normalized view of a name:

1. **Duplicate flagging** (STRICT policy).  Bulk imports of global-catalog
   items and of pharmacy stock are previewed row by row; a row whose name
   equals or contains (or is contained in) an existing name, or an earlier
   row of the same batch, is flagged.  Flagged rows are shown to the operator
   and excluded on commit unless explicitly kept.
2. **"Did you mean" catalog linking** (RANKED policy).  While a pharmacy types
   a new stock item, the closest catalog entries are offered so the item can
   be linked instead of created disconnected.

Input sources for bulk import
-----------------------------
    parse_bulk_lines   pasted text, one "NAME, price" per line
    read_import_file   CSV / TSV / Excel read with Polars
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence

import polars as pl

from rxquote.models.catalog import CatalogEntry
from rxquote.services.normalizer import MatchPolicy, is_match, normalize_dataframe_column, rank

logger = logging.getLogger(__name__)

#: Typed names shorter than this get no catalog suggestions.
SUGGESTION_MIN_LENGTH = 3

#: Pasted lines shorter than this are ignored.
BULK_LINE_MIN_LENGTH = 4

NAME_COLUMNS = ("name", "Name", "NAME", "nome", "Nome", "NOME", "nombre", "Nombre", "NOMBRE",
                "produto", "Produto", "producto", "Producto", "medicamento", "Medicamento")
PRICE_COLUMNS = ("price", "Price", "PRICE", "preco", "Preco", "preço", "Preço", "precio", "Precio", "PRECIO")
QUANTITY_COLUMNS = ("stock", "Stock", "STOCK", "quantidade", "Quantidade", "cantidad", "Cantidad", "quantity")

_TRAILING_PRICE = re.compile(r"(\d[\d\s.,]*)$")


# ---------------------------------------------------------------------------
# Pairwise checks
# ---------------------------------------------------------------------------

def find_duplicate_of(candidate_name: str, existing_names: Iterable[str]) -> Optional[str]:
    """Return the first existing name that STRICT-matches *candidate_name*, or ``None``."""
    for existing in existing_names:
        if is_match(candidate_name, existing, MatchPolicy.STRICT):
            return existing
    return None


def find_duplicate(candidate_name: str, existing_names: Iterable[str]) -> bool:
    return find_duplicate_of(candidate_name, existing_names) is not None


def suggest_catalog_match(
    typed_name: str,
    catalog_entries: Sequence[CatalogEntry],
    limit: int = 5,
) -> list[CatalogEntry]:
    """
    Up to *limit* catalog entries ranked by the RANKED policy (score >= 0.55),
    best first; ties keep catalog order.
    """
    if len((typed_name or "").strip()) < SUGGESTION_MIN_LENGTH:
        return []
    ranked = rank(
        typed_name,
        catalog_entries,
        key=lambda entry: entry.canonical_name,
        policy=MatchPolicy.RANKED,
        limit=limit,
    )
    return [entry for entry, _ in ranked]


# ---------------------------------------------------------------------------
# Bulk import
# ---------------------------------------------------------------------------

@dataclass
class ImportRow:
    name: str
    price: Decimal = Decimal("0")
    quantity: Optional[int] = None
    is_duplicate: bool = False
    duplicate_of: Optional[str] = None
    rejection_reason: Optional[str] = None

    @property
    def is_valid(self) -> bool:
        return self.rejection_reason is None


@dataclass
class ImportSummary:
    total: int
    to_import: int
    duplicates: int
    rejected: int
    rows: list[ImportRow] = field(default_factory=list)


def _parse_price(value: Any) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, (int, float, Decimal)):
        return Decimal(str(value))
    text = re.sub(r"[^0-9.,]", "", str(value))
    if "," in text and "." in text:
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif "," in text:
        text = text.replace(",", ".")
    try:
        return Decimal(text) if text else Decimal("0")
    except InvalidOperation:
        return Decimal("0")


def _parse_quantity(value: Any) -> Optional[int]:
    if value is None or str(value).strip() == "":
        return None
    try:
        return int(float(str(value).replace(",", ".")))
    except ValueError:
        return None


def _clean_name(name: str) -> str:
    return re.sub(r"^[-•*]\s*", "", name.strip().rstrip(",").strip()).upper()


def parse_bulk_lines(text: str) -> list[ImportRow]:
    """
    Parse pasted text, one product per line: ``NAME, price`` (``;`` or tab
    also separate), or a name followed by a bare trailing number.
    Names are upper-cased; a missing price is 0.
    """
    rows: list[ImportRow] = []
    for line in (text or "").splitlines():
        line = line.strip()
        if len(line) < BULK_LINE_MIN_LENGTH:
            continue
        parts = [p.strip() for p in re.split(r"[,;\t]", line)]
        name, price = line, Decimal("0")
        if len(parts) > 1 and re.search(r"\d", parts[-1]) and not re.search(r"[a-zA-Z]", parts[-1]):
            price = _parse_price(parts[-1])
            name = ", ".join(p for p in parts[:-1] if p)
        else:
            trailing = _TRAILING_PRICE.search(line)
            if trailing and trailing.start() > 0 and line[trailing.start() - 1] == " ":
                price = _parse_price(trailing.group(1))
                name = line[: trailing.start()]
        rows.append(ImportRow(name=_clean_name(name), price=price))
    return rows


def _pick_existing_column(columns: list[str], candidates: tuple[str, ...]) -> str | None:
    for candidate in candidates:
        if candidate in columns:
            return candidate
    return None


def _read_dataframe(file_path: str) -> pl.DataFrame:
    path = Path(file_path)
    suffix = path.suffix.lower()
    if suffix in {".xlsx", ".xls"}:
        return pl.read_excel(path)
    if suffix in {".tsv", ".txt"}:
        return pl.read_csv(path, separator="\t", infer_schema_length=0)
    return pl.read_csv(path, infer_schema_length=0)


def read_import_file(file_path: str) -> list[ImportRow]:
    """
    Read an import file with Polars.  The name column is picked from
    ``NAME_COLUMNS`` (first column as fallback); price and stock columns are
    optional.  Rows with a blank name are skipped.
    """
    df = _read_dataframe(file_path)
    if df.is_empty():
        return []
    columns = df.columns
    name_col = _pick_existing_column(columns, NAME_COLUMNS) or columns[0]
    price_col = _pick_existing_column(columns, PRICE_COLUMNS)
    qty_col = _pick_existing_column(columns, QUANTITY_COLUMNS)

    df = normalize_dataframe_column(df, name_col)
    rows: list[ImportRow] = []
    for record in df.to_dicts():
        if not record.get(f"{name_col}_normalized"):
            continue
        rows.append(ImportRow(
            name=_clean_name(str(record[name_col])),
            price=_parse_price(record.get(price_col)) if price_col else Decimal("0"),
            quantity=_parse_quantity(record.get(qty_col)) if qty_col else None,
        ))
    logger.info("read_import_file: %d row(s) from %s (name column %r)", len(rows), file_path, name_col)
    return rows


def preview_import(rows: Sequence[ImportRow], existing_names: Sequence[str]) -> ImportSummary:
    """
    Flag every row that duplicates an existing name or an earlier row of the
    same batch.  Rows are flagged, not dropped: the operator decides.
    """
    seen: list[str] = []
    previewed: list[ImportRow] = []
    for row in rows:
        flagged = ImportRow(name=row.name, price=row.price, quantity=row.quantity)
        if not row.name.strip():
            flagged.rejection_reason = "empty name"
        else:
            hit = find_duplicate_of(row.name, existing_names)
            if hit is None:
                hit = find_duplicate_of(row.name, seen)
            if hit is not None:
                flagged.is_duplicate = True
                flagged.duplicate_of = hit
            seen.append(row.name)
        previewed.append(flagged)

    duplicates = sum(1 for r in previewed if r.is_duplicate)
    rejected = sum(1 for r in previewed if not r.is_valid)
    summary = ImportSummary(
        total=len(previewed),
        to_import=len(previewed) - duplicates - rejected,
        duplicates=duplicates,
        rejected=rejected,
        rows=previewed,
    )
    logger.info(
        "preview_import: total=%d to_import=%d duplicates=%d rejected=%d",
        summary.total, summary.to_import, summary.duplicates, summary.rejected,
    )
    return summary


def rows_to_commit(summary: ImportSummary, include_duplicates: bool = False) -> list[ImportRow]:
    return [
        row for row in summary.rows
        if row.is_valid and (include_duplicates or not row.is_duplicate)
    ]
