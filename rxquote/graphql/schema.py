from __future__ import annotations

import os
import re
from datetime import datetime
from pathlib import Path
from typing import Optional
from uuid import UUID, uuid4

import strawberry
from strawberry.file_uploads import Upload

from rxquote.core.db import AsyncSessionLocal
from rxquote.models.prescription import PrescriptionRequest, PrescriptionStatus, QuoteLineItem, SuggestedItem
from rxquote.services.catalog_dedup import (
    ImportSummary,
    parse_bulk_lines,
    preview_import,
    read_import_file,
    rows_to_commit,
    suggest_catalog_match,
)
from rxquote.services.inventory_service import fetch_catalog, fetch_existing_names, fetch_pharmacy_inventory
from rxquote.services.prescription_service import (
    OperationOutcome,
    PersistenceFailedError,
    commit_import_rows,
    create_prescription_request,
    expire_request,
    get_request,
    list_requests_for_pharmacy,
    propose_quote_lines,
    reject_request,
    revise_request,
    submit_quote_for_request,
)
from rxquote.services.quote_builder import Violation
from rxquote.services.stock_linker import search_stock
from rxquote.services.vision_service import analyze_prescription_image
from rxquote.worker.tasks import task_importar_archivo

UPLOAD_DIR = Path(os.getenv("UPLOAD_DIR", "/app/uploads"))
MAX_UPLOAD_BYTES = 10 * 1024 * 1024


@strawberry.type
class ItemSugeridoNode:
    raw_name: str
    quantity: int


@strawberry.type
class AnalisisIANode:
    confidence: float
    extracted_text: str
    suggested_items: list[ItemSugeridoNode]


@strawberry.type
class LineaCotizacionNode:
    name: str
    quantity: int
    unit_price: float
    unit_type: str
    linked_stock_item_id: Optional[strawberry.ID]
    stock_snapshot: Optional[int]
    is_matched: bool
    line_total: float


@strawberry.type
class CotizacionNode:
    pharmacy_id: str
    pharmacy_name: str
    items: list[LineaCotizacionNode]
    total_value: float
    delivery_fee: float
    note: str
    created_at: str


@strawberry.type
class SolicitudNode:
    id: strawberry.ID
    customer_id: str
    image_ref: str
    target_pharmacy_id: str
    status: str
    ai_analysis: Optional[AnalisisIANode]
    suggested_items: list[ItemSugeridoNode]
    validated_by: Optional[str]
    rejection_reason: Optional[str]
    quote: Optional[CotizacionNode]
    notes: Optional[str]
    created_at: str
    expires_at: Optional[str]


@strawberry.type
class ViolacionNode:
    kind: str
    item_name: str
    message: str
    requested: Optional[int] = None
    available: Optional[int] = None


@strawberry.type
class EnvioCotizacionNode:
    """Result of enviarCotizacion: on validation failure every violation is listed."""

    ok: bool
    solicitud: Optional[SolicitudNode]
    violaciones: list[ViolacionNode]


@strawberry.type
class StockItemNode:
    id: strawberry.ID
    name: str
    unit_price: float
    quantity_on_hand: int
    unit_type: str
    requires_prescription: bool


@strawberry.type
class CatalogoNode:
    id: strawberry.ID
    canonical_name: str
    category: str
    reference_price: float


@strawberry.type
class FilaImportacionNode:
    name: str
    price: float
    quantity: Optional[int]
    is_duplicate: bool
    duplicate_of: Optional[str]
    rejection_reason: Optional[str]


@strawberry.type
class PreviaImportacionNode:
    total: int
    to_import: int
    duplicates: int
    rejected: int
    rows: list[FilaImportacionNode]


@strawberry.type
class ResultadoImportacionNode:
    importados: int
    duplicados_excluidos: int
    rechazados: int
    task_id: Optional[str] = None


@strawberry.input
class ItemSugeridoInput:
    raw_name: str
    quantity: int = 1


@strawberry.input
class LineaCotizacionInput:
    name: str
    quantity: int
    unit_price: float
    unit_type: Optional[str] = None
    linked_stock_item_id: Optional[strawberry.ID] = None
    stock_snapshot: Optional[int] = None


# ---------------------------------------------------------------------------
# Helpers: domain → GraphQL node
# ---------------------------------------------------------------------------

def _item_to_node(item: SuggestedItem) -> ItemSugeridoNode:
    return ItemSugeridoNode(raw_name=item.raw_name, quantity=item.quantity)


def _line_to_node(line: QuoteLineItem) -> LineaCotizacionNode:
    return LineaCotizacionNode(
        name=line.name,
        quantity=line.quantity,
        unit_price=float(line.unit_price),
        unit_type=line.unit_type,
        linked_stock_item_id=strawberry.ID(str(line.linked_stock_item_id)) if line.linked_stock_item_id else None,
        stock_snapshot=line.stock_snapshot,
        is_matched=line.is_matched,
        line_total=float(line.line_total),
    )


def _solicitud_to_node(request: PrescriptionRequest) -> SolicitudNode:
    analysis = request.ai_analysis
    quote = request.quote
    return SolicitudNode(
        id=strawberry.ID(str(request.id)),
        customer_id=request.customer_id,
        image_ref=request.image_ref,
        target_pharmacy_id=request.target_pharmacy_id,
        status=request.status.value,
        ai_analysis=AnalisisIANode(
            confidence=analysis.confidence,
            extracted_text=analysis.extracted_text,
            suggested_items=[_item_to_node(i) for i in analysis.suggested_items],
        ) if analysis else None,
        suggested_items=[_item_to_node(i) for i in request.suggested_items],
        validated_by=request.validated_by,
        rejection_reason=request.rejection_reason,
        quote=CotizacionNode(
            pharmacy_id=quote.pharmacy_id,
            pharmacy_name=quote.pharmacy_name,
            items=[_line_to_node(line) for line in quote.items],
            total_value=float(quote.total_value),
            delivery_fee=float(quote.delivery_fee),
            note=quote.note,
            created_at=quote.created_at.isoformat(),
        ) if quote else None,
        notes=request.notes,
        created_at=request.created_at.isoformat(),
        expires_at=request.expires_at.isoformat() if request.expires_at else None,
    )


def _violation_to_node(violation: Violation) -> ViolacionNode:
    return ViolacionNode(
        kind=violation.kind.value,
        item_name=violation.item_name,
        message=violation.message,
        requested=violation.requested,
        available=violation.available,
    )


def _summary_to_node(summary: ImportSummary) -> PreviaImportacionNode:
    return PreviaImportacionNode(
        total=summary.total,
        to_import=summary.to_import,
        duplicates=summary.duplicates,
        rejected=summary.rejected,
        rows=[
            FilaImportacionNode(
                name=row.name,
                price=float(row.price),
                quantity=row.quantity,
                is_duplicate=row.is_duplicate,
                duplicate_of=row.duplicate_of,
                rejection_reason=row.rejection_reason,
            )
            for row in summary.rows
        ],
    )


def _parse_id(value: strawberry.ID, label: str = "id") -> UUID:
    try:
        return UUID(str(value))
    except ValueError:
        raise ValueError(f"{label} inválido: {value}")


def _unwrap(outcome: OperationOutcome) -> SolicitudNode:
    if not outcome.ok or outcome.request is None:
        detail = f" ({outcome.detail})" if outcome.detail else ""
        raise ValueError(f"Operação recusada: {outcome.error}{detail}")
    return _solicitud_to_node(outcome.request)


def _input_to_line(line: LineaCotizacionInput) -> QuoteLineItem:
    linked = _parse_id(line.linked_stock_item_id, "linked_stock_item_id") if line.linked_stock_item_id else None
    return QuoteLineItem(
        name=line.name.strip(),
        quantity=line.quantity,
        unit_price=str(line.unit_price),
        unit_type=line.unit_type or "Unidade",
        linked_stock_item_id=linked,
        stock_snapshot=line.stock_snapshot,
        is_matched=linked is not None,
    )


async def _guardar_upload(file: Upload, max_size_bytes: int | None = MAX_UPLOAD_BYTES) -> Path:
    if max_size_bytes is not None:
        current_offset = file.file.tell()
        file.file.seek(0, 2)
        if file.file.tell() > max_size_bytes:
            file.file.seek(current_offset)
            raise ValueError("O arquivo excede o tamanho máximo permitido (10MB).")
        file.file.seek(current_offset)

    incoming_name = (file.filename or "").replace("\0", "").strip()
    base_name = incoming_name.split("/")[-1].split("\\")[-1]
    if base_name in {"", ".", ".."}:
        base_name = "import.csv"

    stem, dot, extension = base_name.rpartition(".")
    if not dot:
        stem, extension = base_name, ""
    safe_stem = re.sub(r"[^a-zA-Z0-9_-]", "_", stem) or "import"
    safe_extension = re.sub(r"[^a-zA-Z0-9]", "", extension)
    filename = f"{safe_stem}.{safe_extension}" if safe_extension else safe_stem

    UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
    stored_path = UPLOAD_DIR / f"{uuid4()}_{filename}"
    file.file.seek(0)
    with stored_path.open("wb") as output_file:
        output_file.write(file.file.read())
    return stored_path


@strawberry.type
class Query:
    @strawberry.field
    async def solicitud(self, id: strawberry.ID) -> Optional[SolicitudNode]:
        try:
            request_id = UUID(str(id))
        except ValueError:
            return None
        async with AsyncSessionLocal() as session:
            request = await get_request(session, request_id)
        return _solicitud_to_node(request) if request else None

    @strawberry.field
    async def solicitudes_farmacia(
        self,
        pharmacy_id: str,
        status: Optional[str] = None,
    ) -> list[SolicitudNode]:
        try:
            status_filter = PrescriptionStatus(status) if status else None
        except ValueError:
            raise ValueError(f"status inválido: {status}")
        async with AsyncSessionLocal() as session:
            requests = await list_requests_for_pharmacy(session, pharmacy_id, status_filter)
        return [_solicitud_to_node(r) for r in requests]

    @strawberry.field
    async def lineas_propuestas(self, solicitud_id: strawberry.ID) -> list[LineaCotizacionNode]:
        """Quote lines pre-filled from the pharmacy's stock for each suggested item."""
        request_id = _parse_id(solicitud_id, "solicitud_id")
        async with AsyncSessionLocal() as session:
            lines = await propose_quote_lines(session, request_id)
        if lines is None:
            raise ValueError("Solicitação não encontrada")
        return [_line_to_node(line) for line in lines]

    @strawberry.field
    async def buscar_stock(self, pharmacy_id: str, texto: str, limite: int = 5) -> list[StockItemNode]:
        async with AsyncSessionLocal() as session:
            inventory = await fetch_pharmacy_inventory(session, pharmacy_id)
        return [
            StockItemNode(
                id=strawberry.ID(str(item.id)),
                name=item.name,
                unit_price=float(item.unit_price),
                quantity_on_hand=item.quantity_on_hand,
                unit_type=item.unit_type,
                requires_prescription=item.requires_prescription,
            )
            for item in search_stock(texto, inventory, limit=limite)
        ]

    @strawberry.field
    async def sugerencias_catalogo(self, texto: str, limite: int = 5) -> list[CatalogoNode]:
        async with AsyncSessionLocal() as session:
            catalog = await fetch_catalog(session)
        return [
            CatalogoNode(
                id=strawberry.ID(str(entry.id)),
                canonical_name=entry.canonical_name,
                category=entry.category,
                reference_price=float(entry.reference_price),
            )
            for entry in suggest_catalog_match(texto, catalog, limit=limite)
        ]


@strawberry.type
class Mutation:
    @strawberry.mutation
    async def crear_solicitud(
        self,
        customer_id: str,
        image_ref: str,
        target_pharmacy_ids: list[str],
        notes: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        analizar_imagen: bool = True,
    ) -> SolicitudNode:
        ai_analysis = await analyze_prescription_image(image_ref) if analizar_imagen else None
        async with AsyncSessionLocal() as session:
            outcome = await create_prescription_request(
                session,
                customer_id=customer_id,
                image_ref=image_ref,
                target_pharmacy_ids=target_pharmacy_ids,
                ai_analysis=ai_analysis,
                notes=notes,
                expires_at=expires_at,
            )
        return _unwrap(outcome)

    @strawberry.mutation
    async def validar_solicitud(
        self,
        id: strawberry.ID,
        pharmacy_id: str,
        items: list[ItemSugeridoInput],
    ) -> SolicitudNode:
        request_id = _parse_id(id)
        corrected = [SuggestedItem(raw_name=i.raw_name, quantity=i.quantity) for i in items if i.raw_name.strip()]
        async with AsyncSessionLocal() as session:
            outcome = await revise_request(session, request_id, corrected, pharmacy_id)
        return _unwrap(outcome)

    @strawberry.mutation
    async def enviar_cotizacion(
        self,
        id: strawberry.ID,
        pharmacy_id: str,
        pharmacy_name: str,
        lineas: list[LineaCotizacionInput],
        nota: str = "",
        costo_envio: float = 0.0,
    ) -> EnvioCotizacionNode:
        request_id = _parse_id(id)
        line_items = [_input_to_line(line) for line in lineas]
        async with AsyncSessionLocal() as session:
            outcome = await submit_quote_for_request(
                session,
                request_id,
                pharmacy_id=pharmacy_id,
                pharmacy_name=pharmacy_name,
                line_items=line_items,
                note=nota,
                delivery_fee=str(costo_envio),
            )
        if outcome.violations:
            return EnvioCotizacionNode(
                ok=False,
                solicitud=_solicitud_to_node(outcome.request) if outcome.request else None,
                violaciones=[_violation_to_node(v) for v in outcome.violations],
            )
        return EnvioCotizacionNode(ok=True, solicitud=_unwrap(outcome), violaciones=[])

    @strawberry.mutation
    async def rechazar_solicitud(
        self,
        id: strawberry.ID,
        pharmacy_id: str,
        motivo: str = "",
    ) -> SolicitudNode:
        request_id = _parse_id(id)
        async with AsyncSessionLocal() as session:
            outcome = await reject_request(session, request_id, motivo, pharmacy_id)
        return _unwrap(outcome)

    @strawberry.mutation
    async def expirar_solicitud(self, id: strawberry.ID) -> SolicitudNode:
        request_id = _parse_id(id)
        async with AsyncSessionLocal() as session:
            outcome = await expire_request(session, request_id)
        return _unwrap(outcome)

    @strawberry.mutation
    async def previsualizar_importacion(
        self,
        texto: Optional[str] = None,
        file: Optional[Upload] = None,
        pharmacy_id: Optional[str] = None,
    ) -> PreviaImportacionNode:
        if file is not None:
            stored_path = await _guardar_upload(file)
            try:
                rows = read_import_file(str(stored_path))
            finally:
                stored_path.unlink(missing_ok=True)
        elif texto:
            rows = parse_bulk_lines(texto)
        else:
            raise ValueError("Informe um texto ou um arquivo para importar")
        async with AsyncSessionLocal() as session:
            existing = await fetch_existing_names(session, pharmacy_id)
        return _summary_to_node(preview_import(rows, existing))

    @strawberry.mutation
    async def importar_stock(
        self,
        texto: str,
        pharmacy_id: Optional[str] = None,
        incluir_duplicados: bool = False,
    ) -> ResultadoImportacionNode:
        rows = parse_bulk_lines(texto)
        async with AsyncSessionLocal() as session:
            existing = await fetch_existing_names(session, pharmacy_id)
            summary = preview_import(rows, existing)
            try:
                importados = await commit_import_rows(
                    session, rows_to_commit(summary, include_duplicates=incluir_duplicados), pharmacy_id,
                )
            except PersistenceFailedError as exc:
                raise ValueError(f"Importação recusada: {exc.error}")
        return ResultadoImportacionNode(
            importados=importados,
            duplicados_excluidos=0 if incluir_duplicados else summary.duplicates,
            rechazados=summary.rejected,
        )

    @strawberry.mutation
    async def subir_archivo_importacion(
        self,
        file: Upload,
        pharmacy_id: Optional[str] = None,
        incluir_duplicados: bool = False,
    ) -> ResultadoImportacionNode:
        stored_path = await _guardar_upload(file)
        task = task_importar_archivo.delay(str(stored_path), pharmacy_id, incluir_duplicados)
        return ResultadoImportacionNode(importados=0, duplicados_excluidos=0, rechazados=0, task_id=str(task.id))


schema = strawberry.Schema(query=Query, mutation=Mutation)
