import asyncio
import logging
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from celery import Celery

from rxquote.core.db import create_task_session_factory
from rxquote.models.prescription import as_naive_utc
from rxquote.services.catalog_dedup import preview_import, read_import_file, rows_to_commit
from rxquote.services.inventory_service import fetch_existing_names
from rxquote.services.prescription_service import commit_import_rows, expire_overdue_requests


celery_app = Celery(
    "rxquote_worker",
    broker=os.getenv("CELERY_BROKER_URL", "redis://redis:6379/0"),
    backend=os.getenv("CELERY_RESULT_BACKEND", "redis://redis:6379/1"),
)
# No beat schedule: whoever owns the clock calls task_expirar_solicitudes.
logger = logging.getLogger(__name__)


async def _importar_archivo(file_path: str, pharmacy_id: Optional[str], include_duplicates: bool) -> dict[str, Any]:
    if not Path(file_path).exists():
        raise FileNotFoundError(f"Arquivo de importação não encontrado: {file_path}")

    rows = read_import_file(file_path)
    task_engine, session_factory = create_task_session_factory()
    try:
        async with session_factory() as session:
            existing = await fetch_existing_names(session, pharmacy_id)
            summary = preview_import(rows, existing)
            imported = await commit_import_rows(
                session, rows_to_commit(summary, include_duplicates=include_duplicates), pharmacy_id,
            )
    finally:
        await task_engine.dispose()

    logger.info(
        "Importação %s concluída: %d importado(s), %d duplicado(s), %d rejeitado(s)",
        file_path, imported, summary.duplicates, summary.rejected,
    )
    return {
        "file_path": file_path,
        "pharmacy_id": pharmacy_id,
        "total": summary.total,
        "importados": imported,
        "duplicados": summary.duplicates,
        "rechazados": summary.rejected,
    }


async def _expirar_solicitudes(now: Optional[datetime]) -> dict[str, Any]:
    task_engine, session_factory = create_task_session_factory()
    try:
        async with session_factory() as session:
            expired = await expire_overdue_requests(session, now)
    finally:
        await task_engine.dispose()
    return {"expiradas": expired}


def _cleanup_upload(file_path: str) -> None:
    path = Path(file_path)
    if not path.exists():
        return
    try:
        path.unlink()
    except OSError:
        logger.exception("Não foi possível remover o arquivo temporário %s", file_path)


def _run_async_safely(coro: Any) -> Any:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None

    if loop and loop.is_running():
        result: dict[str, Any] = {}
        error: dict[str, Exception] = {}

        def _run_in_thread() -> None:
            local_loop = asyncio.new_event_loop()
            try:
                result["value"] = local_loop.run_until_complete(coro)
            except Exception as exc:  # noqa: BLE001
                error["value"] = exc
            finally:
                local_loop.close()

        thread = threading.Thread(target=_run_in_thread)
        thread.start()
        thread.join()
        if "value" in error:
            raise error["value"]
        return result.get("value")

    new_loop = asyncio.new_event_loop()
    try:
        asyncio.set_event_loop(new_loop)
        return new_loop.run_until_complete(coro)
    finally:
        new_loop.close()
        asyncio.set_event_loop(None)


@celery_app.task(name="task_importar_archivo")
def task_importar_archivo(
    file_path: str,
    pharmacy_id: Optional[str] = None,
    include_duplicates: bool = False,
) -> dict[str, Any]:
    """
    Bulk import of catalog entries (no *pharmacy_id*) or pharmacy stock.
    Rows flagged as duplicates are left out unless *include_duplicates*.
    """
    try:
        return _run_async_safely(_importar_archivo(file_path, pharmacy_id, include_duplicates))
    except Exception:  # noqa: BLE001
        logger.exception("Falha na importação de %s (farmácia %s)", file_path, pharmacy_id or "catálogo")
        raise
    finally:
        _cleanup_upload(file_path)


@celery_app.task(name="task_expirar_solicitudes")
def task_expirar_solicitudes(now_iso: Optional[str] = None) -> dict[str, Any]:
    now = as_naive_utc(datetime.fromisoformat(now_iso)) if now_iso else None
    try:
        return _run_async_safely(_expirar_solicitudes(now))
    except Exception:  # noqa: BLE001
        logger.exception("Falha ao expirar solicitações vencidas")
        raise
