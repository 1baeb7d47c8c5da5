"""
importar_stock.py
=================
Importa produtos para o catálogo global ou para o estoque de uma farmácia a
partir de um arquivo CSV / TSV / Excel ou de um texto colado.

Cada linha é comparada com os nomes já existentes (e com as linhas anteriores
do mesmo lote); as duplicadas são listadas e ficam fora da importação, a não
ser que se use ``--incluir-duplicados``.

Uso
---
    python src/importar_stock.py <archivo> [opções]

Exemplos
--------
    # Pré-visualizar sem gravar:
    python src/importar_stock.py produtos.xlsx --farmacia FARM-01 --dry-run

    # Texto colado, uma linha "NOME, preço" por produto, no catálogo global:
    python src/importar_stock.py lista.txt --texto
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlmodel.ext.asyncio.session import AsyncSession

from rxquote.services.catalog_dedup import (
    ImportRow,
    ImportSummary,
    parse_bulk_lines,
    preview_import,
    read_import_file,
    rows_to_commit,
)
from rxquote.services.inventory_service import fetch_existing_names
from rxquote.services.prescription_service import PersistenceFailedError, commit_import_rows

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(message)s",
)
logger = logging.getLogger(__name__)


def cargar_lineas(path: str, como_texto: bool = False) -> list[ImportRow]:
    if como_texto:
        return parse_bulk_lines(Path(path).read_text(encoding="utf-8-sig"))
    return read_import_file(path)


def _normalizar_url(database_url: str) -> str:
    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if database_url.startswith("postgres://"):
        return database_url.replace("postgres://", "postgresql+asyncpg://", 1)
    return database_url


def imprimir_resumo(summary: ImportSummary) -> None:
    for row in summary.rows:
        if row.is_duplicate:
            print(f"  DUPLICADO  {row.name}  (já existe: {row.duplicate_of})")
        elif not row.is_valid:
            print(f"  REJEITADO  {row.name!r}  ({row.rejection_reason})")
    print(
        f"Total: {summary.total}  a importar: {summary.to_import}  "
        f"duplicados: {summary.duplicates}  rejeitados: {summary.rejected}"
    )


async def importar(
    rows: list[ImportRow],
    database_url: str,
    pharmacy_id: Optional[str],
    include_duplicates: bool,
    dry_run: bool,
) -> int:
    engine = create_async_engine(database_url, echo=False, future=True)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    try:
        async with session_factory() as session:
            existing = await fetch_existing_names(session, pharmacy_id)
            summary = preview_import(rows, existing)
            imprimir_resumo(summary)
            if dry_run:
                logger.info("--dry-run ativo: nada foi gravado.")
                return 0
            return await commit_import_rows(
                session, rows_to_commit(summary, include_duplicates=include_duplicates), pharmacy_id,
            )
    finally:
        await engine.dispose()


async def main_async(args: argparse.Namespace) -> None:
    database_url = args.database_url or os.environ.get("DB_URL")
    if not database_url:
        logger.error("Informe --database-url ou defina DB_URL no ambiente.")
        sys.exit(1)

    if not Path(args.archivo).exists():
        logger.error("Arquivo não encontrado: %s", args.archivo)
        sys.exit(1)

    rows = cargar_lineas(args.archivo, como_texto=args.texto)
    if not rows:
        logger.warning("Nenhuma linha válida encontrada. Nada para importar.")
        return

    try:
        total = await importar(
            rows,
            _normalizar_url(database_url),
            pharmacy_id=args.farmacia,
            include_duplicates=args.incluir_duplicados,
            dry_run=args.dry_run,
        )
    except PersistenceFailedError as exc:
        logger.error("Importação não gravada: %s", exc)
        sys.exit(1)
    logger.info("Importação concluída: %d produto(s) gravado(s).", total)


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Importa produtos para o catálogo ou para o estoque de uma farmácia.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("archivo", help="Arquivo CSV/TSV/Excel, ou texto com --texto.")
    parser.add_argument(
        "--farmacia",
        metavar="ID",
        default=None,
        help="Farmácia dona do estoque. Sem esta opção os produtos vão para o catálogo global.",
    )
    parser.add_argument(
        "--texto",
        action="store_true",
        help='Trata o arquivo como texto colado, uma linha "NOME, preço" por produto.',
    )
    parser.add_argument(
        "--incluir-duplicados",
        action="store_true",
        help="Importa também as linhas marcadas como duplicadas.",
    )
    parser.add_argument(
        "--database-url",
        metavar="URL",
        default=None,
        help="URL de conexão PostgreSQL. Se omitida, usa DB_URL do ambiente.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Mostra a pré-visualização sem gravar no banco.",
    )

    args = parser.parse_args()
    asyncio.run(main_async(args))


if __name__ == "__main__":
    main()
