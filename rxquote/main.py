import os
from uuid import UUID

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from strawberry.fastapi import GraphQLRouter

from rxquote.core.db import AsyncSessionLocal
from rxquote.graphql.schema import schema
from rxquote.services.prescription_service import propose_quote_lines

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",") if o.strip()]

app = FastAPI(title="RxQuote Backend")
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(GraphQLRouter(schema, multipart_uploads_enabled=True), prefix="/graphql")


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/solicitudes/{request_id}/lineas")
async def lineas_propuestas(request_id: str) -> list[dict]:
    """Proposed quote lines for a request, as plain JSON for the pharmacy app's offline cache."""
    try:
        request_uuid = UUID(request_id)
    except ValueError:
        raise HTTPException(status_code=400, detail="request_id inválido")

    async with AsyncSessionLocal() as session:
        lines = await propose_quote_lines(session, request_uuid)

    if lines is None:
        raise HTTPException(status_code=404, detail="Solicitação não encontrada")
    return [line.model_dump(mode="json") for line in lines]
