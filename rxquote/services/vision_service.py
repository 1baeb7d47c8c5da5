"""
Prescription image reading through Gemini.

The image is downloaded with aiohttp and sent inline to the model, which is
asked for a JSON document::

    {"confidence": 0.0-1.0,
     "extracted_text": "...",
     "suggested_items": [{"name": "...", "quantity": 1}]}

Reading a prescription never blocks request creation: a missing API key, a
network error, a timeout or an unparseable answer all degrade to a
zero-confidence result (see ``fallback_result``), which routes the request to
manual review.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any, Optional

import aiohttp
import google.generativeai as genai
from google.api_core.exceptions import GoogleAPIError

from rxquote.models.prescription import AIAnalysisResult, SuggestedItem

logger = logging.getLogger(__name__)

VISION_MODEL = os.getenv("VISION_MODEL", "gemini-1.5-flash")
VISION_TIMEOUT_SECONDS: float = float(os.getenv("VISION_TIMEOUT_SECONDS", "45"))

_CLOUDINARY_TRANSFORM = "/upload/w_800,q_auto:eco,f_auto/"

PROMPT = (
    "Extraia os medicamentos e quantidades desta receita médica. "
    "Responda apenas em JSON com as chaves confidence (0 a 1), extracted_text "
    "e suggested_items (lista de objetos com name e quantity)."
)

MSG_CONNECTION = (
    "Não foi possível ler automaticamente a receita (erro de conexão). "
    "Por favor, descreva os medicamentos."
)
MSG_TIMEOUT = "Processamento demorou muito. Tente com uma foto de melhor qualidade ou mais clara."
MSG_UNAVAILABLE = "Leitura por IA indisponível. Por favor, descreva os medicamentos."
MSG_NO_TEXT = "Texto não identificado."


def fallback_result(message: str = MSG_CONNECTION) -> AIAnalysisResult:
    return AIAnalysisResult(confidence=0.0, extracted_text=message, suggested_items=[])


def optimize_image_url(image_url: str) -> str:
    """Ask Cloudinary for a smaller rendition; other hosts are left alone."""
    if "cloudinary" in image_url and "/upload/" in image_url:
        return image_url.replace("/upload/", _CLOUDINARY_TRANSFORM, 1)
    return image_url


async def _download_image(image_url: str) -> tuple[bytes, str]:
    async with aiohttp.ClientSession() as http_session:
        async with http_session.get(image_url) as response:
            response.raise_for_status()
            mime_type = response.headers.get("Content-Type", "image/jpeg").split(";")[0].strip()
            return await response.read(), mime_type or "image/jpeg"


async def _generate(image_bytes: bytes, mime_type: str, api_key: str) -> str:
    genai.configure(api_key=api_key)
    model = genai.GenerativeModel(VISION_MODEL)
    response = await model.generate_content_async(
        [PROMPT, {"mime_type": mime_type, "data": image_bytes}],
        generation_config={"response_mime_type": "application/json"},
    )
    return response.text


def parse_vision_payload(payload: str | dict[str, Any]) -> AIAnalysisResult:
    """
    Turn the model's JSON answer into an :class:`AIAnalysisResult`.

    Items without a usable name are dropped; confidence is clamped by the
    model itself.  Raises ``ValueError`` on a non-object payload.
    """
    data = json.loads(payload) if isinstance(payload, str) else payload
    if not isinstance(data, dict):
        raise ValueError("vision payload is not a JSON object")

    items: list[SuggestedItem] = []
    for raw in data.get("suggested_items") or []:
        if not isinstance(raw, dict):
            continue
        name = str(raw.get("name") or raw.get("raw_name") or "").strip()
        if not name:
            continue
        items.append(SuggestedItem(raw_name=name, quantity=raw.get("quantity", 1)))

    return AIAnalysisResult(
        confidence=data.get("confidence", 0.0),
        extracted_text=str(data.get("extracted_text") or MSG_NO_TEXT),
        suggested_items=items,
    )


async def _analyze(image_url: str, api_key: str) -> AIAnalysisResult:
    image_bytes, mime_type = await _download_image(optimize_image_url(image_url))
    text = await _generate(image_bytes, mime_type, api_key)
    return parse_vision_payload(text)


async def analyze_prescription_image(
    image_url: str,
    timeout: Optional[float] = None,
) -> AIAnalysisResult:
    api_key = os.getenv("GOOGLE_API_KEY")
    if not api_key:
        logger.warning("vision: GOOGLE_API_KEY not set, returning manual-review result")
        return fallback_result(MSG_UNAVAILABLE)

    try:
        result = await asyncio.wait_for(
            _analyze(image_url, api_key),
            timeout=timeout if timeout is not None else VISION_TIMEOUT_SECONDS,
        )
    except asyncio.TimeoutError:
        logger.warning("vision: timed out reading %s", image_url)
        return fallback_result(MSG_TIMEOUT)
    except (aiohttp.ClientError, GoogleAPIError, ConnectionError) as exc:
        logger.warning("vision: request failed for %s: %s", image_url, exc)
        return fallback_result(MSG_CONNECTION)
    except (ValueError, TypeError, KeyError) as exc:
        logger.warning("vision: unusable answer for %s: %s", image_url, exc)
        return fallback_result(MSG_CONNECTION)

    logger.info(
        "vision: %s read with confidence %.2f, %d item(s)",
        image_url, result.confidence, len(result.suggested_items),
    )
    return result
