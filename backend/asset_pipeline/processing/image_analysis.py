"""
Image analysis for image assets flagged aiAnalysisPending.

Two vision calls per image:
  1. analyze()             structured JSON (description, objects, colors, ...)
  2. visual_description()  free text focused on style, palette and layout

The hybrid embedding embeds the visual description together with the
structured analysis. VectorStoreService prefers it over a plain text
embedding of the asset's searchable text.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from openai import AsyncOpenAI
from pydantic import BaseModel, Field

from asset_pipeline.core.config import settings
from asset_pipeline.observability.tracing import traced
from asset_pipeline.processing.embeddings import Embedder

logger = logging.getLogger(__name__)

ANALYSIS_MAX_TOKENS    = 1100
ANALYSIS_TEMPERATURE   = 0.3
VISUAL_MAX_TOKENS      = 500
VISUAL_TEMPERATURE     = 0.1

_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")

ANALYSIS_PROMPT = (
    "Analyse the image and respond with a single JSON object with these keys: "
    "description (string), objects (string[]), colors (string[], lowercase #rrggbb hex), "
    "themes (string[]), mood (string), style (string), text (string, any legible text), "
    "categories (string[]), composition (string), lighting (string), setting (string)."
)

VISUAL_PROMPT = (
    "Describe this image for finding visually similar images. Focus on visual style "
    "and technique, color palette, composition and layout, shapes and patterns, "
    "texture, and overall aesthetic and mood."
)


class ImageAnalysis(BaseModel):
    description: str       = ""
    objects:     list[str] = Field(default_factory=list)
    colors:      list[str] = Field(default_factory=list)
    themes:      list[str] = Field(default_factory=list)
    mood:        str       = ""
    style:       str       = ""
    text:        str       = ""
    categories:  list[str] = Field(default_factory=list)
    composition: str       = ""
    lighting:    str       = ""
    setting:     str       = ""


@dataclass
class HybridEmbedding:
    embedding:            list[float]
    combined_description: str
    visual_description:   str
    type:                 str = "hybrid"


class ImageAnalyzer:
    """
    Usage:
        analyzer = ImageAnalyzer(embedder=embedder)
        analysis = await analyzer.analyze(asset.source_url)
        hybrid   = await analyzer.hybrid_embedding(asset.source_url, analysis)
    """

    def __init__(
        self,
        embedder: Embedder,
        client: Optional[Any] = None,
        model: Optional[str] = None,
        api_key: Optional[str] = None,
    ) -> None:
        self._embedder = embedder
        self._client   = client
        self._api_key  = api_key if api_key is not None else settings.openai_api_key
        self.model     = model or settings.vision_model

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self._api_key)
        return self._client

    @traced("image.analyze")
    async def analyze(self, image_url: str) -> ImageAnalysis:
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": "You are a vision analysis tool that returns strict JSON."},
                {"role": "user", "content": [
                    {"type": "text", "text": ANALYSIS_PROMPT},
                    {"type": "image_url", "image_url": {"url": image_url, "detail": "high"}},
                ]},
            ],
            response_format={"type": "json_object"},
            max_tokens=ANALYSIS_MAX_TOKENS,
            temperature=ANALYSIS_TEMPERATURE,
        )
        raw = response.choices[0].message.content or ""
        match = _JSON_OBJECT_RE.search(raw)
        payload = json.loads(match.group(0)) if match else {}
        # Older prompts wrapped the analysis in {"pages": [...]}
        if isinstance(payload.get("pages"), list) and payload["pages"]:
            payload = payload["pages"][0]

        analysis = ImageAnalysis.model_validate(payload)
        analysis.colors = [c.lower() for c in analysis.colors]
        logger.info(
            "Image analysed | objects=%d colors=%d themes=%d",
            len(analysis.objects), len(analysis.colors), len(analysis.themes),
        )
        return analysis

    async def visual_description(self, image_url: str) -> str:
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": [
                {"type": "text", "text": VISUAL_PROMPT},
                {"type": "image_url", "image_url": {"url": image_url, "detail": "high"}},
            ]}],
            max_tokens=VISUAL_MAX_TOKENS,
            temperature=VISUAL_TEMPERATURE,
        )
        return (response.choices[0].message.content or "").strip()

    async def hybrid_embedding(self, image_url: str, analysis: ImageAnalysis) -> HybridEmbedding:
        visual = await self.visual_description(image_url)
        combined = " ".join(filter(None, [
            visual,
            analysis.description,
            *analysis.objects,
            *analysis.colors,
            analysis.style,
            analysis.composition,
            analysis.lighting,
        ]))
        embedding = await self._embedder.embed(combined)
        return HybridEmbedding(
            embedding=embedding,
            combined_description=combined,
            visual_description=visual,
        )


def analysis_metadata(
    analysis: ImageAnalysis,
    hybrid: Optional[HybridEmbedding] = None,
) -> dict[str, Any]:
    """Asset.metadata patch recording a completed analysis."""
    patch: dict[str, Any] = {
        "aiAnalysis":          analysis.model_dump(),
        "aiDescription":       analysis.description,
        "detectedObjects":     analysis.objects,
        "dominantColors":      analysis.colors,
        "extractedText":       analysis.text,
        "visualThemes":        analysis.themes,
        "mood":                analysis.mood,
        "style":               analysis.style,
        "categories":          analysis.categories,
        "composition":         analysis.composition,
        "lighting":            analysis.lighting,
        "setting":             analysis.setting,
        "aiAnalysisPending":   False,
        "aiAnalysisFailed":    False,
        "aiAnalysisCompleted": datetime.now(timezone.utc).isoformat(),
    }
    if hybrid is not None:
        patch.update({
            "hybridVector":        hybrid.embedding,
            "visualDescription":   hybrid.visual_description,
            "combinedDescription": hybrid.combined_description,
            "vectorType":          hybrid.type,
        })
    return patch
