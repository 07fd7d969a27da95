import logging
from typing import Any, Dict, Optional

from .llm_client import load_prompt


logger = logging.getLogger(__name__)

VISION_PROMPT = (
    "Ayudas a identificar refacciones y accesorios para una tienda (pantallas, baterías, centros de carga, "
    "tapas, flexores, cerraduras, GPS, accesorios). Observa la foto y responde SOLO con JSON estricto: "
    '{"part_type": "...", "brand": "...", "model": "...", "variant": "...", "color": "...", '
    '"confidence": 0-1, "notes": "..."}. Usa null cuando algo no sea visible. No inventes modelos.'
)

EMPTY_HINTS: Dict[str, Any] = {
    "part_type": None,
    "brand": None,
    "model": None,
    "variant": None,
    "color": None,
    "confidence": 0,
    "notes": None,
}


class VisionIdentifier:
    """Turns a customer photo into product hints and a catalog search query."""

    def __init__(self, model=None, prompt: Optional[str] = None, min_confidence: float = 0.3) -> None:
        self.model = model
        self.prompt = prompt or load_prompt("vision", VISION_PROMPT)
        self.min_confidence = min_confidence

    def identify(self, image_bytes: bytes, mime_type: str = "image/jpeg", caption: str = "") -> Dict[str, Any]:
        if self.model is None or not image_bytes:
            return dict(EMPTY_HINTS, notes="vision not configured")
        instruction = "Identifica el producto de la foto." + (f" El cliente escribió: {caption}" if caption else "")
        data = self.model.describe_image(self.prompt, instruction, image_bytes, mime_type)
        if not data:
            return dict(EMPTY_HINTS, notes="no usable answer")
        hints = dict(EMPTY_HINTS)
        for key in hints:
            if key in data:
                hints[key] = data[key]
        try:
            hints["confidence"] = float(hints.get("confidence") or 0)
        except (TypeError, ValueError):
            hints["confidence"] = 0.0
        logger.info("Vision hints: %s", hints)
        return hints

    def to_query(self, hints: Dict[str, Any], caption: str = "") -> str:
        """Search query built from hints; empty when nothing trustworthy was seen."""
        parts = []
        if hints.get("confidence", 0) >= self.min_confidence:
            for key in ("part_type", "brand", "model", "variant", "color"):
                value = hints.get(key)
                if value and str(value).strip().lower() not in {"null", "none", "unknown", "desconocido"}:
                    parts.append(str(value).strip())
        if caption:
            parts.insert(0, caption.strip())
        return " ".join(parts).strip()
