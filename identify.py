"""
identify.py - AI species identification for bird photos

Sends a downscaled image plus location/month context to a chat-completions
style vision endpoint and returns ranked species candidates. Any failure
(network, HTTP status, unparseable reply) is logged and comes back as an
empty candidate list; the caller treats that like "no bird found".
"""

import base64
import io
import json
import os
import re
from typing import Optional

import requests
from loguru import logger
from PIL import Image

from models import Candidate, Identification

MONTH_NAMES = [
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
]

# Crop size as a fraction of the short side, by reported bird size
CROP_FRACTIONS = {"large": 0.75, "medium": 0.55, "small": 0.4}

FENCE_PATTERN = re.compile(r"^```(?:json)?\s*|\s*```$")


def build_prompt(location: Optional[dict] = None, month: Optional[int] = None, context_label: str = "") -> str:
    """Identification prompt with optional GPS / month / place context"""
    context = ""
    if location:
        context += f" The photo was taken at GPS coordinates {location['lat']:.4f}, {location['lon']:.4f}."
    if month is not None:
        context += f" The photo was taken in {MONTH_NAMES[month - 1]}."
    if context_label:
        context += f" Location: {context_label}."

    return (
        "You are an expert ornithologist. Identify any bird species in this image."
        f"{context}\n\n"
        "Provide your top 5 most likely species with confidence scores (0.0 to 1.0):\n"
        "- 0.8-1.0 for clear, definitive identifications\n"
        "- 0.5-0.79 for likely but uncertain identifications\n"
        "- 0.3-0.49 for possible identifications with ambiguity\n\n"
        "If no bird is clearly visible, return an empty candidates array.\n"
        "Also give the bird's centre as percent of width/height and its size "
        "(small, medium or large).\n\n"
        "Return ONLY JSON in this format:\n"
        '{"candidates": [{"species": "Common Name (Scientific name)", "confidence": 0.95}], '
        '"bird_center": [50, 50], "bird_size": "medium"}'
    )


def encode_image(image_bytes: bytes, max_side: int = 1200) -> str:
    """Downscale and re-encode as a base64 JPEG data URL"""
    img = Image.open(io.BytesIO(image_bytes))
    if img.mode in ("RGBA", "P"):
        img = img.convert("RGB")
    img.thumbnail((max_side, max_side), Image.LANCZOS)
    buffer = io.BytesIO()
    img.save(buffer, "JPEG", quality=90)
    return "data:image/jpeg;base64," + base64.b64encode(buffer.getvalue()).decode("ascii")


def safe_parse_json(text: str) -> Optional[dict]:
    """Parse model output that may be wrapped in a code fence or surrounded by prose"""
    cleaned = FENCE_PATTERN.sub("", text.strip())
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        start, end = cleaned.find("{"), cleaned.rfind("}")
        if start != -1 and end > start:
            try:
                return json.loads(cleaned[start:end + 1])
            except json.JSONDecodeError:
                return None
    return None


def build_crop_box(bird_center, bird_size) -> Optional[dict]:
    """Square crop around the reported bird centre, in percent of the image"""
    if not isinstance(bird_center, (list, tuple)) or len(bird_center) < 2:
        return None
    try:
        cx, cy = float(bird_center[0]), float(bird_center[1])
    except (TypeError, ValueError):
        return None

    cx = max(0.0, min(100.0, cx))
    cy = max(0.0, min(100.0, cy))
    pct = round(CROP_FRACTIONS.get(bird_size, CROP_FRACTIONS["small"]) * 100)
    x = max(0, min(100 - pct, cx - pct / 2))
    y = max(0, min(100 - pct, cy - pct / 2))
    return {"x": round(x), "y": round(y), "width": pct, "height": pct}


def crop_image(image_bytes: bytes, box: dict) -> bytes:
    """Crop by a percent box {x, y, width, height} and return JPEG bytes"""
    img = Image.open(io.BytesIO(image_bytes))
    if img.mode in ("RGBA", "P"):
        img = img.convert("RGB")
    w, h = img.size
    left = int(w * box["x"] / 100)
    top = int(h * box["y"] / 100)
    right = min(w, left + max(1, int(w * box["width"] / 100)))
    bottom = min(h, top + max(1, int(h * box["height"] / 100)))
    cropped = img.crop((left, top, right, bottom))
    buffer = io.BytesIO()
    cropped.save(buffer, "JPEG", quality=95)
    return buffer.getvalue()


def parse_candidates(parsed: dict, min_confidence: float = 0.3, max_candidates: int = 5) -> list:
    """Valid candidates above the floor, highest confidence first"""
    raw = parsed.get("candidates") if isinstance(parsed, dict) else None
    if not isinstance(raw, list):
        return []

    candidates = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        species = str(item.get("species") or "").strip()
        confidence = item.get("confidence")
        if not species or not isinstance(confidence, (int, float)):
            continue
        if confidence < min_confidence:
            continue
        candidates.append(Candidate(species=species, confidence=min(float(confidence), 1.0)))

    candidates.sort(key=lambda c: c.confidence, reverse=True)
    return candidates[:max_candidates]


class BirdIdentifier:
    """Vision-model client; call it like identify(image_bytes, location, month, label)."""

    def __init__(self, config: dict, session: requests.Session = None):
        settings = config["identification"]
        self.api_url = settings["api_url"]
        self.model = settings["model"]
        self.api_key = os.environ.get(settings["api_key_env"], "")
        self.timeout = settings["timeout"]
        self.min_confidence = settings["min_confidence"]
        self.max_candidates = settings["max_candidates"]
        self.session = session or requests.Session()

    def __call__(self, image_bytes: bytes, location=None, month=None, context_label="") -> Identification:
        return self.identify(image_bytes, location, month, context_label)

    def identify(self, image_bytes: bytes, location=None, month=None, context_label="") -> Identification:
        payload = {
            "model": self.model,
            "response_format": {"type": "json_object"},
            "messages": [{
                "role": "user",
                "content": [
                    {"type": "text", "text": build_prompt(location, month, context_label)},
                    {"type": "image_url", "image_url": {"url": encode_image(image_bytes)}},
                ],
            }],
        }
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

        try:
            response = self.session.post(self.api_url, json=payload, headers=headers, timeout=self.timeout)
            response.raise_for_status()
            content = response.json()["choices"][0]["message"]["content"]
        except requests.RequestException as e:
            logger.warning("Identification request failed: {}", e)
            return Identification()
        except (KeyError, IndexError, TypeError, ValueError) as e:
            logger.warning("Unexpected identification response: {}", e)
            return Identification()

        parsed = safe_parse_json(content if isinstance(content, str) else json.dumps(content))
        if parsed is None:
            logger.warning("Identification reply was not JSON")
            return Identification()

        candidates = parse_candidates(parsed, self.min_confidence, self.max_candidates)
        crop_box = build_crop_box(parsed.get("bird_center"), parsed.get("bird_size")) if candidates else None
        logger.info("Identifier returned {} candidate(s)", len(candidates))
        return Identification(candidates=candidates, crop_box=crop_box)
