import base64
import hashlib
import json
import logging
import re
from typing import Any, Dict, List, Optional

from openai import OpenAI

from config import settings
from services.json_repair import parse_json_safely
from .models import BaseViewAnalysis, CloseUpShot, ComponentShot, ComponentValidation, ImageAnalysis, SketchCallout
from .prompts import (
    ASSEMBLY_SUMMARY_PROMPT,
    BASE_VIEW_SYSTEM_PROMPT,
    CLOSE_UP_PLAN_PROMPT,
    COMPONENT_IMAGE_PROMPT,
    COMPONENT_PLAN_PROMPT,
    IMAGE_ANALYSIS_SYSTEM_PROMPT,
    SKETCH_CALLOUT_PROMPT,
    VALIDATE_CUSTOM_COMPONENT_PROMPT,
    VALIDATE_CUSTOM_COMPONENT_USER_PROMPT,
)

logger = logging.getLogger(__name__)

def get_openai_client(api_key: str) -> Optional[OpenAI]:
    """Get OpenAI client, handling placeholders."""
    if not api_key or "your_" in api_key or api_key == "test-key":
        return None
    return OpenAI(api_key=api_key)

def _chat_json(client: OpenAI, system_prompt: str, user_content: Any, max_tokens: int = 1500) -> Any:
    response = client.chat.completions.create(
        model=settings.VISION_MODEL,
        messages=[
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_content},
        ],
        response_format={"type": "json_object"},
        max_tokens=max_tokens,
    )
    content = response.choices[0].message.content or ""
    # models still truncate or wrap json_object replies now and then
    return parse_json_safely(content)

def _image_message(text: str, image_url: str) -> List[Dict[str, Any]]:
    return [
        {"type": "text", "text": text},
        {"type": "image_url", "image_url": {"url": image_url}},
    ]

def _stable_fraction(seed: str) -> float:
    digest = hashlib.md5(seed.encode("utf-8")).hexdigest()
    return int(digest[:4], 16) / 0xFFFF

def analyze_base_view(image_url: str, view_type: str, category: Optional[str], api_key: str) -> BaseViewAnalysis:
    """Extract materials, colors, dimensions and construction notes from one product view."""
    client = get_openai_client(api_key)
    if client is None:
        logger.warning("Using local fallback base view analysis.")
        return BaseViewAnalysis(
            view_type=view_type,
            product_type=category or "product",
            summary=f"Local fallback analysis of the {view_type} view.",
            materials=[{"name": "primary shell", "placement": "body", "finish": "matte"}],
            colors=[{"name": "base", "hex": "#2F2F2F", "placement": "body"}],
            dimensions={"unit": "cm", "height": 30, "width": 20, "depth": 10},
            construction=["Main body panels joined with lockstitch seams."],
            confidence=round(0.5 + _stable_fraction(image_url) * 0.3, 2),
        )

    data = _chat_json(
        client,
        BASE_VIEW_SYSTEM_PROMPT,
        _image_message(f"Category: {category or 'unspecified'}. This is the {view_type} view.", image_url),
    )
    if not isinstance(data, dict):
        raise ValueError("Base view analysis did not return an object")
    data["view_type"] = view_type
    return BaseViewAnalysis(**data)

def analyze_image(image_url: str, api_key: str) -> ImageAnalysis:
    client = get_openai_client(api_key)
    if client is None:
        logger.warning("Using local fallback image analysis.")
        return ImageAnalysis(
            product_type="product",
            description="Local fallback description of the uploaded product image.",
            materials=["unspecified"],
            colors=["neutral"],
            style_tags=["minimal"],
            confidence=round(0.4 + _stable_fraction(image_url) * 0.3, 2),
        )

    data = _chat_json(client, IMAGE_ANALYSIS_SYSTEM_PROMPT, _image_message("Analyze this product image.", image_url), 800)
    if not isinstance(data, dict):
        raise ValueError("Image analysis did not return an object")
    return ImageAnalysis(**data)

def plan_components(analysis: Dict[str, Any], category: Optional[str], api_key: str, limit: int = 4) -> List[ComponentShot]:
    client = get_openai_client(api_key)
    if client is None:
        logger.warning("Using local fallback component plan.")
        names = ["main body", "closure", "lining", "trim"]
        return [
            ComponentShot(name=name, description=f"{name} of the {category or 'product'}", placement=name)
            for name in names[:limit]
        ]

    prompt = COMPONENT_PLAN_PROMPT.format(limit=limit, category=category or "unspecified", analysis=json.dumps(analysis)[:6000])
    data = _chat_json(client, "You are a product sourcing specialist.", prompt)
    items = data.get("components", []) if isinstance(data, dict) else data
    return [ComponentShot(**item) for item in (items or [])[:limit]]

def plan_close_ups(analysis: Dict[str, Any], category: Optional[str], api_key: str, limit: int = 3) -> List[CloseUpShot]:
    client = get_openai_client(api_key)
    if client is None:
        logger.warning("Using local fallback close-up plan.")
        areas = [("seam detail", "main seam", "stitch density and seam finish"),
                 ("hardware", "closure hardware", "hardware finish and attachment"),
                 ("label", "brand label", "label placement and size")]
        return [CloseUpShot(name=name, focus_area=area, reason=reason) for name, area, reason in areas[:limit]]

    prompt = CLOSE_UP_PLAN_PROMPT.format(limit=limit, category=category or "unspecified", analysis=json.dumps(analysis)[:6000])
    data = _chat_json(client, "You are a quality-control inspector.", prompt)
    items = data.get("close_ups", []) if isinstance(data, dict) else data
    return [CloseUpShot(**item) for item in (items or [])[:limit]]

def generate_sketch_callouts(analysis: Dict[str, Any], view_type: str, api_key: str) -> List[SketchCallout]:
    client = get_openai_client(api_key)
    if client is None:
        logger.warning("Using local fallback sketch callouts.")
        return [
            SketchCallout(label="Seam", detail="1 cm seam allowance, double needle topstitch", x=0.3, y=0.4),
            SketchCallout(label="Hem", detail="2 cm folded hem", x=0.5, y=0.9),
        ]

    prompt = SKETCH_CALLOUT_PROMPT.format(view_type=view_type, analysis=json.dumps(analysis)[:6000])
    data = _chat_json(client, "You are a technical designer writing flat sketch callouts.", prompt, 1000)
    items = data.get("callouts", []) if isinstance(data, dict) else data
    return [SketchCallout(**item) for item in (items or [])]

def generate_assembly_summary(components: List[Dict[str, Any]], api_key: str) -> Dict[str, Any]:
    client = get_openai_client(api_key)
    if client is None:
        logger.warning("Using local fallback assembly summary.")
        names = [str(item.get("name", "part")) for item in components] or ["main body"]
        return {
            "steps": [f"Attach {name}." for name in names],
            "notes": "Local fallback assembly order follows component listing.",
        }

    prompt = ASSEMBLY_SUMMARY_PROMPT.format(components=json.dumps(components)[:6000])
    data = _chat_json(client, "You are a manufacturing engineer.", prompt, 1000)
    if not isinstance(data, dict):
        raise ValueError("Assembly summary did not return an object")
    return data

_GENERIC_WORDS = {"with", "from", "that", "this", "part", "piece", "component", "detail", "area", "view"}

def _analysis_vocabulary(base_views: List[Dict[str, Any]]) -> str:
    # only describe the product itself; urls and view labels would match anything
    words: List[str] = []
    for view in base_views:
        analysis = view.get("analysis") or {}
        words.append(str(analysis.get("product_type") or ""))
        for item in analysis.get("materials") or []:
            words.extend(str(value) for value in (item.values() if isinstance(item, dict) else [item]))
        words.extend(str(step) for step in analysis.get("construction") or [])
    return " ".join(words).lower()

def validate_custom_component(
    description: str,
    category: Optional[str],
    base_views: List[Dict[str, Any]],
    context: str,
    api_key: str,
) -> ComponentValidation:
    """Decide whether the requested component is really part of the analyzed product."""
    client = get_openai_client(api_key)
    if client is None:
        logger.warning("Using local fallback component validation.")
        vocabulary = _analysis_vocabulary(base_views)
        terms = [word for word in re.findall(r"[a-z]+", description.lower()) if len(word) > 3 and word not in _GENERIC_WORDS]
        matched = [term for term in terms if term in vocabulary]
        if not matched:
            suggestions = sorted({
                str(item.get("name"))
                for view in base_views
                for item in (view.get("analysis") or {}).get("materials") or []
                if isinstance(item, dict) and item.get("name")
            })
            return ComponentValidation(
                exists=False,
                confidence=0.7,
                reason=f"'{description}' does not appear in the analyzed views.",
                suggestions=suggestions,
            )
        name = description.strip()
        summary = f"{name} of the {category or 'product'}"
        return ComponentValidation(
            exists=True,
            confidence=round(0.5 + 0.4 * len(matched) / len(terms), 2),
            matched_component={"name": name, "type": "custom", "location": matched[0], "description": summary},
            image_generation_prompt=COMPONENT_IMAGE_PROMPT.format(name=name, description=summary),
            negative_prompt="blurry, low quality, distorted, watermark, text, cluttered background",
            reason=f"Matched on: {', '.join(matched)}",
        )

    prompt = VALIDATE_CUSTOM_COMPONENT_USER_PROMPT.format(
        description=description,
        category=category or "general",
        context=context or "none",
        analysis=json.dumps(base_views)[:8000],
    )
    data = _chat_json(client, VALIDATE_CUSTOM_COMPONENT_PROMPT, prompt, 2048)
    if not isinstance(data, dict):
        raise ValueError("Component validation did not return an object")
    return ComponentValidation(**data)

def _placeholder_image(prompt: str) -> str:
    label = hashlib.md5(prompt.encode("utf-8")).hexdigest()[:8]
    svg = (
        '<svg xmlns="http://www.w3.org/2000/svg" width="512" height="512">'
        '<rect width="100%" height="100%" fill="#f4f4f4"/>'
        f'<text x="50%" y="50%" text-anchor="middle" font-family="monospace" font-size="24">{label}</text>'
        "</svg>"
    )
    return "data:image/svg+xml;base64," + base64.b64encode(svg.encode("utf-8")).decode("ascii")

def generate_image(prompt: str, reference_url: Optional[str], api_key: str) -> str:
    """Generate an image and return a URL or data URL."""
    client = get_openai_client(api_key)
    if client is None:
        logger.warning("Using local placeholder image generation.")
        return _placeholder_image(prompt)

    full_prompt = prompt
    if reference_url and not reference_url.startswith("data:"):
        full_prompt = f"{prompt}\nMatch the product shown at: {reference_url}"
    response = client.images.generate(
        model=settings.IMAGE_MODEL,
        prompt=full_prompt,
        size=settings.IMAGE_SIZE,
        n=1,
    )
    image = response.data[0]
    if getattr(image, "url", None):
        return image.url
    if getattr(image, "b64_json", None):
        return f"data:image/png;base64,{image.b64_json}"
    raise ValueError("Image generation returned no image")
