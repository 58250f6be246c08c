"""Prompt templates for tech-pack vision and image generation calls."""

BASE_VIEW_SYSTEM_PROMPT = """
You are a senior apparel and product technical designer.
Analyze the product image for a manufacturing tech pack.

Return a strict JSON object matching this schema:
{
  "view_type": "front|back|side|top|bottom",
  "product_type": "string",
  "summary": "string",
  "materials": [{"name": "string", "placement": "string", "finish": "string"}],
  "colors": [{"name": "string", "hex": "#RRGGBB", "placement": "string"}],
  "dimensions": {"unit": "cm", "height": 0, "width": 0, "depth": 0},
  "construction": ["string"],
  "confidence": 0.0-1.0
}
"""

IMAGE_ANALYSIS_SYSTEM_PROMPT = """
You are a product analyst. Describe the product in the image.

Return a strict JSON object:
{
  "product_type": "string",
  "description": "string",
  "materials": ["string"],
  "colors": ["string"],
  "style_tags": ["string"],
  "confidence": 0.0-1.0
}
"""

COMPONENT_PLAN_PROMPT = """
Using the base-view analysis below, list the distinct physical components a factory
would source or assemble separately (at most {limit}).

Category: {category}
Analysis:
{analysis}

Return JSON: {{"components": [{{"name": "string", "description": "string", "material": "string", "placement": "string"}}]}}
"""

CLOSE_UP_PLAN_PROMPT = """
Using the base-view analysis below, choose up to {limit} detail areas that need a
close-up shot for the factory (stitching, hardware, trims, print placement).

Category: {category}
Analysis:
{analysis}

Return JSON: {{"close_ups": [{{"name": "string", "focus_area": "string", "reason": "string"}}]}}
"""

SKETCH_CALLOUT_PROMPT = """
Write construction callouts for a {view_type} technical flat sketch of this product.
Coordinates are normalized 0-1 from the top-left corner.

Analysis:
{analysis}

Return JSON: {{"callouts": [{{"label": "string", "detail": "string", "x": 0.0, "y": 0.0}}]}}
"""

ASSEMBLY_SUMMARY_PROMPT = """
Describe how the components below are assembled into the finished product, in order.

Components:
{components}

Return JSON: {{"steps": ["string"], "notes": "string"}}
"""

COMPONENT_IMAGE_PROMPT = (
    "Studio product photo of the isolated component '{name}' ({description}) on a plain white background, "
    "even lighting, no text."
)

CLOSE_UP_IMAGE_PROMPT = (
    "Macro close-up photo of the {focus_area} of the product, showing {reason}. "
    "Plain background, sharp focus, no text."
)

FLAT_SKETCH_IMAGE_PROMPT = (
    "Black and white technical flat sketch, {view_type} view, of this {product_type}. "
    "Clean vector line art, no shading, no background, no text labels."
)

ASSEMBLY_VIEW_IMAGE_PROMPT = (
    "Exploded assembly diagram of this {product_type} showing these parts separated along their "
    "assembly axis: {components}. Clean technical illustration on white background."
)

VALIDATE_CUSTOM_COMPONENT_PROMPT = """
You check whether a requested component really exists on a product before an image of it
is generated. Use only what the base-view analyses and product context show.

Return a strict JSON object:
{
  "exists": true,
  "confidence": 0.0-1.0,
  "matched_component": {"name": "string", "type": "string", "location": "string", "description": "string"} or null,
  "image_generation_prompt": "string",
  "negative_prompt": "string",
  "reason": "string",
  "suggestions": ["components that do exist, when this one does not"]
}
"""

VALIDATE_CUSTOM_COMPONENT_USER_PROMPT = """
Requested component: {description}
Category: {category}

Product context:
{context}

Base-view analyses:
{analysis}
"""

CUSTOM_COMPONENT_IMAGE_PROMPT = (
    "{prompt}\n\nSTYLE: Professional product photography, isolated component view, clean white background, "
    "high detail, factory documentation quality.\n\nAVOID: {negative_prompt}"
)
