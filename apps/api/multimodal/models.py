from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

class BaseViewAnalysis(BaseModel):
    view_type: str  # front, back, side, top, bottom
    product_type: str = "product"
    summary: str = ""
    materials: List[Dict[str, Any]] = Field(default_factory=list)
    colors: List[Dict[str, Any]] = Field(default_factory=list)
    dimensions: Dict[str, Any] = Field(default_factory=dict)
    construction: List[str] = Field(default_factory=list)
    confidence: float = 0.0

class ComponentShot(BaseModel):
    name: str
    description: str
    material: Optional[str] = None
    placement: Optional[str] = None

class CloseUpShot(BaseModel):
    name: str
    focus_area: str
    reason: str

class SketchCallout(BaseModel):
    label: str
    detail: str
    x: float = 0.5  # normalized 0-1
    y: float = 0.5

class ImageAnalysis(BaseModel):
    product_type: str = "product"
    description: str = ""
    materials: List[str] = Field(default_factory=list)
    colors: List[str] = Field(default_factory=list)
    style_tags: List[str] = Field(default_factory=list)
    confidence: float = 0.0

class ComponentValidation(BaseModel):
    exists: bool = False
    confidence: float = 0.0
    matched_component: Optional[Dict[str, Any]] = None  # name, type, location, description
    image_generation_prompt: str = ""
    negative_prompt: str = ""
    reason: str = ""
    suggestions: List[str] = Field(default_factory=list)
