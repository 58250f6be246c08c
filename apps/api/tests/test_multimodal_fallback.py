from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from multimodal import vision
from services.json_repair import JSONParseError


def _fake_client(content):
    client = MagicMock()
    client.chat.completions.create.return_value = SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))]
    )
    return client


def test_placeholder_keys_disable_the_openai_client():
    assert vision.get_openai_client("") is None
    assert vision.get_openai_client("test-key") is None
    assert vision.get_openai_client("your_openai_key") is None


def test_base_view_fallback_without_openai_key_is_deterministic():
    first = vision.analyze_base_view("https://cdn.example.com/a.png", "back", "bags", api_key="test-key")
    second = vision.analyze_base_view("https://cdn.example.com/a.png", "back", "bags", api_key="test-key")

    assert first == second
    assert first.view_type == "back"
    assert first.product_type == "bags"
    assert 0.5 <= first.confidence <= 0.8
    assert first.materials


def test_generation_fallbacks_respect_limits():
    analysis = {"product_type": "jacket"}
    assert len(vision.plan_components(analysis, "outerwear", "test-key")) == 4
    assert len(vision.plan_components(analysis, "outerwear", "test-key", limit=2)) == 2
    assert len(vision.plan_close_ups(analysis, "outerwear", "test-key")) == 3
    assert vision.generate_sketch_callouts(analysis, "front", "test-key")[0].label == "Seam"
    assert vision.generate_assembly_summary([{"name": "sleeve"}], "test-key")["steps"] == ["Attach sleeve."]


def test_placeholder_image_is_an_svg_data_url():
    url = vision.generate_image("flat sketch, front view", None, "test-key")
    assert url.startswith("data:image/svg+xml;base64,")
    assert url == vision.generate_image("flat sketch, front view", None, "test-key")


def test_fenced_model_reply_is_repaired_before_validation():
    reply = '```json\n{"product_type": "backpack", "materials": [{"name": "cordura"}],\n"confidence": 0.82,}\n```'

    with patch.object(vision, "get_openai_client", return_value=_fake_client(reply)):
        analysis = vision.analyze_base_view("https://cdn.example.com/pack.png", "front", None, api_key="sk-live")

    assert analysis.view_type == "front"
    assert analysis.product_type == "backpack"
    assert analysis.materials == [{"name": "cordura"}]
    assert analysis.confidence == pytest.approx(0.82)


def test_truncated_component_plan_is_recovered():
    reply = '{"components": [{"name": "zipper", "description": "YKK #5 coil'

    with patch.object(vision, "get_openai_client", return_value=_fake_client(reply)):
        components = vision.plan_components({}, "bags", api_key="sk-live")

    assert [component.name for component in components] == ["zipper"]
    assert components[0].description == "YKK #5 coil"


def test_unrecoverable_model_reply_raises_parse_error():
    with patch.object(vision, "get_openai_client", return_value=_fake_client("I cannot help with that.")):
        with pytest.raises(JSONParseError):
            vision.analyze_image("https://cdn.example.com/pack.png", api_key="sk-live")
