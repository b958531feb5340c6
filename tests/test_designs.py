import pytest

from makersai.designs import (
    GenerationMode,
    GenerationResult,
    SourceImage,
    parse_design_request,
)
from makersai.errors import ValidationFailed

PNG_BYTES = b"\x89PNG\r\n\x1a\nfake"


def test_prompt_is_trimmed():
    request = parse_design_request({"prompt_text": "   a pencil holder  "})
    assert request.prompt_text == "a pencil holder"
    assert request.mode is GenerationMode.DIRECT
    assert request.color_palette == []


def test_short_prompt_is_rejected():
    with pytest.raises(ValidationFailed) as excinfo:
        parse_design_request({"prompt_text": " ab "})
    assert excinfo.value.details[0]["field"] == "request"
    assert "at least 3 characters" in excinfo.value.details[0]["message"]


def test_prompt_length_and_palette_size_limits():
    with pytest.raises(ValidationFailed) as excinfo:
        parse_design_request({"prompt_text": "x" * 1001, "color_palette": ["red"] * 11})
    fields = {detail["field"] for detail in excinfo.value.details}
    assert fields == {"prompt_text", "color_palette"}


def test_dimensions_must_be_positive_and_bounded():
    with pytest.raises(ValidationFailed) as excinfo:
        parse_design_request(
            {"prompt_text": "a tray", "dimensions": {"width": 0, "height": 1001}}
        )
    fields = sorted(detail["field"] for detail in excinfo.value.details)
    assert fields == ["dimensions.height", "dimensions.width"]


def test_dimensions_accept_either_side_alone():
    request = parse_design_request({"prompt_text": "a tray", "dimensions": {"height": 40}})
    assert request.dimensions.width is None
    assert request.dimensions.height == 40
    assert not request.dimensions.is_complete


def test_image_mode_requires_image():
    with pytest.raises(ValidationFailed):
        parse_design_request({"mode": GenerationMode.IMAGE_CONDITIONED})

    request = parse_design_request(
        {
            "mode": GenerationMode.IMAGE_CONDITIONED,
            "source_image": {"data": PNG_BYTES, "mime_type": "image/png"},
        }
    )
    assert request.prompt_text == ""
    assert request.source_image.digest == SourceImage(data=PNG_BYTES).digest


def test_image_outside_image_mode_is_rejected():
    with pytest.raises(ValidationFailed):
        parse_design_request(
            {"prompt_text": "a cup", "source_image": {"data": PNG_BYTES, "mime_type": "image/png"}}
        )


def test_non_image_upload_is_rejected():
    with pytest.raises(ValidationFailed) as excinfo:
        parse_design_request(
            {
                "mode": GenerationMode.IMAGE_CONDITIONED,
                "source_image": {"data": b"%PDF", "mime_type": "application/pdf"},
            }
        )
    assert excinfo.value.details[0]["field"] == "source_image.mime_type"


def test_public_dict_uses_client_field_names():
    result = GenerationResult(
        model_code="cube(1);", preview_image="data:image/png;base64,AA", part_name="Leg"
    )
    assert result.to_public_dict() == {
        "scadCode": "cube(1);",
        "imageUrl": "data:image/png;base64,AA",
        "svgCode": None,
        "partName": "Leg",
    }
