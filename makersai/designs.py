import hashlib
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from makersai.errors import ValidationFailed

MAX_PROMPT_LENGTH = 1000
MIN_PROMPT_LENGTH = 3
MAX_PALETTE_SIZE = 10
MAX_DIMENSION_MM = 1000.0
MAX_SOURCE_IMAGE_BYTES = 10 * 1024 * 1024


class GenerationMode(str, Enum):
    DIRECT = "direct"
    CONSTRUCTION = "construction"
    IMAGE_CONDITIONED = "image_conditioned"


# --- Request side ---


class Dimensions(BaseModel):
    """Target print/laser footprint in millimetres. Either side may be left open."""

    model_config = ConfigDict(frozen=True)

    width: Optional[float] = Field(default=None, gt=0, le=MAX_DIMENSION_MM)
    height: Optional[float] = Field(default=None, gt=0, le=MAX_DIMENSION_MM)

    @property
    def is_complete(self) -> bool:
        return self.width is not None and self.height is not None


class SourceImage(BaseModel):
    """Uploaded reference image for the image-conditioned pipeline."""

    model_config = ConfigDict(frozen=True)

    data: bytes = Field(repr=False)
    mime_type: str = Field(default="image/png")

    @field_validator("mime_type")
    @classmethod
    def _check_mime_type(cls, value: str) -> str:
        if not value.startswith("image/"):
            raise ValueError("Please select an image file")
        return value

    @field_validator("data")
    @classmethod
    def _check_size(cls, value: bytes) -> bytes:
        if not value:
            raise ValueError("Image file is empty")
        if len(value) > MAX_SOURCE_IMAGE_BYTES:
            raise ValueError("Image file size must be less than 10MB")
        return value

    @property
    def digest(self) -> str:
        """Stable SHA-256 of the image bytes, used in cache keys."""
        return hashlib.sha256(self.data).hexdigest()


class DesignRequest(BaseModel):
    """Normalised input to one pipeline run. Immutable once accepted."""

    model_config = ConfigDict(frozen=True)

    prompt_text: str = Field(default="", max_length=MAX_PROMPT_LENGTH)
    dimensions: Optional[Dimensions] = None
    color_palette: List[str] = Field(default_factory=list, max_length=MAX_PALETTE_SIZE)
    source_image: Optional[SourceImage] = None
    mode: GenerationMode = GenerationMode.DIRECT

    @field_validator("prompt_text", mode="before")
    @classmethod
    def _strip_prompt(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("color_palette", mode="before")
    @classmethod
    def _default_palette(cls, value: Any) -> Any:
        return [] if value is None else value

    @model_validator(mode="after")
    def _check_mode(self) -> "DesignRequest":
        if self.mode is GenerationMode.IMAGE_CONDITIONED:
            if self.source_image is None:
                raise ValueError("An image is required for image-to-3D conversion")
        else:
            if self.source_image is not None:
                raise ValueError("A source image is only accepted in image-conditioned mode")
            if len(self.prompt_text) < MIN_PROMPT_LENGTH:
                raise ValueError(f"Prompt must be at least {MIN_PROMPT_LENGTH} characters")
        return self


def parse_design_request(data: Mapping[str, Any]) -> DesignRequest:
    """Validate raw request data, mapping pydantic errors to ``ValidationFailed``."""
    try:
        return DesignRequest.model_validate(dict(data))
    except ValidationError as exc:
        details = [
            {
                "field": ".".join(str(part) for part in error["loc"]) or "request",
                "message": error["msg"],
            }
            for error in exc.errors()
        ]
        raise ValidationFailed(details) from exc


# --- Pipeline artifacts ---


class ConstructionPart(BaseModel):
    """One decomposed sub-object of a construction kit."""

    model_config = ConfigDict(frozen=True)

    part_name: str
    sub_prompt: str
    assigned_color: str = ""


class GenerationResult(BaseModel):
    """Artifact bundle produced for one part or one whole object."""

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    model_code: str
    preview_image: str = Field(repr=False)
    vector_profile: Optional[str] = None
    part_name: Optional[str] = None

    def to_public_dict(self) -> Dict[str, Any]:
        payload = {
            "scadCode": self.model_code,
            "imageUrl": self.preview_image,
            "svgCode": self.vector_profile,
        }
        if self.part_name is not None:
            payload["partName"] = self.part_name
        return payload


# --- Structured output schemas for the inference provider ---


class ModelOutputs(BaseModel):
    """Code synthesis response: OpenSCAD source, render prompt and laser SVG."""

    scadCode: str = Field(description="The complete and valid OpenSCAD code for the 3D model.")
    imagePrompt: str = Field(
        description=(
            "A detailed text prompt for an image generation model to create a "
            "photorealistic 3D render of the object."
        )
    )
    svgCode: str = Field(
        default="",
        description=(
            "The complete and valid SVG code for a 2D laser cutting profile. This should be a "
            "projection of the 3D model onto the XY plane. If a 2D representation is not "
            "possible or doesn't make sense, this should be an empty string."
        ),
    )


class PlannedPart(BaseModel):
    partName: str = Field(
        description="A short, descriptive name for this specific part (e.g., 'Chair Leg', 'Tabletop')."
    )
    prompt: str = Field(
        description=(
            "A detailed and specific prompt for another AI to generate just this one part as an "
            "OpenSCAD 3D model. Include precise dimensions if possible."
        )
    )
    color: str = Field(description="The color to assign to this part from the available colors.")


class ConstructionPlanOutput(BaseModel):
    """Decomposition response."""

    parts: List[PlannedPart] = Field(
        min_length=1,
        description="An array of all the individual parts needed to build the object."
    )


class ImageAnalysisOutput(ModelOutputs):
    """Vision-conditioned response: model outputs plus an analysis note."""

    analysisNote: str = Field(
        default="",
        description="A short description of what was recognised in the source image.",
    )


class RenderedImage(BaseModel):
    """Image synthesis response."""

    imageUrl: str
