"""System instructions and prompt fragments for each inference stage."""

from typing import Optional, Sequence

# ==================== DECOMPOSITION ====================

SYSTEM_MSG_CONSTRUCTION_PLANNER = """You are an expert at breaking down complex 3D objects into individual, manufacturable parts for construction kits.
Given a high-level description of an object, decompose it into separate parts that can be 3D printed individually and assembled.
Each part should be simple enough to print on its own. Assign a color from the available colors: {colors}.
If there are more parts than colors, reuse colors intelligently."""

# ==================== CODE SYNTHESIS ====================

SYSTEM_MSG_SCAD_GENERATOR = """You are an expert OpenSCAD programmer and 3D modeling assistant.
Generate valid, well-commented OpenSCAD code based on the user's description.
Also generate an SVG for laser cutting if applicable (2D projection).
Provide a detailed image prompt for visualization."""

LASER_AREA_CONSTRAINT = (
    "\n\nThe laser cutting area is {width}mm x {height}mm. Ensure the design fits within these bounds."
)

PALETTE_CONSTRAINT = (
    "\n\nUse these colors in the OpenSCAD code: {colors}. Apply them using the color() module."
)

# ==================== IMAGE-CONDITIONED SYNTHESIS ====================

SYSTEM_MSG_IMAGE_TO_SCAD = """You are an expert OpenSCAD programmer who reconstructs physical objects from photographs and sketches.
Study the provided image, identify the main object, its proportions and distinctive features, and model it as valid, well-commented OpenSCAD code.
Also generate an SVG for laser cutting if applicable (2D projection of the object's outline).
Provide a detailed image prompt for a clean 3D render of the reconstructed model, and a short analysis note describing what you recognised in the image."""

DEFAULT_IMAGE_INSTRUCTION = "Convert the object shown in this image into a 3D printable OpenSCAD model."

# ==================== IMAGE SYNTHESIS ====================

RENDER_PROMPT_SUFFIX = " High quality 3D render, professional lighting, clean background."


def format_colors(colors: Sequence[str]) -> str:
    return ", ".join(colors)


def build_scad_system_instruction(
    base: str,
    width: Optional[float] = None,
    height: Optional[float] = None,
    colors: Sequence[str] = (),
) -> str:
    """Append the laser-area and palette constraints that apply to a request."""
    instruction = base
    if width is not None and height is not None:
        instruction += LASER_AREA_CONSTRAINT.format(width=f"{width:g}", height=f"{height:g}")
    if colors:
        instruction += PALETTE_CONSTRAINT.format(colors=format_colors(colors))
    return instruction


def build_planner_system_instruction(colors: Sequence[str]) -> str:
    return SYSTEM_MSG_CONSTRUCTION_PLANNER.format(colors=format_colors(colors))


def build_render_prompt(image_description: str) -> str:
    return f"{image_description}{RENDER_PROMPT_SUFFIX}"
