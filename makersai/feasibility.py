"""Device profiles and the static dimension checks run against them.

Everything here is pure: no I/O, no provider calls. Validation failures are
reported as data and never block generation.
"""

from typing import Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

NO_LASER_MESSAGE = "Printer does not support laser engraving"
NEAR_LIMITS_SUGGESTION = (
    "Design is close to printer limits. Consider adding supports or splitting into parts."
)
TALL_NARROW_SUGGESTION = "Tall narrow design detected. Consider adding a wider base for stability."
AUTO_LEVELING_NOTE = "Auto-leveling enabled. First layer adhesion should be optimal."

NEAR_LIMIT_RATIO = 0.9
TALL_NARROW_RATIO = 3.0


class BuildVolume(BaseModel):
    model_config = ConfigDict(frozen=True)

    width: float
    depth: float
    height: float


class LaserArea(BaseModel):
    model_config = ConfigDict(frozen=True)

    width: float
    height: float


class LayerHeightRange(BaseModel):
    model_config = ConfigDict(frozen=True)

    min: float
    max: float
    default: float


class WallThickness(BaseModel):
    model_config = ConfigDict(frozen=True)

    min: float
    default: float


class DeviceFeatures(BaseModel):
    model_config = ConfigDict(frozen=True)

    auto_leveling: bool = False
    dual_extruder: bool = False
    heated_bed: bool = False
    enclosure: bool = False
    laser_engraving: bool = False


class DeviceProfile(BaseModel):
    """Static capability bounds of one fabrication device."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    manufacturer: str
    build_volume: BuildVolume
    laser_area: Optional[LaserArea] = None
    nozzle_diameter: float = 0.4
    max_print_speed: float = 200
    supported_materials: List[str] = Field(default_factory=list)
    recommended_layer_height: LayerHeightRange = LayerHeightRange(min=0.1, max=0.3, default=0.2)
    recommended_wall_thickness: WallThickness = WallThickness(min=0.8, default=1.2)
    features: DeviceFeatures = DeviceFeatures()


class ValidationReport(BaseModel):
    valid: bool
    errors: List[str] = Field(default_factory=list)


class FeasibilityReport(BaseModel):
    """Non-fatal result of checking a request against a device profile."""

    profile_id: str
    valid: bool
    errors: List[str] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)


def validate_build_volume(
    width: float, depth: float, height: float, profile: DeviceProfile
) -> ValidationReport:
    """Report every axis that strictly exceeds the profile's build volume."""
    bounds = profile.build_volume
    errors: List[str] = []

    if width > bounds.width:
        errors.append(f"Width {_mm(width)}mm exceeds printer build volume ({_mm(bounds.width)}mm)")
    if depth > bounds.depth:
        errors.append(f"Depth {_mm(depth)}mm exceeds printer build volume ({_mm(bounds.depth)}mm)")
    if height > bounds.height:
        errors.append(f"Height {_mm(height)}mm exceeds printer build volume ({_mm(bounds.height)}mm)")

    return ValidationReport(valid=not errors, errors=errors)


def validate_laser_area(width: float, height: float, profile: DeviceProfile) -> ValidationReport:
    """Check a 2D footprint against the laser area. No laser at all is its own error."""
    area = profile.laser_area
    if area is None:
        return ValidationReport(valid=False, errors=[NO_LASER_MESSAGE])

    errors: List[str] = []
    if width > area.width:
        errors.append(f"Width {_mm(width)}mm exceeds laser area ({_mm(area.width)}mm)")
    if height > area.height:
        errors.append(f"Height {_mm(height)}mm exceeds laser area ({_mm(area.height)}mm)")

    return ValidationReport(valid=not errors, errors=errors)


def suggest(dimensions: Mapping[str, float], profile: DeviceProfile) -> List[str]:
    """Advisory hints for a ``{width, height, depth}`` box. Never affects validity."""
    bounds = profile.build_volume
    width = float(dimensions["width"])
    height = float(dimensions["height"])
    depth = float(dimensions["depth"])
    suggestions: List[str] = []

    usages = (width / bounds.width, depth / bounds.depth, height / bounds.height)
    if any(usage > NEAR_LIMIT_RATIO for usage in usages):
        suggestions.append(NEAR_LIMITS_SUGGESTION)

    axes = (width, height, depth)
    if max(axes) > min(axes) * TALL_NARROW_RATIO:
        suggestions.append(TALL_NARROW_SUGGESTION)

    if profile.features.auto_leveling:
        suggestions.append(AUTO_LEVELING_NOTE)

    return suggestions


def check_feasibility(
    width: float, height: float, profile: DeviceProfile, depth: Optional[float] = None
) -> FeasibilityReport:
    """Bundle validation and suggestions for a generation request.

    Requests without a depth are 2D cutting footprints and are checked against
    the laser area; with a depth they are checked against the build volume.
    """
    if depth is None:
        report = validate_laser_area(width, height, profile)
        suggestions: List[str] = []
    else:
        report = validate_build_volume(width, depth, height, profile)
        suggestions = suggest({"width": width, "height": height, "depth": depth}, profile)
    return FeasibilityReport(
        profile_id=profile.id,
        valid=report.valid,
        errors=report.errors,
        suggestions=suggestions,
    )


def _mm(value: float) -> str:
    return f"{value:g}"


class ProfileRegistry:
    """Read-only lookup of device profiles by id."""

    def __init__(self, profiles: Optional[Mapping[str, DeviceProfile]] = None) -> None:
        self._profiles: Dict[str, DeviceProfile] = dict(
            profiles if profiles is not None else DEFAULT_PROFILES
        )

    def lookup(self, profile_id: str) -> Optional[DeviceProfile]:
        return self._profiles.get(profile_id)

    def all(self) -> List[DeviceProfile]:
        return list(self._profiles.values())

    def __contains__(self, profile_id: str) -> bool:
        return profile_id in self._profiles


DEFAULT_PROFILES: Dict[str, DeviceProfile] = {
    "anycubic-kobra-3-combo": DeviceProfile(
        id="anycubic-kobra-3-combo",
        name="Anycubic Kobra 3 Combo",
        manufacturer="Anycubic",
        build_volume=BuildVolume(width=250, depth=250, height=260),
        laser_area=LaserArea(width=400, height=400),
        nozzle_diameter=0.4,
        max_print_speed=500,
        supported_materials=["PLA", "PETG", "TPU", "ABS"],
        features=DeviceFeatures(auto_leveling=True, heated_bed=True, laser_engraving=True),
    ),
    "anycubic-kobra-2": DeviceProfile(
        id="anycubic-kobra-2",
        name="Anycubic Kobra 2",
        manufacturer="Anycubic",
        build_volume=BuildVolume(width=250, depth=220, height=220),
        nozzle_diameter=0.4,
        max_print_speed=300,
        supported_materials=["PLA", "PETG", "TPU"],
        features=DeviceFeatures(auto_leveling=True, heated_bed=True),
    ),
    "generic-fdm": DeviceProfile(
        id="generic-fdm",
        name="Generic FDM Printer",
        manufacturer="Generic",
        build_volume=BuildVolume(width=200, depth=200, height=200),
        nozzle_diameter=0.4,
        max_print_speed=200,
        supported_materials=["PLA", "PETG"],
        features=DeviceFeatures(heated_bed=True),
    ),
}
