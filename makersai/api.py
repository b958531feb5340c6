"""HTTP transport for the generation pipelines, device profiles and saved designs.

Routes are plain ``def`` handlers, so FastAPI runs each request in its
threadpool while the orchestrator blocks on upstream calls. Every ``/api``
route and ``/health`` pass the general admission window; the generation routes additionally
pass the stricter generation window inside the orchestrator.
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, File, Form, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from makersai.config import Settings
from makersai.designs import (
    ConstructionPart,
    Dimensions,
    GenerationMode,
    GenerationResult,
    parse_design_request,
)
from makersai.errors import AdmissionRejected, StageFailed, ValidationFailed
from makersai.feasibility import validate_build_volume, validate_laser_area, suggest
from makersai.services import Services, build_services
from makersai.storage import SavedDesign

logger = logging.getLogger(__name__)

NDJSON_MEDIA_TYPE = "application/x-ndjson"

# Request-model field names as clients send them.
CLIENT_FIELD_NAMES = {
    "prompt_text": "prompt",
    "color_palette": "colors",
    "source_image": "image",
    "part_name": "partName",
    "sub_prompt": "prompt",
    "assigned_color": "color",
    "scad_code": "scadCode",
    "image_url": "imageUrl",
    "svg_code": "svgCode",
}


class DimensionCheckBody(BaseModel):
    width: float = Field(gt=0)
    height: float = Field(gt=0)
    depth: float = Field(gt=0)
    profileId: str


class LaserCheckBody(BaseModel):
    width: float = Field(gt=0)
    height: float = Field(gt=0)
    profileId: str


class FavoriteBody(BaseModel):
    model_config = ConfigDict(extra="ignore")

    isFavorite: bool = True


def client_identity(request: Request) -> str:
    return request.client.host if request.client and request.client.host else "unknown"


def _client_field(loc) -> str:
    parts = [CLIENT_FIELD_NAMES.get(str(part), str(part)) for part in loc if part != "body"]
    return ".".join(parts) or "request"


def _validation_details(exc: ValidationError) -> List[Dict[str, Any]]:
    return [{"field": _client_field(err["loc"]), "message": err["msg"]} for err in exc.errors()]


def _client_details(details: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [
        {"field": _client_field(str(item["field"]).split(".")), "message": item["message"]}
        for item in details
    ]


def _parse_dimensions(raw: Any) -> Optional[Dimensions]:
    if raw is None:
        return None
    try:
        return Dimensions.model_validate(raw)
    except ValidationError as exc:
        raise ValidationFailed(
            [
                {"field": "dimensions." + _client_field(err["loc"]), "message": err["msg"]}
                for err in exc.errors()
            ]
        ) from exc


def _parse_plan(raw: Any) -> List[ConstructionPart]:
    if not isinstance(raw, list):
        raise ValidationFailed([{"field": "plan", "message": "Plan must be an array of parts"}])
    parts = []
    errors: List[Dict[str, Any]] = []
    for index, entry in enumerate(raw):
        if not isinstance(entry, dict):
            errors.append({"field": f"plan.{index}", "message": "Part must be an object"})
            continue
        try:
            parts.append(
                ConstructionPart(
                    part_name=entry.get("partName"),
                    sub_prompt=entry.get("prompt"),
                    assigned_color=entry.get("color") or "",
                )
            )
        except ValidationError as exc:
            errors.extend(
                {"field": f"plan.{index}.{_client_field(err['loc'])}", "message": err["msg"]}
                for err in exc.errors()
            )
    if errors:
        raise ValidationFailed(errors)
    return parts


def _parse_form_colors(raw: Optional[str]) -> Optional[List[str]]:
    if raw is None or not raw.strip():
        return None
    text = raw.strip()
    if text.startswith("["):
        try:
            colors = json.loads(text)
        except ValueError as exc:
            raise ValidationFailed(
                [{"field": "colors", "message": "Colors must be a JSON array or a comma separated list"}]
            ) from exc
        return colors
    return [color.strip() for color in text.split(",") if color.strip()]


def _error_body(message: str, **extra: Any) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": False, "error": message}
    body.update(extra)
    return body


def _ndjson(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False) + "\n"


def _stream_parts(results: Iterator[GenerationResult]) -> Iterator[str]:
    completed = 0
    try:
        for result in results:
            yield _ndjson({"index": completed, "part": result.to_public_dict()})
            completed += 1
    except StageFailed as exc:
        yield _ndjson(
            {
                "done": True,
                "completed": completed,
                "error": {
                    "stage": exc.stage,
                    "message": exc.message,
                    "partName": exc.part_name,
                    "partIndex": exc.part_index,
                },
            }
        )
        return
    yield _ndjson({"done": True, "completed": completed})


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    """Build the application. ``services`` is built from ``settings`` when omitted."""
    owns_services = services is None
    if services is None:
        services = build_services(settings or Settings.load())
    settings = services.settings

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        services.start()
        try:
            yield
        finally:
            if owns_services:
                services.close()

    app = FastAPI(title="MakersAI Studio", lifespan=lifespan)
    app.state.services = services
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.server.cors_origin],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Error mapping ─────────────────────────────────────────────

    @app.exception_handler(AdmissionRejected)
    async def _admission_rejected(request: Request, exc: AdmissionRejected):
        logger.warning("Rate limit exceeded for %s on %s", client_identity(request), request.url.path)
        return JSONResponse(
            status_code=429,
            content=_error_body(exc.message, retryAfter=exc.retry_after_seconds),
            headers={"Retry-After": str(exc.retry_after_seconds)},
        )

    @app.exception_handler(ValidationFailed)
    async def _validation_failed(_request: Request, exc: ValidationFailed):
        return JSONResponse(
            status_code=400,
            content=_error_body("Validation failed", details=_client_details(exc.details)),
        )

    @app.exception_handler(RequestValidationError)
    async def _request_invalid(_request: Request, exc: RequestValidationError):
        details = [{"field": _client_field(err["loc"]), "message": err["msg"]} for err in exc.errors()]
        return JSONResponse(status_code=400, content=_error_body("Validation failed", details=details))

    @app.exception_handler(StageFailed)
    async def _stage_failed(_request: Request, exc: StageFailed):
        extra = {"partName": exc.part_name} if exc.part_name is not None else {}
        return JSONResponse(status_code=500, content=_error_body(exc.message, **extra))

    def general_limit(request: Request) -> str:
        identity = client_identity(request)
        services.general_admission.check(identity)
        return identity

    @app.get("/health", dependencies=[Depends(general_limit)])
    def health():
        return {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "environment": settings.server.environment,
        }

    api = APIRouter(prefix="/api", dependencies=[Depends(general_limit)])
    orchestrator = services.orchestrator

    # ── Generation ────────────────────────────────────────────────

    @api.post("/generate/model")
    def generate_model(request: Request, payload: Dict[str, Any] = Body(...)):
        identity = client_identity(request)
        run = orchestrator.start_run(GenerationMode.DIRECT, identity)
        design = parse_design_request(
            {
                "prompt_text": payload.get("prompt") or "",
                "dimensions": payload.get("dimensions"),
                "color_palette": payload.get("colors"),
                "mode": GenerationMode.DIRECT,
            }
        )
        logger.info("🎨 Generating model for %s", identity)
        feasibility = orchestrator.check_feasibility(design, payload.get("printerProfile"))
        result = orchestrator.generate_direct(design, run=run)
        body: Dict[str, Any] = {"success": True, "data": result.to_public_dict()}
        if feasibility is not None:
            body["feasibility"] = feasibility.model_dump()
        return body

    @api.post("/generate/construction-plan")
    def generate_construction_plan(request: Request, payload: Dict[str, Any] = Body(...)):
        identity = client_identity(request)
        run = orchestrator.start_run(GenerationMode.CONSTRUCTION, identity)
        colors = payload.get("availableColors")
        if colors is None:
            colors = payload.get("colors")
        design = parse_design_request(
            {
                "prompt_text": payload.get("prompt") or "",
                "color_palette": colors,
                "mode": GenerationMode.CONSTRUCTION,
            }
        )
        logger.info("🏗️ Generating construction plan for %s", identity)
        parts = orchestrator.generate_construction_plan(design, run=run)
        return {
            "success": True,
            "data": [
                {"partName": part.part_name, "prompt": part.sub_prompt, "color": part.assigned_color}
                for part in parts
            ],
        }

    @api.post("/generate/construction-parts")
    def generate_construction_parts(request: Request, payload: Dict[str, Any] = Body(...)):
        identity = client_identity(request)
        run = orchestrator.start_run(GenerationMode.CONSTRUCTION, identity)
        plan = _parse_plan(payload.get("plan"))
        dimensions = _parse_dimensions(payload.get("dimensions"))
        results = orchestrator.iter_construction_parts(plan, dimensions, run=run)
        return StreamingResponse(_stream_parts(results), media_type=NDJSON_MEDIA_TYPE)

    @api.post("/generate/from-image")
    def generate_from_image(
        request: Request,
        image: Optional[UploadFile] = File(None),
        prompt: str = Form(""),
        width: Optional[float] = Form(None),
        height: Optional[float] = Form(None),
        colors: Optional[str] = Form(None),
    ):
        identity = client_identity(request)
        run = orchestrator.start_run(GenerationMode.IMAGE_CONDITIONED, identity)
        source_image = None
        if image is not None:
            source_image = {
                "data": image.file.read(),
                "mime_type": image.content_type or "application/octet-stream",
            }
        dimensions = None
        if width is not None or height is not None:
            dimensions = {"width": width, "height": height}
        design = parse_design_request(
            {
                "prompt_text": prompt,
                "dimensions": dimensions,
                "color_palette": _parse_form_colors(colors),
                "source_image": source_image,
                "mode": GenerationMode.IMAGE_CONDITIONED,
            }
        )
        logger.info("🖼️ Generating model from image for %s", identity)
        result = orchestrator.generate_from_image(design, run=run)
        return {"success": True, "data": result.to_public_dict()}

    # ── Device profiles ───────────────────────────────────────────

    def _profile_or_404(profile_id: str):
        profile = services.profiles.lookup(profile_id)
        if profile is None:
            return None, JSONResponse(status_code=404, content=_error_body("Printer profile not found"))
        return profile, None

    @api.get("/printers/profiles")
    def list_profiles():
        return {"success": True, "data": [p.model_dump() for p in services.profiles.all()]}

    @api.get("/printers/profiles/{profile_id}")
    def get_profile(profile_id: str):
        profile, missing = _profile_or_404(profile_id)
        if missing is not None:
            return missing
        return {"success": True, "data": profile.model_dump()}

    @api.post("/printers/validate/dimensions")
    def validate_dimensions(body: DimensionCheckBody):
        profile, missing = _profile_or_404(body.profileId)
        if missing is not None:
            return missing
        report = validate_build_volume(body.width, body.depth, body.height, profile)
        suggestions = (
            suggest({"width": body.width, "height": body.height, "depth": body.depth}, profile)
            if report.valid
            else []
        )
        return {
            "success": True,
            "data": {"valid": report.valid, "errors": report.errors, "suggestions": suggestions},
        }

    @api.post("/printers/validate/laser")
    def validate_laser(body: LaserCheckBody):
        profile, missing = _profile_or_404(body.profileId)
        if missing is not None:
            return missing
        report = validate_laser_area(body.width, body.height, profile)
        return {"success": True, "data": report.model_dump()}

    # ── Saved designs ─────────────────────────────────────────────

    def _store():
        if services.store is None:
            return None, JSONResponse(status_code=503, content=_error_body("Design storage is disabled"))
        return services.store, None

    def _design_payload(design: SavedDesign) -> Dict[str, Any]:
        return {
            "id": design.id,
            "name": design.name,
            "prompt": design.prompt,
            "scadCode": design.scad_code,
            "imageUrl": design.image_url,
            "svgCode": design.svg_code,
            "tags": design.tags,
            "isFavorite": design.is_favorite,
            "createdAt": design.created_at,
            "updatedAt": design.updated_at,
        }

    @api.get("/designs")
    def list_designs(favorites: bool = False, limit: int = 50):
        store, unavailable = _store()
        if unavailable is not None:
            return unavailable
        designs = store.list_designs(favorites_only=favorites, limit=max(1, min(limit, 200)))
        return {"success": True, "data": [_design_payload(d) for d in designs]}

    @api.post("/designs", status_code=201)
    def save_design(payload: Dict[str, Any] = Body(...)):
        store, unavailable = _store()
        if unavailable is not None:
            return unavailable
        try:
            design = SavedDesign(
                name=(payload.get("name") or "").strip(),
                prompt=(payload.get("prompt") or "").strip(),
                scad_code=payload.get("scadCode") or "",
                image_url=payload.get("imageUrl") or "",
                svg_code=payload.get("svgCode"),
                tags=payload.get("tags") or [],
            )
        except ValidationError as exc:
            raise ValidationFailed(_validation_details(exc)) from exc
        saved = store.save_design(design)
        logger.info("💾 Saved design %s (%s)", saved.id, saved.name)
        return {"success": True, "data": _design_payload(saved)}

    @api.get("/designs/{design_id}")
    def get_design(design_id: int):
        store, unavailable = _store()
        if unavailable is not None:
            return unavailable
        design = store.get_design(design_id)
        if design is None:
            return JSONResponse(status_code=404, content=_error_body("Design not found"))
        return {"success": True, "data": _design_payload(design)}

    @api.delete("/designs/{design_id}")
    def delete_design(design_id: int):
        store, unavailable = _store()
        if unavailable is not None:
            return unavailable
        if not store.delete_design(design_id):
            return JSONResponse(status_code=404, content=_error_body("Design not found"))
        return {"success": True}

    @api.post("/designs/{design_id}/favorite")
    def favorite_design(design_id: int, body: Optional[FavoriteBody] = None):
        store, unavailable = _store()
        if unavailable is not None:
            return unavailable
        is_favorite = body.isFavorite if body is not None else True
        design = store.set_favorite(design_id, is_favorite)
        if design is None:
            return JSONResponse(status_code=404, content=_error_body("Design not found"))
        return {"success": True, "data": _design_payload(design)}

    app.include_router(api)
    return app
