"""Entry point that wires Hydra configuration to the API server or a one-off generation."""

import base64
import logging
import mimetypes
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import hydra
from omegaconf import DictConfig, OmegaConf
from tqdm import tqdm

from makersai.config import Settings
from makersai.designs import GenerationMode, GenerationResult, parse_design_request
from makersai.errors import MakersAIError, StageFailed, ValidationFailed
from makersai.services import Services, build_services

logger = logging.getLogger(__name__)


def read_binary_file(filepath: str) -> bytes:
    """Read a file as bytes, exiting with a message if it cannot be read."""
    try:
        with open(filepath, "rb") as handle:
            return handle.read()
    except FileNotFoundError:
        print(f"❌ Error: file not found: '{filepath}'")
        sys.exit(1)
    except OSError as exc:
        print(f"❌ Error while reading file: {exc}")
        sys.exit(1)


def build_request_data(request_cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Translate the ``request`` config block into design request fields."""
    mode = GenerationMode(request_cfg.get("mode") or GenerationMode.DIRECT.value)
    data: Dict[str, Any] = {
        "prompt_text": request_cfg.get("prompt") or "",
        "color_palette": list(request_cfg.get("colors") or []),
        "mode": mode,
    }
    width, height = request_cfg.get("width"), request_cfg.get("height")
    if width is not None or height is not None:
        data["dimensions"] = {"width": width, "height": height}
    image_path = request_cfg.get("image_path")
    if mode is GenerationMode.IMAGE_CONDITIONED and image_path:
        mime_type = mimetypes.guess_type(image_path)[0] or "application/octet-stream"
        data["source_image"] = {"data": read_binary_file(image_path), "mime_type": mime_type}
    return data


def write_result(result: GenerationResult, output_dir: Path, stem: str) -> List[Path]:
    """Write the model code, preview image and cutting profile of one result."""
    output_dir.mkdir(parents=True, exist_ok=True)
    written = []

    scad_path = output_dir / f"{stem}.scad"
    scad_path.write_text(result.model_code, encoding="utf-8")
    written.append(scad_path)

    image_bytes = decode_data_url(result.preview_image)
    if image_bytes is not None:
        image_path = output_dir / f"{stem}.png"
        image_path.write_bytes(image_bytes)
        written.append(image_path)

    if result.vector_profile:
        svg_path = output_dir / f"{stem}.svg"
        svg_path.write_text(result.vector_profile, encoding="utf-8")
        written.append(svg_path)
    return written


def decode_data_url(url: str) -> Optional[bytes]:
    if not url.startswith("data:") or ";base64," not in url:
        return None
    return base64.b64decode(url.split(";base64,", 1)[1])


def slugify(name: str) -> str:
    slug = "".join(ch.lower() if ch.isalnum() else "-" for ch in name).strip("-")
    while "--" in slug:
        slug = slug.replace("--", "-")
    return slug or "part"


def run_generation(services: Services, request_cfg: Dict[str, Any]) -> int:
    """Run one pipeline and write its artifacts. Returns a process exit code."""
    try:
        design = parse_design_request(build_request_data(request_cfg))
    except ValidationFailed as exc:
        print("❌ Invalid request:")
        for item in exc.details:
            print(f"   - {item['field']}: {item['message']}")
        return 2

    output_dir = Path(request_cfg.get("output_dir") or "outputs")
    orchestrator = services.orchestrator

    report = orchestrator.check_feasibility(design, request_cfg.get("printer_profile"))
    if report is not None:
        status = "✅ fits" if report.valid else "⚠️ does not fit"
        print(f"📐 {report.profile_id}: {status}")
        for line in report.errors + report.suggestions:
            print(f"   - {line}")

    print(f"\n🎯 Mode: {design.mode.value}")
    print(f"   Prompt: {design.prompt_text[:200]}{'...' if len(design.prompt_text) > 200 else ''}")

    try:
        if design.mode is GenerationMode.CONSTRUCTION:
            plan = orchestrator.generate_construction_plan(design)
            print(f"\n🏗️ Construction plan with {len(plan)} part(s):")
            for index, part in enumerate(plan, start=1):
                color = f" [{part.assigned_color}]" if part.assigned_color else ""
                print(f"   {index}. {part.part_name}{color}")

            progress = tqdm(total=len(plan), desc="Generating parts")

            def on_result(result: GenerationResult) -> None:
                stem = f"{progress.n + 1:02d}-{slugify(result.part_name or 'part')}"
                write_result(result, output_dir, stem)
                progress.update(1)

            outcome = orchestrator.generate_construction_parts(
                plan, design.dimensions, on_result=on_result
            )
            progress.close()
            if outcome.error is not None:
                print(
                    f"\n❌ Part {outcome.failed_index + 1} "
                    f"({outcome.error.part_name}) failed: {outcome.error.message}"
                )
                print(f"   {len(outcome.results)} of {len(plan)} part(s) were written to {output_dir}")
                return 1
            print(f"\n✅ {len(outcome.results)} part(s) written to {output_dir}")
            return 0

        results = orchestrator.generate(design)
    except StageFailed as exc:
        print(f"\n❌ Generation failed: {exc.message}")
        return 1
    except MakersAIError as exc:
        print(f"\n❌ {exc}")
        return 1

    for result in results:
        for path in write_result(result, output_dir, "model"):
            print(f"💾 {path}")
    print(f"\n✅ Done. Upstream calls: {services.executor.upstream_calls}, cache hits: {services.executor.cache_hits}")
    return 0


def serve(services: Services) -> None:
    import uvicorn

    from makersai.api import create_app

    server = services.settings.server
    print(f"🚀 MakersAI API listening on http://{server.host}:{server.port}")
    print(f"   Environment: {server.environment}")
    print(f"   CORS origin: {server.cors_origin}")
    uvicorn.run(create_app(services=services), host=server.host, port=server.port)


@hydra.main(config_path="../configs", config_name="config", version_base=None)
def main(cfg: DictConfig) -> None:
    """Hydra-driven execution entry point for MakersAI Studio."""
    print("\n" + "=" * 70)
    print("🛠️ MAKERSAI STUDIO – AI DESIGN GENERATION")
    print("=" * 70)

    try:
        settings = Settings.from_omegaconf(cfg)
    except (KeyError, ValueError) as exc:
        print(f"❌ Configuration error: {exc}")
        sys.exit(2)

    print(f"🔧 Provider: {settings.model.provider.upper()}")
    services = build_services(settings)

    mode = cfg.get("mode", "serve")
    logger.info("Starting MakersAI in %s mode", mode)
    if mode == "serve":
        try:
            serve(services)
        finally:
            services.close()
        return

    if mode != "generate":
        print(f"❌ Unknown mode '{mode}'. Expected 'serve' or 'generate'.")
        sys.exit(2)

    request_cfg: Dict[str, Any] = {}
    if cfg.get("request") is not None:
        request_cfg = OmegaConf.to_container(cfg.request, resolve=True)
    services.start()
    try:
        exit_code = run_generation(services, request_cfg)
    except KeyboardInterrupt:
        print("\n\n⚠️ Generation interrupted by user")
        exit_code = 130
    finally:
        services.close()
    if exit_code:
        sys.exit(exit_code)


if __name__ == "__main__":
    main()
