"""Validated settings built from environment variables and Hydra/OmegaConf trees.

Each section is a small dataclass. Values are resolved in order of precedence
``defaults < environment < config overrides`` and then cast and range-checked
against ``FIELD_META``; every problem is collected and reported in one
``ValueError``.
"""

import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from omegaconf import DictConfig, OmegaConf


@dataclass
class ModelSettings:
    provider: str = "gemini"
    temperature: float = 0.2
    request_timeout_seconds: float = 120.0


@dataclass
class GeminiSettings:
    api_key: str = ""
    model_name: str = "gemini-2.5-pro"
    image_model: str = "imagen-4.0-generate-001"
    use_thinking: bool = False
    thinking_budget: int = -1


@dataclass
class OpenAISettings:
    api_key: str = ""
    model_name: str = "gpt-4o"
    image_model: str = "gpt-image-1"
    base_url: str = ""


@dataclass
class CacheSettings:
    enabled: bool = True
    backend: str = "memory"
    ttl_seconds: int = 86400
    check_period_seconds: int = 600
    cache_dir: str = ".cache"


@dataclass
class RateLimitSettings:
    enabled: bool = True
    window_ms: int = 3600000
    max_requests: int = 10


@dataclass
class PipelineSettings:
    max_pipeline_seconds: float = 900.0


@dataclass
class ServerSettings:
    host: str = "0.0.0.0"
    port: int = 3001
    cors_origin: str = "http://localhost:3000"
    environment: str = "development"


@dataclass
class StorageSettings:
    enabled: bool = True
    database_path: str = "./data/makersai.db"


SECTIONS = {
    "model": ModelSettings,
    "gemini": GeminiSettings,
    "openai": OpenAISettings,
    "cache": CacheSettings,
    "rate_limit": RateLimitSettings,
    "pipeline": PipelineSettings,
    "server": ServerSettings,
    "storage": StorageSettings,
}

FIELD_META: Dict[str, Dict[str, Dict[str, Any]]] = {
    "model": {
        "provider": {
            "type": "str",
            "choices": {"gemini", "openai"},
            "normalize": "lower",
            "env": ("MODEL_PROVIDER",),
        },
        "temperature": {"type": "float", "min": 0.0, "max": 2.0, "env": ("MODEL_TEMPERATURE",)},
        "request_timeout_seconds": {
            "type": "float",
            "min_exclusive": 0.0,
            "env": ("MODEL_REQUEST_TIMEOUT_SECONDS",),
        },
    },
    "gemini": {
        "api_key": {"type": "str", "env": ("GEMINI_API_KEY", "GOOGLE_API_KEY")},
        "model_name": {"type": "str", "allow_blank": False, "env": ("GEMINI_MODEL",)},
        "image_model": {"type": "str", "allow_blank": False, "env": ("GEMINI_IMAGE_MODEL",)},
        "use_thinking": {"type": "bool", "env": ("GEMINI_USE_THINKING",)},
        "thinking_budget": {"type": "int", "min": -1, "env": ("GEMINI_THINKING_BUDGET",)},
    },
    "openai": {
        "api_key": {"type": "str", "env": ("OPENAI_API_KEY",)},
        "model_name": {"type": "str", "allow_blank": False, "env": ("OPENAI_MODEL",)},
        "image_model": {"type": "str", "allow_blank": False, "env": ("OPENAI_IMAGE_MODEL",)},
        "base_url": {"type": "str", "env": ("OPENAI_BASE_URL",)},
    },
    "cache": {
        "enabled": {"type": "bool", "env": ("ENABLE_CACHING",)},
        "backend": {
            "type": "str",
            "choices": {"memory", "file"},
            "normalize": "lower",
            "env": ("CACHE_BACKEND",),
        },
        "ttl_seconds": {"type": "int", "min": 1, "env": ("CACHE_TTL_SECONDS",)},
        "check_period_seconds": {"type": "int", "min": 0, "env": ("CACHE_CHECK_PERIOD_SECONDS",)},
        "cache_dir": {"type": "str", "allow_blank": False, "env": ("CACHE_DIR",)},
    },
    "rate_limit": {
        "enabled": {"type": "bool", "env": ("ENABLE_RATE_LIMITING",)},
        "window_ms": {"type": "int", "min": 1, "env": ("RATE_LIMIT_WINDOW_MS",)},
        "max_requests": {"type": "int", "min": 1, "env": ("RATE_LIMIT_MAX_REQUESTS",)},
    },
    "pipeline": {
        "max_pipeline_seconds": {
            "type": "float",
            "min_exclusive": 0.0,
            "env": ("MAX_PIPELINE_SECONDS",),
        },
    },
    "server": {
        "host": {"type": "str", "allow_blank": False, "env": ("HOST",)},
        "port": {"type": "int", "min": 1, "max": 65535, "env": ("PORT",)},
        "cors_origin": {"type": "str", "allow_blank": False, "env": ("CORS_ORIGIN",)},
        "environment": {
            "type": "str",
            "choices": {"development", "production", "test"},
            "normalize": "lower",
            "env": ("APP_ENV",),
        },
    },
    "storage": {
        "enabled": {"type": "bool", "env": ("ENABLE_STORAGE",)},
        "database_path": {"type": "str", "allow_blank": False, "env": ("DATABASE_PATH",)},
    },
}

TYPE_LABELS = {
    "int": "an integer",
    "float": "a float",
    "bool": "a boolean",
    "str": "a string",
}


@dataclass
class Settings:
    """Complete application configuration."""

    model: ModelSettings = field(default_factory=ModelSettings)
    gemini: GeminiSettings = field(default_factory=GeminiSettings)
    openai: OpenAISettings = field(default_factory=OpenAISettings)
    cache: CacheSettings = field(default_factory=CacheSettings)
    rate_limit: RateLimitSettings = field(default_factory=RateLimitSettings)
    pipeline: PipelineSettings = field(default_factory=PipelineSettings)
    server: ServerSettings = field(default_factory=ServerSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)

    @classmethod
    def load(
        cls,
        overrides: Optional[Mapping[str, Any]] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "Settings":
        """Resolve defaults, environment variables and ``overrides`` into settings."""
        environ = os.environ if environ is None else environ
        overrides = overrides or {}

        unknown = set(overrides) - set(SECTIONS)
        if unknown:
            raise KeyError("Unknown configuration sections: " + ", ".join(sorted(unknown)))

        errors: List[str] = []
        sections: Dict[str, Any] = {}
        for section, section_cls in SECTIONS.items():
            section_overrides = overrides.get(section) or {}
            if not isinstance(section_overrides, Mapping):
                errors.append(f"Section '{section}' must be a mapping.")
                continue
            values, section_errors = _resolve_section(section, section_overrides, environ)
            errors.extend(section_errors)
            if not section_errors:
                sections[section] = section_cls(**values)

        if errors:
            raise ValueError("Invalid configuration: " + "; ".join(errors))
        return cls(**sections)

    @classmethod
    def from_omegaconf(
        cls,
        config: Union[DictConfig, Mapping[str, Any], None],
        environ: Optional[Mapping[str, str]] = None,
    ) -> "Settings":
        """Create settings from a Hydra ``DictConfig`` or a plain mapping.

        Only the known sections are read, so the same tree may carry other keys
        (for example a ``request`` block used by the command-line runner).
        """
        if config is None:
            return cls.load(environ=environ)
        if isinstance(config, DictConfig):
            config = {
                name: OmegaConf.to_container(config[name], resolve=True)
                for name in SECTIONS
                if config.get(name) is not None
            }
        if not isinstance(config, Mapping):
            raise TypeError("Configuration must be a mapping or DictConfig-compatible object.")
        overrides = {name: config[name] for name in SECTIONS if config.get(name) is not None}
        return cls.load(overrides=overrides, environ=environ)

    @property
    def is_development(self) -> bool:
        return self.server.environment == "development"


def _resolve_section(
    section: str, overrides: Mapping[str, Any], environ: Mapping[str, str]
) -> Tuple[Dict[str, Any], List[str]]:
    meta_by_field = FIELD_META[section]
    defaults = SECTIONS[section]()
    values: Dict[str, Any] = {}
    errors: List[str] = []

    unknown = set(overrides) - set(meta_by_field)
    if unknown:
        errors.append(
            f"Unknown parameters in '{section}': " + ", ".join(sorted(str(name) for name in unknown))
        )

    for name, meta in meta_by_field.items():
        qualified = f"{section}.{name}"
        if name in overrides and overrides[name] is not None:
            raw_value = overrides[name]
        else:
            raw_value = _env_value(meta.get("env", ()), environ)
            if raw_value is None:
                raw_value = getattr(defaults, name)

        try:
            value = _cast_value(qualified, raw_value, meta)
            _validate_constraints(qualified, value, meta)
        except (TypeError, ValueError) as exc:
            errors.append(str(exc))
            continue
        values[name] = value

    return values, errors


def _env_value(names, environ: Mapping[str, str]) -> Optional[str]:
    for name in names:
        value = environ.get(name)
        if value is not None and value != "":
            return value
    return None


_FLAG_WORDS = {
    "true": True, "yes": True, "on": True, "1": True,
    "false": False, "no": False, "off": False, "0": False,
}


def _cast_value(name: str, value: Any, meta: Dict[str, Any]) -> Any:
    """Coerce an env string or config scalar to the field's declared type."""
    type_name = meta["type"]
    if type_name == "str":
        if isinstance(value, bool):
            raise _type_error(name, type_name, value)
        text = str(value).strip()
        return text.lower() if meta.get("normalize") == "lower" else text

    if type_name == "bool":
        if isinstance(value, bool):
            return value
        flag = _FLAG_WORDS.get(str(value).strip().lower())
        if flag is None:
            raise _type_error(name, type_name, value)
        return flag

    if isinstance(value, bool):
        raise _type_error(name, type_name, value)
    try:
        if type_name == "int":
            return value if isinstance(value, int) else int(str(value).strip(), 10)
        if type_name == "float":
            return float(value.strip() if isinstance(value, str) else value)
    except (TypeError, ValueError) as exc:
        raise _type_error(name, type_name, value) from exc
    raise TypeError(f"Unsupported type declaration for '{name}'.")


def _type_error(name: str, type_name: str, value: Any) -> TypeError:
    label = TYPE_LABELS.get(type_name, type_name)
    return TypeError(
        f"Parameter '{name}' must be {label} (received {value!r} of type {type(value).__name__})."
    )


_BOUNDS = (
    ("min", lambda value, bound: value >= bound, "greater than or equal to"),
    ("min_exclusive", lambda value, bound: value > bound, "greater than"),
    ("max", lambda value, bound: value <= bound, "less than or equal to"),
)


def _validate_constraints(name: str, value: Any, meta: Dict[str, Any]) -> None:
    if meta.get("allow_blank") is False and value == "":
        raise ValueError(f"Parameter '{name}' cannot be empty.")

    choices = meta.get("choices")
    if choices and value not in choices:
        allowed = ", ".join(sorted(choices))
        raise ValueError(f"Parameter '{name}' must be one of: {allowed} (received {value!r}).")

    for key, holds, relation in _BOUNDS:
        bound = meta.get(key)
        if bound is not None and not holds(value, bound):
            raise ValueError(f"Parameter '{name}' must be {relation} {bound} (received {value}).")
