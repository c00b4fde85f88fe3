"""Load settings.yaml into typed dataclasses. Reports which providers have credentials."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

_SETTINGS_PATH = Path(__file__).parent / "settings.yaml"

RESPONSE_SHAPES = ("message", "flat")
AUTH_SCHEMES = ("bearer", "api-key", "none")
PROVIDER_KINDS = ("http", "simulated")


@dataclass
class ModelConfig:
    name: str
    endpoint: str
    model: str
    api_key_env: str | None
    timeout_sec: float
    max_tokens: int
    display_name: str = ""
    auth: str = "bearer"            # "bearer", "api-key", "none"
    stream: bool = True
    response_shape: str = "message"  # "message" (choices[]) or "flat" (top-level "response")
    headers: dict[str, str] = field(default_factory=dict)
    temperature: float = 0.7
    kind: str = "http"              # "http" or "simulated"


@dataclass
class DefaultsConfig:
    enabled_providers: list[str] = field(default_factory=list)
    request_timeout_sec: float = 30.0
    fallback_to_success: bool = True
    progress_chars: int = 2000


@dataclass
class AppConfig:
    defaults: DefaultsConfig
    models: dict[str, ModelConfig]
    available_providers: set[str] = field(default_factory=set)


def _choice(provider_name: str, key: str, value: str, allowed: tuple[str, ...]) -> str:
    if value not in allowed:
        raise ValueError(f"models.{provider_name}.{key}: {value!r} is not one of {', '.join(allowed)}")
    return value


def load_config(settings_path: Path = _SETTINGS_PATH) -> AppConfig:
    """Load and validate configuration from settings.yaml.

    Raises FileNotFoundError if settings file missing, ValueError for an
    unknown response shape, auth scheme or provider kind, or for a
    flat response shape combined with streaming.
    Logs which providers lack credentials but does not raise: an
    unconfigured provider still answers with an explanatory placeholder.
    """
    if not settings_path.exists():
        raise FileNotFoundError(f"Settings file not found: {settings_path}")

    with settings_path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    defaults_raw = raw.get("defaults", {})
    defaults = DefaultsConfig(
        enabled_providers=list(defaults_raw.get("enabled_providers", [])),
        request_timeout_sec=float(defaults_raw.get("request_timeout_sec", 30)),
        fallback_to_success=bool(defaults_raw.get("fallback_to_success", True)),
        progress_chars=int(defaults_raw.get("progress_chars", 2000)),
    )

    models: dict[str, ModelConfig] = {}
    available_providers: set[str] = set()

    for provider_name, model_raw in raw["models"].items():
        api_key_env = model_raw.get("api_key_env")
        model_cfg = ModelConfig(
            name=provider_name,
            display_name=str(model_raw.get("display_name", provider_name)),
            endpoint=model_raw.get("endpoint", ""),
            model=model_raw["model"],
            api_key_env=api_key_env,
            timeout_sec=float(model_raw.get("timeout_sec", defaults.request_timeout_sec)),
            max_tokens=int(model_raw.get("max_tokens", 2000)),
            auth=_choice(provider_name, "auth", model_raw.get("auth", "bearer"), AUTH_SCHEMES),
            stream=bool(model_raw.get("stream", True)),
            response_shape=_choice(
                provider_name, "response_shape", model_raw.get("response_shape", "message"), RESPONSE_SHAPES
            ),
            headers={str(k): str(v) for k, v in (model_raw.get("headers") or {}).items()},
            temperature=float(model_raw.get("temperature", 0.7)),
            kind=_choice(provider_name, "kind", model_raw.get("kind", "http"), PROVIDER_KINDS),
        )
        if model_cfg.response_shape == "flat" and model_cfg.stream and model_cfg.kind == "http":
            # flat backends stream newline-delimited JSON, not SSE data lines
            raise ValueError(f"models.{provider_name}: response_shape flat requires stream: false")
        models[provider_name] = model_cfg

        if model_cfg.auth == "none" or model_cfg.kind == "simulated":
            available_providers.add(provider_name)
            logger.info("Provider available (no credential needed): %s", provider_name)
        elif api_key_env and os.environ.get(api_key_env, "").strip():
            available_providers.add(provider_name)
            logger.info("Provider available: %s", provider_name)
        else:
            logger.info(
                "Provider unconfigured: %s (set %s in .env)",
                provider_name,
                api_key_env,
            )

    unknown = [p for p in defaults.enabled_providers if p not in models]
    if unknown:
        raise ValueError(f"defaults.enabled_providers names unknown providers: {', '.join(unknown)}")

    return AppConfig(
        defaults=defaults,
        models=models,
        available_providers=available_providers,
    )
