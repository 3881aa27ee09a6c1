from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional
from urllib.parse import quote

from pydantic import BaseModel, Field, field_validator

from ..common.log import get_logger
from ..modules.adapters import ProviderKind, detect_provider_kind

logger = get_logger(__name__)

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant that summarizes content concisely."
DEFAULT_AZURE_API_VERSION = "2024-02-15-preview"


def normalize_azure_resource(resource: Optional[str]) -> str:
    """'https://foo.openai.azure.com/x' -> 'foo'."""
    raw = (resource or "").strip()
    if not raw:
        return ""
    raw = re.sub(r"^https?://", "", raw, flags=re.IGNORECASE)
    raw = re.sub(r"\.openai\.azure\.com.*$", "", raw, flags=re.IGNORECASE)
    raw = re.sub(r"/.*$", "", raw)
    return raw.strip()


def build_azure_url(
    *,
    api_url: Optional[str],
    resource: Optional[str],
    deployment: Optional[str],
    api_version: Optional[str] = None,
) -> str:
    """Azure chat completions URL; falls back to `api_url` without resource + deployment."""
    res = normalize_azure_resource(resource)
    dep = (deployment or "").strip()
    if not res or not dep:
        return (api_url or "").strip()
    version = (api_version or "").strip() or DEFAULT_AZURE_API_VERSION
    return (
        f"https://{res}.openai.azure.com/openai/deployments/{quote(dep, safe='')}"
        f"/chat/completions?api-version={quote(version, safe='')}"
    )


@dataclass(frozen=True)
class ProviderConfig:
    """Per-request snapshot of the provider settings. Never mutated mid-request."""

    kind: ProviderKind
    endpoint: str
    api_key: str
    model: str
    system_prompt: str

    def __repr__(self) -> str:
        # keep the key out of logs and tracebacks
        return (
            f"ProviderConfig(kind={self.kind.value!r}, endpoint={self.endpoint!r}, "
            f"model={self.model!r}, api_key={'***' if self.api_key else ''!r})"
        )


class ProviderSettings(BaseModel):
    """Settings the user saves on the options page."""

    provider: ProviderKind = ProviderKind.OPENAI
    api_url: Optional[str] = None
    api_key: Optional[str] = None
    model: str = ""
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    timestamp_prompt: str = ""
    include_timestamps: bool = False

    azure_resource: Optional[str] = None
    azure_deployment: Optional[str] = None
    azure_api_version: str = DEFAULT_AZURE_API_VERSION

    # dry run: show what would be sent, make no API call
    debug_mode: bool = False

    max_text_length: int = Field(default=100_000, ge=1)
    request_timeout_s: float = 30.0
    chunk_timeout_s: float = 30.0

    @field_validator("provider", mode="before")
    @classmethod
    def _legacy_provider_name(cls, v):
        if isinstance(v, ProviderKind) or v is None:
            return v or ProviderKind.OPENAI
        # older settings stored free text such as "Claude (Anthropic)"
        return detect_provider_kind(str(v))

    def resolved_endpoint(self) -> str:
        if self.provider is ProviderKind.AZURE:
            return build_azure_url(
                api_url=self.api_url,
                resource=self.azure_resource,
                deployment=self.azure_deployment,
                api_version=self.azure_api_version,
            )
        return (self.api_url or "").strip()

    def effective_system_prompt(self) -> str:
        prompt = self.system_prompt.strip() or DEFAULT_SYSTEM_PROMPT
        if self.include_timestamps and self.timestamp_prompt.strip():
            prompt += "\n\n" + self.timestamp_prompt.strip()
        return prompt

    def to_provider_config(self, *, system_prompt: Optional[str] = None) -> ProviderConfig:
        return ProviderConfig(
            kind=self.provider,
            endpoint=self.resolved_endpoint(),
            api_key=(self.api_key or "").strip(),
            model=self.model.strip(),
            system_prompt=system_prompt if system_prompt is not None else self.effective_system_prompt(),
        )


class RelayConfig(BaseModel):
    """Service configuration loaded from file + env overrides."""

    log_level: str = "INFO"
    log_json: bool = True

    llm: ProviderSettings = Field(default_factory=ProviderSettings)


_TRUTHY = ("1", "true", "yes", "on")

# env var -> (settings field, parser)
_LLM_ENV = {
    "RELAY_HUB_PROVIDER": ("provider", str),
    "RELAY_HUB_API_URL": ("api_url", str),
    "RELAY_HUB_API_KEY": ("api_key", str),
    "RELAY_HUB_MODEL": ("model", str),
    "RELAY_HUB_SYSTEM_PROMPT": ("system_prompt", str),
    "RELAY_HUB_TIMESTAMP_PROMPT": ("timestamp_prompt", str),
    "RELAY_HUB_INCLUDE_TIMESTAMPS": ("include_timestamps", lambda v: v.strip().lower() in _TRUTHY),
    "RELAY_HUB_AZURE_RESOURCE": ("azure_resource", str),
    "RELAY_HUB_AZURE_DEPLOYMENT": ("azure_deployment", str),
    "RELAY_HUB_AZURE_API_VERSION": ("azure_api_version", str),
    "RELAY_HUB_DEBUG_MODE": ("debug_mode", lambda v: v.strip().lower() in _TRUTHY),
    "RELAY_HUB_MAX_TEXT_LENGTH": ("max_text_length", int),
    "RELAY_HUB_REQUEST_TIMEOUT_S": ("request_timeout_s", float),
    "RELAY_HUB_CHUNK_TIMEOUT_S": ("chunk_timeout_s", float),
}


class ConfigManager:
    """Load configuration from a JSON file with environment overrides.

    - default < config file < environment variables
    - missing file: write defaults (best-effort)
    - corrupted file: back it up, then write defaults (best-effort)
    - never crash the service because of config issues
    """

    def __init__(self, default_path: Optional[Path] = None) -> None:
        repo_root = Path(__file__).resolve().parents[2]
        self.repo_root = repo_root
        self.default_path = default_path or repo_root / "config" / "relay_hub.json"

    def _default_data(self) -> dict:
        return RelayConfig().model_dump(mode="json")

    def _write_default(self, cfg_path: Path) -> None:
        try:
            cfg_path.parent.mkdir(parents=True, exist_ok=True)
            cfg_path.write_text(json.dumps(self._default_data(), indent=2, ensure_ascii=False), encoding="utf-8")
        except OSError as e:
            logger.warning("could not write default config", extra={"path": str(cfg_path), "error": str(e)})

    def config_path(self) -> Path:
        raw = os.getenv("RELAY_HUB_CONFIG_PATH")
        if not raw:
            return self.default_path
        p = Path(raw)
        # relative paths are taken from the repo root, not the process CWD
        return p if p.is_absolute() else self.repo_root / p

    def _read_file(self, cfg_path: Path) -> dict:
        if not cfg_path.exists():
            self._write_default(cfg_path)
            return self._default_data()
        try:
            data = json.loads(cfg_path.read_text(encoding="utf-8"))
            if not isinstance(data, dict):
                raise ValueError("config root must be an object")
            return data
        except (OSError, ValueError) as e:
            ts = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
            backup = cfg_path.with_suffix(cfg_path.suffix + f".bad-{ts}")
            logger.warning("corrupt config replaced by defaults", extra={"path": str(cfg_path), "error": str(e)})
            try:
                cfg_path.replace(backup)
            except OSError:
                logger.warning("could not back up corrupt config", extra={"path": str(cfg_path)})
            self._write_default(cfg_path)
            return self._default_data()

    def load(self) -> RelayConfig:
        data = self._read_file(self.config_path())

        if os.getenv("RELAY_HUB_LOG_LEVEL"):
            data["log_level"] = os.getenv("RELAY_HUB_LOG_LEVEL", "INFO").strip().upper()
        if os.getenv("RELAY_HUB_LOG_JSON") is not None:
            data["log_json"] = os.getenv("RELAY_HUB_LOG_JSON", "").strip().lower() in _TRUTHY

        llm_data = dict(data.get("llm") or {})
        for env_name, (key, parse) in _LLM_ENV.items():
            raw = os.getenv(env_name)
            if raw is None or raw.strip() == "":
                continue
            try:
                llm_data[key] = parse(raw)
            except ValueError:
                logger.warning("ignoring unparsable env override", extra={"env": env_name})
        data["llm"] = llm_data

        try:
            return RelayConfig.model_validate(data)
        except ValueError as e:
            # pydantic.ValidationError is a ValueError
            logger.warning("invalid config values, using defaults", extra={"error": str(e)})
            return RelayConfig()
