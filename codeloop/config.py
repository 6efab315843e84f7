"""
Typed configuration model with precedence-based loader.

Precedence (lowest to highest):
    defaults < config file (YAML) < profile < env vars < CLI flags < per-session overrides

The loaded ``CodeloopConfig`` is passed explicitly to every component that
needs it; nothing reads configuration from module state.
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml


# ---------------------------------------------------------------------------
# Section dataclasses
# ---------------------------------------------------------------------------

@dataclass
class LLMConfig:
    name: str = "openai"
    model: str = "gpt-4o"
    api_base: str = ""
    api_key_env: str = "OPENAI_API_KEY"
    max_output_tokens: int = 4_095
    timeout_seconds: int = 120
    stream: bool = True
    retry_initial_delay: float = 0.5
    retry_max_elapsed_seconds: float = 60.0


@dataclass
class EmbeddingsConfig:
    enabled: bool = True
    provider: str = "local"  # "local" | "openai"
    model: str = "text-embedding-3-small"
    api_base: str = ""
    api_key_env: str = "OPENAI_API_KEY"
    dimensions: int = 256


@dataclass
class ToolsConfig:
    disabled: list[str] = field(default_factory=list)
    timeout_seconds: float = 30.0


@dataclass
class PluginsConfig:
    enabled: bool = False
    allow_distributions: list[str] = field(default_factory=list)
    allow_tools: list[str] = field(default_factory=list)


@dataclass
class SessionConfig:
    history_db: str = "~/.codeloop/history.db"
    max_rounds: int = 20
    user_tag: str = "codeloop_user"
    retrieval_augmentation: bool = True
    # None means "send the whole history" instead of the nearest N turns.
    retrieval_count: int | None = 10
    chunk_token_limit: int = 4_096
    workspace_root: str = "."

    @property
    def workspace_path(self) -> Path:
        return Path(self.workspace_root).expanduser().resolve()


# ---------------------------------------------------------------------------
# Root config
# ---------------------------------------------------------------------------

@dataclass
class CodeloopConfig:
    llm: LLMConfig = field(default_factory=LLMConfig)
    embeddings: EmbeddingsConfig = field(default_factory=EmbeddingsConfig)
    tools: ToolsConfig = field(default_factory=ToolsConfig)
    plugins: PluginsConfig = field(default_factory=PluginsConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    profiles: dict[str, dict[str, Any]] = field(default_factory=dict)

    # ----- per-session overrides (applied last) ----
    _overrides: dict[str, Any] = field(default_factory=dict, repr=False)

    def set_override(self, dotpath: str, value: Any) -> None:
        """Set a per-session override using dot notation (e.g. 'llm.model')."""
        self._overrides[dotpath] = value
        _apply_dotpath(self, dotpath, value)

    def get_override(self, dotpath: str) -> Any | None:
        return self._overrides.get(dotpath)

    def to_dict(self) -> dict:
        d = asdict(self)
        d.pop("_overrides", None)
        return d


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _apply_dotpath(obj: Any, dotpath: str, value: Any) -> None:
    """Walk obj via dotpath and set the final attribute."""
    parts = dotpath.split(".")
    for part in parts[:-1]:
        obj = getattr(obj, part)
    if not hasattr(obj, parts[-1]):
        raise AttributeError(f"Unknown config key: {dotpath}")
    setattr(obj, parts[-1], value)


def _deep_merge(base: dict, overlay: dict) -> dict:
    """Recursively merge overlay into base, returning a new dict."""
    merged = dict(base)
    for k, v in overlay.items():
        if k in merged and isinstance(merged[k], dict) and isinstance(v, dict):
            merged[k] = _deep_merge(merged[k], v)
        else:
            merged[k] = v
    return merged


_NONE_WORDS = ("", "none", "null")


def _coerce(value: str, target_type: type | str) -> Any:
    """Coerce a string env value to the target type.

    ``"int?"`` marks an optional integer: ``none``/``null``/empty give ``None``.
    """
    if target_type == "int?":
        return None if value.strip().lower() in _NONE_WORDS else int(value)
    if target_type is bool:
        return value.lower() in ("1", "true", "yes", "on")
    if target_type is int:
        return int(value)
    if target_type is float:
        return float(value)
    if target_type is list:
        return [s.strip() for s in value.split(",") if s.strip()]
    return value


def _build_section(cls: type, raw: dict) -> Any:
    """Build a dataclass section from a raw dict, ignoring unknown keys."""
    valid_fields = {f.name for f in fields(cls)}
    filtered = {k: v for k, v in (raw or {}).items() if k in valid_fields}
    return cls(**filtered)


# ---------------------------------------------------------------------------
# ENV var mapping
# ---------------------------------------------------------------------------

_ENV_MAP: dict[str, tuple[str, type | str]] = {
    "CODELOOP_LLM_NAME":               ("llm.name", str),
    "CODELOOP_LLM_MODEL":              ("llm.model", str),
    "CODELOOP_LLM_API_BASE":           ("llm.api_base", str),
    "CODELOOP_LLM_API_KEY_ENV":        ("llm.api_key_env", str),
    "CODELOOP_LLM_MAX_OUTPUT":         ("llm.max_output_tokens", int),
    "CODELOOP_LLM_TIMEOUT":            ("llm.timeout_seconds", int),
    "CODELOOP_LLM_STREAM":             ("llm.stream", bool),
    "CODELOOP_LLM_RETRY_MAX_ELAPSED":  ("llm.retry_max_elapsed_seconds", float),
    "CODELOOP_EMBEDDINGS_ENABLED":     ("embeddings.enabled", bool),
    "CODELOOP_EMBEDDINGS_PROVIDER":    ("embeddings.provider", str),
    "CODELOOP_EMBEDDINGS_MODEL":       ("embeddings.model", str),
    "CODELOOP_EMBEDDINGS_API_BASE":    ("embeddings.api_base", str),
    "CODELOOP_TOOLS_DISABLED":         ("tools.disabled", list),
    "CODELOOP_TOOLS_TIMEOUT":          ("tools.timeout_seconds", float),
    "CODELOOP_PLUGINS_ENABLED":        ("plugins.enabled", bool),
    "CODELOOP_SESSION_HISTORY_DB":     ("session.history_db", str),
    "CODELOOP_SESSION_MAX_ROUNDS":     ("session.max_rounds", int),
    "CODELOOP_SESSION_USER_TAG":       ("session.user_tag", str),
    "CODELOOP_SESSION_RAG":            ("session.retrieval_augmentation", bool),
    "CODELOOP_SESSION_RAG_COUNT":      ("session.retrieval_count", "int?"),
    "CODELOOP_SESSION_CHUNK_TOKENS":   ("session.chunk_token_limit", int),
    "CODELOOP_SESSION_WORKSPACE":      ("session.workspace_root", str),
}


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: dict[str, Any] | None = None,
) -> CodeloopConfig:
    """
    Build a CodeloopConfig by layering sources in precedence order:

        defaults  <  config file  <  profile  <  env vars  <  CLI flags

    Parameters
    ----------
    config_path : path to YAML config file (optional)
    profile : name of a profile to apply from the config file
    cli_overrides : dict of dotpath -> value CLI flag overrides
    """
    raw: dict[str, Any] = {}

    # --- 1. Config file ---
    if config_path is not None:
        p = Path(config_path).expanduser()
        if p.is_file():
            with p.open("r", encoding="utf-8") as f:
                file_data = yaml.safe_load(f) or {}
            if not isinstance(file_data, dict):
                raise ValueError(f"Config file {p} must contain a mapping")
            raw = _deep_merge(raw, file_data)

    # --- 2. Profile overlay ---
    if profile:
        profile_data = (raw.get("profiles") or {}).get(profile)
        if profile_data is None:
            raise ValueError(f"Unknown config profile: {profile}")
        raw = _deep_merge(raw, profile_data)

    # --- Build sections from raw ---
    cfg = CodeloopConfig(
        llm=_build_section(LLMConfig, raw.get("llm", {})),
        embeddings=_build_section(EmbeddingsConfig, raw.get("embeddings", {})),
        tools=_build_section(ToolsConfig, raw.get("tools", {})),
        plugins=_build_section(PluginsConfig, raw.get("plugins", {})),
        session=_build_section(SessionConfig, raw.get("session", {})),
        profiles=raw.get("profiles", {}),
    )

    # --- 3. Env var overrides ---
    for env_var, (dotpath, target_type) in _ENV_MAP.items():
        val = os.environ.get(env_var)
        if val is not None:
            _apply_dotpath(cfg, dotpath, _coerce(val, target_type))

    # --- 4. CLI flag overrides ---
    if cli_overrides:
        for dotpath, value in cli_overrides.items():
            _apply_dotpath(cfg, dotpath, value)

    return cfg
