"""obsidx configuration loader.

Priority (high → low):
  1. CLI flags           (handled at call site, not in this module)
  2. Environment variables  (OBSIDX_EMBEDDING_MODEL, OBSIDX_EXPANSION_MODEL,
                             OBSIDX_RERANK_MODEL)
  3. Per-index obsidx.yaml  (inside the index directory, next to index.db)
  4. Global ~/.obsidx/config.yaml  (model defaults only, no API keys)
  5. Hardcoded defaults

Global config must never contain API keys; use environment variables instead.
All YAML reads use yaml.safe_load(), never yaml.load().
"""

from __future__ import annotations

import dataclasses
import os
import re
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_GLOBAL_CONFIG_DIR: Path = Path.home() / ".obsidx"
_GLOBAL_CONFIG_PATH: Path = _GLOBAL_CONFIG_DIR / "config.yaml"
PROJECT_CONFIG_NAME: str = "obsidx.yaml"
DB_NAME: str = "index.db"
DEFAULT_INDEX_DIR: Path = Path(".obsidx")

# Fields that suggest an API key: forbidden in global config.
# Does NOT match legitimate config keys like target_tokens, max_tokens, rrf_k.
_API_KEY_RE: re.Pattern[str] = re.compile(
    r"api[_\-]?(?:key|secret)"  # api_key, api-key, api_secret, apikey
    r"|_token$"                  # github_token, access_token, auth_token (suffix)
    r"|^token$"                  # exactly "token" (standalone)
    r"|_secret$"                 # my_secret, client_secret (suffix)
    r"|^secret$"                 # exactly "secret" (standalone)
    r"|passw(?:ord|d)"           # password, passwd
    r"|credential",              # credential, credentials
    re.IGNORECASE,
)

# Known top-level sections: unknown keys produce a warning
_KNOWN_SECTIONS: frozenset[str] = frozenset(
    [
        "collections",
        "embedding",
        "chunking",
        "retrieval",
        "expansion",
        "rerank",
        "models",
        "indexing",
    ]
)

EXPANSION_MODES: frozenset[str] = frozenset(["model", "heuristic", "none"])


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ConfigError(ValueError):
    """Raised when a config file contains an invalid or forbidden value."""


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass
class CollectionCfg:
    """One indexed directory (obsidx.yaml: collections.<name>:)."""

    path: str = ""
    include: list[str] = field(default_factory=lambda: ["*.md"])
    exclude: list[str] = field(default_factory=list)


@dataclass
class EmbeddingCfg:
    """Embedding model and prompt templates (obsidx.yaml: embedding:).

    Query and document templates differ on purpose: asymmetric embedding
    models were trained with distinct prompts, and mixing them up silently
    degrades relevance.
    """

    model: str = "openai/text-embedding-3-small"
    query_template: str = "task: search result | query: {query}"
    document_template: str = "title: {title} | text: {text}"
    workers: int = 4


@dataclass
class ChunkingCfg:
    """Chunker parameters (obsidx.yaml: chunking:).

    tokenizer: 'approx' (4 chars per token) or 'model' (litellm token counter
    for the embedding model).
    """

    target_tokens: int = 900
    overlap: float = 0.15
    tolerance: float = 0.15
    tokenizer: str = "approx"


@dataclass
class RetrievalCfg:
    """Hybrid query pipeline configuration (obsidx.yaml: retrieval:)."""

    top_k: int = 10
    rrf_k: int = 60
    original_weight: float = 2.0
    candidate_limit: int = 40
    blend_alpha: float = 0.7
    strong_signal: float = 0.85
    strong_gap: float = 0.15


@dataclass
class ExpansionCfg:
    """Query expansion (obsidx.yaml: expansion:). mode: model | heuristic | none."""

    mode: str = "model"
    model: str = "openai/gpt-4o-mini"
    max_variants: int = 2


@dataclass
class RerankCfg:
    """Cross-encoder reranking (obsidx.yaml: rerank:)."""

    enabled: bool = True
    model: str = "cohere/rerank-english-v3.0"
    top_n: int = 30


@dataclass
class ModelsCfg:
    """Shared model-call limits (obsidx.yaml: models:)."""

    timeout: float = 30.0
    num_retries: int = 2


@dataclass
class IndexingCfg:
    """Index run settings (obsidx.yaml: indexing:)."""

    workers: int = 4


@dataclass
class ObsidxConfig:
    """Root configuration object, built by load_config() from merged YAML layers."""

    collections: dict[str, CollectionCfg] = field(default_factory=dict)
    embedding: EmbeddingCfg = field(default_factory=EmbeddingCfg)
    chunking: ChunkingCfg = field(default_factory=ChunkingCfg)
    retrieval: RetrievalCfg = field(default_factory=RetrievalCfg)
    expansion: ExpansionCfg = field(default_factory=ExpansionCfg)
    rerank: RerankCfg = field(default_factory=RerankCfg)
    models: ModelsCfg = field(default_factory=ModelsCfg)
    indexing: IndexingCfg = field(default_factory=IndexingCfg)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _check_no_api_keys(data: dict[str, Any], source: Path) -> None:
    """Raise ConfigError if *data* contains any API-key-like key names.

    Global config must never store credentials; they belong in env vars.
    """

    def _scan(obj: Any, path: str) -> None:
        if isinstance(obj, dict):
            for k, v in obj.items():
                full = f"{path}.{k}" if path else k
                if _API_KEY_RE.search(str(k)):
                    raise ConfigError(
                        f"Global config '{source}' contains a forbidden key '{full}'.\n"
                        f"  API keys must be set via environment variables, not config files.\n"
                        f"  Remove '{full}' from {source.name} and use:\n"
                        f"    export {str(k).upper().replace('-', '_')}=<value>"
                    )
                _scan(v, full)

    _scan(data, "")


def _warn_unknown_keys(data: dict[str, Any], source: Path) -> None:
    """Emit a UserWarning for unrecognised top-level keys."""
    for key in data:
        if key not in _KNOWN_SECTIONS:
            warnings.warn(
                f"Unknown config key '{key}' in '{source}': ignored.",
                UserWarning,
                stacklevel=4,
            )


def _validate(cfg: ObsidxConfig) -> None:
    if cfg.expansion.mode not in EXPANSION_MODES:
        raise ConfigError(
            f"expansion.mode must be one of {sorted(EXPANSION_MODES)}, got '{cfg.expansion.mode}'"
        )
    if cfg.chunking.tokenizer not in ("approx", "model"):
        raise ConfigError(
            f"chunking.tokenizer must be 'approx' or 'model', got '{cfg.chunking.tokenizer}'"
        )
    if not 0.0 <= cfg.retrieval.blend_alpha <= 1.0:
        raise ConfigError(f"retrieval.blend_alpha must be in [0, 1], got {cfg.retrieval.blend_alpha}")
    if cfg.retrieval.rrf_k < 1:
        raise ConfigError(f"retrieval.rrf_k must be >= 1, got {cfg.retrieval.rrf_k}")
    if cfg.chunking.target_tokens < 1:
        raise ConfigError(f"chunking.target_tokens must be >= 1, got {cfg.chunking.target_tokens}")
    if not 0.0 <= cfg.chunking.overlap < 1.0:
        raise ConfigError(f"chunking.overlap must be in [0, 1), got {cfg.chunking.overlap}")


# ---------------------------------------------------------------------------
# Merge + build
# ---------------------------------------------------------------------------


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return a new dict that is *base* deep-merged with *override*."""
    result = dict(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


def _parse_section(raw: Any, defaults: Any, section: str) -> Any:
    """Overlay *raw* onto the dataclass *defaults*, coercing to each field's type."""
    if not isinstance(raw, dict):
        raise ConfigError(f"Config section '{section}' must be a mapping")
    values: dict[str, Any] = {}
    for f in dataclasses.fields(defaults):
        if f.name not in raw:
            continue
        default = getattr(defaults, f.name)
        value = raw[f.name]
        try:
            if isinstance(default, bool):
                values[f.name] = bool(value)
            elif isinstance(default, list):
                values[f.name] = [str(v) for v in (value or [])]
            elif default is None:
                values[f.name] = value
            else:
                values[f.name] = type(default)(value)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid value for {section}.{f.name}: {value!r}") from exc
    return dataclasses.replace(defaults, **values)


def _cfg_from_dict(data: dict[str, Any]) -> ObsidxConfig:
    """Build an *ObsidxConfig* from a merged raw YAML dict."""
    cfg = ObsidxConfig()

    collections = data.get("collections") or {}
    if not isinstance(collections, dict):
        raise ConfigError("Config section 'collections' must be a mapping of name -> path")
    for name, raw in collections.items():
        if isinstance(raw, str):
            raw = {"path": raw}
        cfg.collections[str(name)] = _parse_section(raw, CollectionCfg(), f"collections.{name}")

    for section in ("embedding", "chunking", "retrieval", "expansion", "rerank", "models", "indexing"):
        if section in data:
            setattr(cfg, section, _parse_section(data[section], getattr(cfg, section), section))

    return cfg


def _apply_env_overrides(cfg: ObsidxConfig) -> ObsidxConfig:
    """Apply OBSIDX_* environment variable overrides (layer 2)."""
    if model := os.environ.get("OBSIDX_EMBEDDING_MODEL"):
        cfg.embedding.model = model
    if model := os.environ.get("OBSIDX_EXPANSION_MODEL"):
        cfg.expansion.model = model
    if model := os.environ.get("OBSIDX_RERANK_MODEL"):
        cfg.rerank.model = model
    return cfg


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(
    index_dir: Path | None = None,
    *,
    global_config_path: Path | None = None,
) -> ObsidxConfig:
    """Load and return a merged *ObsidxConfig*.

    Applies layers in order: global → per-index → env vars.
    CLI flag overrides must be applied by the caller after this function.

    Args:
        index_dir: Index directory holding *obsidx.yaml*. Defaults to ./.obsidx.
        global_config_path: Override the global config path (for testing).

    Raises:
        ConfigError: If global config contains API-key-like fields or a value
            is invalid.
    """
    global_path = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    search_dir = index_dir if index_dir is not None else DEFAULT_INDEX_DIR

    merged: dict[str, Any] = {}

    # Layer 1: global config
    if global_path.exists():
        raw_global = yaml.safe_load(global_path.read_text(encoding="utf-8")) or {}
        _check_no_api_keys(raw_global, global_path)
        _warn_unknown_keys(raw_global, global_path)
        merged = _deep_merge(merged, raw_global)

    # Layer 2: per-index config
    project_cfg_path = search_dir / PROJECT_CONFIG_NAME
    if project_cfg_path.exists():
        raw_project = yaml.safe_load(project_cfg_path.read_text(encoding="utf-8")) or {}
        _warn_unknown_keys(raw_project, project_cfg_path)
        merged = _deep_merge(merged, raw_project)

    cfg = _cfg_from_dict(merged)

    # Layer 3: env var overrides
    cfg = _apply_env_overrides(cfg)

    _validate(cfg)
    return cfg


def write_project_config(index_dir: Path, collections: dict[str, CollectionCfg]) -> Path:
    """Write the ``collections:`` section of ``obsidx.yaml``, keeping other sections."""
    index_dir.mkdir(parents=True, exist_ok=True)
    target = index_dir / PROJECT_CONFIG_NAME
    data: dict[str, Any] = {}
    if target.exists():
        data = yaml.safe_load(target.read_text(encoding="utf-8")) or {}
    data["collections"] = {
        name: {"path": c.path, "include": list(c.include), "exclude": list(c.exclude)}
        for name, c in collections.items()
    }
    header = (
        "# obsidx index configuration.\n"
        "# Model defaults live in ~/.obsidx/config.yaml; API keys in environment variables.\n"
    )
    target.write_text(header + yaml.safe_dump(data, sort_keys=False), encoding="utf-8")
    return target


def ensure_global_config(
    global_config_path: Path | None = None,
) -> Path:
    """Create ``~/.obsidx/config.yaml`` with defaults if it does not exist.

    Creates parent directory with mode 0o700 and the config file with
    mode 0o600 (owner-readable only).

    Args:
        global_config_path: Override path (for testing).

    Returns:
        Path to the global config file.
    """
    target = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    target.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

    if not target.exists():
        content = (
            "# obsidx global configuration: model defaults only.\n"
            "# NEVER store API keys here. Use environment variables:\n"
            "#   export OPENAI_API_KEY=sk-...\n"
            "#   export COHERE_API_KEY=...\n"
            "\n"
            "embedding:\n"
            "  model: openai/text-embedding-3-small\n"
            "\n"
            "expansion:\n"
            "  model: openai/gpt-4o-mini\n"
            "\n"
            "rerank:\n"
            "  model: cohere/rerank-english-v3.0\n"
        )
        target.write_text(content, encoding="utf-8")
        target.chmod(0o600)

    return target
