"""Tests for the obsidx config loader."""

from __future__ import annotations

import stat
import warnings
from pathlib import Path

import pytest
import yaml

from obsidx.config import (
    PROJECT_CONFIG_NAME,
    CollectionCfg,
    ConfigError,
    ensure_global_config,
    load_config,
    write_project_config,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _write_yaml(path: Path, data: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.dump(data), encoding="utf-8")


@pytest.fixture
def index_dir(tmp_path: Path) -> Path:
    path = tmp_path / ".obsidx"
    path.mkdir()
    return path


@pytest.fixture
def no_global(tmp_path: Path) -> Path:
    return tmp_path / "nonexistent" / "config.yaml"


@pytest.fixture(autouse=True)
def _clear_model_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for var in ("OBSIDX_EMBEDDING_MODEL", "OBSIDX_EXPANSION_MODEL", "OBSIDX_RERANK_MODEL"):
        monkeypatch.delenv(var, raising=False)


# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------


def test_load_config_defaults_no_files(index_dir: Path, no_global: Path) -> None:
    """No config files → all hardcoded defaults."""
    cfg = load_config(index_dir, global_config_path=no_global)

    assert cfg.collections == {}
    assert cfg.embedding.model == "openai/text-embedding-3-small"
    assert cfg.embedding.query_template != cfg.embedding.document_template
    assert cfg.chunking.target_tokens == 900
    assert cfg.chunking.overlap == 0.15
    assert cfg.retrieval.rrf_k == 60
    assert cfg.retrieval.original_weight == 2.0
    assert cfg.expansion.mode == "model"
    assert cfg.rerank.enabled is True


# ---------------------------------------------------------------------------
# Layering
# ---------------------------------------------------------------------------


def test_global_overrides_defaults(index_dir: Path, tmp_path: Path) -> None:
    global_cfg = tmp_path / "config.yaml"
    _write_yaml(global_cfg, {"rerank": {"model": "cohere/rerank-v3.5"}})

    cfg = load_config(index_dir, global_config_path=global_cfg)
    assert cfg.rerank.model == "cohere/rerank-v3.5"
    # Other defaults unchanged
    assert cfg.rerank.top_n == 30


def test_index_config_overrides_global(index_dir: Path, tmp_path: Path) -> None:
    global_cfg = tmp_path / "config.yaml"
    _write_yaml(global_cfg, {"embedding": {"model": "openai/text-embedding-3-large", "workers": 8}})
    _write_yaml(index_dir / PROJECT_CONFIG_NAME, {"embedding": {"model": "ollama/nomic-embed-text"}})

    cfg = load_config(index_dir, global_config_path=global_cfg)
    assert cfg.embedding.model == "ollama/nomic-embed-text"
    # Deep merge keeps the global value the index file does not set
    assert cfg.embedding.workers == 8


def test_empty_and_null_files(index_dir: Path, tmp_path: Path) -> None:
    global_cfg = tmp_path / "config.yaml"
    global_cfg.write_text("", encoding="utf-8")
    (index_dir / PROJECT_CONFIG_NAME).write_text("~\n", encoding="utf-8")

    cfg = load_config(index_dir, global_config_path=global_cfg)
    assert cfg.retrieval.top_k == 10


def test_collections_full_and_short_form(index_dir: Path, no_global: Path) -> None:
    _write_yaml(
        index_dir / PROJECT_CONFIG_NAME,
        {
            "collections": {
                "vault": {"path": "/notes", "exclude": ["templates/**"]},
                "journal": "/journal",
            }
        },
    )
    cfg = load_config(index_dir, global_config_path=no_global)

    assert cfg.collections["vault"] == CollectionCfg(path="/notes", exclude=["templates/**"])
    assert cfg.collections["journal"].path == "/journal"
    assert cfg.collections["journal"].include == ["*.md"]


def test_values_are_coerced_to_field_types(index_dir: Path, no_global: Path) -> None:
    _write_yaml(index_dir / PROJECT_CONFIG_NAME, {"retrieval": {"top_k": "5", "blend_alpha": 1}})

    cfg = load_config(index_dir, global_config_path=no_global)
    assert cfg.retrieval.top_k == 5
    assert isinstance(cfg.retrieval.blend_alpha, float)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "section",
    [
        {"expansion": {"mode": "magic"}},
        {"chunking": {"tokenizer": "words"}},
        {"chunking": {"overlap": 1.0}},
        {"chunking": {"target_tokens": 0}},
        {"retrieval": {"blend_alpha": 1.5}},
        {"retrieval": {"rrf_k": 0}},
        {"retrieval": {"top_k": "many"}},
        {"retrieval": ["not", "a", "mapping"]},
        {"collections": ["notes"]},
    ],
)
def test_invalid_values_raise(index_dir: Path, no_global: Path, section: dict) -> None:
    _write_yaml(index_dir / PROJECT_CONFIG_NAME, section)
    with pytest.raises(ConfigError):
        load_config(index_dir, global_config_path=no_global)


# ---------------------------------------------------------------------------
# API key validation
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "bad_key",
    ["api_key", "apikey", "OPENAI_API_KEY", "secret", "password", "token", "api-key"],
)
def test_global_config_rejects_api_key_fields(index_dir: Path, tmp_path: Path, bad_key: str) -> None:
    """Global config containing API key-like field names raises ConfigError."""
    global_cfg = tmp_path / "config.yaml"
    global_cfg.write_text(f"{bad_key}: sk-abc123\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="forbidden key"):
        load_config(index_dir, global_config_path=global_cfg)


def test_global_config_rejects_nested_api_key(index_dir: Path, tmp_path: Path) -> None:
    global_cfg = tmp_path / "config.yaml"
    _write_yaml(global_cfg, {"embedding": {"api_key": "sk-secret"}})

    with pytest.raises(ConfigError, match="forbidden key"):
        load_config(index_dir, global_config_path=global_cfg)


def test_token_counts_are_not_mistaken_for_keys(index_dir: Path, tmp_path: Path) -> None:
    global_cfg = tmp_path / "config.yaml"
    _write_yaml(global_cfg, {"chunking": {"target_tokens": 400}})

    cfg = load_config(index_dir, global_config_path=global_cfg)
    assert cfg.chunking.target_tokens == 400


# ---------------------------------------------------------------------------
# Unknown key warnings
# ---------------------------------------------------------------------------


def test_unknown_top_level_key_warns(index_dir: Path, tmp_path: Path) -> None:
    """Unknown top-level key emits UserWarning (not error)."""
    global_cfg = tmp_path / "config.yaml"
    _write_yaml(global_cfg, {"unknown_section": {"foo": "bar"}})

    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        cfg = load_config(index_dir, global_config_path=global_cfg)

    assert any("unknown_section" in str(w.message) for w in caught)
    assert cfg.retrieval.top_k == 10


# ---------------------------------------------------------------------------
# Environment variable overrides
# ---------------------------------------------------------------------------


def test_env_vars_override_config_files(
    index_dir: Path, no_global: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    _write_yaml(index_dir / PROJECT_CONFIG_NAME, {"embedding": {"model": "openai/text-embedding-3-large"}})
    monkeypatch.setenv("OBSIDX_EMBEDDING_MODEL", "ollama/nomic-embed-text")
    monkeypatch.setenv("OBSIDX_EXPANSION_MODEL", "ollama/qwen3")
    monkeypatch.setenv("OBSIDX_RERANK_MODEL", "jina_ai/jina-reranker-v2")

    cfg = load_config(index_dir, global_config_path=no_global)
    assert cfg.embedding.model == "ollama/nomic-embed-text"
    assert cfg.expansion.model == "ollama/qwen3"
    assert cfg.rerank.model == "jina_ai/jina-reranker-v2"


def test_env_var_absent_does_not_override(index_dir: Path, no_global: Path) -> None:
    _write_yaml(index_dir / PROJECT_CONFIG_NAME, {"expansion": {"model": "openai/gpt-4o"}})

    cfg = load_config(index_dir, global_config_path=no_global)
    assert cfg.expansion.model == "openai/gpt-4o"


# ---------------------------------------------------------------------------
# write_project_config
# ---------------------------------------------------------------------------


def test_write_project_config_round_trips(index_dir: Path, no_global: Path) -> None:
    collections = {"notes": CollectionCfg(path="/vault", exclude=[".trash/**"])}
    target = write_project_config(index_dir, collections)

    assert target == index_dir / PROJECT_CONFIG_NAME
    cfg = load_config(index_dir, global_config_path=no_global)
    assert cfg.collections == collections


def test_write_project_config_keeps_other_sections(index_dir: Path, no_global: Path) -> None:
    _write_yaml(index_dir / PROJECT_CONFIG_NAME, {"rerank": {"enabled": False}})

    write_project_config(index_dir, {"notes": CollectionCfg(path="/vault")})

    cfg = load_config(index_dir, global_config_path=no_global)
    assert cfg.rerank.enabled is False
    assert set(cfg.collections) == {"notes"}


# ---------------------------------------------------------------------------
# ensure_global_config
# ---------------------------------------------------------------------------


def test_ensure_global_config_creates_file(tmp_path: Path) -> None:
    target = tmp_path / ".obsidx" / "config.yaml"
    result = ensure_global_config(global_config_path=target)

    assert result == target
    content = target.read_text(encoding="utf-8")
    parsed = yaml.safe_load(content)
    assert set(parsed) == {"embedding", "expansion", "rerank"}

    # The defaults file itself must load cleanly as a global config
    cfg = load_config(tmp_path / "index", global_config_path=target)
    assert cfg.embedding.model == "openai/text-embedding-3-small"


def test_ensure_global_config_file_mode(tmp_path: Path) -> None:
    """ensure_global_config creates file with mode 0o600 (owner-only)."""
    target = tmp_path / ".obsidx" / "config.yaml"
    ensure_global_config(global_config_path=target)

    assert stat.S_IMODE(target.stat().st_mode) == 0o600


def test_ensure_global_config_idempotent(tmp_path: Path) -> None:
    target = tmp_path / ".obsidx" / "config.yaml"
    ensure_global_config(global_config_path=target)
    target.write_text("# custom\nexpansion:\n  mode: none\n", encoding="utf-8")

    ensure_global_config(global_config_path=target)
    assert "mode: none" in target.read_text(encoding="utf-8")


# ---------------------------------------------------------------------------
# yaml.safe_load enforcement (regression guard)
# ---------------------------------------------------------------------------


def test_config_does_not_execute_yaml_load(index_dir: Path, tmp_path: Path) -> None:
    """Python object tags are rejected by safe_load rather than executed."""
    global_cfg = tmp_path / "config.yaml"
    global_cfg.write_text("!!python/object/apply:os.system ['echo pwned']\n", encoding="utf-8")

    with pytest.raises(yaml.YAMLError):
        load_config(index_dir, global_config_path=global_cfg)
