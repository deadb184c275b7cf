# functions/utils/common.py
"""
common utility helpers used across the CV extraction service.

This includes:
- YAML loading (parameters/parameters.yaml)
- Section accessors for generation / session / text config
- LLM client selection (Gemini, Ollama, or stub)
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Callable, Dict, Tuple

import structlog
import yaml

logger = structlog.get_logger().bind(module="utils.common")

# Root of project (two dirs up from utils/)
ROOT = Path(__file__).resolve().parents[2]

_PARAMETERS_CACHE: Dict[str, Any] | None = None

# ---------------------------------------------------------------------------
# yaml reader
# ---------------------------------------------------------------------------


def load_yaml_dict(path: str | Path) -> dict[str, Any]:
    """
    Load a YAML file into a dict. Accepts either a string path or a Path object.
    Returns {} on any error, and logs via structlog.
    """
    try:
        p = Path(path)
        if not p.exists():
            logger.error("yaml_file_not_found", path=str(p))
            return {}

        with p.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            logger.error("yaml_file_not_a_mapping", path=str(p))
            return {}

        return data
    except Exception as exc:
        logger.error("yaml_file_load_error", path=str(path), error=str(exc))
        return {}


# ---------------------------------------------------------------------------
# Full parameters.yaml loader (cached)
# ---------------------------------------------------------------------------


def parameters_path() -> Path:
    """PARAMETERS_YAML env var wins; otherwise <root>/parameters/parameters.yaml."""
    env_path = os.environ.get("PARAMETERS_YAML")
    if env_path:
        return Path(env_path)
    return ROOT / "parameters" / "parameters.yaml"


def load_all_parameters() -> Dict[str, Any]:
    """Load and cache the entire parameters.yaml file."""
    global _PARAMETERS_CACHE
    if _PARAMETERS_CACHE is not None:
        return _PARAMETERS_CACHE

    params_path = parameters_path()
    if not params_path.exists():
        logger.warning("parameters_yaml_missing", path=str(params_path))
        _PARAMETERS_CACHE = {}
        return _PARAMETERS_CACHE

    _PARAMETERS_CACHE = load_yaml_dict(params_path)
    return _PARAMETERS_CACHE


def reset_parameters_cache() -> None:
    """Drop the cached parameters (tests patch PARAMETERS_YAML and reload)."""
    global _PARAMETERS_CACHE
    _PARAMETERS_CACHE = None


def get_config_section(name: str) -> Dict[str, Any]:
    """Return one top-level mapping from parameters.yaml, or {} if absent/invalid."""
    section = load_all_parameters().get(name, {}) or {}
    if not isinstance(section, dict):
        logger.warning("config_section_not_dict", section=name, raw=section)
        return {}
    return section


def load_generation_params() -> Dict[str, Any]:
    return get_config_section("generation")


def load_session_params() -> Dict[str, Any]:
    """
    Session config with env overrides applied.

        session:
          store: memory | sql
          database_url: ...
          ttl_seconds: 7200
          cleanup_interval_seconds: 600
    """
    cfg = dict(get_config_section("session"))
    db_url = os.environ.get("CV_SESSION_DATABASE_URL")
    if db_url:
        cfg["database_url"] = db_url
        cfg.setdefault("store", "sql")
    cfg.setdefault("store", "memory")
    cfg.setdefault("ttl_seconds", 7200)
    cfg.setdefault("cleanup_interval_seconds", 600)
    return cfg


def map_engine_params(gen_cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Map parameters.yaml → CVExtractionEngine-compatible params."""
    params: Dict[str, Any] = {}

    if "model_name" in gen_cfg:
        params["model"] = gen_cfg["model_name"]
    if "temperature" in gen_cfg:
        params["temperature"] = gen_cfg["temperature"]
    if "top_p" in gen_cfg:
        params["top_p"] = gen_cfg["top_p"]
    if "max_tokens" in gen_cfg:
        params["max_output_tokens"] = gen_cfg["max_tokens"]
    if "timeout_seconds" in gen_cfg:
        params["timeout_seconds"] = gen_cfg["timeout_seconds"]
    if "step_timeout_seconds" in gen_cfg:
        params["step_timeout_seconds"] = gen_cfg["step_timeout_seconds"]
    if "max_retries" in gen_cfg:
        params["max_retries"] = gen_cfg["max_retries"]
    if "basic_info_text_chars" in gen_cfg:
        params["basic_info_text_chars"] = gen_cfg["basic_info_text_chars"]
    if "max_concurrent_llm_calls" in gen_cfg:
        params["llm_workers"] = gen_cfg["max_concurrent_llm_calls"]

    return params


# ---------------------------------------------------------------------------
# LLM client selection
# ---------------------------------------------------------------------------


def dummy_llm_client(prompt: str, **kwargs: Any) -> str:
    """
    Offline stand-in for the LLM: always answers with an empty JSON object.

    The extraction engine then relies on its deterministic fallbacks
    (name / contact detection from the CV text), which keeps local runs
    and demos working without an API key.
    """
    return "{}"


def resolve_provider(gen_cfg: Dict[str, Any] | None = None) -> str:
    """LLM_CLIENT_TYPE env var wins over generation.provider; default 'gemini'."""
    gen_cfg = gen_cfg if gen_cfg is not None else load_generation_params()
    provider = os.environ.get("LLM_CLIENT_TYPE") or gen_cfg.get("provider") or "gemini"
    return str(provider).strip().lower()


def select_llm_client_and_params() -> Tuple[Callable[..., Any], Dict[str, Any]]:
    """
    Decide which LLM client to use:
      - Stub (fast/no cost) when generation.use_stub is true
      - Gemini via llm_client.call_llm
      - Ollama via llm_client.call_ollama
    Unknown providers raise ValueError.
    """
    from functions.utils.llm_client import call_llm, call_ollama  # safe import

    gen_cfg = load_generation_params()
    engine_params = map_engine_params(gen_cfg)

    if gen_cfg.get("use_stub", False):
        logger.info("using_stub_llm_client")
        engine_params["model"] = "stub"
        return dummy_llm_client, engine_params

    provider = resolve_provider(gen_cfg)
    if provider == "gemini":
        logger.info("using_real_llm_client", provider=provider, model=engine_params.get("model"))
        return call_llm, engine_params
    if provider == "ollama":
        ollama_cfg = get_config_section("ollama")
        engine_params["model"] = os.environ.get("OLLAMA_MODEL") or ollama_cfg.get("model", "llama2")
        logger.info("using_real_llm_client", provider=provider, model=engine_params["model"])
        return call_ollama, engine_params

    raise ValueError(f"Unsupported LLM client type: {provider}")


__all__ = [
    "ROOT",
    "load_yaml_dict",
    "parameters_path",
    "load_all_parameters",
    "reset_parameters_cache",
    "get_config_section",
    "load_generation_params",
    "load_session_params",
    "map_engine_params",
    "dummy_llm_client",
    "resolve_provider",
    "select_llm_client_and_params",
]
