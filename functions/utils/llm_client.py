# functions/utils/llm_client.py
from __future__ import annotations

import os
import time
from functools import lru_cache
from typing import Any, Callable, Dict, Optional, cast

import httpx
import structlog

from functions.utils.common import ROOT, get_config_section, load_yaml_dict

logger = structlog.get_logger().bind(module="llm_client")

# -------- Optional: official Google SDK (preferred if present) ----------
try:  # pragma: no cover
    import google.generativeai as genai  # type: ignore
    try:
        from google.generativeai.types import (  # type: ignore
            GenerationConfig,
            RequestOptions,
        )
    except ImportError:  # very old SDKs may lack these
        GenerationConfig = None  # type: ignore
        RequestOptions = None  # type: ignore
except ImportError as import_err:  # pragma: no cover
    logger.info("google_generativeai_import_failed", error=str(import_err))
    genai = None  # type: ignore
    GenerationConfig = None  # type: ignore
    RequestOptions = None  # type: ignore

# -------- Optional: LangChain fallback -----------------------------------
try:  # pragma: no cover
    from langchain_google_genai import ChatGoogleGenerativeAI  # type: ignore
    from langchain_core.messages import HumanMessage  # type: ignore
except ImportError as import_err:  # pragma: no cover
    logger.info("langchain_google_genai_import_failed", error=str(import_err))
    ChatGoogleGenerativeAI = None  # type: ignore
    HumanMessage = None  # type: ignore


STUB_RESPONSE = "{}"
ERROR_MARKERS = ("[API_ERROR", "[STUB_ERROR", "STUB_ERROR:")


# ---------------------------------------------------------------------------
# String subclass that can carry usage metadata
# ---------------------------------------------------------------------------
class LLMText(str):
    """
    String that also exposes:
      - .usage: dict {prompt_tokens, completion_tokens, total_tokens}
      - .model: model name that produced the text
      - .raw: raw SDK / HTTP response object
    """

    def __new__(
        cls,
        text: str,
        usage: Optional[Dict[str, Any]] = None,
        model: Optional[str] = None,
        raw: Any = None,
    ) -> "LLMText":
        obj = cast(LLMText, str.__new__(cls, text or ""))
        obj.usage = usage or {}
        obj.model = model
        obj.raw = raw
        return obj


def _empty_usage() -> Dict[str, Any]:
    return {"prompt_tokens": None, "completion_tokens": None, "total_tokens": None}


def is_error_text(text: str) -> bool:
    """True if the client returned one of its error markers instead of model output."""
    return isinstance(text, str) and text.strip().startswith(ERROR_MARKERS)


def _safe_get_text(resp: Any) -> str:
    # 1) SDK exception when accessing resp.text (e.g., finish_reason=2)
    try:
        txt = getattr(resp, "text", None)
    except Exception:
        logger.warning("gemini_empty_text", reason="exception_on_text_accessor")
        return "[API_ERROR] No resp.text (finish_reason=2)"

    # 2) resp.text exists but empty/blank
    if not txt or not str(txt).strip():
        logger.warning("gemini_empty_text", reason="blank_text_returned")
        return "[API_ERROR] .text exists but is empty/blank"

    return str(txt).strip()


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------
@lru_cache(maxsize=1)
def _load_credentials() -> Dict[str, Any]:
    cred_path = ROOT / "parameters" / "credentials.yaml"
    if not cred_path.exists():
        return {}
    return load_yaml_dict(cred_path)


def _get_api_key() -> Optional[str]:
    """GOOGLE_API_KEY / GEMINI_API_KEY env vars, then parameters/credentials.yaml."""
    for var in ("GOOGLE_API_KEY", "GEMINI_API_KEY"):
        if os.environ.get(var):
            return os.environ[var]
    creds = _load_credentials()
    api_key = creds.get("GOOGLE_API_KEY") or creds.get("GEMINI_API_KEY") or creds.get("google_api_key")
    if not api_key:
        return None
    return str(api_key)


def _use_stub_llm() -> bool:
    """
    Decide whether to use the stub instead of Gemini.

    Order:
      1) parameters.yaml generation.use_stub → True
      2) No API key → True
      3) No usable SDKs → True
      4) Else False
    """
    gen_cfg = get_config_section("generation")
    if gen_cfg.get("use_stub") is True:
        logger.info("llm_stub_enabled_by_generation_config")
        return True

    if not _get_api_key():
        logger.info("llm_stub_enabled_no_api_key")
        return True

    if genai is None and (ChatGoogleGenerativeAI is None or HumanMessage is None):
        logger.info("llm_stub_enabled_no_sdk_available")
        return True

    return False


# ---------------------------------------------------------------------------
# Gemini
# ---------------------------------------------------------------------------
def _genai_call(
    prompt: str,
    *,
    model: str,
    temperature: float,
    top_p: float,
    max_output_tokens: int,
    timeout: float,
    max_retries: int,
) -> LLMText:
    """Real call via google-generativeai, JSON response mode, usage surfaced."""
    api_key = _get_api_key()
    if genai is None or not api_key:
        return LLMText(f"[STUB_ERROR:{model}] google-generativeai unavailable or no API key")

    genai.configure(api_key=api_key)
    gen_model = genai.GenerativeModel(model)

    cfg_kwargs = {
        "temperature": temperature,
        "top_p": top_p,
        "max_output_tokens": max_output_tokens,
        "response_mime_type": "application/json",
    }
    gen_cfg: Any = cast(Any, GenerationConfig)(**cfg_kwargs) if GenerationConfig is not None else cfg_kwargs
    req_opts: Any = cast(Any, RequestOptions)(timeout=timeout) if RequestOptions is not None else {"timeout": timeout}

    logger.info(
        "llm_real_call_start",
        module="google-generativeai",
        model=model,
        temperature=temperature,
        max_output_tokens=max_output_tokens,
        timeout=timeout,
        max_retries=max_retries,
    )

    last_error: Exception | None = None
    for attempt in range(1, max_retries + 1):
        try:
            resp = gen_model.generate_content(
                prompt,
                generation_config=gen_cfg,
                request_options=req_opts,
            )
            text = _safe_get_text(resp)

            um = getattr(resp, "usage_metadata", None)
            usage = {
                "prompt_tokens": getattr(um, "prompt_token_count", None) if um else None,
                "completion_tokens": getattr(um, "candidates_token_count", None) if um else None,
                "total_tokens": getattr(um, "total_token_count", None) if um else None,
            }

            logger.info(
                "llm_real_call_success",
                module="google-generativeai",
                model=model,
                result_preview=text[:200],
                total_tokens=usage["total_tokens"],
            )
            return LLMText(text, usage=usage, model=model, raw=resp)

        except Exception as e:  # pragma: no cover
            last_error = e
            logger.exception(
                "llm_real_call_failed",
                module="google-generativeai",
                error=str(e),
                attempt=attempt,
                model=model,
            )
            if attempt < max_retries:
                time.sleep(1.5 * attempt)

    error_preview = str(last_error)[:200] if last_error else "Unknown error"
    return LLMText(f"[STUB_ERROR:{model}] LLM call failed: {error_preview}", model=model)


def _langchain_call(
    prompt: str,
    *,
    model: str,
    temperature: float,
    top_p: float,
    max_output_tokens: int,
    timeout: float,
    max_retries: int,
) -> LLMText:
    """Fallback via langchain-google-genai (usage tokens usually unavailable)."""
    if ChatGoogleGenerativeAI is None or HumanMessage is None:
        return LLMText(f"[STUB_ERROR:{model}] LangChain client unavailable")

    chat_cls: Any = cast(Any, ChatGoogleGenerativeAI)
    chat = chat_cls(
        model=model,
        temperature=temperature,
        top_p=top_p,
        max_output_tokens=max_output_tokens,
        timeout=timeout,
        google_api_key=_get_api_key(),
    )

    logger.info("llm_real_call_start", module="langchain-google-genai", model=model)

    last_error: Exception | None = None
    for attempt in range(1, max_retries + 1):
        try:
            response = chat.invoke([HumanMessage(content=prompt)])
            text = (getattr(response, "content", "") or "").strip()
            logger.info(
                "llm_real_call_success",
                module="langchain-google-genai",
                model=model,
                result_preview=text[:200],
            )
            return LLMText(text, usage=_empty_usage(), model=model, raw=response)
        except Exception as e:  # pragma: no cover
            last_error = e
            logger.exception(
                "llm_real_call_failed",
                module="langchain-google-genai",
                error=str(e),
                attempt=attempt,
                model=model,
            )
            if attempt < max_retries:
                time.sleep(1.5 * attempt)

    error_preview = str(last_error)[:200] if last_error else "Unknown error"
    return LLMText(f"[STUB_ERROR:{model}] LLM call failed: {error_preview}", model=model)


def _resolve_call_params(kwargs: Dict[str, Any]) -> Dict[str, Any]:
    generation_cfg = get_config_section("generation")
    return {
        "model": kwargs.get("model", generation_cfg.get("model_name", "gemini-2.5-flash")),
        "temperature": float(kwargs.get("temperature", generation_cfg.get("temperature", 0.1))),
        "top_p": float(kwargs.get("top_p", generation_cfg.get("top_p", 0.8))),
        "max_output_tokens": int(kwargs.get("max_output_tokens", generation_cfg.get("max_tokens", 8192))),
        "timeout": float(kwargs.get("timeout", kwargs.get("timeout_seconds", generation_cfg.get("timeout_seconds", 45)))),
        "max_retries": max(1, int(kwargs.get("max_retries", generation_cfg.get("max_retries", 3)))),
    }


def call_llm(prompt: str, **kwargs: Any) -> LLMText:
    """Call Gemini and return generated text (string subclass with usage)."""
    params = _resolve_call_params(kwargs)
    model = params["model"]

    if _use_stub_llm():
        logger.info("llm_stub_call", model=model)
        return LLMText(STUB_RESPONSE, usage=_empty_usage(), model="stub")

    # Prefer official SDK (usage available)
    if genai is not None:
        return _genai_call(prompt, **params)

    return _langchain_call(prompt, **params)


# ---------------------------------------------------------------------------
# Ollama (local models over HTTP)
# ---------------------------------------------------------------------------
def _ollama_base_url() -> str:
    cfg = get_config_section("ollama")
    return (os.environ.get("OLLAMA_BASE_URL") or cfg.get("base_url") or "http://localhost:11434").rstrip("/")


def call_ollama(prompt: str, *, http_client: httpx.Client | None = None, **kwargs: Any) -> LLMText:
    """
    Call a local Ollama server (`POST /api/generate`, JSON output mode).

    Network errors and non-2xx responses are retried up to max_retries;
    after that an error marker is returned, like the Gemini path.
    """
    params = _resolve_call_params(kwargs)
    ollama_cfg = get_config_section("ollama")
    model = kwargs.get("model") or os.environ.get("OLLAMA_MODEL") or ollama_cfg.get("model", "llama2")

    payload = {
        "model": model,
        "prompt": prompt,
        "stream": False,
        "format": "json",
        "options": {
            "temperature": params["temperature"],
            "top_p": params["top_p"],
            "num_predict": params["max_output_tokens"],
        },
    }

    client = http_client or httpx.Client(base_url=_ollama_base_url(), timeout=params["timeout"])
    logger.info("llm_real_call_start", module="ollama", model=model, base_url=str(client.base_url))

    last_error: Exception | None = None
    try:
        for attempt in range(1, params["max_retries"] + 1):
            try:
                resp = client.post("/api/generate", json=payload, timeout=params["timeout"])
                resp.raise_for_status()
                body = resp.json()
                text = str(body.get("response", "")).strip()
                if not text:
                    return LLMText("[API_ERROR] Ollama returned an empty response", model=model, raw=body)

                prompt_tokens = body.get("prompt_eval_count")
                completion_tokens = body.get("eval_count")
                usage = {
                    "prompt_tokens": prompt_tokens,
                    "completion_tokens": completion_tokens,
                    "total_tokens": (
                        prompt_tokens + completion_tokens
                        if isinstance(prompt_tokens, int) and isinstance(completion_tokens, int)
                        else None
                    ),
                }
                logger.info(
                    "llm_real_call_success",
                    module="ollama",
                    model=model,
                    result_preview=text[:200],
                    total_tokens=usage["total_tokens"],
                )
                return LLMText(text, usage=usage, model=model, raw=body)
            except (httpx.HTTPError, ValueError) as e:
                last_error = e
                logger.warning(
                    "llm_real_call_failed",
                    module="ollama",
                    error=str(e),
                    attempt=attempt,
                    model=model,
                )
                if attempt < params["max_retries"]:
                    time.sleep(1.5 * attempt)
    finally:
        if http_client is None:
            client.close()

    error_preview = str(last_error)[:200] if last_error else "Unknown error"
    return LLMText(f"[STUB_ERROR:{model}] Ollama call failed: {error_preview}", model=model)


# Explicitly typed alias used by the engine
llm_client: Callable[..., LLMText] = call_llm
