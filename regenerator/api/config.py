from __future__ import annotations

import os
from dataclasses import dataclass, fields
from typing import Any, Dict
from urllib.parse import urlparse

DEFAULT_LLM_PROVIDER = "openai"
DEFAULT_LLM_TIMEOUT_SECONDS = 120
DEFAULT_LLM_MAX_TOKENS = 8192
DEFAULT_LLM_RETRIES = 3
DEFAULT_LLM_RETRY_BACKOFF_SECONDS = 2.0
DEFAULT_CONCURRENCY = 2
DEFAULT_JOB_TIMEOUT_SECONDS = 900
DEFAULT_MESH_SIZE = 50
DEFAULT_AFFILIATE_TAG = "tag-20"
DEFAULT_CACHE_TTL_SECONDS = 24 * 60 * 60
DEFAULT_WP_TIMEOUT_SECONDS = 30


class ConfigError(RuntimeError):
    pass


def read_str_env(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


def read_int_env(name: str, default: int) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        return int(raw)
    except ValueError:
        return default


def read_float_env(name: str, default: float) -> float:
    raw = os.getenv(name, str(default)).strip()
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class ScoringPolicy:
    """Penalty thresholds for the SEO/AEO health scores.

    Entity density is a percentage (0..100) of capitalised words, so
    ``min_entity_density=2.0`` means two proper-noun-like words per hundred.
    """

    stale_after_days: int = 365
    stale_penalty: int = 20
    min_word_count: int = 1000
    thin_content_penalty: int = 15
    min_internal_links: int = 3
    orphan_penalty: int = 15
    min_external_links: int = 2
    no_citations_penalty: int = 10
    seo_no_schema_penalty: int = 10

    no_verdict_penalty: int = 20
    no_table_penalty: int = 15
    no_list_penalty: int = 10
    min_entity_density: float = 2.0
    low_entity_penalty: int = 15
    aeo_no_schema_penalty: int = 25

    opportunity_min_words: int = 500
    opportunity_reference_words: int = 1500

    @classmethod
    def from_env(cls) -> "ScoringPolicy":
        values: Dict[str, Any] = {}
        for item in fields(cls):
            env_name = f"REGEN_SCORE_{item.name.upper()}"
            default = item.default
            if isinstance(default, float):
                values[item.name] = read_float_env(env_name, default)
            else:
                values[item.name] = read_int_env(env_name, int(default))
        return cls(**values)


def site_domain_from_url(site_url: str) -> str:
    parsed = urlparse((site_url or "").strip())
    host = (parsed.netloc or parsed.path.split("/", 1)[0]).strip().lower()
    return host[4:] if host.startswith("www.") else host


def get_runtime_config() -> Dict[str, Any]:
    provider = read_str_env("REGEN_LLM_PROVIDER", DEFAULT_LLM_PROVIDER).lower()
    api_key = read_str_env("REGEN_LLM_API_KEY")
    if not api_key:
        fallback_env = {
            "anthropic": "ANTHROPIC_API_KEY",
            "gemini": "GEMINI_API_KEY",
        }.get(provider, "OPENAI_API_KEY")
        api_key = read_str_env(fallback_env)

    concurrency = read_int_env("REGEN_CONCURRENCY", DEFAULT_CONCURRENCY)
    if concurrency < 1:
        raise ConfigError(f"REGEN_CONCURRENCY must be at least 1, got {concurrency}.")
    job_timeout = read_float_env("REGEN_JOB_TIMEOUT_SECONDS", DEFAULT_JOB_TIMEOUT_SECONDS)
    if job_timeout <= 0:
        raise ConfigError(f"REGEN_JOB_TIMEOUT_SECONDS must be positive, got {job_timeout}.")

    wp_url = read_str_env("WP_URL")
    extra_affiliate = [
        item.strip().lower()
        for item in read_str_env("REGEN_AFFILIATE_DOMAINS").split(",")
        if item.strip()
    ]
    return {
        "llm_provider": provider,
        "llm_api_key": api_key,
        "llm_model": read_str_env("REGEN_LLM_MODEL"),
        "llm_base_url": read_str_env("REGEN_LLM_BASE_URL"),
        "llm_timeout_seconds": read_int_env("REGEN_LLM_TIMEOUT_SECONDS", DEFAULT_LLM_TIMEOUT_SECONDS),
        "llm_max_tokens": read_int_env("REGEN_LLM_MAX_TOKENS", DEFAULT_LLM_MAX_TOKENS),
        "llm_retries": read_int_env("REGEN_LLM_RETRIES", DEFAULT_LLM_RETRIES),
        "llm_retry_backoff_seconds": read_float_env(
            "REGEN_LLM_RETRY_BACKOFF_SECONDS",
            DEFAULT_LLM_RETRY_BACKOFF_SECONDS,
        ),
        "concurrency": concurrency,
        "job_timeout_seconds": job_timeout,
        "mesh_size": read_int_env("REGEN_MESH_SIZE", DEFAULT_MESH_SIZE),
        "affiliate_tag": read_str_env("REGEN_AFFILIATE_TAG", DEFAULT_AFFILIATE_TAG),
        "affiliate_domains": extra_affiliate,
        "site_domain": site_domain_from_url(read_str_env("REGEN_SITE_DOMAIN")) or site_domain_from_url(wp_url),
        "wp_url": wp_url,
        "wp_username": read_str_env("WP_USERNAME"),
        "wp_app_password": read_str_env("WP_APP_PASSWORD"),
        "wp_timeout_seconds": read_int_env("WP_TIMEOUT_SECONDS", DEFAULT_WP_TIMEOUT_SECONDS),
        "serper_api_key": read_str_env("SERPER_API_KEY"),
        "cache_ttl_seconds": read_int_env("REGEN_CACHE_TTL_SECONDS", DEFAULT_CACHE_TTL_SECONDS),
    }
