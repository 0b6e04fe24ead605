"""Configuration loader for the chat-completion proxy.

Reads a JSON config file describing the upstream aggregator, timeouts,
duplicate-detection window, model catalog and capability registry sources.
The upstream credential itself is never stored in the file: it is resolved
from the environment variable named by ``upstream.api_key_env``.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

DEFAULT_CONFIG_PATH = "config/example.config.json"


@dataclass
class UpstreamConfig:
    """Connection settings for the upstream aggregation API."""

    base_url: str = "https://openrouter.ai/api/v1"
    api_key_env: str = "OPENROUTER_API_KEY"
    connect_timeout: float = 30.0
    read_timeout: float = 120.0
    write_timeout: float = 30.0
    referer: str = "https://github.com/chatproxy/chatproxy"
    title: str = "chatproxy"

    @property
    def chat_url(self) -> str:
        return "{}/chat/completions".format(self.base_url.rstrip("/"))

    @property
    def models_url(self) -> str:
        return "{}/models".format(self.base_url.rstrip("/"))


@dataclass
class CatalogConfig:
    """Where the model listing endpoint gets its data from."""

    source: str = "static"  # "static" or "upstream"
    models: List[str] = field(default_factory=list)
    cache_ttl_seconds: float = 900.0


@dataclass
class ProxyConfig:
    """Top-level proxy configuration."""

    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)
    catalog: CatalogConfig = field(default_factory=CatalogConfig)
    dedup_window_seconds: float = 1.0
    notification_throttle_seconds: float = 3600.0
    capabilities_file: Optional[str] = None
    default_max_tokens: int = 0  # 0 disables the default
    log_file: str = "logs/proxy.log"


def load_config(path: Union[str, Path]) -> ProxyConfig:
    """Load proxy configuration from a JSON file.

    Args:
        path: Path to the JSON config file.

    Returns:
        A fully resolved ProxyConfig instance.

    Raises:
        FileNotFoundError: If the config file does not exist.
        ValueError: If the config file contains invalid data.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        try:
            raw = json.load(f)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Config file is not valid JSON: {exc}") from exc

    if not isinstance(raw, dict):
        raise ValueError("Config file must contain a JSON object at the top level")

    upstream_raw: Dict[str, Any] = raw.get("upstream", {})
    defaults = UpstreamConfig()
    try:
        upstream = UpstreamConfig(
            base_url=upstream_raw.get("base_url", defaults.base_url),
            api_key_env=upstream_raw.get("api_key_env", defaults.api_key_env),
            connect_timeout=float(
                upstream_raw.get("connect_timeout", defaults.connect_timeout)
            ),
            read_timeout=float(upstream_raw.get("read_timeout", defaults.read_timeout)),
            write_timeout=float(
                upstream_raw.get("write_timeout", defaults.write_timeout)
            ),
            referer=upstream_raw.get("referer", defaults.referer),
            title=upstream_raw.get("title", defaults.title),
        )

        catalog_raw: Dict[str, Any] = raw.get("catalog", {})
        catalog = CatalogConfig(
            source=catalog_raw.get("source", "static"),
            models=list(catalog_raw.get("models", [])),
            cache_ttl_seconds=float(catalog_raw.get("cache_ttl_seconds", 900.0)),
        )

        config = ProxyConfig(
            upstream=upstream,
            catalog=catalog,
            dedup_window_seconds=float(raw.get("dedup_window_seconds", 1.0)),
            notification_throttle_seconds=float(
                raw.get("notification_throttle_seconds", 3600.0)
            ),
            capabilities_file=raw.get("capabilities_file"),
            default_max_tokens=int(raw.get("default_max_tokens", 0)),
            log_file=raw.get("log_file", "logs/proxy.log"),
        )
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid config value in {path}: {exc}") from exc

    if catalog.source not in ("static", "upstream"):
        raise ValueError(
            "catalog.source must be 'static' or 'upstream', got '{}'".format(
                catalog.source
            )
        )

    return config


def default_config() -> ProxyConfig:
    """Load the config named by CHATPROXY_CONFIG, falling back to defaults.

    An explicitly configured path that does not exist is an error; the
    default path is optional.
    """
    explicit = os.getenv("CHATPROXY_CONFIG")
    if explicit:
        return load_config(explicit)
    if Path(DEFAULT_CONFIG_PATH).exists():
        return load_config(DEFAULT_CONFIG_PATH)
    return ProxyConfig()
