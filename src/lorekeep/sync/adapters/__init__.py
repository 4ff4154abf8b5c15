"""
Source adapters.

build_adapters() turns the enabled provider list into adapter instances.
"""

import logging
from typing import Any

from lorekeep.models.db import Provider
from lorekeep.sync.adapters.base import SourceAdapter
from lorekeep.sync.adapters.cli_logs import CliLogAdapter
from lorekeep.sync.adapters.web import WebSourceAAdapter, WebSourceBAdapter

logger = logging.getLogger(__name__)

__all__ = [
    "SourceAdapter",
    "CliLogAdapter",
    "WebSourceAAdapter",
    "WebSourceBAdapter",
    "build_adapters",
]


def build_adapters(config: Any) -> dict[Provider, SourceAdapter]:
    """
    Create an adapter for each enabled provider.

    Args:
        config: A Settings instance (or anything with the same attributes)

    Returns:
        Mapping of provider to adapter, in enabled order

    Raises:
        ValueError: If an enabled provider name is unknown
    """
    adapters: dict[Provider, SourceAdapter] = {}
    for name in config.enabled_providers:
        try:
            provider = Provider(name.strip().lower())
        except ValueError:
            valid = ", ".join(p.value for p in Provider)
            raise ValueError(f"Unknown provider '{name}'. Valid providers: {valid}") from None

        if provider == Provider.CLI_SOURCE_A:
            adapters[provider] = CliLogAdapter(provider, config.cli_source_a_roots)
        elif provider == Provider.CLI_SOURCE_B:
            adapters[provider] = CliLogAdapter(provider, config.cli_source_b_roots)
        elif provider == Provider.WEB_SOURCE_A:
            adapters[provider] = WebSourceAAdapter(
                config.web_source_a_base_url,
                config.web_source_a_session_token,
                page_size=config.web_page_size,
                timeout=config.http_timeout,
            )
        elif provider == Provider.WEB_SOURCE_B:
            adapters[provider] = WebSourceBAdapter(
                config.web_source_b_base_url,
                config.web_source_b_session_token,
                page_size=config.web_page_size,
                timeout=config.http_timeout,
            )
        logger.debug(f"Enabled provider {provider.value}")
    return adapters
