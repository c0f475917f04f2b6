"""Client configuration.

Values can be given explicitly or read from the environment:

    MESSAGING_HUB_DOMAIN         Domain appended to bare identifiers (default: msging.net)
    MESSAGING_HUB_INSTANCE       Instance name of this client node (default: default)
    MESSAGING_HUB_CLOSE_TIMEOUT  Seconds to wait for the hub to finish the session on close
    MESSAGING_HUB_TRACE          Log every envelope sent and received ("1", "true", "yes")
"""

from __future__ import annotations

import os
from dataclasses import dataclass

DEFAULT_DOMAIN = "msging.net"
DEFAULT_INSTANCE = "default"

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass
class ClientConfig:
    """Configuration for MessagingHubClient."""

    domain: str = DEFAULT_DOMAIN
    instance: str = DEFAULT_INSTANCE
    close_timeout: float = 5.0
    trace_enabled: bool = False

    @classmethod
    def from_env(cls) -> ClientConfig:
        """Build a config from MESSAGING_HUB_* environment variables."""
        timeout = os.getenv("MESSAGING_HUB_CLOSE_TIMEOUT")
        return cls(
            domain=os.getenv("MESSAGING_HUB_DOMAIN", DEFAULT_DOMAIN),
            instance=os.getenv("MESSAGING_HUB_INSTANCE", DEFAULT_INSTANCE),
            close_timeout=float(timeout) if timeout else 5.0,
            trace_enabled=os.getenv("MESSAGING_HUB_TRACE", "").lower() in _TRUTHY,
        )

    def identity_for(self, identifier: str) -> str:
        """Qualify a bare identifier with the configured domain."""
        if "@" in identifier:
            return identifier
        return f"{identifier}@{self.domain}"
