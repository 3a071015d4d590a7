"""
Resolves the commerce contract address currently in effect.

The deploy script writes ``contract-addresses.json`` next to the project:

    {"MNEE": "0x...", "Commerce": "0x...", "chainId": 31337, ...}

The file is re-read on every call so that a redeploy is picked up without
restarting the indexer. Until the first deploy the resolver answers with a
fixed fallback address.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Any

from mnee_indexer.config import DEFAULT_FALLBACK_ADDRESS

logger = logging.getLogger(__name__)

COMMERCE_ROLE = "Commerce"


class ResolutionSource(Enum):
    DESCRIPTOR = "descriptor"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class Resolution:
    """Outcome of one address lookup."""

    address: str | None
    source: ResolutionSource
    reason: str | None = None

    @property
    def from_descriptor(self) -> bool:
        return self.source is ResolutionSource.DESCRIPTOR

    @property
    def available(self) -> bool:
        """False only before the first deploy when no fallback is configured."""
        return bool(self.address)


class AddressResolver:
    """Reads the deployment descriptor and reports the commerce contract address."""

    def __init__(
        self,
        descriptor_path: str,
        *,
        fallback_address: str | None = DEFAULT_FALLBACK_ADDRESS,
        expected_chain_id: int | None = None,
        role: str = COMMERCE_ROLE,
    ) -> None:
        self.descriptor_path = os.path.abspath(descriptor_path)
        self.fallback_address = fallback_address
        self.expected_chain_id = expected_chain_id
        self.role = role
        self._last: Resolution | None = None

    def resolve(self) -> Resolution:
        """Return the current address. Never raises."""
        descriptor, reason = self._load_descriptor()
        resolution: Resolution | None = None
        if descriptor is not None:
            address = descriptor.get(self.role)
            if isinstance(address, str) and address.strip():
                resolution = Resolution(address.strip(), ResolutionSource.DESCRIPTOR)
            else:
                reason = f"descriptor has no '{self.role}' address"
        if resolution is None:
            resolution = Resolution(self.fallback_address, ResolutionSource.FALLBACK, reason)
        if resolution != self._last and descriptor is not None and resolution.from_descriptor:
            self._check_chain_id(descriptor)
        self._report(resolution)
        return resolution

    def current_address(self) -> str | None:
        return self.resolve().address

    def _load_descriptor(self) -> tuple[dict[str, Any] | None, str | None]:
        if not os.path.exists(self.descriptor_path):
            return None, "descriptor file not found"
        try:
            with open(self.descriptor_path, "r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            logger.error(
                "Failed to read deployment descriptor %s: %s",
                self.descriptor_path,
                exc,
                extra={"event": "resolver.descriptor_unreadable", "path": self.descriptor_path},
            )
            return None, f"descriptor unreadable: {exc}"
        if not isinstance(payload, dict):
            logger.warning(
                "Deployment descriptor malformed (expected object)",
                extra={"event": "resolver.descriptor_invalid_format", "path": self.descriptor_path},
            )
            return None, "descriptor is not a JSON object"
        return payload, None

    def _check_chain_id(self, descriptor: dict[str, Any]) -> None:
        chain_id = descriptor.get("chainId")
        if self.expected_chain_id is None or chain_id is None:
            return
        try:
            matches = int(chain_id) == self.expected_chain_id
        except (TypeError, ValueError):
            matches = False
        if not matches:
            logger.warning(
                "Deployment descriptor chainId %s differs from configured chain %s",
                chain_id,
                self.expected_chain_id,
                extra={"event": "resolver.chain_id_mismatch", "path": self.descriptor_path},
            )

    def _report(self, resolution: Resolution) -> None:
        previous = self._last
        self._last = resolution
        if previous == resolution:
            return
        if resolution.from_descriptor:
            logger.info(
                "Loaded contract address %s",
                resolution.address,
                extra={"event": "resolver.address_loaded", "address": resolution.address},
            )
        elif resolution.available:
            logger.warning(
                "Using fallback contract address %s (%s)",
                resolution.address,
                resolution.reason,
                extra={"event": "resolver.fallback", "address": resolution.address},
            )
        else:
            logger.warning(
                "No contract address available (%s)",
                resolution.reason,
                extra={"event": "resolver.no_address"},
            )
