"""
Merchant directory: curated subscription domains, payment processors, and
known merchant name patterns loaded from data/merchants.yaml, plus domains
learned from a user's own receipt history.
"""

from __future__ import annotations

import re
import threading
from collections.abc import Iterable
from functools import lru_cache
from pathlib import Path

import yaml

from subwatch.config import MERCHANTS_FILE
from subwatch.detection.filter_data import DEFAULT_PAYMENT_PROCESSORS
from subwatch.observability.logging import get_logger
from subwatch.utils.redaction import redact

logger = get_logger(__name__)

_ANGLE_ADDRESS_RE = re.compile(r"<([^>]+)>")


def extract_address(sender: str) -> str:
    """
    Bare lowercase address from a From header.

    "Netflix <info@mailer.netflix.com>" -> "info@mailer.netflix.com"
    """
    match = _ANGLE_ADDRESS_RE.search(sender or "")
    address = match.group(1) if match else (sender or "")
    return address.strip().lower()


def extract_domain(sender: str) -> str:
    """Domain part of the sender address, "" when there is no @."""
    address = extract_address(sender)
    if "@" not in address:
        return ""
    return address.rsplit("@", 1)[-1].strip()


def extract_display_name(sender: str) -> str | None:
    """Display name from "Name <addr>" headers, without surrounding quotes."""
    if not sender or "<" not in sender:
        return None
    name = sender.split("<", 1)[0].strip().strip('"').strip("'").strip()
    return name or None


def normalize_merchant_key(name: str) -> str:
    """Lowercase, trim, and collapse internal whitespace."""
    return " ".join((name or "").split()).lower()


class MerchantDirectory:
    """
    Known subscription senders and merchant names.

    Loaded once from YAML. Learned domains are kept per user at runtime and
    never written back to the file.
    """

    def __init__(self, merchants_path: Path | None = None):
        data = self._load(merchants_path or MERCHANTS_FILE)

        domains: set[str] = set()
        for group in (data.get("subscription_domains") or {}).values():
            domains.update(d.strip().lower() for d in group or [])
        self._curated_domains: frozenset[str] = frozenset(domains)
        self._learned_domains: dict[str, set[str]] = {}
        self._lock = threading.Lock()

        self.payment_processors: tuple[str, ...] = tuple(
            data.get("payment_processors") or DEFAULT_PAYMENT_PROCESSORS
        )
        self.known_merchants: tuple[tuple[re.Pattern[str], str], ...] = tuple(
            (re.compile(entry["pattern"], re.IGNORECASE), entry["name"])
            for entry in data.get("known_merchants") or []
        )

        logger.info(
            "MerchantDirectory loaded: %d domains, %d processors, %d merchant patterns",
            len(self._curated_domains),
            len(self.payment_processors),
            len(self.known_merchants),
        )

    @staticmethod
    def _load(path: Path) -> dict:
        if not path.exists():
            logger.warning("Merchant directory not found at %s, using empty directory", path)
            return {}
        with open(path, encoding="utf-8") as f:
            return yaml.safe_load(f) or {}

    def domains_for(self, user_id: str | None = None) -> frozenset[str]:
        """Curated domains plus the ones learned for user_id."""
        if user_id is None:
            return self._curated_domains
        with self._lock:
            return self._curated_domains | frozenset(self._learned_domains.get(user_id, ()))

    def learn_domains(self, user_id: str, domains: Iterable[str]) -> int:
        """Add learned sender domains for one user; returns how many were new."""
        added = 0
        with self._lock:
            learned = self._learned_domains.setdefault(user_id, set())
            for domain in domains:
                domain = (domain or "").strip().lower()
                if not domain or domain in self._curated_domains or domain in learned:
                    continue
                learned.add(domain)
                added += 1
        if added:
            logger.info("Learned %d merchant domains for %s", added, redact(user_id))
        return added

    def is_known_domain(self, sender: str, user_id: str | None = None) -> bool:
        """Exact domain match, or a subdomain of a known domain."""
        domain = extract_domain(sender)
        if not domain:
            return False
        known = self.domains_for(user_id)
        if domain in known:
            return True
        return any(domain.endswith(f".{known_domain}") for known_domain in known)

    def is_payment_processor(self, sender: str) -> bool:
        sender_lower = (sender or "").lower()
        return any(processor in sender_lower for processor in self.payment_processors)

    def match_known_merchant(self, *texts: str) -> str | None:
        """First known merchant whose pattern appears in any of the texts."""
        for pattern, name in self.known_merchants:
            if any(text and pattern.search(text) for text in texts):
                return name
        return None


@lru_cache(maxsize=1)
def get_merchant_directory() -> MerchantDirectory:
    """Shared directory instance (thread-safe singleton via @lru_cache)."""
    return MerchantDirectory()
