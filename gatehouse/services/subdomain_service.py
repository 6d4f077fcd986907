"""
Subdomain Service.

Turns organization names into subdomains, validates them, and maps inbound
hostnames back to organizations.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional
import re

from sqlalchemy.orm import Session
import structlog

from gatehouse.config import settings
from gatehouse.database.models import Organization
from gatehouse.errors import InvalidInputError

logger = structlog.get_logger()

RESERVED_SUBDOMAINS = (
    "www", "api", "admin", "app", "mail", "ftp", "smtp", "cdn", "static",
    "blog", "docs", "help", "support", "status", "monitor", "dev", "staging",
    "test", "demo", "beta", "alpha", "preview", "sandbox", "playground",
)

SUGGESTION_SUFFIXES = ("app", "team", "co", "inc", "ltd", "org", "net")

MIN_LENGTH = 3
MAX_LENGTH = 63

_SUBDOMAIN_RE = re.compile(r"^[a-z0-9-]+$")


@dataclass
class SubdomainValidation:
    is_valid: bool
    error: Optional[str] = None
    subdomain: Optional[str] = None
    suggestions: List[str] = field(default_factory=list)


def _with_suffix(base: str, suffix: str) -> str:
    """Append `-suffix`, shortening the base so the result stays a legal label"""
    tail = f"-{suffix}"
    return base[:MAX_LENGTH - len(tail)].rstrip("-") + tail


class SubdomainService:
    """Subdomain generation, validation and tenant lookup"""

    def __init__(self, db: Session, extra_reserved: Optional[List[str]] = None):
        self.db = db
        reserved = set(RESERVED_SUBDOMAINS)
        reserved.update(settings.reserved_subdomains_list)
        reserved.update(s.lower() for s in (extra_reserved or []))
        self.reserved = frozenset(reserved)

    @staticmethod
    def normalize(name: str) -> str:
        """Build a URL-safe subdomain from a free-form name"""
        subdomain = (name or "").lower().strip()
        subdomain = re.sub(r"[^a-z0-9\s-]", "", subdomain)
        subdomain = re.sub(r"\s+", "-", subdomain)
        subdomain = re.sub(r"-+", "-", subdomain)
        subdomain = subdomain.strip("-")

        if len(subdomain) < MIN_LENGTH:
            subdomain = f"{subdomain}-org" if subdomain else "org"

        if len(subdomain) > MAX_LENGTH:
            subdomain = subdomain[:MAX_LENGTH].rstrip("-")

        return subdomain

    def validate_format(self, subdomain: str) -> SubdomainValidation:
        if not subdomain or len(subdomain) < MIN_LENGTH:
            return SubdomainValidation(False, "Subdomain must be at least 3 characters long")
        if len(subdomain) > MAX_LENGTH:
            return SubdomainValidation(False, "Subdomain must be 63 characters or less")
        if not _SUBDOMAIN_RE.match(subdomain):
            return SubdomainValidation(
                False, "Subdomain can only contain lowercase letters, numbers, and hyphens"
            )
        if subdomain.startswith("-") or subdomain.endswith("-"):
            return SubdomainValidation(False, "Subdomain cannot start or end with a hyphen")
        if subdomain in self.reserved:
            return SubdomainValidation(False, "This subdomain is reserved and cannot be used")
        return SubdomainValidation(True, subdomain=subdomain)

    def _is_taken(self, subdomain: str) -> bool:
        # Tombstoned organizations release their domain
        return self.db.query(Organization.id).filter(
            Organization.domain == subdomain,
            Organization.deleted_at.is_(None),
        ).first() is not None

    def is_available(self, subdomain: str) -> bool:
        if not self.validate_format(subdomain).is_valid:
            return False
        return not self._is_taken(subdomain)

    def suggest_alternatives(self, base: str, limit: int = 5) -> List[str]:
        """Available variants of `base`: numbered, then suffixed, then dated"""
        suggestions: List[str] = []
        candidates = [str(i) for i in range(1, 100)]
        candidates.extend(SUGGESTION_SUFFIXES)
        candidates.append(str(datetime.utcnow().year))

        for suffix in candidates:
            if len(suggestions) >= limit:
                break
            candidate = _with_suffix(base, suffix)
            if candidate not in suggestions and self.is_available(candidate):
                suggestions.append(candidate)
        return suggestions

    def generate_unique(self, org_name: str) -> str:
        """Normalized name, suffixed with -1, -2, ... until free"""
        base = self.normalize(org_name)
        subdomain = base
        attempts = 0
        while not self.is_available(subdomain):
            attempts += 1
            if attempts > settings.SUBDOMAIN_MAX_ATTEMPTS:
                logger.error("subdomain_generation_exhausted", base=base, attempts=attempts)
                raise InvalidInputError("Unable to generate unique subdomain")
            subdomain = _with_suffix(base, str(attempts))
        return subdomain

    @staticmethod
    def extract_from_host(hostname: Optional[str], base_domain: Optional[str] = None) -> Optional[str]:
        """Leading label of a host under the base domain, or None"""
        if not hostname:
            return None
        base_domain = (base_domain or settings.BASE_DOMAIN).lower().strip(".")
        host = hostname.strip().lower().split(":", 1)[0].rstrip(".")
        if host.startswith("www."):
            host = host[4:]

        if host == base_domain or not host.endswith(f".{base_domain}"):
            return None

        prefix = host[: -(len(base_domain) + 1)]
        label = prefix.split(".", 1)[0]
        return label or None

    def resolve_organization(self, subdomain: Optional[str]) -> Optional[Organization]:
        """Live organization owning the subdomain; None means no tenant context"""
        if not subdomain:
            return None
        return self.db.query(Organization).filter(
            Organization.domain == subdomain,
            Organization.deleted_at.is_(None),
        ).first()

    def resolve_host(self, hostname: Optional[str]) -> Optional[Organization]:
        return self.resolve_organization(self.extract_from_host(hostname))

    def validate_and_reserve(self, subdomain: str) -> SubdomainValidation:
        """Validate a requested subdomain, attaching suggestions when unusable.

        Nothing is locked: the unique index on organizations.domain decides
        races at commit time.
        """
        validation = self.validate_format(subdomain)
        if not validation.is_valid:
            validation.suggestions = self.suggest_alternatives(self.normalize(subdomain))
            return validation
        if self._is_taken(subdomain):
            return SubdomainValidation(
                False,
                "Subdomain is already taken",
                suggestions=self.suggest_alternatives(subdomain),
            )
        return validation

    @staticmethod
    def email_domain_matches(email: str, domain: Optional[str]) -> bool:
        """Whether an email address belongs to the given mail domain"""
        if not email or not domain or "@" not in email:
            return False
        return email.rsplit("@", 1)[1].lower() == domain.lower().lstrip("@")
