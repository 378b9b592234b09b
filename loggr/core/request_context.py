import hashlib
import ipaddress
import logging
import re
from typing import Mapping, Optional

from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)

FALLBACK_IP = "127.0.0.1"

# Checked in order, first public address wins
IP_HEADERS = [
    "cf-connecting-ip",      # Cloudflare
    "x-forwarded-for",       # Load balancers/proxies
    "x-forwarded",
    "x-cluster-client-ip",
    "client-ip",
    "forwarded-for",
    "forwarded",
]

LOGIN_PAGE_PATTERNS = [
    re.compile(r"wp-login\.php"),
    re.compile(r"wp-admin"),
    re.compile(r"login"),
    re.compile(r"signin"),
    re.compile(r"admin"),
]


class RequestContext(BaseModel):
    """Everything the ingestion path needs to know about the HTTP request."""
    model_config = ConfigDict(frozen=True)

    request_id: Optional[str] = None
    client_ip: str = FALLBACK_IP
    peer_ip: Optional[str] = None
    user_agent: str = ""
    referer: Optional[str] = None
    user_id: Optional[int] = None

    @property
    def fingerprint(self) -> str:
        """Stable per browser/address pair, used to key server side session ids."""
        raw = f"{self.user_agent}{self.peer_ip or ''}"
        return hashlib.md5(raw.encode("utf-8")).hexdigest()


def is_public_ip(value: str) -> bool:
    try:
        ip = ipaddress.ip_address(value)
    except ValueError:
        return False
    return not (ip.is_private or ip.is_reserved or ip.is_loopback or ip.is_link_local
                or ip.is_multicast or ip.is_unspecified)


def _first_address(header_value: str) -> str:
    candidate = header_value.split(",")[0].strip()
    # RFC 7239 style: for="1.2.3.4"
    if candidate.lower().startswith("for="):
        candidate = candidate[4:]
    candidate = candidate.strip('"').strip()
    if candidate.startswith("[") and "]" in candidate:
        candidate = candidate[1:candidate.index("]")]
    return candidate


def resolve_client_ip(headers: Mapping[str, str], peer_ip: Optional[str] = None) -> str:
    """Real client address from proxy headers, rejecting private and reserved ranges."""
    lowered = {k.lower(): v for k, v in headers.items()}
    for header in IP_HEADERS:
        value = lowered.get(header)
        if not value:
            continue
        ip = _first_address(value)
        if is_public_ip(ip):
            return ip
    if peer_ip and is_public_ip(peer_ip):
        return peer_ip
    return FALLBACK_IP


def is_login_page_url(url: Optional[str]) -> bool:
    if not url:
        return False
    return any(pattern.search(url) for pattern in LOGIN_PAGE_PATTERNS)
