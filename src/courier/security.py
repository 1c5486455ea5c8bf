"""Security validation for webhook subscriptions and payloads.

Implements the checks every subscription and event passes before it can
enter the delivery pipeline.

Security Controls:
    - HTTP(S) only, HTTPS optionally required
    - Private IP range blocking (RFC 1918, RFC 4193, link-local, loopback)
    - Cloud metadata endpoint blocking (169.254.169.254)
    - Throwaway top-level domain blocking
    - Optional DNS resolution with per-address checks (re-run at delivery)
    - Custom header deny-list and injection pattern checks
    - Payload sanitization and size limits

Every ``validate_*`` function returns a :class:`ValidationResult`; callers
turn an invalid result into a hard rejection with ``raise_for_invalid()``.
"""

from __future__ import annotations

import ipaddress
import logging
import re
import secrets
import socket
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

from courier.config import DEFAULT_MAX_PAYLOAD_SIZE
from courier.errors import WebhookErrorCode, WebhookValidationError
from courier.models import ApiKeyAuth, BearerTokenAuth, OAuth2Auth
from courier.signature import sign_payload, verify_signature

if TYPE_CHECKING:
    from collections.abc import Mapping

    from courier.config import CourierConfig
    from courier.models import AuthConfig

logger = logging.getLogger(__name__)

__all__ = [
    "MAX_DAILY_RATE_LIMIT",
    "MAX_HOURLY_RATE_LIMIT",
    "MAX_SANITIZE_DEPTH",
    "SecurityValidator",
    "URLValidationError",
    "ValidatedURL",
    "ValidationResult",
    "WebhookURLValidator",
    "generate_webhook_secret",
    "is_safe_url",
    "sanitize_payload",
    "validate_auth_config",
    "validate_headers",
    "validate_payload_size",
    "validate_rate_limits",
]

MAX_HOURLY_RATE_LIMIT = 10000
MAX_DAILY_RATE_LIMIT = 100000
MAX_SANITIZE_DEPTH = 10
MAX_HEADER_VALUE_LENGTH = 1000
DEPTH_PLACEHOLDER = "[Max depth exceeded]"


@dataclass
class ValidationResult:
    """Outcome of a validation check.

    Attributes:
        valid: Whether the input passed
        reason: Human-readable reason when invalid
        code: Machine-readable reason code when invalid
        details: Extra context (offending header, limits, ...)
    """

    valid: bool
    reason: str | None = None
    code: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls) -> ValidationResult:
        return cls(valid=True)

    @classmethod
    def fail(cls, reason: str, code: str, **details: Any) -> ValidationResult:
        return cls(valid=False, reason=reason, code=code, details=details)

    def raise_for_invalid(
        self,
        error_code: WebhookErrorCode = WebhookErrorCode.WEBHOOK_VALIDATION_FAILED,
    ) -> None:
        """Raise WebhookValidationError if this result is invalid."""
        if self.valid:
            return
        details = {"reason_code": self.code, **self.details}
        raise WebhookValidationError(
            self.reason or "Validation failed",
            code=error_code,
            details=details,
        )


class URLValidationError(Exception):
    """Raised when URL validation fails."""

    def __init__(self, reason: str, code: str = "invalid_url") -> None:
        self.reason = reason
        self.code = code
        super().__init__(reason)


@dataclass
class ValidatedURL:
    """Result of URL validation.

    Attributes:
        url: The validated URL
        host: Extracted hostname
        port: Effective port
        resolved_ips: IP addresses the hostname resolves to (empty when
            DNS resolution is disabled and the host is a name)
    """

    url: str
    host: str
    port: int
    resolved_ips: list[str]


# Private IPv4 ranges (RFC 1918 + link-local + loopback)
PRIVATE_IPV4_NETWORKS = [
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("169.254.0.0/16"),  # Link-local
    ipaddress.ip_network("0.0.0.0/8"),
    ipaddress.ip_network("100.64.0.0/10"),  # Carrier-grade NAT
]

# Private IPv6 ranges (RFC 4193 + link-local + loopback)
PRIVATE_IPV6_NETWORKS = [
    ipaddress.ip_network("fc00::/7"),  # Unique local addresses
    ipaddress.ip_network("fe80::/10"),  # Link-local
    ipaddress.ip_network("::1/128"),  # Loopback
]

# Cloud metadata endpoints to block
METADATA_IPS = [
    "169.254.169.254",  # AWS, GCP, Azure
    "fd00:ec2::254",  # AWS IPv6
    "metadata.google.internal",
]

# Dangerous hostnames
BLOCKED_HOSTNAMES = [
    "localhost",
    "metadata.google.internal",
    "metadata",
    "kubernetes.default.svc",
]

# Free TLDs heavily used for throwaway and abuse domains
SUSPICIOUS_TLDS = (".tk", ".ml", ".ga", ".cf")


class WebhookURLValidator:
    """Validates webhook URLs for security.

    Prevents SSRF attacks by validating URLs at registration and again
    before every delivery.

    Example:
        >>> validator = WebhookURLValidator(allow_localhost=False)
        >>> result = validator.validate("https://example.com/webhook")
        >>> result.host
        'example.com'

        >>> validator.validate("ftp://example.com/hook")
        URLValidationError: Invalid scheme: ftp

        >>> validator.validate("https://192.168.1.1/hook")
        URLValidationError: Private IP addresses are not allowed
    """

    def __init__(
        self,
        allow_localhost: bool = False,
        require_https: bool = False,
        resolve_dns: bool = True,
        dns_timeout: float = 5.0,
    ) -> None:
        """Initialize URL validator.

        Args:
            allow_localhost: Allow localhost URLs (development only)
            require_https: Reject plain HTTP URLs
            resolve_dns: Resolve hostnames and check every address
            dns_timeout: Timeout for DNS resolution in seconds
        """
        self.allow_localhost = allow_localhost
        self.require_https = require_https
        self.resolve_dns = resolve_dns
        self.dns_timeout = dns_timeout

    def validate(self, url: str) -> ValidatedURL:
        """Validate a webhook URL.

        Args:
            url: The URL to validate

        Returns:
            ValidatedURL with resolved information

        Raises:
            URLValidationError: If URL fails validation
        """
        try:
            parsed = urlparse(url)
        except ValueError as e:
            raise URLValidationError(f"Invalid URL format: {e}") from e

        # Check scheme
        if parsed.scheme not in ("http", "https"):
            raise URLValidationError(
                f"Invalid scheme: {parsed.scheme or '(none)'}",
                code="invalid_scheme",
            )

        if self.require_https and parsed.scheme != "https":
            raise URLValidationError(
                "URL must use HTTPS",
                code="https_required",
            )

        # Check host exists
        if not parsed.hostname:
            raise URLValidationError("URL must include a hostname", code="missing_host")

        if parsed.username or parsed.password:
            raise URLValidationError(
                "Credentials in URLs are not allowed",
                code="credentials_in_url",
            )

        # Check port
        try:
            port = parsed.port
        except ValueError as e:
            raise URLValidationError(
                "Port must be between 1 and 65535",
                code="invalid_port",
            ) from e
        if port is None:
            port = 443 if parsed.scheme == "https" else 80
        elif not 1 <= port <= 65535:
            raise URLValidationError(
                "Port must be between 1 and 65535",
                code="invalid_port",
            )

        hostname = parsed.hostname.lower().rstrip(".")

        # Check for blocked hostnames
        if hostname in BLOCKED_HOSTNAMES and not (
            self.allow_localhost and hostname == "localhost"
        ):
            raise URLValidationError(
                f"Hostname not allowed: {hostname}",
                code="blocked_hostname",
            )

        if hostname.endswith(".localhost") and not self.allow_localhost:
            raise URLValidationError(
                f"Hostname not allowed: {hostname}",
                code="blocked_hostname",
            )

        if hostname.endswith(SUSPICIOUS_TLDS):
            raise URLValidationError(
                f"Top-level domain not allowed: {hostname}",
                code="suspicious_tld",
            )

        literal = _normalize_ip_literal(hostname)
        if literal is not None:
            resolved_ips = [literal]
        elif self.resolve_dns:
            resolved_ips = self._resolve_host(hostname)
        else:
            resolved_ips = []

        # Validate each resolved IP
        for ip_str in resolved_ips:
            self._validate_ip(ip_str, hostname)

        return ValidatedURL(
            url=url,
            host=hostname,
            port=port,
            resolved_ips=resolved_ips,
        )

    def _resolve_host(self, hostname: str) -> list[str]:
        """Resolve hostname to IP addresses.

        Args:
            hostname: The hostname to resolve

        Returns:
            List of resolved IP addresses

        Raises:
            URLValidationError: If DNS resolution fails
        """
        # Resolve hostname with timeout (restore previous timeout after)
        previous_timeout = socket.getdefaulttimeout()
        try:
            socket.setdefaulttimeout(self.dns_timeout)
            results = socket.getaddrinfo(
                hostname, None, socket.AF_UNSPEC, socket.SOCK_STREAM
            )
            # Extract IP addresses (result[4][0] is the IP string)
            ips: list[str] = []
            seen: set[str] = set()
            for result in results:
                addr = result[4][0]
                if isinstance(addr, str) and addr not in seen:
                    ips.append(addr)
                    seen.add(addr)
            if not ips:
                raise URLValidationError(
                    f"No IP addresses found for {hostname}",
                    code="dns_resolution_failed",
                )
            return ips
        except socket.gaierror as e:
            raise URLValidationError(
                f"DNS resolution failed for {hostname}: {e}",
                code="dns_resolution_failed",
            ) from e
        except TimeoutError as e:
            raise URLValidationError(
                f"DNS resolution timed out for {hostname}",
                code="dns_timeout",
            ) from e
        finally:
            socket.setdefaulttimeout(previous_timeout)

    def _validate_ip(self, ip_str: str, hostname: str) -> None:
        """Validate an IP address is not private/blocked.

        Args:
            ip_str: The IP address string
            hostname: The original hostname (for error messages)

        Raises:
            URLValidationError: If IP is not allowed
        """
        try:
            ip = ipaddress.ip_address(ip_str.strip("[]"))
        except ValueError as e:
            raise URLValidationError(f"Invalid IP address: {ip_str}") from e

        # IPv4-mapped IPv6 addresses are checked as IPv4
        if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
            ip = ip.ipv4_mapped

        if str(ip) in METADATA_IPS:
            raise URLValidationError(
                "Cloud metadata endpoints are blocked",
                code="metadata_blocked",
            )

        if ip.is_loopback:
            if not self.allow_localhost:
                raise URLValidationError(
                    "Localhost addresses are not allowed",
                    code="localhost_blocked",
                )
            return  # Localhost allowed in dev mode

        networks = (
            PRIVATE_IPV4_NETWORKS
            if isinstance(ip, ipaddress.IPv4Address)
            else PRIVATE_IPV6_NETWORKS
        )
        for network in networks:
            if ip in network:
                raise URLValidationError(
                    f"Private IP addresses are not allowed: {ip}",
                    code="private_ip_blocked",
                )

        if ip.is_link_local:
            raise URLValidationError(
                f"Link-local addresses are not allowed: {ip}",
                code="link_local_blocked",
            )

        if ip.is_reserved or ip.is_multicast or ip.is_unspecified:
            raise URLValidationError(
                f"Reserved IP addresses are not allowed: {ip} ({hostname})",
                code="reserved_ip_blocked",
            )


_NUMERIC_HOST_RE = re.compile(r"[0-9a-fA-FxX.]+")


def _normalize_ip_literal(hostname: str) -> str | None:
    """Canonical address for an IP literal host, or None for a name.

    Legacy IPv4 spellings accepted by the system resolver (``127.1``,
    ``2130706433``, ``0x7f000001``, ``017700000001``) are normalized
    through ``socket.inet_aton`` so they are checked like dotted quads.
    """
    candidate = hostname.strip("[]")
    try:
        return str(ipaddress.ip_address(candidate))
    except ValueError:
        pass
    if not _NUMERIC_HOST_RE.fullmatch(candidate):
        return None
    try:
        return socket.inet_ntoa(socket.inet_aton(candidate))
    except OSError:
        return None


def is_safe_url(
    url: str, allow_localhost: bool = False, resolve_dns: bool = True
) -> bool:
    """Quick check if a URL is safe for webhook delivery.

    Args:
        url: The URL to check
        allow_localhost: Allow localhost URLs
        resolve_dns: Resolve hostnames and check every address

    Returns:
        True if URL passes basic safety checks
    """
    try:
        WebhookURLValidator(
            allow_localhost=allow_localhost, resolve_dns=resolve_dns
        ).validate(url)
        return True
    except URLValidationError:
        return False


# =============================================================================
# Rate limits, payloads, headers, auth
# =============================================================================


def validate_rate_limits(per_hour: int, per_day: int) -> ValidationResult:
    """Check subscription rate limits are within service bounds."""
    if not 1 <= per_hour <= MAX_HOURLY_RATE_LIMIT:
        return ValidationResult.fail(
            f"Hourly rate limit must be between 1 and {MAX_HOURLY_RATE_LIMIT}",
            "rate_limit_hourly_out_of_range",
            rate_limit_per_hour=per_hour,
        )
    if not 1 <= per_day <= MAX_DAILY_RATE_LIMIT:
        return ValidationResult.fail(
            f"Daily rate limit must be between 1 and {MAX_DAILY_RATE_LIMIT}",
            "rate_limit_daily_out_of_range",
            rate_limit_per_day=per_day,
        )
    if per_day < per_hour:
        return ValidationResult.fail(
            "Daily rate limit must be at least the hourly rate limit",
            "rate_limit_inconsistent",
            rate_limit_per_hour=per_hour,
            rate_limit_per_day=per_day,
        )
    return ValidationResult.ok()


def validate_payload_size(
    payload: bytes | str | int,
    max_size: int = DEFAULT_MAX_PAYLOAD_SIZE,
) -> ValidationResult:
    """Check a serialized payload (or its byte size) against the limit."""
    if isinstance(payload, int):
        size = payload
    elif isinstance(payload, str):
        size = len(payload.encode("utf-8"))
    else:
        size = len(payload)

    if size > max_size:
        return ValidationResult.fail(
            f"Payload size {size} bytes exceeds maximum of {max_size} bytes",
            "payload_too_large",
            size=size,
            max_size=max_size,
        )
    return ValidationResult.ok()


# Headers a subscription may not set or override
DANGEROUS_HEADERS = frozenset(
    {
        "authorization",
        "proxy-authorization",
        "cookie",
        "set-cookie",
        "host",
        "forwarded",
        "x-forwarded-for",
        "x-forwarded-host",
        "x-forwarded-proto",
        "x-real-ip",
        "content-length",
        "transfer-encoding",
        "x-webhook-signature",
    }
)

_HEADER_NAME_RE = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")

_SUSPICIOUS_HEADER_PATTERNS = [
    re.compile(r"<script", re.IGNORECASE),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"vbscript:", re.IGNORECASE),
    re.compile(r"data:", re.IGNORECASE),
    re.compile(r"on\w+\s*=", re.IGNORECASE),
    re.compile(r"eval\(", re.IGNORECASE),
    re.compile(r"function\(", re.IGNORECASE),
    re.compile(r"[\x00\r\n]"),
]


def validate_headers(headers: Mapping[str, str]) -> ValidationResult:
    """Check custom headers for overrides of sensitive headers and injection."""
    for name, value in headers.items():
        if not isinstance(name, str) or not _HEADER_NAME_RE.match(name):
            return ValidationResult.fail(
                f"Invalid header name: {name!r}",
                "invalid_header_name",
                header=str(name),
            )
        if name.lower() in DANGEROUS_HEADERS:
            return ValidationResult.fail(
                f"Header not allowed: {name}",
                "dangerous_header",
                header=name,
            )
        if not isinstance(value, str):
            return ValidationResult.fail(
                f"Header value must be a string: {name}",
                "invalid_header_value",
                header=name,
            )
        if len(value) > MAX_HEADER_VALUE_LENGTH:
            return ValidationResult.fail(
                f"Header value too long: {name}",
                "header_value_too_long",
                header=name,
                max_length=MAX_HEADER_VALUE_LENGTH,
            )
        for pattern in _SUSPICIOUS_HEADER_PATTERNS:
            if pattern.search(value):
                return ValidationResult.fail(
                    f"Suspicious content in header: {name}",
                    "suspicious_header_value",
                    header=name,
                )
    return ValidationResult.ok()


def validate_auth_config(auth: AuthConfig) -> ValidationResult:
    """Check the credential bundle is complete for its auth mode.

    HMAC is always complete because a secret is generated when missing.
    """
    if isinstance(auth, ApiKeyAuth) and len(auth.api_key) < 8:
        return ValidationResult.fail(
            "API key must be at least 8 characters",
            "api_key_too_short",
        )
    if isinstance(auth, BearerTokenAuth) and len(auth.token) < 16:
        return ValidationResult.fail(
            "Bearer token must be at least 16 characters",
            "bearer_token_too_short",
        )
    if isinstance(auth, OAuth2Auth):
        missing = [
            name
            for name in ("client_id", "client_secret", "access_token")
            if not getattr(auth, name)
        ]
        if missing:
            return ValidationResult.fail(
                "OAuth2 requires client_id, client_secret and access_token",
                "oauth2_incomplete",
                missing=missing,
            )
    return ValidationResult.ok()


def generate_webhook_secret() -> str:
    """Generate a new HMAC signing secret (32 random bytes, hex)."""
    return secrets.token_hex(32)


# =============================================================================
# Payload sanitization
# =============================================================================

_SANITIZE_PATTERNS = [
    re.compile(r"<\s*/?\s*script\b[^>]*>?", re.IGNORECASE),
    re.compile(r"\bjavascript\s*:", re.IGNORECASE),
    re.compile(r"\bvbscript\s*:", re.IGNORECASE),
    re.compile(r"\bdata\s*:", re.IGNORECASE),
    re.compile(r"\bon\w+\s*=", re.IGNORECASE),
]


def _sanitize_string(value: str) -> str:
    # Removing one match can splice a new one together, repeat until stable
    while True:
        cleaned = value
        for pattern in _SANITIZE_PATTERNS:
            cleaned = pattern.sub("", cleaned)
        if cleaned == value:
            return cleaned
        value = cleaned


def sanitize_payload(value: Any, depth: int = 0) -> Any:
    """Strip script and protocol injection from every string in a payload.

    Walks maps and lists down to ``MAX_SANITIZE_DEPTH`` levels; anything
    nested deeper is replaced with a placeholder string.

    Args:
        value: JSON-like value (str, number, bool, None, list, dict)
        depth: Current depth (0 for the root)

    Returns:
        A sanitized copy of the value
    """
    if depth > MAX_SANITIZE_DEPTH:
        return DEPTH_PLACEHOLDER

    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return _sanitize_string(value)
    if isinstance(value, dict):
        return {
            _sanitize_string(str(key)): sanitize_payload(item, depth + 1)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [sanitize_payload(item, depth + 1) for item in value]
    return _sanitize_string(str(value))


# =============================================================================
# Configured validator
# =============================================================================


class SecurityValidator:
    """Security checks bound to the service configuration.

    Example:
        >>> validator = SecurityValidator(CourierConfig())
        >>> validator.validate_target_url("http://127.0.0.1/hook").valid
        False
        >>> validator.validate_target_url("https://example.com/hook").valid
        True
    """

    def __init__(self, config: CourierConfig) -> None:
        self.config = config
        self.url_validator = WebhookURLValidator(
            allow_localhost=config.allow_localhost,
            require_https=config.require_https,
            resolve_dns=config.resolve_dns,
        )

    def validate_target_url(self, url: str) -> ValidationResult:
        """Validate a subscription target URL (anti-SSRF)."""
        try:
            validated = self.url_validator.validate(url)
        except URLValidationError as e:
            return ValidationResult.fail(e.reason, e.code, url=url)
        return ValidationResult(
            valid=True,
            details={"host": validated.host, "resolved_ips": validated.resolved_ips},
        )

    def validate_payload_size(self, payload: bytes | str | int) -> ValidationResult:
        return validate_payload_size(payload, self.config.max_payload_size)

    def validate_rate_limits(self, per_hour: int, per_day: int) -> ValidationResult:
        return validate_rate_limits(per_hour, per_day)

    def validate_headers(self, headers: Mapping[str, str]) -> ValidationResult:
        return validate_headers(headers)

    def validate_auth_config(self, auth: AuthConfig) -> ValidationResult:
        return validate_auth_config(auth)

    def sanitize_payload(self, payload: Any) -> Any:
        return sanitize_payload(payload)

    def sign(self, payload: bytes, secret: str, algorithm: str = "sha256") -> str:
        """HMAC hex digest of the raw payload bytes."""
        return sign_payload(payload, secret, algorithm)

    def verify(self, payload: bytes, signature: str, secret: str | list[str]) -> bool:
        """Verify a signature header value using the configured replay tolerance."""
        return verify_signature(
            payload,
            signature,
            secret,
            tolerance_seconds=self.config.signature_tolerance,
        )
