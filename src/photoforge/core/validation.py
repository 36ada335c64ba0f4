"""Validation utilities for untrusted job input.

Source references are URLs supplied by the client.  They are fetched by the
server, so every reference is checked for server-side request forgery before
any network call is made:

- only ``https`` is accepted (``data:`` and ``file:`` URIs are rejected
  explicitly, which blocks local-file inclusion),
- loopback names, the cloud metadata address and literal IP addresses in
  loopback, private or link-local ranges are rejected.

Numeric hostnames are parsed the way the platform resolver parses them, so
shorthand and alternate spellings (``127.1``, ``2130706433``,
``0x7f.0.0.1``, ``0177.0.0.1``) and a trailing root dot (``10.0.0.1.``)
land on the address they really name.  A numeric host that does not parse
(``10.0.0.256``) and any DNS name (``internal.example.com``) is treated as
public.

The same checks run twice: once when the request is accepted and once more
right before each fetch inside the orchestrator.
"""

import ipaddress
import logging
import re
import socket
from urllib.parse import urlsplit

from .errors import (
    MalformedReference,
    PrivateNetworkBlocked,
    ReferenceCountError,
    UnsafeScheme,
    ValidationError,
)

logger = logging.getLogger(__name__)

MAX_REFERENCES = 30
MAX_PROMPT_LENGTH = 500
MAX_GROUP_NAME_LENGTH = 140

BLOCKED_HOSTS = frozenset(
    {
        "localhost",
        "127.0.0.1",
        "0.0.0.0",
        "::1",
        "[::1]",
        "169.254.169.254",  # cloud metadata service
    }
)

PRIVATE_NETWORKS = (
    ipaddress.IPv4Network("10.0.0.0/8"),
    ipaddress.IPv4Network("172.16.0.0/12"),
    ipaddress.IPv4Network("192.168.0.0/16"),
    ipaddress.IPv4Network("169.254.0.0/16"),
    ipaddress.IPv4Network("127.0.0.0/8"),
    ipaddress.IPv4Network("0.0.0.0/8"),
)

UNIQUE_LOCAL_V6 = ipaddress.IPv6Network("fc00::/7")

# One to four dot-separated decimal, octal or hex parts.
_NUMERIC_HOST = re.compile(r"^(?:0x[0-9a-f]*|\d+)(?:\.(?:0x[0-9a-f]*|\d+)){0,3}$")


def _parse_ipv4(host: str) -> ipaddress.IPv4Address | None:
    if not _NUMERIC_HOST.match(host):
        return None
    try:
        return ipaddress.IPv4Address(socket.inet_aton(host))
    except OSError:
        # Not a real address; resolution would go through DNS.
        return None


def _is_private_ipv4(address: ipaddress.IPv4Address) -> bool:
    if str(address) in BLOCKED_HOSTS:
        return True
    return any(address in network for network in PRIVATE_NETWORKS)


def _is_private_ipv6(host: str) -> bool:
    try:
        address = ipaddress.IPv6Address(host.split("%", 1)[0])
    except ValueError:
        return False

    if address.ipv4_mapped is not None:
        return _is_private_ipv4(address.ipv4_mapped)

    return (
        address.is_loopback
        or address.is_unspecified
        or address.is_link_local
        or address in UNIQUE_LOCAL_V6
    )


def is_private_host(hostname: str) -> bool:
    """Check whether a hostname names a loopback, private or metadata host.

    Args:
        hostname: Host part of a URL (without port)

    Returns:
        True if the host must not be fetched
    """
    host = hostname.lower().strip("[]").rstrip(".")

    if host in BLOCKED_HOSTS:
        return True

    if ":" in host:
        return _is_private_ipv6(host)

    address = _parse_ipv4(host)
    if address is None:
        return False

    return _is_private_ipv4(address)


def check_reference(reference: object) -> None:
    """Validate a single source reference.

    Args:
        reference: The URL to check

    Raises:
        MalformedReference: If the value is not an absolute URL
        UnsafeScheme: If the scheme is not https
        PrivateNetworkBlocked: If the host is local or private
    """
    if not isinstance(reference, str):
        raise MalformedReference("All file URLs must be strings")

    try:
        parts = urlsplit(reference.strip())
        # Accessing .port validates it; urlsplit defers that check.
        parts.port
    except ValueError as e:
        raise MalformedReference(f"Malformed URL: {e}") from e

    if not parts.scheme:
        raise MalformedReference("Malformed URL")

    if parts.scheme in ("data", "file"):
        raise UnsafeScheme("Data and file URIs are not allowed")

    if parts.scheme != "https":
        raise UnsafeScheme("Only HTTPS URLs are allowed")

    if not parts.hostname:
        raise MalformedReference("Malformed URL: missing host")

    if is_private_host(parts.hostname):
        logger.warning("Blocked private network reference: %s", parts.hostname)
        raise PrivateNetworkBlocked("Local and private IP addresses are not allowed")


def validate_references(references: object, max_count: int = MAX_REFERENCES) -> None:
    """Validate a batch of source references.

    The count is checked first, then every reference in order; the first
    failure is raised.

    Args:
        references: List of URLs supplied by the client
        max_count: Largest accepted batch size

    Raises:
        ReferenceCountError: If the list is empty, too long or not a list
        ValidationError: For the first invalid reference
    """
    if not isinstance(references, (list, tuple)):
        raise ReferenceCountError("fileUrls must be an array")

    if len(references) == 0:
        raise ReferenceCountError("At least one file URL is required")

    if len(references) > max_count:
        raise ReferenceCountError(f"Maximum {max_count} files allowed")

    for reference in references:
        try:
            check_reference(reference)
        except ValidationError as e:
            raise type(e)(f"Invalid file URL: {e}") from e


def validate_prompt(prompt: object) -> str:
    """Validate the user's instruction text.

    Returns:
        The stripped instruction

    Raises:
        ValidationError: If the prompt is missing, blank or too long
    """
    if not isinstance(prompt, str):
        raise ValidationError("Prompt must be a string")

    stripped = prompt.strip()
    if not stripped:
        raise ValidationError("Prompt cannot be empty")

    if len(stripped) > MAX_PROMPT_LENGTH:
        raise ValidationError(f"Prompt must be {MAX_PROMPT_LENGTH} characters or less")

    return stripped


def validate_group_name(name: object) -> str | None:
    """Validate an optional job label.

    Returns:
        The stripped label, or None when it is missing or blank

    Raises:
        ValidationError: If the label is not a string or is too long
    """
    if name is None:
        return None

    if not isinstance(name, str):
        raise ValidationError("Group name must be a string")

    if len(name) > MAX_GROUP_NAME_LENGTH:
        raise ValidationError(f"Group name must be {MAX_GROUP_NAME_LENGTH} characters or less")

    return name.strip() or None
