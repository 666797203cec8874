import re
from ipaddress import ip_address
from urllib.parse import urlparse


_HOSTNAME_LABEL_PATTERN = re.compile(r"^[A-Za-z0-9-]{1,63}$")


def _is_valid_http_hostname(hostname: str) -> bool:
    """Return True when hostname is a valid DNS label sequence, localhost, or IP literal."""
    try:
        ip_address(hostname)
        return True
    except ValueError:
        pass

    lowered = hostname.lower()
    if lowered == "localhost":
        return True

    if lowered.endswith("."):
        lowered = lowered[:-1]

    if not lowered:
        return False

    labels = lowered.split(".")
    if any(not label for label in labels):
        return False

    for label in labels:
        if not _HOSTNAME_LABEL_PATTERN.fullmatch(label):
            return False
        if label.startswith("-") or label.endswith("-"):
            return False

    return True


def has_trailing_separator(url: str) -> bool:
    return url.endswith("/")


def strip_trailing_separator(url: str) -> str:
    """Remove exactly one trailing path separator."""
    if has_trailing_separator(url):
        return url[:-1]
    return url


def validate_callback_url(url: str) -> None:
    """Validate the host callback URL that the cloud service pushes to.

    Only scheme and host presence are required. The cloud service rejects
    anything it cannot reach on its own, so path and port are left alone.

    Args:
        url: Callback base URL, without a trailing separator.

    Raises:
        ValueError: If the URL is empty or lacks a scheme or host component.
    """
    if not url:
        error_message = "callback url must not be empty"
        raise ValueError(error_message)

    parsed = urlparse(url)
    if not parsed.scheme:
        error_message = "callback url must include a scheme"
        raise ValueError(error_message)

    if not parsed.hostname:
        error_message = "callback url must include a host"
        raise ValueError(error_message)


def is_well_formed_http_url(url: str) -> bool:
    """Stricter check used when operators edit the callback URL via the API."""
    parsed = urlparse(url)
    if parsed.scheme not in {"http", "https"}:
        return False
    if not parsed.hostname or not _is_valid_http_hostname(parsed.hostname):
        return False
    return not (parsed.query or parsed.fragment)


def normalize_lan_address(address: str) -> str:
    """Remove every path separator from a LAN address."""
    return address.replace("/", "")
