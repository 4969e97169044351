import ipaddress
import logging
import socket
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)


class WebhookUrlError(ValueError):
    pass


def _resolve(host: str) -> list[str]:
    infos = socket.getaddrinfo(host, None, proto=socket.IPPROTO_TCP)
    return sorted({info[4][0] for info in infos})


def _is_internal(address: str) -> bool:
    ip = ipaddress.ip_address(address.split("%", 1)[0])
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped:
        ip = ip.ipv4_mapped
    return (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_multicast
        or ip.is_reserved
        or ip.is_unspecified
    )


def validate_webhook_url(
    url: str, allow_insecure: bool = False, allow_private: bool = False
) -> str:
    """
    Reject destination URLs that are not HTTPS or that point into internal
    address space. Returns the URL unchanged when it is acceptable.
    """
    parts = urlsplit(url)
    allowed_schemes = {"https", "http"} if allow_insecure else {"https"}
    if parts.scheme not in allowed_schemes:
        raise WebhookUrlError("Webhook URL must use HTTPS")
    host = parts.hostname
    if not host:
        raise WebhookUrlError("Webhook URL has no host")
    if parts.username or parts.password:
        raise WebhookUrlError("Webhook URL must not embed credentials")

    if allow_private:
        return url

    try:
        addresses = [str(ipaddress.ip_address(host))]
    except ValueError:
        try:
            addresses = _resolve(host)
        except OSError:
            raise WebhookUrlError(f"Could not resolve webhook host {host}")

    if not addresses:
        raise WebhookUrlError(f"Could not resolve webhook host {host}")
    for address in addresses:
        if _is_internal(address):
            logger.warning(f"Rejected webhook URL {url}: {host} resolves to {address}")
            raise WebhookUrlError("Webhook URL resolves to a private or reserved address")
    return url
