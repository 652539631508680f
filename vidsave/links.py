import asyncio
import dataclasses
import logging
import re
from urllib.parse import urlparse

import requests

from vidsave.errors import LinkRejected, LinkRejectedKind
from vidsave.keys import make_source_key

logger = logging.getLogger(__name__)

TIKTOK = "tiktok"
INSTAGRAM = "instagram"

CHROME_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
)

URL_REGEX = re.compile(r"(https?://[^\s]+)", re.IGNORECASE)
PATH_PATTERNS = (
    (TIKTOK, re.compile(r"^/@([^/]+)/video/(\d+)/?$")),
    (INSTAGRAM, re.compile(r"^/reel/([A-Za-z0-9_-]+)/?$")),
)


@dataclasses.dataclass(frozen=True)
class ResolvedLink:
    platform: str
    video_id: str
    url: str
    host: str = ""

    @property
    def source_key(self) -> str:
        return make_source_key(self.platform, self.video_id)


def extract_links(text: str) -> list[str]:
    raw_links = URL_REGEX.findall(text or "")
    return [link.rstrip(".,;:!?)]}>") for link in raw_links]


def _first_link(text: str) -> str:
    links = extract_links(text)
    return links[0] if links else (text or "").strip()


def _is_allowed(host: str, hostname: str, port: int | None, allowed_hosts: frozenset[str]) -> bool:
    if host in allowed_hosts or hostname in allowed_hosts:
        return True
    return port is not None and f"{hostname}:{port}" in allowed_hosts


def resolve(text: str, allowed_hosts: frozenset[str]) -> ResolvedLink:
    raw = _first_link(text)
    if not raw:
        raise LinkRejected(LinkRejectedKind.NOT_A_URL, text)

    try:
        parsed = urlparse(raw)
        port = parsed.port
    except ValueError:
        raise LinkRejected(LinkRejectedKind.NOT_A_URL, text) from None
    if parsed.scheme.lower() not in {"http", "https"} or not parsed.netloc or not parsed.hostname:
        raise LinkRejected(LinkRejectedKind.NOT_A_URL, text)

    host = parsed.netloc.rpartition("@")[2].lower()
    hostname = parsed.hostname.lower()
    if not _is_allowed(host, hostname, port, allowed_hosts):
        raise LinkRejected(LinkRejectedKind.HOST_NOT_ALLOWED, raw)

    for platform, pattern in PATH_PATTERNS:
        match = pattern.match(parsed.path)
        if match:
            return ResolvedLink(platform=platform, video_id=match.groups()[-1], url=raw, host=host)

    logger.debug("Unrecognized path: host=%s path=%s", host, parsed.path)
    raise LinkRejected(LinkRejectedKind.UNRECOGNIZED_FORMAT, raw)


def expand_url(url: str, timeout: float, verify: bool = True) -> str:
    headers = {"User-Agent": CHROME_USER_AGENT}
    try:
        with requests.head(url, headers=headers, timeout=timeout, allow_redirects=True, verify=verify) as response:
            return response.url
    except requests.RequestException as head_err:
        logger.info("HEAD expand failed for %s: %s", url, head_err)

    with requests.get(url, headers=headers, timeout=timeout, allow_redirects=True, verify=verify, stream=True) as response:
        return response.url


async def resolve_link(
    text: str,
    allowed_hosts: frozenset[str],
    expand_timeout: float = 12.0,
    verify: bool = True,
) -> ResolvedLink:
    """Resolve a link, following redirects once for share short-links."""
    try:
        return resolve(text, allowed_hosts)
    except LinkRejected as err:
        if err.kind is not LinkRejectedKind.UNRECOGNIZED_FORMAT:
            raise
        rejected = err

    raw = _first_link(text)
    try:
        final_url = await asyncio.to_thread(expand_url, raw, expand_timeout, verify)
    except requests.RequestException as expand_err:
        logger.warning("Could not expand URL %s: %s", raw, expand_err)
        raise rejected from expand_err

    if final_url == raw:
        raise rejected
    logger.info("Expanded URL: original=%s final=%s", raw, final_url)
    return resolve(final_url, allowed_hosts)
