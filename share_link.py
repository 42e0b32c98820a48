"""
share_link.py — Share URL encoding.

Embedded-key links carry the key in the URL fragment:

    https://host/s/{share_id}#{base64url(key)}

Browsers never send the fragment to the server (nor in `Referer`), so the
key cannot reach access logs or proxies. Password links carry the
non-secret hint `#password`; the key is re-derived from user input.
"""

from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import urldefrag, urlsplit, quote, unquote

from errors import InvalidShareLinkError, InvalidInputError
from keys import KEY_BYTES, b64encode, b64decode

SHARE_PATH = "/s/"
PASSWORD_HINT = "password"


@dataclass(frozen=True)
class ShareLink:
    share_id: str
    key: Optional[bytes] = field(default=None, repr=False)
    password_required: bool = False


def encode(base_url: str, share_id: str, key: Optional[bytes] = None,
           password_mode: bool = False) -> str:
    if not share_id:
        raise InvalidShareLinkError("Share id is required")
    if key is not None and password_mode:
        raise InvalidShareLinkError("A password link never embeds a key")

    url = f"{base_url.rstrip('/')}{SHARE_PATH}{quote(share_id, safe='')}"
    if key is not None:
        if len(key) != KEY_BYTES:
            raise InvalidShareLinkError("Key must be 256 bits")
        return f"{url}#{b64encode(bytes(key))}"
    if password_mode:
        return f"{url}#{PASSWORD_HINT}"
    return url


def decode(url: str) -> ShareLink:
    try:
        parts = urlsplit(url)
    except ValueError as e:
        raise InvalidShareLinkError() from e

    if parts.query:
        # Keys only ever travel in the fragment.
        raise InvalidShareLinkError("Share links carry no query parameters")

    path = parts.path
    marker = path.rfind(SHARE_PATH)
    if marker < 0:
        raise InvalidShareLinkError()
    share_id = unquote(path[marker + len(SHARE_PATH):]).strip("/")
    if not share_id or "/" in share_id:
        raise InvalidShareLinkError()

    fragment = parts.fragment
    if not fragment:
        return ShareLink(share_id)
    if fragment == PASSWORD_HINT:
        return ShareLink(share_id, password_required=True)

    try:
        key = b64decode(fragment)
    except InvalidInputError as e:
        raise InvalidShareLinkError("Malformed key fragment") from e
    if len(key) != KEY_BYTES:
        raise InvalidShareLinkError("Malformed key fragment")
    return ShareLink(share_id, key=key)


def server_visible_url(url: str) -> str:
    """The part of a share URL that ever reaches the server."""
    return urldefrag(url)[0]


def referer_for(url: str) -> str:
    """`Referer` a browser sends when navigating away from `url`."""
    return server_visible_url(url)
