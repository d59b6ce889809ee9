"""OAuth 1.0a request signing for the BrickLink Store API.

Pure functions only: nothing here performs I/O, so signatures can be
checked against fixed vectors. BrickLink signs with HMAC-SHA1 over the
query parameters plus the OAuth parameters; request bodies are never part
of the signature.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
import time
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Tuple, Union
from urllib.parse import parse_qsl, quote, urlsplit, urlunsplit

NONCE_BYTES = 16
SIGNATURE_METHOD = "HMAC-SHA1"
OAUTH_VERSION = "1.0"

ParamValue = Union[str, int, float, bool, None]


@dataclass(frozen=True)
class BrickLinkCredentials:
    consumer_key: str
    consumer_secret: str
    token_value: str
    token_secret: str


def percent_encode(value: object) -> str:
    """RFC 3986 encoding: everything except ``A-Z a-z 0-9 - . _ ~`` is escaped."""

    return quote(str(value), safe="~")


def generate_nonce(num_bytes: int = NONCE_BYTES) -> str:
    return secrets.token_hex(num_bytes)


def generate_timestamp() -> str:
    return str(int(time.time()))


def _stringify(value: ParamValue) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def normalize_query(query: Optional[Mapping[str, ParamValue]]) -> List[Tuple[str, str]]:
    """Drop ``None`` values and stringify the rest."""

    if not query:
        return []
    return [(str(k), _stringify(v)) for k, v in query.items() if v is not None]


def split_url(url: str) -> Tuple[str, List[Tuple[str, str]]]:
    """Return ``(base_url, query_pairs)``; the base URL has no query or fragment."""

    parts = urlsplit(url)
    base_url = urlunsplit((parts.scheme.lower(), parts.netloc.lower(), parts.path, "", ""))
    return base_url, parse_qsl(parts.query, keep_blank_values=True)


def build_oauth_params(
    credentials: BrickLinkCredentials,
    *,
    nonce: Optional[str] = None,
    timestamp: Optional[str] = None,
) -> Dict[str, str]:
    return {
        "oauth_consumer_key": credentials.consumer_key,
        "oauth_token": credentials.token_value,
        "oauth_signature_method": SIGNATURE_METHOD,
        "oauth_timestamp": timestamp or generate_timestamp(),
        "oauth_nonce": nonce or generate_nonce(),
        "oauth_version": OAUTH_VERSION,
    }


def build_signature_base_string(method: str, base_url: str, params: Iterable[Tuple[str, str]]) -> str:
    encoded = sorted((percent_encode(k), percent_encode(v)) for k, v in params)
    param_string = "&".join(f"{k}={v}" for k, v in encoded)
    return "&".join([method.upper(), percent_encode(base_url), percent_encode(param_string)])


def build_signing_key(consumer_secret: str, token_secret: str) -> str:
    return f"{percent_encode(consumer_secret)}&{percent_encode(token_secret or '')}"


def sign(base_string: str, signing_key: str) -> str:
    digest = hmac.new(signing_key.encode("utf-8"), base_string.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


def build_authorization_header(oauth_params: Mapping[str, str], signature: str) -> str:
    header_params = dict(oauth_params)
    header_params["oauth_signature"] = signature
    return "OAuth " + ", ".join(
        f'{percent_encode(k)}="{percent_encode(header_params[k])}"' for k in sorted(header_params)
    )


def build_oauth_header(
    method: str,
    url: str,
    credentials: BrickLinkCredentials,
    query: Optional[Mapping[str, ParamValue]] = None,
    *,
    nonce: Optional[str] = None,
    timestamp: Optional[str] = None,
) -> str:
    """Sign one request and return the ``Authorization`` header value.

    ``url`` may already carry a query string; those parameters are signed
    together with ``query``. A fresh nonce is generated unless one is given.
    """

    base_url, url_params = split_url(url)
    oauth_params = build_oauth_params(credentials, nonce=nonce, timestamp=timestamp)
    params = url_params + normalize_query(query) + list(oauth_params.items())

    base_string = build_signature_base_string(method, base_url, params)
    signature = sign(base_string, build_signing_key(credentials.consumer_secret, credentials.token_secret))
    return build_authorization_header(oauth_params, signature)
