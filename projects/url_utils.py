"""
URL Normalizer

Helpers the redirect audit uses to turn the paths declared in a site's
/redirects.json into absolute URLs and to decide whether two URLs point at
the same place.
"""

import re
from urllib.parse import urlsplit, urlunsplit

import tldextract


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_SCHEME = "https"

# Bundled public-suffix snapshot only; never fetch the list over the network.
_TLDX = tldextract.TLDExtract(cache_dir="/tmp/tldextract", suffix_list_urls=())

# Last path segment is exactly "404", "404.htm" or "404.html" (+ optional "/").
_404_PAGE_RE = re.compile(r"(?:^|/)404(?:\.html?)?/?$", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def has_protocol(url):
    """True if `url` parses as an absolute URL (scheme and host present)."""
    if not url or any(ch.isspace() for ch in url.strip()):
        return False
    try:
        parts = urlsplit(url.strip())
    except ValueError:
        return False
    return bool(parts.scheme and parts.netloc)


def add_www(host_or_url):
    """
    Prefix "www." to a bare registrable domain.

        example.com              -> www.example.com
        https://example.com/a    -> https://www.example.com/a
        sub.example.com          -> sub.example.com   (already has a subdomain)
        www.example.com          -> www.example.com

    Anything that can't be recognised as a domain is returned unchanged.
    """
    if not host_or_url:
        return host_or_url

    try:
        if has_protocol(host_or_url):
            parts = urlsplit(host_or_url)
            new_netloc = _add_www_to_host(parts.netloc)
            if new_netloc == parts.netloc:
                return host_or_url
            return urlunsplit(parts._replace(netloc=new_netloc))

        host, sep, rest = host_or_url.partition("/")
        return f"{_add_www_to_host(host)}{sep}{rest}"
    except ValueError:
        return host_or_url


def ensure_full_url(path_or_url, base_host=""):
    """
    Return an absolute URL for `path_or_url`.

    Absolute input is returned as-is. Relative input is joined onto
    `base_host` (used verbatim when it already has a protocol, otherwise
    "https://" + add_www(base_host)). With no base, the input is treated as
    a host name: ensure_full_url("example.com") == "https://www.example.com".
    """
    path_or_url = (path_or_url or "").strip()
    if has_protocol(path_or_url):
        return path_or_url

    base_host = (base_host or "").strip()
    if not base_host:
        return f"{DEFAULT_SCHEME}://{add_www(path_or_url.lstrip('/'))}"

    if has_protocol(base_host):
        base = base_host
    else:
        base = f"{DEFAULT_SCHEME}://{add_www(base_host)}"

    return f"{base.rstrip('/')}/{path_or_url.lstrip('/')}"


def is_404_page(path_or_url):
    """
    True if the last path segment is a 404 page: /404, /404/, /404.html, /404.htm.
    "404" inside a longer segment ("/404%20Brawl") or mid-path ("/p/404/x") is not.
    """
    if not path_or_url:
        return False
    if has_protocol(path_or_url):
        path = urlsplit(path_or_url).path
    else:
        path = re.split(r"[?#]", path_or_url, maxsplit=1)[0]
    return bool(_404_PAGE_RE.search(path))


def normalize_for_comparison(url):
    """
    Canonical form used by urls_match(): lower-case scheme and host, a
    trailing slash on every path, query and fragment kept verbatim.
    """
    parts = urlsplit((url or "").strip())
    path = parts.path or "/"
    if not path.endswith("/"):
        path = f"{path}/"
    return urlunsplit(
        (parts.scheme.lower(), parts.netloc.lower(), path, parts.query, parts.fragment)
    )


def urls_match(first, second):
    """
    True if both URLs normalize to the same string.
    Query parameter order is significant: ?a=1 does not match ?a=1&b=2.
    """
    if not first or not second:
        return False
    try:
        return normalize_for_comparison(first) == normalize_for_comparison(second)
    except ValueError:
        return False


def url_without_path(url):
    """https://www.example.com:8443/fr/page?x=1 -> https://www.example.com:8443"""
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"


def same_site_host(first, second):
    """Case-insensitive host comparison that ignores a leading "www."."""
    return _bare_host(first) == _bare_host(second)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _add_www_to_host(host):
    if not host or host.lower().startswith("www."):
        return host
    ext = _TLDX(host)
    if ext.domain and ext.suffix and not ext.subdomain:
        return f"www.{host}"
    return host


def _bare_host(url_or_host):
    if has_protocol(url_or_host):
        host = urlsplit(url_or_host).hostname or ""
    else:
        host = (url_or_host or "").split("/", 1)[0].split(":", 1)[0]
    host = host.lower()
    return host[4:] if host.startswith("www.") else host
