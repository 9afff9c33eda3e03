"""
Cookie jars attached to transports.

A persistent jar follows the public suffix list so a response from
``shop.example.co.uk`` cannot plant a cookie on all of ``co.uk``. Transports
built without a jar get one that accepts nothing, so cookies never leak
between requests unless a jar was asked for.
"""

import logging
from functools import lru_cache
from http.cookiejar import CookieJar, DefaultCookiePolicy
from urllib.parse import urlsplit

import tldextract

logger = logging.getLogger(__name__)

# bundled snapshot only: building a jar never touches the network
_extract = tldextract.TLDExtract(
    cache_dir=None,
    suffix_list_urls=(),
    include_psl_private_domains=True,
)


@lru_cache(maxsize=4096)
def is_public_suffix(domain: str) -> bool:
    """Check if `domain` is itself a public suffix (``com``, ``co.uk``, ``github.io``)."""
    domain = domain.strip('.').lower()
    if not domain:
        return False
    parts = _extract(domain)
    return not parts.domain and parts.suffix == domain


class PublicSuffixCookiePolicy(DefaultCookiePolicy):
    """Cookie policy rejecting Domain attributes that name a public suffix.

    A cookie whose Domain is a public suffix is only kept when the request
    host is that exact name, in which case it behaves as a host cookie.
    """

    def set_ok_domain(self, cookie, request):
        if not super().set_ok_domain(cookie, request):
            return False

        if not cookie.domain_specified:
            return True

        domain = cookie.domain.lstrip('.')
        if not is_public_suffix(domain):
            return True

        host = (urlsplit(request.get_full_url()).hostname or '').lower()
        if host == domain.lower():
            return True

        logger.debug(f"rejecting cookie {cookie.name} for public suffix domain {domain}")
        return False


def new_cookie_jar() -> CookieJar:
    """Create an empty, thread-safe, public-suffix-aware cookie jar."""
    return CookieJar(policy=PublicSuffixCookiePolicy())


def disabled_cookie_jar() -> CookieJar:
    """Create a jar that neither stores nor returns any cookie."""
    return CookieJar(policy=DefaultCookiePolicy(allowed_domains=[]))
