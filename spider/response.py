"""
Result of a single fetch: status (real or sentinel), decoded body, headers and cookies.
"""

from dataclasses import asdict, dataclass
from typing import Dict, List, Optional

# Sentinel statuses sit outside the valid HTTP range so callers can branch on
# `status` alone.
STATUS_DEFAULT = 1000
STATUS_READ_TIMEOUT = 1001
STATUS_BODY_TOO_BIG = 1002
STATUS_UNEXPECTED = 1003
STATUS_NEW_REQUEST_ERR = 1004
STATUS_DO_REQUEST_ERR = 1005
STATUS_RESOLVE_ADDR_TIMEOUT = 1006

SENTINEL_STATUSES = frozenset({
    STATUS_DEFAULT,
    STATUS_READ_TIMEOUT,
    STATUS_BODY_TOO_BIG,
    STATUS_UNEXPECTED,
    STATUS_NEW_REQUEST_ERR,
    STATUS_DO_REQUEST_ERR,
    STATUS_RESOLVE_ADDR_TIMEOUT,
})


def is_sentinel(status: int) -> bool:
    """Check if a status is one of the synthetic transport-failure codes."""
    return status in SENTINEL_STATUSES


@dataclass(frozen=True)
class CookieRecord:
    name: str
    value: str
    domain: str = ""
    path: str = "/"
    expires: Optional[int] = None
    secure: bool = False
    http_only: bool = False

    @classmethod
    def from_cookiejar(cls, cookie) -> "CookieRecord":
        """Build a record from an `http.cookiejar.Cookie`."""
        # host-only cookies carry the request host; report them unscoped
        domain = cookie.domain if cookie.domain_specified else ""
        return cls(
            name=cookie.name,
            value=cookie.value or "",
            domain=domain,
            path=cookie.path or "/",
            expires=cookie.expires,
            secure=bool(cookie.secure),
            http_only=(cookie.has_nonstandard_attr("HttpOnly")
                       or cookie.has_nonstandard_attr("httponly")),
        )

    def to_dict(self) -> dict:
        return asdict(self)


class HttpResponse:
    def __init__(
        self,
        status: int = STATUS_DEFAULT,
        content: bytes = b'',
        headers: Dict[str, List[str]] = None,
        cookies: List[CookieRecord] = None,
        encoding: str = None
    ):
        """Initialize an HttpResponse; fields are not modified afterwards."""
        self.status = status
        self.content = content
        self.headers = headers or {}
        self.cookies = cookies or []
        self.encoding = encoding

    @property
    def success(self) -> bool:
        """Check if the fetch ended with a real 200 status."""
        return self.status == 200

    @property
    def body(self) -> str:
        """Decode the response content to text using the response charset or UTF-8."""
        if not self.content:
            return ""
        try:
            return self.content.decode(self.encoding or 'utf-8', errors='replace')
        except LookupError:
            return self.content.decode('utf-8', errors='replace')

    @property
    def size(self) -> int:
        return len(self.content)

    def header(self, name: str) -> Optional[str]:
        """First value of a header, matched case-insensitively."""
        lowered = name.lower()
        for key, values in self.headers.items():
            if key.lower() == lowered and values:
                return values[0]
        return None

    def to_dict(self) -> dict:
        return {
            'status': self.status,
            'body': self.body,
            'headers': self.headers,
            'cookies': [cookie.to_dict() for cookie in self.cookies],
        }

    def __repr__(self) -> str:
        return f"HttpResponse(status={self.status}, size={self.size})"
