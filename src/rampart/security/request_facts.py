"""
Read-only view of an inbound request.

The defense components never touch the framework request directly; they
read method, path, query string, headers and client address from RequestFacts.
"""

from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

from starlette.requests import Request


@dataclass(frozen=True)
class RequestFacts:
    """Method, path, query and lower-cased headers of a request."""
    method: str = "GET"
    path: str = "/"
    query_string: str = ""
    headers: Dict[str, str] = field(default_factory=dict)
    client_host: Optional[str] = None

    @classmethod
    def from_request(cls, request: Request) -> "RequestFacts":
        return cls(
            method=request.method,
            path=request.url.path,
            query_string=request.url.query or "",
            headers={k.lower(): v for k, v in request.headers.items()},
            client_host=request.client.host if request.client else None,
        )

    @classmethod
    def build(
        cls,
        path: str = "/",
        method: str = "GET",
        query_string: str = "",
        headers: Optional[Mapping[str, str]] = None,
        client_host: Optional[str] = None
    ) -> "RequestFacts":
        return cls(
            method=method,
            path=path,
            query_string=query_string,
            headers={k.lower(): v for k, v in (headers or {}).items()},
            client_host=client_host,
        )

    def header(self, name: str, default: str = "") -> str:
        return self.headers.get(name.lower(), default)

    @property
    def user_agent(self) -> str:
        return self.header("user-agent")

    @property
    def url(self) -> str:
        return f"{self.path}?{self.query_string}" if self.query_string else self.path


def extract_ip(facts: RequestFacts) -> str:
    """Client address from forwarding headers, then the socket peer."""
    forwarded_for = facts.header("x-forwarded-for")
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first

    for header in ("x-real-ip", "cf-connecting-ip"):
        value = facts.header(header).strip()
        if value:
            return value

    return facts.client_host or "unknown"
