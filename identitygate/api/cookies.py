"""Session cookie serialization.

The header is assembled by hand because ``Partitioned`` (CHIPS) is required
for cross-site embedded shells and is not emitted by every Starlette/stdlib
combination.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Response


def apex_domain(domain: Optional[str]) -> Optional[str]:
    """Normalise a configured cookie domain to a bare host.

    Wildcards and a leading dot are stripped so the cookie is scoped to the
    apex host rather than shared across every subdomain.
    """
    if not domain:
        return None
    host = domain.strip().lower()
    while host.startswith(("*", ".")):
        host = host[1:]
    host = host.split(":", 1)[0]
    return host or None


def build_session_cookie(
    name: str,
    value: str,
    *,
    max_age: int,
    domain: Optional[str] = None,
    embedded: bool = True,
) -> str:
    parts = [f"{name}={value}", "Path=/", f"Max-Age={max(0, int(max_age))}"]
    host = apex_domain(domain)
    if host:
        parts.append(f"Domain={host}")
    parts.extend(["HttpOnly", "Secure"])
    if embedded:
        parts.extend(["SameSite=None", "Partitioned"])
    else:
        parts.append("SameSite=Lax")
    return "; ".join(parts)


def set_session_cookie(
    response: Response,
    name: str,
    value: str,
    *,
    max_age: int,
    domain: Optional[str] = None,
    embedded: bool = True,
) -> None:
    response.headers.append(
        "set-cookie",
        build_session_cookie(name, value, max_age=max_age, domain=domain, embedded=embedded),
    )


def clear_session_cookie(
    response: Response, name: str, *, domain: Optional[str] = None, embedded: bool = True
) -> None:
    # Attributes must match the original cookie or browsers keep it
    set_session_cookie(response, name, "", max_age=0, domain=domain, embedded=embedded)
