from __future__ import annotations

import json
import os
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any, Optional

from taxintake.core.errors import ProviderError


def allowed_outbound_hosts() -> set[str]:
    raw = (os.environ.get("ALLOWED_OUTBOUND_HOSTS") or "").strip()
    if raw:
        hosts = []
        for h in raw.split(","):
            h = h.strip().lower()
            if not h:
                continue
            if "://" in h:
                h = urllib.parse.urlparse(h).hostname or ""
            hosts.append(h.split("/")[0].split(":")[0])
        return {h for h in hosts if h}
    # Safe-by-default allowlist: captcha verification + transactional email only.
    return {
        "challenges.cloudflare.com",
        "api.resend.com",
    }


def assert_url_allowed(url: str) -> None:
    u = urllib.parse.urlparse(url)
    if (u.scheme or "").lower() != "https":
        raise ProviderError("Blocked network request: only https:// is allowed.")
    host = (u.hostname or "").lower()
    if not host:
        raise ProviderError("Blocked network request: missing hostname.")
    if host not in allowed_outbound_hosts():
        suffix = " (ALLOWED_OUTBOUND_HOSTS overrides defaults)" if os.environ.get("ALLOWED_OUTBOUND_HOSTS") else ""
        raise ProviderError(f"Blocked network request: host not allowlisted ({host}).{suffix}")


@dataclass(frozen=True)
class HttpResponse:
    status_code: int
    content: bytes
    content_type: Optional[str] = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def json(self) -> Any:
        try:
            return json.loads(self.content.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            return None

    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")


class _AllowlistRedirectHandler(urllib.request.HTTPRedirectHandler):
    def redirect_request(self, req, fp, code, msg, headers, newurl):  # type: ignore[override]
        # Enforce allowlist on redirects as well.
        assert_url_allowed(str(newurl))
        return super().redirect_request(req, fp, code, msg, headers, newurl)


def http_post(
    url: str,
    *,
    form: Optional[dict[str, str]] = None,
    json_body: Any = None,
    headers: Optional[dict[str, str]] = None,
    timeout_s: float = 10.0,
) -> HttpResponse:
    """
    Single-attempt HTTP POST (form-encoded or JSON) to an allowlisted https host.

    HTTP error statuses are returned, not raised, so callers can report upstream
    status codes. Transport failures raise ProviderError without echoing secrets.
    """
    assert_url_allowed(url)
    hdrs = dict(headers or {})
    if json_body is not None:
        data = json.dumps(json_body).encode("utf-8")
        hdrs.setdefault("Content-Type", "application/json")
    else:
        data = urllib.parse.urlencode(form or {}).encode("utf-8")
        hdrs.setdefault("Content-Type", "application/x-www-form-urlencoded")

    opener = urllib.request.build_opener(_AllowlistRedirectHandler())
    req = urllib.request.Request(url, data=data, headers=hdrs, method="POST")
    try:
        with opener.open(req, timeout=timeout_s) as resp:
            status = int(getattr(resp, "status", 200))
            return HttpResponse(status_code=status, content=resp.read(), content_type=resp.headers.get("Content-Type"))
    except urllib.error.HTTPError as e:
        body = e.read() if hasattr(e, "read") else b""
        return HttpResponse(status_code=int(e.code or 0), content=body or b"", content_type=e.headers.get("Content-Type") if e.headers else None)
    except urllib.error.URLError as e:
        host = urllib.parse.urlparse(url).hostname
        reason = getattr(e, "reason", None)
        raise ProviderError(f"Network request failed: {reason or type(e).__name__} host={host}") from e
    except TimeoutError as e:
        host = urllib.parse.urlparse(url).hostname
        raise ProviderError(f"Network request timed out host={host}") from e
