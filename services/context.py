from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

# User-Agent kept in the context (and handed to reporters) is capped
MAX_USER_AGENT_LENGTH = 500


@dataclass(frozen=True)
class VisitorContext:
    """
    The slice of an HTTP request the engine needs.

    Built once per request by the web layer so engine code never touches
    flask.request directly.
    """
    ip: str = ""
    user_agent: str = ""
    path: str = ""
    url: str = ""
    query: dict = field(default_factory=dict)
    cookies: dict = field(default_factory=dict)
    timestamp: Optional[datetime] = None

    @classmethod
    def from_request(cls, request):
        # remote_addr is already the real client once ProxyFix is installed
        return cls(
            ip=request.remote_addr or "",
            user_agent=(request.headers.get("User-Agent") or "")[:MAX_USER_AGENT_LENGTH],
            path=request.path,
            url=request.url,
            query=request.args.to_dict(flat=True),
            cookies=dict(request.cookies),
            timestamp=datetime.now(timezone.utc),
        )

    def as_report_context(self):
        """Context handed to hooks and reporters (no cookies)."""
        ts = self.timestamp or datetime.now(timezone.utc)
        return {
            "timestamp": ts.isoformat(),
            "ip": self.ip,
            "user_agent": self.user_agent,
            "page_url": self.url,
            "landing_path": self.path,
        }
