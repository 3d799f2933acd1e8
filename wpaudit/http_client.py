import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger(__name__)

USER_AGENT = "Mozilla/5.0 (compatible; wpaudit/1.0; +https://github.com/wpaudit)"


@dataclass
class ResponseWrapper:
    status_code: int
    headers: Dict[str, str]
    text: str
    elapsed_ms: float
    url: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 400

    @property
    def is_error(self):
        return self.status_code >= 500


class HttpClient:
    """
    Plain probe client for the audited site.
    No retries: a probe that fails is itself the finding.
    """

    def __init__(self, base_url: str, timeout: float = 15.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            "User-Agent": USER_AGENT,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        })

    def url_for(self, target: str) -> str:
        return target if target.startswith("http") else f"{self.base_url}/{target.lstrip('/')}"

    def send(self, method: str, target: str, *,
             headers: Optional[Dict[str, str]] = None,
             timeout: Optional[float] = None,
             allow_redirects: bool = True) -> ResponseWrapper:
        """Raises requests.RequestException when the host cannot be reached."""
        url = self.url_for(target)
        start_time = time.time()
        resp = self.session.request(
            method=method.upper(),
            url=url,
            headers=headers,
            timeout=timeout or self.timeout,
            allow_redirects=allow_redirects,
        )
        elapsed = (time.time() - start_time) * 1000.0
        logger.debug("[<] %s %s %s (%.0fms)", method.upper(), resp.status_code, url, elapsed)
        return ResponseWrapper(
            status_code=resp.status_code,
            headers=dict(resp.headers),
            text=resp.text if method.upper() != "HEAD" else "",
            elapsed_ms=elapsed,
            url=str(resp.url),
        )

    def head(self, target: str = "/", **kwargs: Any) -> ResponseWrapper:
        return self.send("HEAD", target, **kwargs)

    def get(self, target: str, **kwargs: Any) -> ResponseWrapper:
        return self.send("GET", target, **kwargs)
