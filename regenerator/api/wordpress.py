from __future__ import annotations

import base64
import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import requests

from .config import DEFAULT_WP_TIMEOUT_SECONDS
from .models import PageRecord

logger = logging.getLogger("regenerator.wordpress")

PAGE_SIZE = 100
LIST_FIELDS = "id,date,modified,title,link,slug,categories"
CONTENT_FIELDS = "id,content,modified,title,link,slug"
RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
DEFAULT_RETRIES = 3
DEFAULT_BACKOFF_SECONDS = 1.0


class WordPressError(RuntimeError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class WordPressAuthError(WordPressError):
    pass


def _wp_auth_header(username: str, app_password: str) -> str:
    token = base64.b64encode(f"{username}:{app_password}".encode("utf-8")).decode("ascii")
    return f"Basic {token}"


def _rendered(value: Any) -> str:
    if isinstance(value, dict):
        return str(value.get("raw") or value.get("rendered") or "")
    return str(value or "")


def _parse_modified(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def page_from_payload(payload: Dict[str, Any]) -> PageRecord:
    return PageRecord(
        id=int(payload["id"]),
        slug=str(payload.get("slug") or ""),
        title=_rendered(payload.get("title")),
        html=_rendered(payload.get("content")),
        modified=_parse_modified(payload.get("modified")),
        link=str(payload.get("link") or ""),
    )


class WordPressClient:
    """Content store client over the WordPress REST API (application passwords)."""

    def __init__(
        self,
        site_url: str,
        username: str,
        app_password: str,
        *,
        timeout_seconds: int = DEFAULT_WP_TIMEOUT_SECONDS,
        retries: int = DEFAULT_RETRIES,
        backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if not site_url or not username or not app_password:
            raise WordPressError("WordPress URL, username and application password are required.")
        self.site_url = site_url.strip().rstrip("/")
        self.api_base = f"{self.site_url}/wp-json/wp/v2"
        self._auth = _wp_auth_header(username, app_password)
        self.timeout_seconds = timeout_seconds
        self.retries = max(1, retries)
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    def _request(self, method: str, path: str, *, json_body: Optional[Dict[str, Any]] = None) -> requests.Response:
        url = f"{self.api_base}/{path.lstrip('/')}"
        headers = {"Authorization": self._auth}
        if json_body is not None:
            headers["Content-Type"] = "application/json"

        for attempt in range(self.retries):
            last_attempt = attempt >= self.retries - 1
            try:
                response = requests.request(
                    method=method,
                    url=url,
                    headers=headers,
                    json=json_body,
                    timeout=self.timeout_seconds,
                )
            except requests.RequestException as exc:
                if last_attempt:
                    raise WordPressError(f"Request failed for {url}: {exc}") from exc
                error_text = str(exc)
            else:
                if response.status_code not in RETRYABLE_STATUS_CODES or last_attempt:
                    return response
                error_text = f"HTTP {response.status_code}"

            sleep_seconds = self.backoff_seconds * (2 ** attempt)
            logger.warning(
                "wordpress.retry method=%s url=%s attempt=%s/%s sleep=%.1fs error=%s",
                method,
                url,
                attempt + 1,
                self.retries,
                sleep_seconds,
                error_text,
            )
            self._sleep(sleep_seconds)
        raise WordPressError(f"Request failed for {url}.")

    @staticmethod
    def _json(response: requests.Response) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise WordPressError(f"Non-JSON response from {response.url}.", response.status_code) from exc

    def verify_connection(self) -> Dict[str, Any]:
        response = self._request("GET", "users/me")
        if response.status_code == 401:
            raise WordPressAuthError("401 Unauthorized: check username and application password.", 401)
        if response.status_code == 403:
            raise WordPressAuthError("403 Forbidden: user does not have permission.", 403)
        if response.status_code == 404:
            raise WordPressError("404 Not Found: the JSON API is not enabled on this site.", 404)
        if response.status_code >= 400:
            raise WordPressError(f"Connection error: HTTP {response.status_code}.", response.status_code)
        payload = self._json(response)
        return payload if isinstance(payload, dict) else {}

    def list_pages(self, on_progress: Optional[Callable[[int], None]] = None) -> List[PageRecord]:
        pages: List[PageRecord] = []
        page_number = 1
        while True:
            response = self._request(
                "GET",
                f"posts?per_page={PAGE_SIZE}&page={page_number}&_fields={LIST_FIELDS}&status=publish",
            )
            if response.status_code == 400:
                # Past the last page.
                break
            if response.status_code in (401, 403):
                raise WordPressAuthError(f"WordPress refused listing: HTTP {response.status_code}.", response.status_code)
            if response.status_code >= 400:
                raise WordPressError(f"WordPress listing failed: HTTP {response.status_code}.", response.status_code)

            batch = self._json(response)
            if not isinstance(batch, list) or not batch:
                break
            pages.extend(page_from_payload(item) for item in batch if isinstance(item, dict) and "id" in item)
            if on_progress:
                on_progress(len(pages))
            if len(batch) < PAGE_SIZE:
                break
            page_number += 1

        logger.info("wordpress.listed site=%s pages=%s", self.site_url, len(pages))
        return pages

    def fetch_full_content(self, page_id: int) -> PageRecord:
        response = self._request("GET", f"posts/{page_id}?context=edit&_fields={CONTENT_FIELDS}")
        if response.status_code in (401, 403):
            raise WordPressAuthError(
                f"WordPress error {response.status_code}: authorization failed, reconnect with valid credentials.",
                response.status_code,
            )
        if response.status_code >= 400:
            raise WordPressError(f"WordPress error: HTTP {response.status_code}.", response.status_code)
        payload = self._json(response)
        if not isinstance(payload, dict) or "id" not in payload:
            raise WordPressError(f"Unexpected payload for page {page_id}.")
        return page_from_payload(payload)

    def publish(
        self,
        page_id: int,
        html: str,
        *,
        title: Optional[str] = None,
        date: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {"content": html}
        if title:
            body["title"] = title
        if date is not None:
            body["date"] = date.replace(microsecond=0).isoformat()
        response = self._request("POST", f"posts/{page_id}", json_body=body)
        if response.status_code in (401, 403):
            raise WordPressAuthError(f"WordPress refused update: HTTP {response.status_code}.", response.status_code)
        if response.status_code >= 400:
            raise WordPressError(
                f"WordPress update failed: HTTP {response.status_code}: {response.text[:300]}",
                response.status_code,
            )
        logger.info("wordpress.published page_id=%s", page_id)
        payload = self._json(response)
        return payload if isinstance(payload, dict) else {}
