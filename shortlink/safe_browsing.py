"""Google Safe Browsing lookup for submitted targets.

A pass/fail collaborator like the captcha check: with no API key configured
every target passes, and a transport failure lets the target through rather
than blocking link creation on a third-party outage.

Lookup
======
::
    POST {SAFE_BROWSING_URL}?key=...
        {"client": {...}, "threatInfo": {"threatEntries": [{"url": target}], ...}}
    ─► {}                      clean
    ─► {"matches": [...]}      flagged
"""

import logging

import httpx

__all__ = ["SafeBrowsingVerifier"]

THREAT_TYPES = ["MALWARE", "SOCIAL_ENGINEERING", "UNWANTED_SOFTWARE", "POTENTIALLY_HARMFUL_APPLICATION"]


class SafeBrowsingVerifier:
    def __init__(
        self,
        api_key: str,
        lookup_url: str,
        client: httpx.AsyncClient,
        client_id: str = "shortlink",
        logger: logging.Logger | None = None,
    ):
        self._api_key = api_key
        self._lookup_url = lookup_url
        self._client = client
        self._client_id = client_id
        self._logger = logger or logging.getLogger("shortlink.safe_browsing")

    @property
    def enabled(self) -> bool:
        return bool(self._api_key)

    def _payload(self, url: str) -> dict:
        return {
            "client": {"clientId": self._client_id, "clientVersion": "1.0.0"},
            "threatInfo": {
                "threatTypes": THREAT_TYPES,
                "platformTypes": ["ANY_PLATFORM"],
                "threatEntryTypes": ["URL"],
                "threatEntries": [{"url": url}],
            },
        }

    async def is_malicious(self, url: str) -> bool:
        if not self.enabled:
            return False
        try:
            response = await self._client.post(
                self._lookup_url, params={"key": self._api_key}, json=self._payload(url)
            )
            response.raise_for_status()
            return bool(response.json().get("matches"))
        except (httpx.HTTPError, ValueError) as exc:
            self._logger.warning(f"Safe Browsing lookup failed: {exc}")
            return False
