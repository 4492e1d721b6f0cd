"""reCAPTCHA verification for anonymous submissions.

Treated as a pass/fail collaborator: with no secret configured every token
passes, and a transport failure counts as a failed check.
"""

import logging

import httpx

__all__ = ["CaptchaVerifier"]


class CaptchaVerifier:
    def __init__(
        self,
        secret: str,
        verify_url: str,
        client: httpx.AsyncClient,
        logger: logging.Logger | None = None,
    ):
        self._secret = secret
        self._verify_url = verify_url
        self._client = client
        self._logger = logger or logging.getLogger("shortlink.captcha")

    @property
    def enabled(self) -> bool:
        return bool(self._secret)

    async def verify(self, token: str | None, ip: str | None = None) -> bool:
        if not self.enabled:
            return True
        if not token:
            return False
        data = {"secret": self._secret, "response": token}
        if ip:
            data["remoteip"] = ip
        try:
            response = await self._client.post(self._verify_url, data=data)
            response.raise_for_status()
            return bool(response.json().get("success"))
        except (httpx.HTTPError, ValueError) as exc:
            self._logger.warning(f"Captcha verification failed: {exc}")
            return False
