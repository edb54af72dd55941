"""
Gamification platform client — action log submission.

Each call is one attempt; retry policy belongs to the dispatcher. Calls go
through the 'gamification' circuit breaker so a platform outage fails fast.
"""
import logging
from typing import Dict, Any

import requests

from goalboard.config import (
    GAMIFICATION_API_URL, GAMIFICATION_API_KEY, GAMIFICATION_AUTH_TOKEN,
    DISPATCH_TIMEOUT_SECONDS,
)
from goalboard.services.circuit_breaker import get_breaker, CircuitOpenError

logger = logging.getLogger('services.gamification')


class GamificationError(Exception):
    """A single action-log attempt failed."""

    def __init__(self, message, status_code=None):
        self.status_code = status_code
        super().__init__(message)

    @property
    def retryable(self):
        # Transport errors, throttling and 5xx are worth another attempt
        if self.status_code is None:
            return True
        return self.status_code == 429 or self.status_code >= 500


class GamificationClient:
    """Thin requests wrapper around the platform's action-log endpoint."""

    def __init__(self, base_url=None, api_key=None, auth_token=None, timeout=None):
        self.base_url = (base_url or GAMIFICATION_API_URL).rstrip('/')
        self.api_key = api_key if api_key is not None else GAMIFICATION_API_KEY
        self.auth_token = auth_token if auth_token is not None else GAMIFICATION_AUTH_TOKEN
        self.timeout = timeout or DISPATCH_TIMEOUT_SECONDS

    def _headers(self) -> Dict[str, str]:
        headers = {'Content-Type': 'application/json'}
        if self.auth_token:
            headers['Authorization'] = f'Basic {self.auth_token}'
        if self.api_key:
            headers['X-Api-Key'] = self.api_key
        return headers

    def log_action(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """POST one action log. Raises GamificationError on any failure."""
        url = f'{self.base_url}/action/log'

        def _post():
            r = requests.post(url, json=payload, headers=self._headers(), timeout=self.timeout)
            # Only server-side trouble counts against the breaker
            if r.status_code == 429 or r.status_code >= 500:
                raise GamificationError(
                    f"action log failed: HTTP {r.status_code} {r.text[:200]}",
                    status_code=r.status_code,
                )
            return r

        try:
            resp = get_breaker('gamification').call(_post)
        except CircuitOpenError as e:
            raise GamificationError(str(e)) from e
        except requests.RequestException as e:
            raise GamificationError(f"action log request failed: {e}") from e

        if resp.status_code >= 400:
            raise GamificationError(
                f"action log rejected: HTTP {resp.status_code} {resp.text[:200]}",
                status_code=resp.status_code,
            )

        logger.debug("Action %s logged for %s", payload.get('actionId'), payload.get('userId'))
        try:
            return resp.json()
        except ValueError:
            return {}
