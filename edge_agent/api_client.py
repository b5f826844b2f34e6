# Backend Client - REST API client for the edge agent
# Handles the connectivity probe, event/session delivery and heartbeats

import logging
from typing import Any, Dict

import requests

from .errors import ConnectivityError, DeliveryError

logger = logging.getLogger(__name__)

CONFIG_PATH = '/api/edge/config'
EVENTS_PATH = '/api/edge/events'
SESSIONS_PATH = '/api/edge/sessions'
HEARTBEAT_PATH = '/api/edge/heartbeat'


class BackendClient:
    """REST API client for the edge backend"""

    def __init__(self, base_url: str, token_provider, timeout: float = 10,
                 hub_id: str = None, session: requests.Session = None):
        self.base_url = base_url.rstrip('/')
        self.token_provider = token_provider
        self.timeout = timeout
        self.hub_id = hub_id
        self.session = session or requests.Session()
        self.session.headers.update({
            'Content-Type': 'application/json',
            'User-Agent': 'Edge-Agent/1.0'
        })

    def _headers(self) -> Dict[str, str]:
        token = self.token_provider.current_access_token()
        return {'Authorization': f'Bearer {token}'} if token else {}

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method, url, headers=self._headers(),
                                            timeout=self.timeout, **kwargs)
        except requests.exceptions.Timeout:
            raise DeliveryError(f"{method} {path} timed out after {self.timeout}s")
        except requests.exceptions.RequestException as e:
            raise DeliveryError(f"{method} {path} failed: {e}")

        if not 200 <= response.status_code < 300:
            if response.status_code == 401:
                logger.error("Authentication failed - check machine token")
            raise DeliveryError(f"{method} {path} returned {response.status_code}: "
                                f"{response.text[:200]}", status_code=response.status_code)
        try:
            return response.json()
        except ValueError:
            return {}

    def probe(self) -> Dict[str, Any]:
        """Lightweight connectivity check"""
        try:
            return self._request('GET', CONFIG_PATH)
        except DeliveryError as e:
            raise ConnectivityError(str(e), status_code=e.status_code) from e

    def send_event(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        body = dict(payload)
        metadata = dict(body.get('metadata') or {})
        if self.hub_id:
            metadata.setdefault('hubId', self.hub_id)
        body['metadata'] = metadata
        result = self._request('POST', EVENTS_PATH, json=body)
        logger.info("Event sent: %s from %s", payload.get('eventType'), payload.get('machineId'))
        return result

    def send_session(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        result = self._request('POST', SESSIONS_PATH, json=payload)
        logger.info("Session sent: %s from %s", payload.get('action'), payload.get('machineId'))
        return result

    def send_heartbeat(self, health: Dict[str, Any]) -> Dict[str, Any]:
        result = self._request('POST', HEARTBEAT_PATH, json=health)
        logger.debug("Heartbeat sent")
        return result


# Stub implementation for running without a backend
class StubBackendClient:
    """Accepts everything; used when no API endpoint is configured"""

    def __init__(self, *args, **kwargs):
        self.sent = []

    def probe(self) -> Dict[str, Any]:
        return {}

    def send_event(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        self.sent.append(payload)
        logger.info("[STUB] Event %s from %s", payload.get('eventType'), payload.get('machineId'))
        return {'id': len(self.sent)}

    def send_session(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        self.sent.append(payload)
        logger.info("[STUB] Session %s from %s", payload.get('action'), payload.get('machineId'))
        return {'id': len(self.sent)}

    def send_heartbeat(self, health: Dict[str, Any]) -> Dict[str, Any]:
        return {}
