# Tests for the backend client and token providers

import os

import pytest
import requests

from edge_agent.api_client import BackendClient, StubBackendClient
from edge_agent.errors import ConnectivityError, DeliveryError
from edge_agent.tokens import EnvFileTokenProvider, StaticTokenProvider


class FakeResponse:
    def __init__(self, status_code=200, body=None, text=''):
        self.status_code = status_code
        self._body = body
        self.text = text

    def json(self):
        if self._body is None:
            raise ValueError("No JSON object could be decoded")
        return self._body


class FakeSession:
    """Stands in for requests.Session"""

    def __init__(self, response=None, error=None):
        self.headers = {}
        self.response = response or FakeResponse(body={})
        self.error = error
        self.calls = []

    def request(self, method, url, headers=None, timeout=None, **kwargs):
        self.calls.append({'method': method, 'url': url, 'headers': headers,
                           'timeout': timeout, **kwargs})
        if self.error:
            raise self.error
        return self.response


class TestBackendClient:
    """HTTP status mapping and request shape"""

    def setup_method(self):
        self.session = FakeSession()
        self.client = BackendClient('https://api.example.com/', StaticTokenProvider('tok-123'),
                                    timeout=10, hub_id='dev-pi-001', session=self.session)

    def test_send_event(self):
        """Events are posted with bearer auth and the hub id"""
        self.client.send_event({'eventType': 'money_in', 'machineId': 'machine_29',
                                'metadata': {'source': 'daily_report'}})

        call = self.session.calls[0]
        assert call['method'] == 'POST'
        assert call['url'] == 'https://api.example.com/api/edge/events'
        assert call['headers'] == {'Authorization': 'Bearer tok-123'}
        assert call['timeout'] == 10
        assert call['json']['metadata'] == {'source': 'daily_report', 'hubId': 'dev-pi-001'}

    def test_send_session_endpoint(self):
        self.client.send_session({'action': 'start', 'machineId': 'machine_04'})

        assert self.session.calls[0]['url'] == 'https://api.example.com/api/edge/sessions'

    def test_heartbeat_endpoint(self):
        self.client.send_heartbeat({'serialConnected': True})

        assert self.session.calls[0]['url'] == 'https://api.example.com/api/edge/heartbeat'

    def test_probe(self):
        """Probe is a GET on the config endpoint"""
        self.session.response = FakeResponse(body={'machineId': 'dev-pi-001'})

        assert self.client.probe() == {'machineId': 'dev-pi-001'}
        assert self.session.calls[0]['method'] == 'GET'
        assert self.session.calls[0]['url'] == 'https://api.example.com/api/edge/config'

    def test_server_error(self):
        """Non-2xx is a DeliveryError carrying the status"""
        self.session.response = FakeResponse(500, text='Internal Server Error')

        with pytest.raises(DeliveryError) as exc_info:
            self.client.send_event({'eventType': 'money_in'})

        assert exc_info.value.status_code == 500

    def test_unauthorized(self):
        self.session.response = FakeResponse(401, text='Unauthorized')

        with pytest.raises(DeliveryError) as exc_info:
            self.client.send_event({'eventType': 'money_in'})

        assert exc_info.value.status_code == 401

    def test_timeout(self):
        self.session.error = requests.exceptions.Timeout()

        with pytest.raises(DeliveryError):
            self.client.send_event({'eventType': 'money_in'})

    def test_probe_connection_error(self):
        """Probe failures are connectivity errors"""
        self.session.error = requests.exceptions.ConnectionError('refused')

        with pytest.raises(ConnectivityError):
            self.client.probe()

    def test_non_json_body(self):
        """A 2xx without JSON is still a success"""
        self.session.response = FakeResponse(204)

        assert self.client.send_event({'eventType': 'money_in'}) == {}

    def test_no_token_no_header(self):
        client = BackendClient('https://api.example.com', StaticTokenProvider(''),
                               session=self.session)

        client.probe()

        assert self.session.calls[0]['headers'] == {}


class TestStubBackendClient:
    def test_accepts_everything(self):
        stub = StubBackendClient()

        stub.probe()
        stub.send_event({'eventType': 'money_in'})
        stub.send_session({'action': 'end'})

        assert len(stub.sent) == 2


class TestEnvFileTokenProvider:
    """Token rotation through the .env file"""

    def test_reads_token(self, tmp_path):
        env = tmp_path / '.env'
        env.write_text('API_ENDPOINT=https://api.example.com\nMACHINE_TOKEN=abc\n')

        assert EnvFileTokenProvider(env).current_access_token() == 'abc'

    def test_picks_up_rewritten_file(self, tmp_path):
        """A refreshed token is used on the next call"""
        env = tmp_path / '.env'
        env.write_text('MACHINE_TOKEN=old\n')
        provider = EnvFileTokenProvider(env)
        assert provider.current_access_token() == 'old'

        env.write_text('MACHINE_TOKEN=new\n')
        stat = env.stat()
        os.utime(env, (stat.st_atime, stat.st_mtime + 10))

        assert provider.current_access_token() == 'new'

    def test_missing_file_uses_fallback(self, tmp_path):
        provider = EnvFileTokenProvider(tmp_path / 'missing.env', fallback='from-config')

        assert provider.current_access_token() == 'from-config'
