import json

import pytest
from requests.structures import CaseInsensitiveDict

import chat_core
from chat_core import NormalizedRequest, ResponseWriter, Settings


class RecordingWriter(ResponseWriter):
    def __init__(self):
        self.headers = CaseInsensitiveDict()
        self.body = None
        self.ended = False

    def set_header(self, name, value):
        self.headers[name] = value

    def get_header(self, name):
        return self.headers.get(name)

    def end(self, body=None):
        self.body = body
        self.ended = True
        return self

    def payload(self):
        return json.loads(self.body)


class FakeResponse:
    def __init__(self, status_code, data):
        self.status_code = status_code
        self._data = data

    def json(self):
        if isinstance(self._data, Exception):
            raise self._data
        return self._data


def make_request(method='POST', body='', origin=None, content_type='application/json'):
    headers = CaseInsensitiveDict()
    if origin is not None:
        headers['Origin'] = origin
    if content_type is not None:
        headers['Content-Type'] = content_type
    return NormalizedRequest(method=method, headers=headers, body=body)


@pytest.fixture
def mock_settings():
    return Settings(allowed_origins=('https://a.com',), allow_mock=True)


@pytest.fixture
def live_settings():
    return Settings(allowed_origins=('https://a.com',), openai_api_key='sk-test')


@pytest.fixture
def upstream(monkeypatch):
    """Replace requests.post in chat_core and record every call."""
    calls = []
    state = {'response': FakeResponse(200, {'choices': [{'message': {'content': 'hi there'}}]})}

    def fake_post(url, json=None, headers=None, timeout=None):
        calls.append({'url': url, 'json': json, 'headers': headers, 'timeout': timeout})
        if isinstance(state['response'], Exception):
            raise state['response']
        return state['response']

    monkeypatch.setattr(chat_core.requests, 'post', fake_post)

    class Upstream:
        def respond(self, response):
            state['response'] = response

    up = Upstream()
    up.calls = calls
    return up
