import io
import threading

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from chat_core import PayloadTooLarge, Settings
import dev_server
from dev_server import MalformedBody, create_server, read_request_body, with_dev_defaults


def headers(**values):
    return CaseInsensitiveDict({k.replace('_', '-'): v for k, v in values.items()})


# --- body buffering ---

def test_read_body_by_content_length():
    rfile = io.BytesIO('{"text": "héllo"}'.encode('utf-8') + b'trailing')
    body = read_request_body(rfile, headers(content_length='18'))
    assert body == '{"text": "héllo"}'


def test_read_body_without_length_is_empty():
    assert read_request_body(io.BytesIO(b'ignored'), headers()) == ''


def test_read_body_over_ceiling():
    with pytest.raises(PayloadTooLarge) as exc:
        read_request_body(io.BytesIO(b'x' * 11), headers(content_length='11'), max_bytes=10)
    assert exc.value.status == 413


def test_read_body_at_ceiling():
    assert read_request_body(io.BytesIO(b'x' * 10), headers(content_length='10'), max_bytes=10) == 'x' * 10


def test_read_chunked_body():
    raw = b'5\r\nhello\r\n6;ext=1\r\n world\r\n0\r\n\r\n'
    assert read_request_body(io.BytesIO(raw), headers(transfer_encoding='chunked')) == 'hello world'


def test_chunked_body_over_ceiling():
    raw = b'8\r\n12345678\r\n8\r\n12345678\r\n0\r\n\r\n'
    with pytest.raises(PayloadTooLarge):
        read_request_body(io.BytesIO(raw), headers(transfer_encoding='chunked'), max_bytes=10)


@pytest.mark.parametrize('hdrs, raw', [
    (headers(content_length='abc'), b''),
    (headers(content_length='10'), b'short'),
    (headers(transfer_encoding='chunked'), b'zz\r\nhello\r\n'),
])
def test_malformed_bodies(hdrs, raw):
    with pytest.raises(MalformedBody) as exc:
        read_request_body(io.BytesIO(raw), hdrs)
    assert exc.value.status == 400


def test_invalid_utf8_is_replaced():
    assert read_request_body(io.BytesIO(b'ok\xff'), headers(content_length='3')) == 'ok�'


def test_dev_defaults_only_fill_empty_allow_list():
    assert with_dev_defaults(Settings()).allowed_origins == ('*',)
    assert with_dev_defaults(Settings(allowed_origins=('https://a.com',))).allowed_origins == ('https://a.com',)


# --- running server ---

@pytest.fixture
def base_url():
    settings = Settings(allowed_origins=('https://a.com',), allow_mock=True, max_body_bytes=1000)
    server = create_server(settings, '127.0.0.1', 0)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f'http://127.0.0.1:{server.server_address[1]}'
    server.shutdown()
    server.server_close()
    thread.join(timeout=5)


@pytest.fixture
def http():
    session = requests.Session()
    session.trust_env = False
    yield session
    session.close()


def test_server_mock_reply(base_url, http):
    resp = http.post(f'{base_url}/api/chat', json={'text': 'hello'}, headers={'Origin': 'https://a.com'}, timeout=5)
    assert resp.status_code == 200
    assert 'hello' in resp.json()['content']
    assert resp.headers['Access-Control-Allow-Origin'] == 'https://a.com'
    assert resp.headers['Cache-Control'] == 'no-store'


def test_server_preflight(base_url, http):
    resp = http.options(f'{base_url}/api/chat', headers={'Origin': 'https://a.com'}, timeout=5)
    assert resp.status_code == 204
    assert resp.content == b''
    assert resp.headers['Access-Control-Max-Age'] == '86400'


def test_server_unknown_path(base_url, http):
    resp = http.get(f'{base_url}/elsewhere', timeout=5)
    assert resp.status_code == 404
    assert resp.text == 'Not Found'


def test_server_rejects_oversized_body(base_url, http):
    resp = http.post(f'{base_url}/api/chat', data=b'x' * 2000, headers={'Content-Type': 'text/plain'}, timeout=5)
    assert resp.status_code == 413
    assert resp.text == 'Payload too large'
    assert resp.headers['Connection'] == 'close'


def test_server_chunked_json(base_url, http):
    body = iter([b'{"text":', b' "chunky"}'])
    resp = http.post(f'{base_url}/api/chat', data=body,
                     headers={'Origin': 'https://a.com', 'Content-Type': 'application/json'}, timeout=5)
    assert resp.status_code == 200
    assert 'chunky' in resp.json()['content']


def test_server_origin_rejected(base_url, http):
    resp = http.post(f'{base_url}/api/chat', data='hello', headers={'Content-Type': 'text/plain'}, timeout=5)
    assert resp.status_code == 403
    assert resp.json() == {'error': 'Origin not allowed'}


def test_server_unexpected_error_is_plain_500(base_url, http, monkeypatch):
    def explode(req, res, settings):
        raise RuntimeError('boom')

    monkeypatch.setattr(dev_server, 'handle_chat', explode)
    resp = http.post(f'{base_url}/api/chat', json={'text': 'hello'}, headers={'Origin': 'https://a.com'}, timeout=5)
    assert resp.status_code == 500
    assert resp.headers['Content-Type'] == 'text/plain; charset=utf-8'
    assert resp.text == 'boom'
